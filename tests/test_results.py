"""Tests for two-party result confirmation and settlement."""
import json

import pytest

from shuttle.app import db
from shuttle.errors import LedgerError
from shuttle.models import MatchResult, Notification, PointsTransaction, User
from shuttle.services import match_results, points_ledger


def _submit(client, headers, player1_id, player2_id, score1, score2, **extra):
    payload = {
        'player1_id': player1_id,
        'player2_id': player2_id,
        'player1_score': score1,
        'player2_score': score2,
    }
    payload.update(extra)
    return client.post('/api/results', headers=headers, json=payload)


def _confirm(client, headers, result_id):
    return client.post(f'/api/results/{result_id}/confirm', headers=headers)


def _win_credits(user_id, result_id):
    return PointsTransaction.query.filter_by(
        user_id=user_id, action_type='win_match', source_id=f'match_result:{result_id}',
    ).count()


@pytest.fixture
def players(make_user):
    player1_id, player1_headers = make_user('alice')
    player2_id, player2_headers = make_user('bruno')
    return player1_id, player1_headers, player2_id, player2_headers


def test_submit_starts_unconfirmed_with_precomputed_ratings(client, players):
    player1_id, player1_headers, player2_id, _ = players

    res = _submit(client, player1_headers, player1_id, player2_id, 21, 17)
    assert res.status_code == 201
    result = json.loads(res.data)['result']
    assert result['outcome'] == 'player1_win'
    assert result['player1_confirmed'] is False
    assert result['player2_confirmed'] is False
    assert result['settled'] is False
    assert result['player1_elo_before'] == 1200.0
    assert result['player1_elo_change'] == 20.0
    assert result['player2_elo_change'] == -20.0
    assert result['submitted_by'] == player1_id

    assert Notification.query.filter_by(
        user_id=player2_id, notif_type='match_result_submitted',
    ).count() == 1
    # ratings only move on settlement
    assert db.session.get(User, player1_id).elo_rating == 1200.0


def test_submit_validation(client, players, make_user):
    player1_id, player1_headers, player2_id, _ = players
    _, outsider_headers = make_user()

    res = _submit(client, outsider_headers, player1_id, player2_id, 21, 10)
    assert res.status_code == 403

    res = _submit(client, player1_headers, player1_id, player2_id, 21, 10, outcome='player2_win')
    assert res.status_code == 400

    res = _submit(client, player1_headers, player1_id, player1_id, 21, 10)
    assert res.status_code == 400

    res = _submit(client, player1_headers, player1_id, player2_id, 21, 'ten')
    assert res.status_code == 400

    res = _submit(client, player1_headers, player1_id, player2_id, 21, 10, match_type='exhibition')
    assert res.status_code == 400

    res = _submit(client, player1_headers, player1_id, 9999, 21, 10)
    assert res.status_code == 404

    res = _submit(client, player1_headers, player1_id, player2_id, 21, 10, session_id=9999)
    assert res.status_code == 404

    res = client.post('/api/results', headers=player1_headers, json={'player2_id': player2_id})
    assert res.status_code == 400


def test_mutual_confirmation_credits_winner_exactly_once(client, players):
    player1_id, player1_headers, player2_id, player2_headers = players
    result_id = json.loads(
        _submit(client, player2_headers, player1_id, player2_id, 21, 12).data
    )['result']['id']

    res = _confirm(client, player1_headers, result_id)
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['success'] is True
    assert data['confirmed'] is False
    assert _win_credits(player1_id, result_id) == 0

    res = _confirm(client, player2_headers, result_id)
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['confirmed'] is True
    assert data['points_awarded'] == points_ledger.POINTS_CONFIG['win_match']

    assert _win_credits(player1_id, result_id) == 1
    assert PointsTransaction.query.filter_by(user_id=player2_id).count() == 0
    winner = db.session.get(User, player1_id)
    loser = db.session.get(User, player2_id)
    assert winner.points == 150
    assert winner.lifetime_points == 150
    assert winner.elo_rating == 1220.0
    assert loser.elo_rating == 1180.0
    assert (winner.wins, winner.games_played) == (1, 1)
    assert (loser.losses, loser.games_played) == (1, 1)
    assert db.session.get(MatchResult, result_id).settled_at is not None


def test_repeat_self_confirmation_changes_nothing(client, players):
    player1_id, player1_headers, player2_id, _ = players
    result_id = json.loads(
        _submit(client, player1_headers, player1_id, player2_id, 21, 19).data
    )['result']['id']

    _confirm(client, player1_headers, result_id)
    res = _confirm(client, player1_headers, result_id)
    assert res.status_code == 200
    assert json.loads(res.data)['confirmed'] is False

    result = db.session.get(MatchResult, result_id)
    assert (result.player1_confirmed, result.player2_confirmed) == (True, False)
    assert Notification.query.filter_by(
        user_id=player2_id, notif_type='match_result_confirm_request',
    ).count() == 1
    assert _win_credits(player1_id, result_id) == 0


def test_confirm_after_both_is_idempotent_success(client, players):
    player1_id, player1_headers, player2_id, player2_headers = players
    result_id = json.loads(
        _submit(client, player1_headers, player1_id, player2_id, 15, 21).data
    )['result']['id']
    _confirm(client, player1_headers, result_id)
    _confirm(client, player2_headers, result_id)

    res = _confirm(client, player1_headers, result_id)
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['confirmed'] is True
    assert data['already_confirmed'] is True
    assert data['points_awarded'] == 0
    assert _win_credits(player2_id, result_id) == 1
    assert db.session.get(User, player2_id).points == 150
    assert db.session.get(User, player2_id).games_played == 1


def test_draw_settles_ratings_without_credit(client, players):
    player1_id, player1_headers, player2_id, player2_headers = players
    result_id = json.loads(
        _submit(client, player1_headers, player1_id, player2_id, 20, 20).data
    )['result']['id']
    _confirm(client, player1_headers, result_id)
    res = _confirm(client, player2_headers, result_id)

    data = json.loads(res.data)
    assert data['confirmed'] is True
    assert data['points_awarded'] == 0
    assert PointsTransaction.query.count() == 0
    for user_id in (player1_id, player2_id):
        user = db.session.get(User, user_id)
        assert user.draws == 1
        assert user.games_played == 1
        assert user.elo_rating == 1200.0
    assert db.session.get(MatchResult, result_id).settled_at is not None


def test_only_players_can_confirm(client, players, make_user):
    player1_id, player1_headers, player2_id, _ = players
    _, outsider_headers = make_user()
    result_id = json.loads(
        _submit(client, player1_headers, player1_id, player2_id, 21, 3).data
    )['result']['id']

    res = _confirm(client, outsider_headers, result_id)
    assert res.status_code == 403
    assert json.loads(res.data)['code'] == 'Forbidden'

    res = _confirm(client, player1_headers, 9999)
    assert res.status_code == 404


def test_settlement_failure_keeps_confirmation_and_retry_settles(client, players, monkeypatch):
    player1_id, player1_headers, player2_id, player2_headers = players
    result_id = json.loads(
        _submit(client, player1_headers, player1_id, player2_id, 21, 11).data
    )['result']['id']
    _confirm(client, player1_headers, result_id)

    def _ledger_down(*args, **kwargs):
        raise LedgerError('connection refused by ledger host 10.0.0.7')

    monkeypatch.setattr(points_ledger, 'award_points', _ledger_down)
    res = _confirm(client, player2_headers, result_id)
    assert res.status_code == 500
    data = json.loads(res.data)
    assert data == {'error': 'Internal server error', 'code': 'SettlementError'}

    result = db.session.get(MatchResult, result_id)
    assert result.player1_confirmed is True
    assert result.player2_confirmed is True
    assert result.settled_at is None
    assert db.session.get(User, player1_id).elo_rating == 1200.0
    assert db.session.get(User, player1_id).games_played == 0

    monkeypatch.undo()
    res = _confirm(client, player2_headers, result_id)
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['already_confirmed'] is True
    assert data['points_awarded'] == 150

    res = _confirm(client, player1_headers, result_id)
    assert json.loads(res.data)['points_awarded'] == 0
    assert _win_credits(player1_id, result_id) == 1
    assert db.session.get(User, player1_id).points == 150
    assert db.session.get(User, player1_id).games_played == 1


def test_settle_runs_once_per_result(app, players):
    player1_id, _, player2_id, _ = players
    player1 = db.session.get(User, player1_id)
    result = match_results.submit_result(player1, player1_id, player2_id, 21, 8)
    result.player1_confirmed = True
    result.player2_confirmed = True
    db.session.commit()

    assert match_results.settle_result(result.id) == 150
    assert match_results.settle_result(result.id) == 0
    assert _win_credits(player1_id, result.id) == 1
    assert db.session.get(User, player1_id).games_played == 1


def test_settle_ignores_half_confirmed_result(app, players):
    player1_id, _, player2_id, _ = players
    player1 = db.session.get(User, player1_id)
    result = match_results.submit_result(player1, player1_id, player2_id, 21, 8)
    assert match_results.settle_result(result.id) == 0
    assert db.session.get(MatchResult, result.id).settled_at is None


def test_results_listing_and_leaderboard(client, players, make_user):
    player1_id, player1_headers, player2_id, player2_headers = players
    idle_id, _ = make_user('idle')
    settled_id = json.loads(
        _submit(client, player1_headers, player1_id, player2_id, 21, 9).data
    )['result']['id']
    pending_id = json.loads(
        _submit(client, player2_headers, player1_id, player2_id, 14, 21).data
    )['result']['id']
    _confirm(client, player1_headers, settled_id)
    _confirm(client, player2_headers, settled_id)

    res = client.get('/api/results', headers=player1_headers)
    assert [r['id'] for r in json.loads(res.data)['results']] == [pending_id, settled_id]

    res = client.get('/api/results?pending=1', headers=player1_headers)
    assert [r['id'] for r in json.loads(res.data)['results']] == [pending_id]

    res = client.get(f'/api/results/{settled_id}', headers=player2_headers)
    assert json.loads(res.data)['result']['settled'] is True

    res = client.get('/api/results/leaderboard')
    assert res.status_code == 200
    board = json.loads(res.data)['leaderboard']
    assert [entry['id'] for entry in board] == [player1_id, player2_id]
    assert board[0]['rank'] == 1
    assert board[0]['skill_level'] == 'D'
    assert idle_id not in [entry['id'] for entry in board]


def test_leaderboard_by_match_type(client, make_user, create_session):
    creator_id, creator_headers = make_user()
    opponent_id, opponent_headers = make_user()
    session_id = create_session(creator_headers, 'MS')
    client.post(f'/api/sessions/{session_id}/join', headers=opponent_headers, json={})
    client.post(f'/api/sessions/{session_id}/start', headers=creator_headers)
    client.post(
        f'/api/sessions/{session_id}/complete', headers=opponent_headers,
        json={'result': 'TEAM2_WIN', 'team1_score': 17, 'team2_score': 21},
    )

    res = client.get('/api/results/leaderboard?match_type=ms')
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['match_type'] == 'MS'
    board = data['leaderboard']
    assert [entry['user_id'] for entry in board] == [opponent_id, creator_id]
    assert [entry['rank'] for entry in board] == [1, 2]
    assert (board[0]['games_played'], board[0]['wins'], board[0]['win_rate']) == (1, 1, 100.0)
    assert board[0]['peak_rating'] == board[0]['rating']
    assert board[1]['win_rate'] == 0.0

    res = client.get('/api/results/leaderboard?match_type=MD')
    assert json.loads(res.data)['leaderboard'] == []

    res = client.get('/api/results/leaderboard?match_type=ALL')
    assert json.loads(res.data)['match_type'] == 'ALL'
    assert [entry['id'] for entry in json.loads(res.data)['leaderboard']] == [
        opponent_id, creator_id,
    ]

    res = client.get('/api/results/leaderboard?match_type=QQ')
    assert res.status_code == 400
