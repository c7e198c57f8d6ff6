"""Two-player match results: submit, confirm, history, leaderboard."""
from flask import Blueprint, request, jsonify, current_app

from shuttle.auth_utils import login_required
from shuttle.routes.helpers import _json_payload, _coerce_bool, _parse_positive_int
from shuttle.services import match_results
from shuttle.services.elo import skill_level_for
from shuttle.services.realtime import emit_result_update, emit_notification_update

results_bp = Blueprint('results', __name__)


@results_bp.route('', methods=['POST'])
@login_required
def submit_result():
    data = _json_payload()
    if data is None:
        return jsonify({'error': 'Invalid JSON payload'}), 400

    player1_id = _parse_positive_int(data.get('player1_id', request.current_user.id))
    player2_id = _parse_positive_int(data.get('player2_id'))
    if not player1_id or not player2_id:
        return jsonify({'error': 'Both player IDs are required'}), 400
    if data.get('player1_score') is None or data.get('player2_score') is None:
        return jsonify({'error': 'Both scores are required'}), 400

    session_id = None
    if data.get('session_id') is not None:
        session_id = _parse_positive_int(data.get('session_id'))
        if not session_id:
            return jsonify({'error': 'Session ID must be a positive integer'}), 400

    outcome = data.get('outcome')
    result = match_results.submit_result(
        request.current_user,
        player1_id,
        player2_id,
        data.get('player1_score'),
        data.get('player2_score'),
        outcome=str(outcome).strip().lower() if outcome else None,
        match_type=data.get('match_type') or 'casual',
        session_id=session_id,
    )
    emit_result_update(result_id=result.id, reason='result_submitted')
    emit_notification_update(
        user_ids=[result.player1_id, result.player2_id], reason='result_submitted',
    )
    return jsonify({'result': result.to_dict()}), 201


@results_bp.route('', methods=['GET'])
@login_required
def my_results():
    pending_only = _coerce_bool(request.args.get('pending'))
    results = match_results.list_results(request.current_user, pending_only=pending_only)
    return jsonify({'results': [r.to_dict() for r in results]})


@results_bp.route('/leaderboard', methods=['GET'])
def leaderboard():
    limit = _parse_positive_int(request.args.get('limit')) or current_app.config.get(
        'LEADERBOARD_LIMIT', 50,
    )
    match_type = str(request.args.get('match_type') or '').strip().upper()
    if match_type and match_type != 'ALL':
        entries = []
        for rank, rating in enumerate(
            match_results.match_type_leaderboard(match_type, limit), start=1,
        ):
            entry = rating.user.to_summary()
            entry.update(rating.to_dict())
            entry.update({
                'rank': rank,
                'win_rate': round(rating.wins * 100.0 / rating.games_played, 1),
                'skill_level': skill_level_for(rating.rating),
            })
            entries.append(entry)
        return jsonify({'match_type': match_type, 'leaderboard': entries})

    players = match_results.leaderboard(limit)
    entries = []
    for rank, user in enumerate(players, start=1):
        entry = user.to_summary()
        entry.update({
            'rank': rank,
            'games_played': user.games_played,
            'wins': user.wins,
            'losses': user.losses,
            'draws': user.draws,
            'skill_level': skill_level_for(user.elo_rating or 0),
        })
        entries.append(entry)
    return jsonify({'match_type': 'ALL', 'leaderboard': entries})


@results_bp.route('/<int:result_id>', methods=['GET'])
@login_required
def get_result(result_id):
    result = match_results.get_result(result_id)
    return jsonify({'result': result.to_dict()})


@results_bp.route('/<int:result_id>/confirm', methods=['POST'])
@login_required
def confirm_result(result_id):
    outcome = match_results.confirm_result(result_id, request.current_user)
    reason = 'result_settled' if outcome.confirmed else 'result_confirmation_updated'
    emit_result_update(result_id=result_id, reason=reason)
    result = match_results.get_result(result_id)
    emit_notification_update(user_ids=[result.player1_id, result.player2_id], reason=reason)
    return jsonify({
        'success': True,
        'confirmed': outcome.confirmed,
        'already_confirmed': outcome.already_confirmed,
        'points_awarded': outcome.points_awarded,
        'message': outcome.message,
    })
