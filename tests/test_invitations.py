"""Tests for match invitations: invite, accept, decline, cancel, expiry and listing."""
import json
from datetime import timedelta

from shuttle.app import db
from shuttle.models import MatchInvitation, Notification, User
from shuttle.time_utils import utcnow_naive


def _invite(client, headers, session_id, invitee_id, **extra):
    payload = {'invitee_id': invitee_id}
    payload.update(extra)
    return client.post(f'/api/sessions/{session_id}/invite', headers=headers, json=payload)


def _act(client, headers, invitation_id, action):
    return client.patch(
        f'/api/invitations/{invitation_id}', headers=headers, json={'action': action},
    )


def test_invite_creates_pending_invitation_and_notifies(client, make_user, create_session):
    inviter_id, inviter_headers = make_user()
    invitee_id, _ = make_user()
    session_id = create_session(inviter_headers, 'MD')

    res = _invite(client, inviter_headers, session_id, invitee_id, team=2, message='Fancy a game?')
    assert res.status_code == 201
    invitation = json.loads(res.data)['invitation']
    assert invitation['status'] == 'PENDING'
    assert invitation['inviter_id'] == inviter_id
    assert invitation['invitee_id'] == invitee_id
    assert invitation['team'] == 2
    assert invitation['message'] == 'Fancy a game?'
    assert invitation['expires_at'] is not None
    assert invitation['session']['id'] == session_id

    notes = Notification.query.filter_by(user_id=invitee_id, notif_type='match_invitation').all()
    assert len(notes) == 1
    assert notes[0].reference_id == invitation['id']


def test_duplicate_pending_invitation_is_conflict(client, make_user, create_session):
    _, inviter_headers = make_user()
    second_id, second_headers = make_user()
    invitee_id, _ = make_user()
    session_id = create_session(inviter_headers, 'MD')
    client.post(f'/api/sessions/{session_id}/join', headers=second_headers, json={})

    assert _invite(client, inviter_headers, session_id, invitee_id).status_code == 201
    res = _invite(client, second_headers, session_id, invitee_id)
    assert res.status_code == 409
    assert json.loads(res.data)['code'] == 'Conflict'
    assert MatchInvitation.query.filter_by(
        session_id=session_id, invitee_id=invitee_id, status='PENDING',
    ).count() == 1


def test_invite_validation(client, make_user, create_session):
    inviter_id, inviter_headers = make_user()
    _, outsider_headers = make_user()
    woman_id, _ = make_user(gender='FEMALE')
    member_id, member_headers = make_user()
    session_id = create_session(inviter_headers, 'MD')
    client.post(f'/api/sessions/{session_id}/join', headers=member_headers, json={})

    res = _invite(client, outsider_headers, session_id, woman_id)
    assert res.status_code == 403

    res = _invite(client, inviter_headers, session_id, inviter_id)
    assert res.status_code == 400

    res = _invite(client, inviter_headers, session_id, woman_id)
    assert res.status_code == 400

    res = _invite(client, inviter_headers, session_id, member_id)
    assert res.status_code == 409

    res = _invite(client, inviter_headers, session_id, 9999)
    assert res.status_code == 404

    res = _invite(client, inviter_headers, session_id, member_id, team=3)
    assert res.status_code == 400

    res = client.post(f'/api/sessions/{session_id}/invite', headers=inviter_headers, json={})
    assert res.status_code == 400


def test_invite_to_started_session_is_invalid_state(client, make_user, create_session):
    _, creator_headers = make_user()
    _, opponent_headers = make_user()
    invitee_id, _ = make_user()
    session_id = create_session(creator_headers, 'MS')
    client.post(f'/api/sessions/{session_id}/join', headers=opponent_headers, json={})
    client.post(f'/api/sessions/{session_id}/start', headers=creator_headers)

    res = _invite(client, creator_headers, session_id, invitee_id)
    assert res.status_code == 400
    assert json.loads(res.data)['code'] == 'InvalidState'


def test_accept_seats_invitee_and_unblocks_start(client, make_user, create_session):
    inviter_id, inviter_headers = make_user()
    invitee_id, invitee_headers = make_user()
    session_id = create_session(inviter_headers, 'MS')
    invitation_id = json.loads(
        _invite(client, inviter_headers, session_id, invitee_id).data
    )['invitation']['id']

    res = _act(client, invitee_headers, invitation_id, 'accept')
    assert res.status_code == 200
    invitation = json.loads(res.data)['invitation']
    assert invitation['status'] == 'ACCEPTED'
    assert invitation['responded_at'] is not None

    session = json.loads(client.get(f'/api/sessions/{session_id}').data)['session']
    assert session['participant_count'] == 2
    seats = {p['user_id']: p['team'] for p in session['participants']}
    assert seats == {inviter_id: 1, invitee_id: 2}
    assert Notification.query.filter_by(
        user_id=inviter_id, notif_type='match_invitation_response',
    ).count() == 1

    res = client.post(f'/api/sessions/{session_id}/start', headers=inviter_headers)
    assert res.status_code == 200


def test_decline_sets_status_only(client, make_user, create_session):
    _, inviter_headers = make_user()
    invitee_id, invitee_headers = make_user()
    session_id = create_session(inviter_headers, 'MS')
    invitation_id = json.loads(
        _invite(client, inviter_headers, session_id, invitee_id).data
    )['invitation']['id']

    res = _act(client, invitee_headers, invitation_id, 'decline')
    assert res.status_code == 200
    assert json.loads(res.data)['invitation']['status'] == 'DECLINED'
    session = json.loads(client.get(f'/api/sessions/{session_id}').data)['session']
    assert session['participant_count'] == 1

    # a declined invitation does not block a fresh one
    assert _invite(client, inviter_headers, session_id, invitee_id).status_code == 201


def test_only_invitee_may_respond_and_only_once(client, make_user, create_session):
    _, inviter_headers = make_user()
    invitee_id, invitee_headers = make_user()
    _, stranger_headers = make_user()
    session_id = create_session(inviter_headers, 'MS')
    invitation_id = json.loads(
        _invite(client, inviter_headers, session_id, invitee_id).data
    )['invitation']['id']

    res = _act(client, stranger_headers, invitation_id, 'accept')
    assert res.status_code == 403
    res = _act(client, inviter_headers, invitation_id, 'accept')
    assert res.status_code == 403

    assert _act(client, invitee_headers, invitation_id, 'decline').status_code == 200
    res = _act(client, invitee_headers, invitation_id, 'accept')
    assert res.status_code == 400
    assert json.loads(res.data)['code'] == 'InvalidState'

    res = _act(client, invitee_headers, invitation_id, 'maybe')
    assert res.status_code == 400
    res = _act(client, invitee_headers, 9999, 'accept')
    assert res.status_code == 404


def test_inviter_cannot_cancel_accepted_invitation(client, make_user, create_session):
    _, inviter_headers = make_user()
    invitee_id, invitee_headers = make_user()
    session_id = create_session(inviter_headers, 'MS')
    invitation_id = json.loads(
        _invite(client, inviter_headers, session_id, invitee_id).data
    )['invitation']['id']
    _act(client, invitee_headers, invitation_id, 'accept')

    res = _act(client, inviter_headers, invitation_id, 'cancel')
    assert res.status_code == 400
    assert json.loads(res.data)['code'] == 'InvalidState'
    assert db.session.get(MatchInvitation, invitation_id).status == 'ACCEPTED'


def test_cancel_pending_invitation(client, make_user, create_session):
    _, inviter_headers = make_user()
    invitee_id, invitee_headers = make_user()
    session_id = create_session(inviter_headers, 'MS')
    invitation_id = json.loads(
        _invite(client, inviter_headers, session_id, invitee_id).data
    )['invitation']['id']

    res = _act(client, invitee_headers, invitation_id, 'cancel')
    assert res.status_code == 403

    res = _act(client, inviter_headers, invitation_id, 'cancel')
    assert res.status_code == 200
    assert json.loads(res.data)['invitation']['status'] == 'CANCELLED'

    res = _act(client, invitee_headers, invitation_id, 'accept')
    assert res.status_code == 400


def test_accept_into_full_session_is_conflict(client, make_user, create_session):
    _, inviter_headers = make_user()
    first_id, first_headers = make_user()
    second_id, second_headers = make_user()
    session_id = create_session(inviter_headers, 'MS')
    first_invite = json.loads(_invite(client, inviter_headers, session_id, first_id).data)
    second_invite = json.loads(_invite(client, inviter_headers, session_id, second_id).data)

    assert _act(client, first_headers, first_invite['invitation']['id'], 'accept').status_code == 200
    res = _act(client, second_headers, second_invite['invitation']['id'], 'accept')
    assert res.status_code == 409
    assert db.session.get(MatchInvitation, second_invite['invitation']['id']).status == 'PENDING'
    session = json.loads(client.get(f'/api/sessions/{session_id}').data)['session']
    assert session['participant_count'] == 2


def test_accept_after_session_started_is_invalid_state(client, make_user, create_session):
    _, creator_headers = make_user()
    _, opponent_headers = make_user()
    invitee_id, invitee_headers = make_user()
    session_id = create_session(creator_headers, 'MS')
    invitation_id = json.loads(
        _invite(client, creator_headers, session_id, invitee_id).data
    )['invitation']['id']
    client.post(f'/api/sessions/{session_id}/join', headers=opponent_headers, json={})
    client.post(f'/api/sessions/{session_id}/start', headers=creator_headers)

    res = _act(client, invitee_headers, invitation_id, 'accept')
    assert res.status_code == 400
    assert json.loads(res.data)['code'] == 'InvalidState'


def test_expired_invitation_cannot_be_accepted_and_is_replaced(client, make_user, create_session):
    _, inviter_headers = make_user()
    invitee_id, invitee_headers = make_user()
    session_id = create_session(inviter_headers, 'MS')
    invitation_id = json.loads(
        _invite(client, inviter_headers, session_id, invitee_id).data
    )['invitation']['id']

    invitation = db.session.get(MatchInvitation, invitation_id)
    invitation.expires_at = utcnow_naive() - timedelta(minutes=1)
    db.session.commit()

    res = _act(client, invitee_headers, invitation_id, 'accept')
    assert res.status_code == 400
    assert 'expired' in json.loads(res.data)['error']

    res = _invite(client, inviter_headers, session_id, invitee_id)
    assert res.status_code == 201
    assert db.session.get(MatchInvitation, invitation_id).status == 'CANCELLED'


def test_invited_player_pays_entry_fee_through_join(client, make_user, create_session):
    _, inviter_headers = make_user()
    invitee_id, invitee_headers = make_user(points=80)
    session_id = create_session(inviter_headers, 'MS', entry_fee_points=50)
    invitation_id = json.loads(
        _invite(client, inviter_headers, session_id, invitee_id).data
    )['invitation']['id']
    _act(client, invitee_headers, invitation_id, 'accept')

    res = client.post(
        f'/api/sessions/{session_id}/join', headers=invitee_headers,
        json={'payment_method': 'points'},
    )
    assert res.status_code == 200
    assert db.session.get(User, invitee_id).points == 30
    session = json.loads(res.data)['session']
    assert session['participant_count'] == 2


def test_list_invitations_sent_and_received(client, make_user, create_session):
    _, inviter_headers = make_user()
    first_id, first_headers = make_user()
    second_id, _ = make_user()
    older_session = create_session(inviter_headers, 'MD')
    newer_session = create_session(inviter_headers, 'MD')
    old_invite = json.loads(_invite(client, inviter_headers, older_session, first_id).data)
    new_invite = json.loads(_invite(client, inviter_headers, newer_session, first_id).data)
    _invite(client, inviter_headers, newer_session, second_id)
    _act(client, first_headers, old_invite['invitation']['id'], 'decline')

    res = client.get('/api/invitations?type=received', headers=first_headers)
    assert res.status_code == 200
    received = json.loads(res.data)
    assert isinstance(received, list)
    assert [i['id'] for i in received] == [
        new_invite['invitation']['id'], old_invite['invitation']['id'],
    ]
    assert received[0]['inviter']['username']
    assert received[0]['session']['match_type'] == 'MD'

    res = client.get('/api/invitations?type=received&status=pending', headers=first_headers)
    assert [i['id'] for i in json.loads(res.data)] == [
        new_invite['invitation']['id'],
    ]

    res = client.get('/api/invitations?type=sent', headers=inviter_headers)
    assert len(json.loads(res.data)) == 3

    res = client.get(f'/api/invitations?type=sent&session_id={newer_session}', headers=inviter_headers)
    assert len(json.loads(res.data)) == 2

    res = client.get(f'/api/sessions/{newer_session}/invitations', headers=inviter_headers)
    assert len(json.loads(res.data)['invitations']) == 2

    res = client.get('/api/invitations?type=everything', headers=inviter_headers)
    assert res.status_code == 400
    res = client.get('/api/invitations?status=LOST', headers=inviter_headers)
    assert res.status_code == 400


def test_session_invitations_are_hidden_from_outsiders(client, make_user, create_session):
    _, creator_headers = make_user()
    invitee_id, _ = make_user()
    _, stranger_headers = make_user()
    _, admin_headers = make_user(is_admin=True)
    session_id = create_session(creator_headers, 'MS')
    _invite(client, creator_headers, session_id, invitee_id, message='secret')

    res = client.get(f'/api/sessions/{session_id}/invitations', headers=stranger_headers)
    assert res.status_code == 403
    assert b'secret' not in res.data

    res = client.get(f'/api/sessions/{session_id}/invitations', headers=admin_headers)
    assert res.status_code == 200
    assert [i['message'] for i in json.loads(res.data)['invitations']] == ['secret']


def test_direct_join_cancels_pending_invitation(client, make_user, create_session):
    _, creator_headers = make_user()
    invitee_id, invitee_headers = make_user()
    session_id = create_session(creator_headers, 'MS')
    invitation_id = json.loads(
        _invite(client, creator_headers, session_id, invitee_id).data
    )['invitation']['id']

    res = client.post(f'/api/sessions/{session_id}/join', headers=invitee_headers, json={})
    assert res.status_code == 200

    invitation = db.session.get(MatchInvitation, invitation_id)
    db.session.refresh(invitation)
    assert invitation.status == 'CANCELLED'
    assert invitation.responded_at is not None
    res = _act(client, invitee_headers, invitation_id, 'accept')
    assert res.status_code == 400


def test_invitation_records_the_team_with_a_free_seat(client, make_user, create_session):
    _, creator_headers = make_user()
    _, second_headers = make_user()
    _, third_headers = make_user()
    invitee_id, _ = make_user()
    session_id = create_session(creator_headers, 'MD')
    client.post(f'/api/sessions/{session_id}/join', headers=second_headers, json={})
    client.post(f'/api/sessions/{session_id}/join', headers=third_headers, json={})
    session = json.loads(client.get(f'/api/sessions/{session_id}').data)['session']
    assert sorted(p['team'] for p in session['participants']) == [1, 1, 2]

    res = _invite(client, creator_headers, session_id, invitee_id, team=1)
    assert res.status_code == 201
    assert json.loads(res.data)['invitation']['team'] == 2
