"""Match sessions: create, join, start, leave, kick, cancel, complete, delete, invite."""
from flask import Blueprint, request, jsonify, current_app

from shuttle.auth_utils import login_required
from shuttle.models import MATCH_TYPES
from shuttle.routes.helpers import (
    _json_payload, _coerce_bool, _parse_positive_int, _parse_non_negative_int,
    _parse_iso_datetime, _pagination_args,
)
from shuttle.services import invitations as invitation_service
from shuttle.services import session_lifecycle as lifecycle
from shuttle.services.realtime import (
    emit_session_update, emit_invitation_update, emit_notification_update,
)

sessions_bp = Blueprint('sessions', __name__)

_SESSION_STATUSES = {'PENDING', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED'}


def _participant_ids(session):
    return [p.user_id for p in session.participants]


@sessions_bp.route('', methods=['GET'])
def list_sessions():
    match_type = str(request.args.get('match_type') or '').strip().upper() or None
    status = str(request.args.get('status') or '').strip().upper() or None
    if match_type and match_type not in MATCH_TYPES:
        return jsonify({'error': 'Invalid match type'}), 400
    if status and status not in _SESSION_STATUSES:
        return jsonify({'error': 'Invalid session status'}), 400
    limit, offset = _pagination_args()
    sessions = lifecycle.list_sessions(lifecycle.SessionQuery(
        match_type=match_type,
        status=status,
        user_id=_parse_positive_int(request.args.get('user_id')),
        limit=limit,
        offset=offset,
    ))
    return jsonify({'sessions': [s.to_dict() for s in sessions]})


@sessions_bp.route('', methods=['POST'])
@login_required
def create_session():
    data = _json_payload()
    if data is None:
        return jsonify({'error': 'Invalid JSON payload'}), 400

    match_type = str(data.get('match_type') or '').strip().upper()
    if not match_type:
        return jsonify({'error': 'Match type required'}), 400

    config = current_app.config
    entry_fee_points = _parse_non_negative_int(
        data.get('entry_fee_points'), default=config.get('DEFAULT_ENTRY_FEE_POINTS', 0),
    )
    entry_fee_feathers = _parse_non_negative_int(
        data.get('entry_fee_feathers'), default=config.get('DEFAULT_ENTRY_FEE_FEATHERS', 0),
    )
    winner_points = _parse_non_negative_int(
        data.get('winner_points'), default=config.get('DEFAULT_WINNER_POINTS', 0),
    )
    creation_cost_points = _parse_non_negative_int(
        data.get('creation_cost_points'), default=config.get('DEFAULT_CREATION_COST_POINTS', 0),
    )
    creation_cost_feathers = _parse_non_negative_int(
        data.get('creation_cost_feathers'),
        default=config.get('DEFAULT_CREATION_COST_FEATHERS', 0),
    )
    amounts = (
        entry_fee_points, entry_fee_feathers, winner_points,
        creation_cost_points, creation_cost_feathers,
    )
    if any(amount is None for amount in amounts):
        return jsonify({'error': 'Fees and winner points must be non-negative integers'}), 400

    scheduled_at, ok = _parse_iso_datetime(data.get('scheduled_at'))
    if not ok:
        return jsonify({'error': 'Scheduled time must be a valid ISO datetime'}), 400

    session = lifecycle.create_session(
        request.current_user,
        match_type,
        lifecycle.FeeConfig(
            entry_fee_points=entry_fee_points,
            entry_fee_feathers=entry_fee_feathers,
            winner_points=winner_points,
            creation_cost_points=creation_cost_points,
            creation_cost_feathers=creation_cost_feathers,
        ),
        scheduled_at=scheduled_at,
        location=str(data.get('location') or '').strip(),
        court_number=str(data.get('court_number') or '').strip(),
    )
    emit_session_update(session_id=session.id, reason='session_created')
    return jsonify({'session': session.to_dict()}), 201


@sessions_bp.route('/my', methods=['GET'])
@login_required
def my_sessions():
    include_finished = _coerce_bool(request.args.get('include_finished'))
    sessions = lifecycle.my_sessions(request.current_user, include_finished=include_finished)
    return jsonify({'sessions': [s.to_dict() for s in sessions]})


@sessions_bp.route('/<int:session_id>', methods=['GET'])
def get_session(session_id):
    session = lifecycle.get_session(session_id)
    return jsonify({'session': session.to_dict()})


@sessions_bp.route('/<int:session_id>/join', methods=['POST'])
@login_required
def join_session(session_id):
    data = _json_payload()
    if data is None:
        return jsonify({'error': 'Invalid JSON payload'}), 400
    payment_method = data.get('payment_method') or data.get('paymentMethod') or 'points'
    participant = lifecycle.join_session(session_id, request.current_user, payment_method)
    session = lifecycle.get_session(session_id)
    emit_session_update(session_id=session_id, reason='participant_joined')
    emit_notification_update(user_ids=[session.creator_id], reason='participant_joined')
    return jsonify({
        'success': True,
        'participant': participant.to_dict(),
        'session': session.to_dict(),
    })


@sessions_bp.route('/<int:session_id>/start', methods=['POST'])
@login_required
def start_session(session_id):
    session = lifecycle.start_session(session_id, request.current_user)
    emit_session_update(session_id=session_id, reason='session_started')
    emit_notification_update(user_ids=_participant_ids(session), reason='session_started')
    return jsonify({'success': True})


@sessions_bp.route('/<int:session_id>/leave', methods=['POST'])
@login_required
def leave_session(session_id):
    refunded = lifecycle.leave_session(session_id, request.current_user)
    emit_session_update(session_id=session_id, reason='participant_left')
    return jsonify({'success': True, 'refunded': refunded})


@sessions_bp.route('/<int:session_id>/kick', methods=['POST'])
@login_required
def kick_participant(session_id):
    data = _json_payload()
    if data is None:
        return jsonify({'error': 'Invalid JSON payload'}), 400
    target_user_id = _parse_positive_int(data.get('userId', data.get('user_id')))
    if not target_user_id:
        return jsonify({'error': 'User ID required'}), 400
    refunded = lifecycle.kick_participant(session_id, request.current_user, target_user_id)
    emit_session_update(session_id=session_id, reason='participant_kicked')
    emit_notification_update(user_ids=[target_user_id], reason='participant_kicked')
    return jsonify({'success': True, 'refunded': refunded})


@sessions_bp.route('/<int:session_id>/cancel', methods=['POST'])
@login_required
def cancel_session(session_id):
    session, refunds = lifecycle.cancel_session(session_id, request.current_user)
    emit_session_update(session_id=session_id, reason='session_cancelled')
    emit_notification_update(user_ids=_participant_ids(session), reason='session_cancelled')
    return jsonify({'success': True, 'session': session.to_dict(), 'refunds': refunds})


@sessions_bp.route('/<int:session_id>', methods=['DELETE'])
@login_required
def delete_session(session_id):
    participant_ids = _participant_ids(lifecycle.get_session(session_id))
    refunds = lifecycle.delete_session(session_id, request.current_user)
    emit_session_update(session_id=session_id, reason='session_deleted')
    emit_notification_update(user_ids=participant_ids, reason='session_deleted')
    return jsonify({'success': True, 'refunds': refunds})


@sessions_bp.route('/<int:session_id>/complete', methods=['POST'])
@login_required
def complete_session(session_id):
    data = _json_payload()
    if data is None:
        return jsonify({'error': 'Invalid JSON payload'}), 400
    if data.get('team1_score') is None or data.get('team2_score') is None:
        return jsonify({'error': 'Both team scores are required'}), 400
    session = lifecycle.complete_session(
        session_id, request.current_user,
        data.get('result'), data.get('team1_score'), data.get('team2_score'),
    )
    emit_session_update(session_id=session_id, reason='session_completed')
    emit_notification_update(user_ids=_participant_ids(session), reason='session_completed')
    return jsonify({'success': True, 'session': session.to_dict()})


@sessions_bp.route('/<int:session_id>/invite', methods=['POST'])
@login_required
def invite_player(session_id):
    data = _json_payload()
    if data is None:
        return jsonify({'error': 'Invalid JSON payload'}), 400
    invitee_id = _parse_positive_int(data.get('invitee_id', data.get('inviteeId')))
    if not invitee_id:
        return jsonify({'error': 'Invitee ID required'}), 400
    team = None
    if data.get('team') is not None:
        team = _parse_positive_int(data.get('team'))
        if team not in (1, 2):
            return jsonify({'error': 'Team must be 1 or 2'}), 400

    invitation = invitation_service.invite(
        request.current_user, invitee_id, session_id, team=team, message=data.get('message'),
    )
    emit_invitation_update(
        invitation_id=invitation.id, session_id=session_id, reason='invitation_created',
    )
    emit_notification_update(user_ids=[invitee_id], reason='invitation_created')
    return jsonify({'invitation': invitation.to_dict()}), 201


@sessions_bp.route('/<int:session_id>/invitations', methods=['GET'])
@login_required
def session_invitations(session_id):
    invitations = invitation_service.list_session_invitations(
        session_id, request.current_user,
    )
    return jsonify({'invitations': [i.to_dict() for i in invitations]})
