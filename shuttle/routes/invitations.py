"""Match invitations: list sent/received, accept, decline, cancel."""
from flask import Blueprint, request, jsonify

from shuttle.auth_utils import login_required
from shuttle.routes.helpers import _json_payload, _parse_positive_int, _pagination_args
from shuttle.services import invitations as invitation_service
from shuttle.services.realtime import (
    emit_invitation_update, emit_notification_update, emit_session_update,
)

invitations_bp = Blueprint('invitations', __name__)

_ACTIONS = {
    'accept': 'ACCEPTED',
    'decline': 'DECLINED',
}


@invitations_bp.route('', methods=['GET'])
@login_required
def list_invitations():
    direction = str(request.args.get('type') or 'received').strip().lower()
    if direction not in invitation_service.DIRECTIONS:
        return jsonify({'error': 'Type must be sent or received'}), 400
    limit, offset = _pagination_args(default_limit=50)
    invitations = invitation_service.list_invitations(
        request.current_user,
        invitation_service.InvitationQuery(
            direction=direction,
            status=str(request.args.get('status') or '').strip().upper() or None,
            session_id=_parse_positive_int(request.args.get('session_id')),
            limit=limit,
            offset=offset,
        ),
    )
    return jsonify([i.to_dict() for i in invitations])


@invitations_bp.route('/<int:invitation_id>', methods=['PATCH'])
@login_required
def update_invitation(invitation_id):
    data = _json_payload()
    if data is None:
        return jsonify({'error': 'Invalid JSON payload'}), 400
    action = str(data.get('action') or '').strip().lower()

    if action == 'cancel':
        invitation = invitation_service.cancel_invitation(invitation_id, request.current_user)
        notify_user_ids = [invitation.invitee_id]
    elif action in _ACTIONS:
        invitation = invitation_service.respond(
            invitation_id, request.current_user, _ACTIONS[action],
        )
        notify_user_ids = [invitation.inviter_id]
        if action == 'accept':
            emit_session_update(session_id=invitation.session_id, reason='participant_joined')
    else:
        return jsonify({'error': 'Action must be accept, decline or cancel'}), 400

    emit_invitation_update(
        invitation_id=invitation.id,
        session_id=invitation.session_id,
        reason=f'invitation_{invitation.status.lower()}',
    )
    emit_notification_update(user_ids=notify_user_ids, reason='invitation_updated')
    return jsonify({'success': True, 'invitation': invitation.to_dict()})
