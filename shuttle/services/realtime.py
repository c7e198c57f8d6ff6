"""Socket.IO fan-out after state changes. Emits are best effort."""
import logging

from shuttle.app import socketio
from shuttle.time_utils import utcnow_naive

logger = logging.getLogger(__name__)


def _emit(event, payload):
    payload = dict(payload)
    payload['updated_at'] = utcnow_naive().isoformat()
    try:
        socketio.emit(event, payload)
    except Exception:
        logger.warning('Failed to emit %s (%s)', event, payload.get('reason'), exc_info=True)


def emit_session_update(session_id=None, reason=''):
    _emit('session_update', {'session_id': session_id, 'reason': reason})


def emit_invitation_update(invitation_id=None, session_id=None, reason=''):
    _emit('invitation_update', {
        'invitation_id': invitation_id,
        'session_id': session_id,
        'reason': reason,
    })


def emit_result_update(result_id=None, reason=''):
    _emit('result_update', {'result_id': result_id, 'reason': reason})


def emit_notification_update(user_ids=None, reason=''):
    _emit('notification_update', {
        'user_ids': sorted(set(user_ids or [])),
        'reason': reason,
    })
