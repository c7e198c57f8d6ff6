from flask import Blueprint, request, jsonify

from shuttle.auth_utils import login_required
from shuttle.routes.helpers import _coerce_bool, _parse_positive_int
from shuttle.services import notifications as notification_service

notifications_bp = Blueprint('notifications', __name__)


@notifications_bp.route('', methods=['GET'])
@login_required
def list_notifications():
    user = request.current_user
    notifications = notification_service.list_notifications(
        user,
        unread_only=_coerce_bool(request.args.get('unread')),
        limit=_parse_positive_int(request.args.get('limit')) or 20,
    )
    return jsonify({
        'notifications': [n.to_dict() for n in notifications],
        'unread_count': notification_service.unread_count(user),
    })


@notifications_bp.route('/<int:notification_id>', methods=['PATCH'])
@login_required
def mark_read(notification_id):
    notification = notification_service.mark_read(notification_id, request.current_user)
    return jsonify({'success': True, 'notification': notification.to_dict()})


@notifications_bp.route('/read-all', methods=['POST'])
@login_required
def mark_all_read():
    updated = notification_service.mark_all_read(request.current_user)
    return jsonify({'success': True, 'updated': updated})
