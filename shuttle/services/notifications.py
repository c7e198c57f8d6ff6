"""
In-app notification dispatch.

``notify`` is fire-and-forget: the row is written inside a savepoint of the
caller's transaction, so a failing insert is logged and dropped without
disturbing the operation that triggered it. The caller commits.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError

from shuttle.app import db
from shuttle.errors import NotFound, Forbidden
from shuttle.models import Notification

logger = logging.getLogger(__name__)

_MAX_LIST_LIMIT = 100


def notify(user_id, notif_type, title, message, link=None, reference_id=None):
    """Queue a notification for ``user_id``. Returns the row, or None on failure."""
    if not user_id or not notif_type or not title or not message:
        logger.warning('Dropping incomplete notification for user %s (%s)', user_id, notif_type)
        return None
    notification = Notification(
        user_id=user_id,
        notif_type=notif_type,
        title=title,
        content=message,
        link=link,
        reference_id=reference_id,
    )
    try:
        with db.session.begin_nested():
            db.session.add(notification)
    except SQLAlchemyError:
        logger.warning(
            'Failed to create %s notification for user %s', notif_type, user_id, exc_info=True,
        )
        return None
    return notification


def notify_many(user_ids, notif_type, title, message, link=None, reference_id=None,
                exclude_user_ids=None):
    excluded = set(exclude_user_ids or [])
    created = []
    for user_id in user_ids:
        if user_id in excluded:
            continue
        notification = notify(user_id, notif_type, title, message, link, reference_id)
        if notification is not None:
            created.append(notification)
    return created


def list_notifications(user, unread_only=False, limit=20):
    limit = max(1, min(int(limit or 20), _MAX_LIST_LIMIT))
    query = Notification.query.filter_by(user_id=user.id)
    if unread_only:
        query = query.filter_by(read=False)
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def unread_count(user):
    return Notification.query.filter_by(user_id=user.id, read=False).count()


def mark_read(notification_id, user):
    notification = db.session.get(Notification, notification_id)
    if not notification:
        raise NotFound('Notification not found')
    if notification.user_id != user.id:
        raise Forbidden('This notification belongs to another user')
    notification.read = True
    db.session.commit()
    return notification


def mark_all_read(user):
    updated = Notification.query.filter_by(user_id=user.id, read=False).update(
        {'read': True}, synchronize_session=False,
    )
    db.session.commit()
    return updated
