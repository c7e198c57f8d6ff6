"""Tests for in-app notifications."""
import json

from shuttle.app import db
from shuttle.models import Notification
from shuttle.services.notifications import notify, notify_many


def _seed(user_id, count=2):
    for index in range(count):
        notify(user_id, 'match_invitation', 'Match invitation', f'Invitation {index}')
    db.session.commit()


def test_notify_drops_incomplete_payloads(app, make_user):
    user_id, _ = make_user()
    assert notify(user_id, 'match_invitation', 'Title', '') is None
    assert notify(None, 'match_invitation', 'Title', 'Body') is None
    assert Notification.query.count() == 0


def test_notify_many_skips_excluded_users(app, make_user):
    first_id, _ = make_user()
    second_id, _ = make_user()
    created = notify_many(
        [first_id, second_id], 'match_started', 'Match started', 'Go!',
        exclude_user_ids={first_id},
    )
    db.session.commit()
    assert [n.user_id for n in created] == [second_id]


def test_list_notifications_with_unread_count(client, make_user):
    user_id, headers = make_user()
    _seed(user_id, count=3)

    res = client.get('/api/notifications', headers=headers)
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['unread_count'] == 3
    assert [n['content'] for n in data['notifications']] == [
        'Invitation 2', 'Invitation 1', 'Invitation 0',
    ]

    res = client.get('/api/notifications?limit=1', headers=headers)
    assert len(json.loads(res.data)['notifications']) == 1


def test_mark_read_and_read_all(client, make_user):
    user_id, headers = make_user()
    other_id, other_headers = make_user()
    _seed(user_id, count=2)
    first = Notification.query.filter_by(user_id=user_id).first()

    res = client.patch(f'/api/notifications/{first.id}', headers=other_headers)
    assert res.status_code == 403

    res = client.patch(f'/api/notifications/{first.id}', headers=headers)
    assert res.status_code == 200
    assert json.loads(res.data)['notification']['read'] is True

    res = client.get('/api/notifications?unread=1', headers=headers)
    data = json.loads(res.data)
    assert data['unread_count'] == 1
    assert len(data['notifications']) == 1

    res = client.post('/api/notifications/read-all', headers=headers)
    assert json.loads(res.data)['updated'] == 1
    res = client.get('/api/notifications', headers=headers)
    assert json.loads(res.data)['unread_count'] == 0

    res = client.patch('/api/notifications/9999', headers=headers)
    assert res.status_code == 404
