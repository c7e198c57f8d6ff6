import itertools

import pytest
from shuttle.app import create_app, db


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Create a user directly and return ``(user_id, auth_headers)``."""
    from shuttle.auth_utils import generate_token
    from shuttle.models import User

    counter = itertools.count(1)

    def _make(username=None, gender='MALE', points=0, feathers=0, is_admin=False,
              elo_rating=1200.0, games_played=0):
        username = username or f'player{next(counter)}'
        user = User(
            username=username, email=f'{username}@example.com',
            name=username.title(), gender=gender, is_admin=is_admin,
            points=points, feathers=feathers,
            elo_rating=elo_rating, games_played=games_played,
        )
        db.session.add(user)
        db.session.commit()
        token = generate_token(user.id)
        return user.id, {'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'}

    return _make


@pytest.fixture
def create_session(client):
    """Create a session through the API; fees default to zero."""
    def _create(headers, match_type='MS', **overrides):
        payload = {
            'match_type': match_type,
            'entry_fee_points': 0,
            'entry_fee_feathers': 0,
            'winner_points': 0,
            'location': 'Riverside Sports Hall',
            'court_number': '3',
        }
        payload.update(overrides)
        res = client.post('/api/sessions', headers=headers, json=payload)
        assert res.status_code == 201, res.get_json()
        return res.get_json()['session']['id']

    return _create
