from functools import wraps
from flask import request, jsonify, current_app
import jwt
from shuttle.app import db
from shuttle.models import User


def generate_token(user_id):
    """Generate a JWT token for a user."""
    from datetime import datetime, timedelta, timezone
    payload = {
        'user_id': user_id,
        'exp': datetime.now(timezone.utc) + timedelta(
            hours=current_app.config.get('JWT_EXPIRATION_HOURS', 24)
        ),
    }
    return jwt.encode(payload, current_app.config['SECRET_KEY'], algorithm='HS256')


def _normalize_bearer_token(raw_token):
    token = str(raw_token or '').strip()
    if token.startswith('Bearer '):
        token = token.split(' ', 1)[1].strip()
    return token


def _decode_user_from_token(token):
    normalized = _normalize_bearer_token(token)
    if not normalized:
        return None, 'Authentication required'
    try:
        payload = jwt.decode(
            normalized, current_app.config['SECRET_KEY'], algorithms=['HS256']
        )
        user = db.session.get(User, payload['user_id'])
        if not user:
            return None, 'User not found'
        return user, None
    except jwt.ExpiredSignatureError:
        return None, 'Token expired'
    except (jwt.InvalidTokenError, KeyError):
        return None, 'Invalid token'


def login_required(f):
    """Resolve the caller once at the request boundary and expose it as
    ``request.current_user``; handlers pass it on to the services explicitly."""
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization', '')
        user, error = _decode_user_from_token(auth_header)
        if error:
            return jsonify({'error': error, 'code': 'Unauthorized'}), 401
        request.current_user = user
        return f(*args, **kwargs)
    return decorated
