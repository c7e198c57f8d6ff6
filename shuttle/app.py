import logging

from flask import Flask, request, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_socketio import SocketIO
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from shuttle.config import config

db = SQLAlchemy()
socketio = SocketIO()

logger = logging.getLogger(__name__)


def _parse_allowed_origins(raw_origins):
    if not raw_origins:
        return '*'

    if isinstance(raw_origins, (list, tuple, set)):
        cleaned = [origin for origin in raw_origins if origin]
        return cleaned or '*'

    raw_text = str(raw_origins).strip()
    if not raw_text or raw_text == '*':
        return '*'

    origins = [origin.strip() for origin in raw_text.split(',') if origin.strip()]
    return origins or '*'


def _configure_logging(app):
    level_name = str(app.config.get('LOG_LEVEL') or 'INFO').upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    logging.getLogger('shuttle').setLevel(numeric_level)
    if app.config.get('LOG_SQL'):
        logging.getLogger('sqlalchemy.engine').setLevel(logging.INFO)


def _register_error_handlers(app):
    from shuttle.errors import ServiceError, Internal

    @app.errorhandler(ServiceError)
    def _handle_service_error(exc):
        db.session.rollback()
        if isinstance(exc, Internal):
            logger.error(
                '%s on %s %s: %s', exc.code, request.method, request.path, exc.message,
                exc_info=exc,
            )
            return jsonify({'error': 'Internal server error', 'code': exc.code}), 500
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(Exception)
    def _handle_unexpected_error(exc):
        if isinstance(exc, HTTPException):
            return exc
        logger.exception('Unhandled error on %s %s', request.method, request.path)
        db.session.rollback()
        return jsonify({'error': 'Internal server error', 'code': 'Internal'}), 500


def create_app(config_name='development'):
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    _configure_logging(app)

    allowed_origins = _parse_allowed_origins(app.config.get('CORS_ALLOWED_ORIGINS', '*'))
    if str(config_name).strip().lower() == 'production':
        secret_key = str(app.config.get('SECRET_KEY') or '').strip()
        if not secret_key or secret_key == 'dev-secret-key-change-in-prod':
            raise RuntimeError('SECRET_KEY must be set to a non-default value in production')
        if allowed_origins == '*':
            raise RuntimeError('CORS_ALLOWED_ORIGINS must be explicitly set in production')

    db.init_app(app)
    socketio.init_app(
        app,
        cors_allowed_origins=allowed_origins,
        async_mode=app.config.get('SOCKETIO_ASYNC_MODE', 'threading'),
    )
    CORS(app, resources={r'/api/*': {'origins': allowed_origins}})
    _register_error_handlers(app)

    from shuttle.routes.sessions import sessions_bp
    from shuttle.routes.invitations import invitations_bp
    from shuttle.routes.results import results_bp
    from shuttle.routes.points import points_bp
    from shuttle.routes.notifications import notifications_bp

    app.register_blueprint(sessions_bp, url_prefix='/api/sessions')
    app.register_blueprint(invitations_bp, url_prefix='/api/invitations')
    app.register_blueprint(results_bp, url_prefix='/api/results')
    app.register_blueprint(points_bp, url_prefix='/api/points')
    app.register_blueprint(notifications_bp, url_prefix='/api/notifications')

    @app.route('/api/health')
    def health():
        return jsonify({'status': 'ok'})

    with app.app_context():
        from shuttle import models  # noqa: F401
        db.create_all()

    logger.info('Shuttle API ready (config=%s)', config_name)
    return app
