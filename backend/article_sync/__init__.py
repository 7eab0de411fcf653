"""
Flask Application Factory

This module creates and configures the Flask application.
"""
import time
from flask import Flask, g, request, jsonify
from flask_cors import CORS

from .config import get_config
from .extensions import db, migrate
from .api import media_bp, sources_bp, queues_bp
from .cli import register_commands
from .utils.crypto import reset_crypto
from .utils.logger import setup_logger, get_logger


def create_app(config_class=None):
    """Create and configure Flask application.

    Args:
        config_class: Configuration class to use. If None, auto-detect from environment.

    Returns:
        Configured Flask application instance
    """
    if config_class is None:
        config_class = get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # Ensure data directories exist
    config_class.init_paths()

    # Initialize logging
    setup_logger(
        log_level=app.config.get('LOG_LEVEL', 'INFO'),
        log_file=app.config.get('LOG_FILE')
    )

    logger = get_logger('app')

    # Secrets are encrypted with the configured key
    reset_crypto(app.config.get('SECRET_ENCRYPTION_KEY'))

    # Initialize CORS
    cors_config = config_class.get_cors_config()
    CORS(app, resources={r"/api/*": cors_config})

    # Initialize database
    db.init_app(app)

    # Initialize Flask-Migrate
    migrate.init_app(app, db)

    _register_blueprints(app)
    register_commands(app)

    # Perform startup tasks
    # Note: Use 'flask db upgrade' to create/update database tables
    if not app.testing:
        with app.app_context():
            _startup_maintenance(app, logger)

    # Register handlers and hooks
    _register_error_handlers(app)
    _register_request_hooks(app)
    _register_health_check(app)

    db_uri = app.config.get('SQLALCHEMY_DATABASE_URI', '')
    logger.info(f"Application initialized, database: {db_uri}")

    return app


def _register_blueprints(app):
    """Register API blueprints under /api."""
    app.register_blueprint(media_bp, url_prefix='/api')
    app.register_blueprint(sources_bp, url_prefix='/api')
    app.register_blueprint(queues_bp, url_prefix='/api')


def _startup_maintenance(app, logger):
    """Reap expired locks and hand stale running tasks back to the queue."""
    try:
        from .services import LockStore
        from .services.factory import build_task_queue

        swept = LockStore().sweep_expired()
        if swept > 0:
            logger.info(f"Removed {swept} expired locks on startup")

        recovered = build_task_queue(app.config).recover_stale_tasks()
        if recovered > 0:
            logger.info(f"Recovered {recovered} stale tasks on startup")
    except Exception as e:
        logger.warning(f"Startup maintenance failed: {e}")


def _register_error_handlers(app):
    """Register global error handlers."""
    from .utils.responses import ApiResponse

    @app.errorhandler(400)
    def bad_request(error):
        msg = str(error.description) if hasattr(error, 'description') else 'Bad request'
        return ApiResponse.error(msg, 400, 'BAD_REQUEST')

    @app.errorhandler(404)
    def not_found(error):
        msg = str(error.description) if hasattr(error, 'description') else 'Resource not found'
        return ApiResponse.not_found(msg)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return ApiResponse.error('Method not allowed', 405, 'METHOD_NOT_ALLOWED')

    @app.errorhandler(500)
    def internal_error(error):
        logger = get_logger('error')
        logger.exception(error)
        return ApiResponse.server_error('Internal server error')


def _register_request_hooks(app):
    """Register request timing hooks."""

    @app.before_request
    def before_request():
        g.start_time = time.time()

    @app.after_request
    def after_request(response):
        if hasattr(g, 'start_time'):
            duration = (time.time() - g.start_time) * 1000
            if duration > 1000:  # Log slow requests
                logger = get_logger('slow_request')
                logger.warning(f"Slow request: {request.method} {request.path} took {duration:.2f}ms")
        return response


def _register_health_check(app):
    """Register health check endpoint."""

    @app.route('/api/health')
    def health_check():
        """Health check endpoint for container orchestration."""
        db_ok = True
        try:
            db.session.execute(db.text('SELECT 1'))
        except Exception as e:
            get_logger('health').warning(f"Database check failed: {e}")
            db_ok = False

        return jsonify({
            'status': 'healthy' if db_ok else 'degraded',
            'service': 'article-sync',
            'database': 'ok' if db_ok else 'unavailable',
        }), 200 if db_ok else 503
