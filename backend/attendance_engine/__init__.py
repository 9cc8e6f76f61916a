# File: backend/attendance_engine/__init__.py
"""Attendance Session Engine - Application Factory."""
import functools
import logging
import os

from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_jwt_extended import JWTManager
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Initialize extensions
db = SQLAlchemy()
migrate = Migrate()
jwt = JWTManager()
limiter = Limiter(key_func=get_remote_address)


def create_app(config_name: str = None) -> Flask:
    """Application factory pattern."""
    app = Flask(__name__)

    # Load configuration
    from attendance_engine.config import get_config
    config_class = get_config(config_name)
    app.config.from_object(config_class)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    limiter.init_app(app)

    # Configure CORS
    CORS(app, origins=app.config.get('CORS_ORIGINS', ["*"]))

    # Setup logging
    setup_logging(app)

    # Engine collaborators
    register_collaborators(app)

    # Register blueprints
    register_blueprints(app)

    # Register error handlers
    register_error_handlers(app)

    # Setup database
    setup_database(app)

    # Add CLI commands
    register_commands(app)

    # Add health check
    @app.route('/health')
    def health_check():
        return jsonify({
            'status': 'healthy',
            'service': 'Attendance Session Engine',
            'version': '1.0.0'
        })

    return app


def register_collaborators(app: Flask) -> None:
    """Install the clock and QR token generator the engine reads from app.extensions."""
    from attendance_engine.services.clock import SystemClock
    from attendance_engine.services.qr_service import QRService

    app.extensions.setdefault('attendance_clock', SystemClock())
    app.extensions.setdefault(
        'qr_token_generator',
        functools.partial(QRService.generate_token, app.config['QR_TOKEN_BYTES'])
    )


def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""
    from attendance_engine.api.sessions import sessions_bp
    from attendance_engine.api.attendance import attendance_bp
    from attendance_engine.api.admin import admin_bp

    app.register_blueprint(sessions_bp, url_prefix='/api/sessions')
    app.register_blueprint(attendance_bp, url_prefix='/api/attendance')
    app.register_blueprint(admin_bp, url_prefix='/api/admin')


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""
    from attendance_engine.utils.errors import (
        AUTH_REQUIRED, INVALID_TOKEN, TOKEN_EXPIRED, EngineError
    )
    from attendance_engine.utils.helpers import error_response, handle_error
    from werkzeug.exceptions import HTTPException

    @app.errorhandler(EngineError)
    def engine_error(error):
        db.session.rollback()
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found(error):
        return handle_error(error, 404)

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        app.logger.exception('Unhandled error')
        return handle_error('Internal server error', 500)

    @app.errorhandler(HTTPException)
    def handle_exception(e):
        return handle_error(e, e.code)

    # JWT error handlers
    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return error_response('Token has expired', 401, TOKEN_EXPIRED)

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        return error_response('Invalid token', 401, INVALID_TOKEN)

    @jwt.unauthorized_loader
    def missing_token_callback(error):
        return error_response('Authorization token required', 401, AUTH_REQUIRED)


def setup_logging(app: Flask) -> None:
    """Setup application logging."""
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    app.logger.setLevel(level)

    if not app.debug and not app.testing:
        log_file = app.config.get('LOG_FILE', 'logs/app.log')
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(level)
        app.logger.addHandler(file_handler)

        app.logger.info('Attendance Session Engine startup')


def setup_database(app: Flask) -> None:
    """Register models with the metadata."""
    with app.app_context():
        from attendance_engine.models import (  # noqa: F401
            User, SchoolClass, Enrollment,
            AttendanceSession, AttendanceRecord, AuditLog
        )


def register_commands(app: Flask) -> None:
    """Register CLI commands."""
    import click

    @app.cli.command('init-db')
    @click.option('--drop', is_flag=True, help='Drop existing tables')
    def init_db(drop):
        """Initialize the database."""
        if drop:
            db.drop_all()
            click.echo('Dropped all tables.')

        db.create_all()
        click.echo('Created all tables.')

    @app.cli.command('seed-demo')
    def seed_demo():
        """Seed database with a demo class."""
        from attendance_engine.services.seed_service import SeedService

        seeded = SeedService.seed_all()
        click.echo(f"Teacher id: {seeded['teacher'].id}")
        click.echo(f"Class id: {seeded['class'].id}")
        click.echo(f"Student ids: {', '.join(str(s.id) for s in seeded['students'])}")

    @app.cli.command('issue-token')
    @click.argument('user_id', type=int)
    def issue_token(user_id):
        """Print a development access token for a user."""
        from attendance_engine.models import User
        from attendance_engine.services.credentials import issue_access_token

        user = db.session.get(User, user_id)
        if not user:
            raise click.ClickException(f'User {user_id} not found')
        click.echo(issue_access_token(user))
