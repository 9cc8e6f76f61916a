"""Configuration module for the attendance session engine."""
import os
from datetime import timedelta


def _optional_int(name: str):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return None
    return int(value)


class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False

    # JWT Configuration
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or 'jwt-secret-key-change-in-production'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=2)
    JWT_ALGORITHM = 'HS256'
    JWT_ROLE_CLAIM = 'role'

    # CORS
    CORS_ORIGINS = ["http://localhost:*", "http://127.0.0.1:*"]

    # Rate Limiting
    # Flask-Limiter storage; a redis:// URL here is served by the redis client
    RATELIMIT_STORAGE_URI = os.environ.get('REDIS_URL') or 'memory://'
    RATELIMIT_DEFAULT = "200 per day, 50 per hour"
    MARK_ATTENDANCE_RATE_LIMIT = "30 per minute"

    # Session defaults (per-session values override these at start time)
    DEFAULT_LATE_AFTER_MINUTES = int(os.environ.get('DEFAULT_LATE_AFTER_MINUTES', 10))
    DEFAULT_AUTO_ABSENT_MINUTES = _optional_int('DEFAULT_AUTO_ABSENT_MINUTES')
    DEFAULT_STALE_QR_POLICY = os.environ.get('DEFAULT_STALE_QR_POLICY', 'reject')
    SESSION_MAX_DURATION_MINUTES = 180

    # QR
    QR_REFRESH_SECONDS = 30
    QR_TOKEN_BYTES = 24

    # Fraud signals
    FRAUD_VELOCITY_WINDOW_SECONDS = 60
    FRAUD_PROXIMITY_METERS = 2.0

    # Reports
    LOW_ATTENDANCE_THRESHOLD = 75

    # Store
    STORE_TIMEOUT_SECONDS = float(os.environ.get('STORE_TIMEOUT_SECONDS', 5))

    # Pagination
    DEFAULT_PAGE_SIZE = 20
    MAX_PAGE_SIZE = 100

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DEV_DATABASE_URL') or \
        'sqlite:///attendance_engine_dev.db'
    SQLALCHEMY_ENGINE_OPTIONS = {
        'connect_args': {'timeout': Config.STORE_TIMEOUT_SECONDS}
    }
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL')
    SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True}

    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=1)

    # Stricter limits
    RATELIMIT_DEFAULT = "100 per day, 20 per hour"

    LOG_FILE = os.environ.get('LOG_FILE', 'logs/app.log')


class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    JWT_SECRET_KEY = 'test-jwt-secret-key-for-the-test-suite-only'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(minutes=5)
    RATELIMIT_ENABLED = False
    DEFAULT_LATE_AFTER_MINUTES = 10
    DEFAULT_AUTO_ABSENT_MINUTES = None
    DEFAULT_STALE_QR_POLICY = 'reject'
    LOG_LEVEL = 'WARNING'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


def get_config(config_name=None):
    """Get configuration by name."""
    return config.get(config_name or os.environ.get('FLASK_ENV', 'default'), DevelopmentConfig)
