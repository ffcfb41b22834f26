"""
Configuration management for the RewardsPro cashback engine.
"""
import os
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()


class BaseConfig:
    """Base configuration."""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Shopify defaults (credentials are per-tenant)
    SHOPIFY_API_VERSION = os.getenv('SHOPIFY_API_VERSION', '2025-01')
    SHOPIFY_TIMEOUT = float(os.getenv('SHOPIFY_TIMEOUT', '30'))
    # Shared app secret that signs webhook payloads
    SHOPIFY_API_SECRET = os.getenv('SHOPIFY_API_SECRET')

    # Order import
    IMPORT_PAGE_SIZE = int(os.getenv('IMPORT_PAGE_SIZE', '50'))  # Shopify caps at 250
    IMPORT_PAGE_DELAY = float(os.getenv('IMPORT_PAGE_DELAY', '0.1'))
    IMPORT_PAGE_RETRIES = int(os.getenv('IMPORT_PAGE_RETRIES', '2'))
    MAX_JOB_ERRORS = 100

    # Store credit
    MAX_MANUAL_CREDIT = Decimal(os.getenv('MAX_MANUAL_CREDIT', '15000'))
    # Pay imported cashback out as native Shopify store credit
    ISSUE_SHOPIFY_CREDIT = os.getenv('ISSUE_SHOPIFY_CREDIT', 'true') == 'true'

    # Reconciliation
    RECONCILE_EPSILON = Decimal('0.01')
    RECONCILE_STALE_HOURS = int(os.getenv('RECONCILE_STALE_HOURS', '24'))
    RECONCILE_WORKERS = int(os.getenv('RECONCILE_WORKERS', '4'))

    # Background tasks
    RUN_TASKS_INLINE = os.getenv('RUN_TASKS_INLINE') == 'true'
    ENABLE_SCHEDULER = os.getenv('ENABLE_SCHEDULER') == 'true'


class DevelopmentConfig(BaseConfig):
    """Development configuration."""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///rewardspro_dev.db'  # SQLite fallback for local dev
    )


class ProductionConfig(BaseConfig):
    """Production configuration."""
    DEBUG = False
    ENABLE_SCHEDULER = os.getenv('ENABLE_SCHEDULER', 'true') == 'true'

    _db_url = os.getenv('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # SQLAlchemy requires postgresql:// not postgres://
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = _db_url

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 5,
        'pool_recycle': 300,
        'pool_pre_ping': True,  # Verify connections before using
    }

    _secret_key = os.getenv('SECRET_KEY', '')

    @classmethod
    def validate_secret_key(cls) -> str:
        """
        Validate SECRET_KEY in production environment.

        Raises:
            RuntimeError: If SECRET_KEY is missing, empty, or too short
        """
        if not cls._secret_key:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable is not set!\n"
                "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )

        if len(cls._secret_key) < 32:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY is too short (minimum 32 characters required)!"
            )

        return cls._secret_key

    SECRET_KEY = _secret_key  # Validated at app startup


class TestingConfig(BaseConfig):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    IMPORT_PAGE_DELAY = 0
    RUN_TASKS_INLINE = True
    ENABLE_SCHEDULER = False
    RECONCILE_WORKERS = 1
    SHOPIFY_API_SECRET = 'test-webhook-secret'


config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}


def get_config(config_name: str = 'development'):
    """Get configuration class by name."""
    return config_map.get(config_name, DevelopmentConfig)


def validate_config(config_name: str = 'development') -> None:
    """
    Validate configuration before app startup.

    Raises:
        RuntimeError: If validation fails in production
    """
    if config_name == 'production':
        ProductionConfig.validate_secret_key()
