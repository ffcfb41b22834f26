"""
RewardsPro Cashback Engine
Flask application factory
"""
import os
import re
import logging
from flask import Flask

from flask_cors import CORS

from .extensions import db, migrate
from .config import get_config, validate_config
from .utils.logging_config import setup_logging
from .utils.exceptions import RewardsProError
from .utils.errors import from_exception, error_response, ErrorCode

logger = logging.getLogger(__name__)


def create_app(config_name: str = None) -> Flask:
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration environment (development, production, testing)

    Returns:
        Configured Flask application
    """
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    validate_config(config_name)

    # Setup logging before anything else logs
    setup_logging(app.config.get('LOG_LEVEL'))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Admin API: embedded app origins only. Public API: any storefront.
    admin_origins = [
        'https://admin.shopify.com',
        re.compile(r'https://.*\.myshopify\.com'),
    ]
    if config_name != 'production':
        admin_origins.append(re.compile(r'http://(localhost|127\.0\.0\.1):\d+'))
    CORS(app, resources={
        r'/api/public/*': {'origins': '*'},
        r'/api/*': {
            'origins': admin_origins,
            'supports_credentials': True,
            'allow_headers': ['Content-Type', 'Authorization', 'X-Shop-Domain'],
        },
    })

    # Register blueprints
    register_blueprints(app)

    # Register CLI commands
    from .commands import init_app as init_commands
    init_commands(app)

    # Background scheduler for import tasks and daily jobs
    from .utils.scheduler import init_scheduler
    init_scheduler(app)

    # Register error handlers
    register_error_handlers(app)

    @app.route('/health')
    def health_check():
        return {'status': 'healthy', 'service': 'rewardspro'}

    return app


def register_blueprints(app: Flask) -> None:
    """Register all API blueprints."""
    from .api.imports import imports_bp
    from .api.credit import credit_bp
    from .api.reconcile import reconcile_bp
    from .api.public import public_bp
    from .webhooks import orders_webhook_bp

    # Order imports (and job status)
    app.register_blueprint(imports_bp, url_prefix='/api/imports')

    # Customer store credit
    app.register_blueprint(credit_bp, url_prefix='/api/customers')

    # Reconciliation
    app.register_blueprint(reconcile_bp, url_prefix='/api/reconciliation')

    # Public storefront API
    app.register_blueprint(public_bp, url_prefix='/api/public')

    # Shopify webhooks
    app.register_blueprint(orders_webhook_bp, url_prefix='/webhook')


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""

    @app.errorhandler(RewardsProError)
    def business_error(error):
        return from_exception(error)

    @app.errorhandler(400)
    def bad_request(error):
        return error_response('Bad request', ErrorCode.INVALID_REQUEST, 400, log_error=False)

    @app.errorhandler(404)
    def not_found(error):
        return error_response('Not found', ErrorCode.NOT_FOUND, 404, log_error=False)

    @app.errorhandler(500)
    def internal_error(error):
        return error_response('Internal server error', ErrorCode.INTERNAL_ERROR, 500)
