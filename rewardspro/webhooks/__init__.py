"""
Shopify webhook handlers.
Payloads are signed with the app secret; every handler is tenant-scoped
by the X-Shopify-Shop-Domain header.
"""
import hmac
import hashlib
import base64
from functools import wraps
from flask import request, jsonify, current_app, g
from ..models import Tenant


def verify_shopify_webhook_signature(data: bytes, hmac_header: str, secret: str) -> bool:
    """
    Verify a Shopify HMAC-SHA256 webhook signature.

    Args:
        data: Raw request body bytes
        hmac_header: The X-Shopify-Hmac-SHA256 header value
        secret: The app secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret:
        current_app.logger.warning('No webhook secret configured for verification')
        return False

    if not hmac_header:
        current_app.logger.warning('No HMAC header in webhook request')
        return False

    computed_hmac = base64.b64encode(
        hmac.new(secret.encode('utf-8'), data, hashlib.sha256).digest()
    ).decode('utf-8')

    return hmac.compare_digest(computed_hmac, hmac_header)


def require_webhook_verification(f):
    """
    Resolve the tenant from the shop header and check the signature.

    Sets g.webhook_tenant and g.tenant_id. Returns 400 without a shop
    header, 404 for an unknown shop and 401 for a bad signature.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        shop_domain = request.headers.get('X-Shopify-Shop-Domain', '')
        if not shop_domain:
            current_app.logger.warning('Webhook missing X-Shopify-Shop-Domain header')
            return jsonify({'error': 'Missing shop domain header'}), 400

        tenant = Tenant.query.filter_by(shopify_domain=shop_domain).first()
        if not tenant:
            current_app.logger.warning(f'Webhook from unknown shop: {shop_domain}')
            return jsonify({'error': 'Unknown shop'}), 404

        g.webhook_tenant = tenant
        g.tenant_id = tenant.id

        hmac_header = request.headers.get('X-Shopify-Hmac-SHA256', '')
        secret = tenant.get_setting('webhook_secret') or current_app.config.get('SHOPIFY_API_SECRET')

        if not verify_shopify_webhook_signature(request.get_data(), hmac_header, secret):
            current_app.logger.warning(f'Invalid webhook signature from {shop_domain}')
            return jsonify({'error': 'Invalid signature'}), 401

        return f(*args, **kwargs)

    return decorated_function


from .orders import orders_webhook_bp

__all__ = [
    'orders_webhook_bp',
    'verify_shopify_webhook_signature',
    'require_webhook_verification',
]
