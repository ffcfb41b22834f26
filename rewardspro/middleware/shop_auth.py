"""
Shop scoping middleware.

Resolves the tenant an admin request is acting on from the shop domain.
Verifying Shopify session tokens is handled upstream of this app.
"""
from functools import wraps
from urllib.parse import urlparse

from flask import request, g

from ..models import Tenant
from ..utils.errors import unauthorized, not_found, error_response, ErrorCode


def get_shop_from_request() -> str | None:
    """
    Get shop domain from request.

    Priority:
    1. shop query parameter
    2. X-Shop-Domain header
    3. Referer header (extract shop from embedded app URL)
    """
    shop = request.args.get('shop')
    if shop:
        return shop

    shop = request.headers.get('X-Shop-Domain')
    if shop:
        return shop

    referer = request.headers.get('Referer', '')
    if 'myshopify.com' in referer:
        parsed = urlparse(referer)
        if parsed.netloc.endswith('myshopify.com'):
            return parsed.netloc

    return None


def require_shop_auth(f):
    """
    Decorator scoping an endpoint to the requesting shop.

    Sets g.shop, g.tenant_id and g.tenant.

    Usage:
        @require_shop_auth
        def my_endpoint():
            tenant_id = g.tenant_id
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        shop = get_shop_from_request()
        if not shop:
            return unauthorized('Missing shop domain')

        tenant = Tenant.query.filter_by(shopify_domain=shop).first()
        if not tenant:
            return not_found('This shop has not installed the app', ErrorCode.SHOP_NOT_FOUND)

        if not tenant.is_active:
            return error_response("This shop's access has been disabled", ErrorCode.AUTH_REQUIRED, 403,
                                  log_error=False)

        g.shop = shop
        g.tenant_id = tenant.id
        g.tenant = tenant

        return f(*args, **kwargs)

    return decorated_function
