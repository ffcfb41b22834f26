"""
Public customer API.

Read-only balance and tier lookup for storefront widgets. Served with
CORS from any origin; see create_app.
"""
from flask import Blueprint, request, jsonify

from ..models import Tenant, Customer
from ..services.tier_service import TierCatalog
from ..utils.errors import bad_request, not_found, ErrorCode

public_bp = Blueprint('public', __name__)


def _tier_payload(tier):
    if tier is None:
        return None
    return {'name': tier.name, 'cashbackPercent': float(tier.cashback_percent)}


@public_bp.route('/customers/<path:shopify_customer_id>', methods=['GET'])
def get_customer_rewards(shopify_customer_id: str):
    """
    Balance and tier for a storefront customer.

    Query params:
    - shop: Shop domain (required)

    Unknown customers get zero balances and the shop's default tier.
    """
    shop = request.args.get('shop')
    if not shop:
        return bad_request('Missing required parameter: shop', ErrorCode.MISSING_FIELD)

    tenant = Tenant.query.filter_by(shopify_domain=shop, is_active=True).first()
    if not tenant:
        return not_found('Shop not found', ErrorCode.SHOP_NOT_FOUND)

    customer_id = shopify_customer_id.rsplit('/', 1)[-1]
    customer = Customer.query.filter_by(
        tenant_id=tenant.id,
        shopify_customer_id=customer_id,
        is_active=True
    ).first()

    if not customer:
        return jsonify({
            'exists': False,
            'storeCredit': 0.0,
            'totalEarned': 0.0,
            'tier': _tier_payload(TierCatalog(tenant.id).default_tier()),
        })

    return jsonify({
        'exists': True,
        'storeCredit': float(customer.store_credit or 0),
        'totalEarned': float(customer.total_earned or 0),
        'tier': _tier_payload(customer.current_tier),
    })
