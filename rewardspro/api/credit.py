"""
Customer store credit API (admin).
"""
from flask import Blueprint, request, jsonify, g

from ..middleware.shop_auth import require_shop_auth
from ..models import Customer
from ..services.ledger_service import LedgerService
from ..services.tier_service import TierService
from ..utils.errors import bad_request, not_found, ErrorCode

credit_bp = Blueprint('credit', __name__)


@credit_bp.route('/<int:customer_id>', methods=['GET'])
@require_shop_auth
def get_customer(customer_id: int):
    """Customer with balances, tier and progress to the next tier."""
    customer = Customer.query.filter_by(id=customer_id, tenant_id=g.tenant_id).first()
    if not customer:
        return not_found('Customer not found', ErrorCode.CUSTOMER_NOT_FOUND)

    data = customer.to_dict()
    data['tier_info'] = TierService(g.tenant_id).get_customer_tier_info(customer.id)
    data['analytics'] = customer.analytics.to_dict() if customer.analytics else None
    return jsonify({'customer': data})


@credit_bp.route('/<int:customer_id>/credit', methods=['POST'])
@require_shop_auth
def adjust_credit(customer_id: int):
    """
    Manually add or remove store credit.

    Request body:
    {
        "amount": 25.00,
        "direction": "add",    // or "remove"
        "reason": "Goodwill for delayed shipment"
    }
    """
    data = request.get_json(silent=True) or {}

    if data.get('amount') is None:
        return bad_request('Missing required field: amount', ErrorCode.MISSING_FIELD)
    if not data.get('direction'):
        return bad_request('Missing required field: direction', ErrorCode.MISSING_FIELD)

    entry = LedgerService(g.tenant_id).manual_adjust(
        customer_id,
        data['amount'],
        data['direction'],
        reason=data.get('reason'),
        created_by=request.headers.get('X-Staff-Email', g.shop),
    )

    return jsonify({
        'success': True,
        'entry': entry.to_dict(),
        'store_credit': float(entry.balance),
    }), 201


@credit_bp.route('/<int:customer_id>/ledger', methods=['GET'])
@require_shop_auth
def get_ledger(customer_id: int):
    """
    Ledger history, newest first.

    Query params:
    - limit: Max entries (default 50, max 200)
    - offset: Pagination offset
    """
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    return jsonify(LedgerService(g.tenant_id).get_ledger(customer_id, limit=limit, offset=offset))
