"""
Reconciliation API (admin).
"""
from flask import Blueprint, request, jsonify, g

from ..middleware.shop_auth import require_shop_auth
from ..services.reconciliation import ReconciliationService, MODE_STALE

reconcile_bp = Blueprint('reconcile', __name__)


@reconcile_bp.route('', methods=['POST'])
@require_shop_auth
def bulk_reconcile():
    """
    Start a bulk reconciliation job.

    Request body:
    {
        "mode": "stale"   // 'stale' (not synced recently) or 'all'
    }
    """
    data = request.get_json(silent=True) or {}
    job = ReconciliationService(g.tenant_id).bulk_reconcile(
        data.get('mode', MODE_STALE),
        started_by=request.headers.get('X-Staff-Email', g.shop),
    )
    return jsonify({'success': True, 'job': job.to_dict()}), 202


@reconcile_bp.route('/customers/<int:customer_id>', methods=['POST'])
@require_shop_auth
def reconcile_customer(customer_id: int):
    """
    Reconcile one customer against Shopify now.

    Request body (optional):
    {
        "publish": true   // also write the balance metafield
    }
    """
    data = request.get_json(silent=True) or {}
    service = ReconciliationService(g.tenant_id)

    delta = service.reconcile(customer_id)
    result = {'success': True, 'reconciliation': delta.to_dict()}

    if data.get('publish'):
        service.publish_balance(customer_id)
        result['published'] = True

    return jsonify(result)
