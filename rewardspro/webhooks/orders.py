"""
Order webhooks: cashback on paid orders, store credit back on refunds.

Failures return 500 so Shopify retries; the handlers are idempotent.
"""
from flask import Blueprint, request, jsonify, current_app, g

from ..extensions import db
from ..services.order_events import OrderEventService
from . import require_webhook_verification

orders_webhook_bp = Blueprint('orders_webhook', __name__)


@orders_webhook_bp.route('/orders/paid', methods=['POST'])
@require_webhook_verification
def handle_order_paid():
    """Handle ORDERS_PAID."""
    payload = request.get_json(silent=True) or {}
    try:
        result = OrderEventService(g.tenant_id).handle_order_paid(payload)
        return jsonify(result)
    except Exception as e:
        current_app.logger.error(f"Error processing orders/paid for {payload.get('name') or payload.get('id')}: {e}")
        db.session.rollback()
        return jsonify({'error': str(e)}), 500


@orders_webhook_bp.route('/refunds/create', methods=['POST'])
@require_webhook_verification
def handle_refund_created():
    """Handle REFUNDS_CREATE."""
    payload = request.get_json(silent=True) or {}
    try:
        result = OrderEventService(g.tenant_id).handle_refund(payload)
        return jsonify(result)
    except Exception as e:
        current_app.logger.error(f"Error processing refunds/create {payload.get('id')}: {e}")
        db.session.rollback()
        return jsonify({'error': str(e)}), 500
