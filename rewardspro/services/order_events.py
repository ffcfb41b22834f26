"""
Live order events from Shopify webhooks.

orders/paid
    Cashback is earned on the part of the order paid with external
    gateways. Gift card and store credit payments are excluded. The
    cashback goes through OrderImportService.import_order, so it is
    issued as Shopify store credit and keyed on the order id exactly like
    an imported order. Store credit spent on the order is booked as an
    ORDER_PAYMENT entry.

refunds/create
    Store credit Shopify hands back on a refund is booked as a
    REFUND_CREDIT entry. Cashback already earned on the order is kept.

Both handlers are idempotent, so Shopify retries are safe.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import (
    Customer,
    CashbackTransaction,
    StoreCreditLedger,
    LedgerEntryType,
    LedgerSource,
)
from ..utils.exceptions import ShopifyError
from .shopify_client import ShopifyClient, to_order_gid
from .order_feed import EligibleOrder, shopify_id, parse_shopify_datetime, SKIP_NO_CUSTOMER
from .order_import import OrderImportService, MODE_NEW, OUTCOME_EXISTING
from .ledger_service import to_money
from .tier_service import TierService
from .analytics_service import AnalyticsService

logger = logging.getLogger(__name__)

PAYMENT_KINDS = frozenset({'SALE', 'CAPTURE'})
GATEWAY_GIFT_CARD = 'gift_card'
GATEWAY_STORE_CREDIT = 'store_credit'

SKIP_CANCELLED = 'cancelled'
SKIP_EXISTING = 'existing'
SKIP_NOTHING_ELIGIBLE = 'nothing_eligible'
SKIP_NO_STORE_CREDIT = 'no_store_credit'
SKIP_UNKNOWN_ORDER = 'unknown_order'

WEBHOOK_TRIGGER = 'webhook'


@dataclass
class PaymentBreakdown:
    gift_card: Decimal = Decimal('0')
    store_credit: Decimal = Decimal('0')
    external: Decimal = Decimal('0')

    @property
    def eligible(self) -> Decimal:
        return self.external

    def to_dict(self) -> Dict[str, float]:
        return {
            'gift_card': float(self.gift_card),
            'store_credit': float(self.store_credit),
            'external': float(self.external),
        }


def analyze_transactions(transactions: List[Dict[str, Any]]) -> PaymentBreakdown:
    """
    Split successful payments by gateway.

    A capture whose parent payment was already counted is skipped.
    """
    breakdown = PaymentBreakdown()
    counted = set()

    for tx in transactions:
        if str(tx.get('status', '')).upper() != 'SUCCESS':
            continue
        if str(tx.get('kind', '')).upper() not in PAYMENT_KINDS:
            continue
        if tx.get('id') in counted or (tx.get('parent_id') and tx['parent_id'] in counted):
            continue
        counted.add(tx.get('id'))

        amount = to_money(tx.get('amount') or 0)
        gateway = str(tx.get('gateway') or '').lower()
        if GATEWAY_GIFT_CARD in gateway:
            breakdown.gift_card += amount
        elif GATEWAY_STORE_CREDIT in gateway:
            breakdown.store_credit += amount
        else:
            breakdown.external += amount

    return breakdown


class OrderEventService:
    """
    Applies Shopify order webhooks to one tenant's ledger.

    Usage:
        result = OrderEventService(tenant_id).handle_order_paid(payload)
    """

    def __init__(self, tenant_id: int, shopify_client: ShopifyClient = None, tier_service: TierService = None):
        self.tenant_id = tenant_id
        self.tier_service = tier_service or TierService(tenant_id)
        self.importer = OrderImportService(tenant_id, shopify_client=shopify_client, tier_service=self.tier_service)

    @property
    def shopify_client(self) -> ShopifyClient:
        return self.importer.shopify_client

    @property
    def ledger(self):
        return self.importer.ledger

    # ==================== orders/paid ====================

    def handle_order_paid(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Earn cashback and book store credit spent on a paid order.

        Raises:
            ShopifyError: Store credit could not be issued; nothing is recorded
        """
        order_id = payload.get('admin_graphql_api_id') or to_order_gid(payload.get('id'))
        order_name = payload.get('name') or order_id
        customer_data = payload.get('customer') or {}

        if not customer_data.get('id'):
            return self._skipped(order_id, SKIP_NO_CUSTOMER)

        if payload.get('cancelled_at') or payload.get('financial_status') == 'voided':
            return self._skipped(order_id, SKIP_CANCELLED)

        if self._order_seen(order_id):
            return self._skipped(order_id, SKIP_EXISTING)

        breakdown = self.payment_breakdown(order_id, payload.get('total_price'))
        if breakdown.eligible <= 0 and breakdown.store_credit <= 0:
            return self._skipped(order_id, SKIP_NOTHING_ELIGIBLE)

        order = EligibleOrder(
            order_id=order_id,
            order_name=order_name,
            customer_id=shopify_id(customer_data['id']),
            customer_email=customer_data.get('email'),
            total_amount=breakdown.eligible,
            created_at=self._order_date(payload),
        )

        try:
            customer = self.importer.upsert_customer(order.customer_id, order.customer_email, WEBHOOK_TRIGGER)
            outcome = None
            if breakdown.eligible > 0:
                outcome, _ = self.importer.import_order(order, MODE_NEW, triggered_by=WEBHOOK_TRIGGER)
            redeemed = Decimal('0')
            if breakdown.store_credit > 0:
                redeemed = self._record_redemption(customer.id, breakdown.store_credit, order)
            db.session.commit()
        except IntegrityError:
            # A concurrent delivery of the same order won
            db.session.rollback()
            logger.warning(f'Order {order_name} was recorded concurrently, skipping')
            return self._skipped(order_id, SKIP_EXISTING)
        except Exception:
            db.session.rollback()
            raise

        if outcome == OUTCOME_EXISTING:
            return self._skipped(order_id, SKIP_EXISTING)

        tier = self.tier_service.evaluate(customer.id, triggered_by=WEBHOOK_TRIGGER)
        AnalyticsService(self.tenant_id, self.tier_service).recompute_many([customer.id])

        transaction = CashbackTransaction.query.filter_by(
            tenant_id=self.tenant_id, shopify_order_id=order_id
        ).first()

        logger.info(
            f'Order {order_name} for customer {customer.id}: '
            f'cashback {transaction.cashback_amount if transaction else 0}, redeemed {redeemed}'
        )

        return {
            'order_id': order_id,
            'processed': True,
            'customer_id': customer.id,
            'payments': breakdown.to_dict(),
            'cashback': float(transaction.cashback_amount) if transaction else 0.0,
            'redeemed': float(redeemed),
            'tier': tier.get('tier'),
            'tier_changed': tier.get('changed', False),
        }

    def payment_breakdown(self, order_id: str, total_price=None) -> PaymentBreakdown:
        """Breakdown from the order's transactions, or the webhook total if Shopify can't be read."""
        try:
            transactions = self.shopify_client.get_order_transactions(order_id)
        except ShopifyError as e:
            logger.warning(f'Could not read transactions for {order_id}, using order total: {e.message}')
            transactions = []

        if transactions:
            return analyze_transactions(transactions)
        return PaymentBreakdown(external=to_money(total_price or 0))

    def _record_redemption(self, customer_id: int, amount: Decimal, order: EligibleOrder) -> Decimal:
        """Book store credit spent at checkout, never below a zero balance."""
        customer = self.ledger.lock_customer(customer_id)
        balance = Decimal(str(customer.store_credit or 0))
        booked = min(amount, balance)
        if booked < amount:
            logger.warning(
                f'Order {order.order_name} spent {amount} store credit but customer {customer_id} '
                f'only had {balance} locally; booking {booked}, reconcile to repair'
            )
        if booked <= 0:
            return Decimal('0')

        self.ledger.append_entry(
            customer_id,
            -booked,
            LedgerEntryType.ORDER_PAYMENT,
            LedgerSource.SHOPIFY_ORDER,
            shopify_reference=order.order_id,
            description=f'Store credit spent on order {order.order_name}',
            created_by=WEBHOOK_TRIGGER,
        )
        return booked

    # ==================== refunds/create ====================

    def handle_refund(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Book store credit returned by a refund."""
        refund_id = payload.get('admin_graphql_api_id') or f"gid://shopify/Refund/{payload.get('id')}"
        order_id = to_order_gid(payload.get('order_id'))

        amount = Decimal('0')
        for tx in payload.get('transactions') or []:
            if str(tx.get('kind', '')).lower() != 'refund' or str(tx.get('status', '')).lower() != 'success':
                continue
            if GATEWAY_STORE_CREDIT in str(tx.get('gateway') or '').lower():
                amount += to_money(tx.get('amount') or 0)

        if amount <= 0:
            return self._skipped(order_id, SKIP_NO_STORE_CREDIT)

        customer_id = self._order_customer(order_id)
        if customer_id is None:
            return self._skipped(order_id, SKIP_UNKNOWN_ORDER)

        if self._entry_exists(LedgerEntryType.REFUND_CREDIT, refund_id):
            return self._skipped(order_id, SKIP_EXISTING)

        try:
            entry = self.ledger.append_entry(
                customer_id,
                amount,
                LedgerEntryType.REFUND_CREDIT,
                LedgerSource.SHOPIFY_ORDER,
                shopify_reference=refund_id,
                description=f'Store credit refunded on order {order_id}',
                created_by=WEBHOOK_TRIGGER,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f'Refund {refund_id}: {amount} store credit back to customer {customer_id}')
        return {
            'order_id': order_id,
            'processed': True,
            'customer_id': customer_id,
            'refunded': float(amount),
            'entry_id': entry.id,
        }

    # ==================== Lookups ====================

    def _order_seen(self, order_id: str) -> bool:
        if CashbackTransaction.query.filter_by(tenant_id=self.tenant_id, shopify_order_id=order_id).first():
            return True
        return self._entry_exists(LedgerEntryType.ORDER_PAYMENT, order_id)

    def _entry_exists(self, entry_type: LedgerEntryType, reference: str) -> bool:
        return self._entry_for(entry_type, reference) is not None

    def _entry_for(self, entry_type: LedgerEntryType, reference: str) -> Optional[StoreCreditLedger]:
        return (
            StoreCreditLedger.query
            .join(Customer, Customer.id == StoreCreditLedger.customer_id)
            .filter(
                Customer.tenant_id == self.tenant_id,
                StoreCreditLedger.type == entry_type.value,
                StoreCreditLedger.shopify_reference == reference,
            )
            .first()
        )

    def _order_customer(self, order_id: str) -> Optional[int]:
        transaction = CashbackTransaction.query.filter_by(
            tenant_id=self.tenant_id, shopify_order_id=order_id
        ).first()
        if transaction:
            return transaction.customer_id
        payment = self._entry_for(LedgerEntryType.ORDER_PAYMENT, order_id)
        return payment.customer_id if payment else None

    @staticmethod
    def _order_date(payload: Dict[str, Any]) -> datetime:
        value = payload.get('processed_at') or payload.get('created_at')
        if not value:
            return datetime.utcnow()
        return parse_shopify_datetime(value)

    @staticmethod
    def _skipped(order_id: str, reason: str) -> Dict[str, Any]:
        logger.debug(f'Webhook for {order_id} skipped: {reason}')
        return {'order_id': order_id, 'processed': False, 'skipped': reason}
