"""
Store Credit Ledger Service.

The ledger is the record of truth for local store credit:

- append_entry is the only writer of Customer.store_credit
- entries are appended under a row lock on the customer, so concurrent
  writers for one customer are serialized and balances chain correctly
- entries are never updated or deleted

Manual adjustments are written to Shopify first. If Shopify rejects the
operation nothing is recorded locally.
"""
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, List

from flask import current_app

from ..extensions import db
from ..models import (
    Customer,
    Tenant,
    StoreCreditLedger,
    LedgerEntryType,
    LedgerSource,
    NON_NEGATIVE_TYPES,
)
from ..utils.exceptions import (
    CustomerNotFoundError,
    InsufficientBalanceError,
    LimitExceededError,
    LedgerInvariantError,
    ValidationError,
)
from .shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')

DIRECTION_ADD = 'add'
DIRECTION_REMOVE = 'remove'


def to_money(value) -> Decimal:
    """Coerce to a 2dp Decimal."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class LedgerService:
    """
    Append-only store credit ledger for one tenant.

    Usage:
        service = LedgerService(tenant_id)
        entry = service.append_entry(customer_id, Decimal('5.00'),
                                     LedgerEntryType.CASHBACK_EARNED, LedgerSource.APP_CASHBACK)
        db.session.commit()
    """

    def __init__(self, tenant_id: int, shopify_client: ShopifyClient = None):
        self.tenant_id = tenant_id
        self._shopify_client = shopify_client

    @property
    def shopify_client(self) -> ShopifyClient:
        if self._shopify_client is None:
            self._shopify_client = ShopifyClient.for_tenant(self.tenant_id)
        return self._shopify_client

    def lock_customer(self, customer_id: int) -> Customer:
        """SELECT ... FOR UPDATE the customer row, refreshing cached values."""
        customer = (
            Customer.query
            .filter_by(id=customer_id, tenant_id=self.tenant_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not customer:
            raise CustomerNotFoundError(customer_id)
        return customer

    # ==================== Append ====================

    def append_entry(
        self,
        customer_id: int,
        amount,
        entry_type,
        source,
        shopify_reference: Optional[str] = None,
        description: Optional[str] = None,
        created_by: str = 'system',
        reconciled_at: Optional[datetime] = None,
    ) -> StoreCreditLedger:
        """
        Append a ledger entry and move the cached balance.

        Runs inside the caller's transaction; the caller commits or rolls back.

        Raises:
            CustomerNotFoundError: Customer is not in this tenant
            InsufficientBalanceError: A non-negative entry type would overdraw
        """
        entry_type = getattr(entry_type, 'value', entry_type)
        source = getattr(source, 'value', source)
        amount = to_money(amount)

        customer = self.lock_customer(customer_id)
        current = Decimal(str(customer.store_credit or 0))
        new_balance = current + amount

        if entry_type in NON_NEGATIVE_TYPES and new_balance < 0:
            raise InsufficientBalanceError(current=current, required=-amount)

        entry = StoreCreditLedger(
            customer_id=customer.id,
            amount=amount,
            balance=new_balance,
            type=entry_type,
            source=source,
            shopify_reference=shopify_reference,
            description=description,
            created_by=created_by,
            reconciled_at=reconciled_at,
        )
        db.session.add(entry)

        customer.store_credit = new_balance
        db.session.flush()

        logger.debug(
            f'Ledger {entry_type} {amount:+} for customer {customer.id}: {current} -> {new_balance}'
        )
        return entry

    # ==================== Manual Adjustments ====================

    def manual_adjust(
        self,
        customer_id: int,
        amount,
        direction: str,
        reason: Optional[str] = None,
        created_by: str = 'staff',
        sync_to_shopify: bool = True,
    ) -> StoreCreditLedger:
        """
        Add or remove store credit by hand.

        All checks run before anything is written. Shopify is credited or
        debited first, then the MANUAL_ADJUSTMENT entry is appended and committed.
        The customer row is only locked for the append, after Shopify answers.

        Raises:
            ValidationError: Bad amount or direction
            LimitExceededError: Add above the per-operation cap
            InsufficientBalanceError: Remove more than the current balance
            ShopifyError: Shopify rejected the operation
        """
        if direction not in (DIRECTION_ADD, DIRECTION_REMOVE):
            raise ValidationError("direction must be 'add' or 'remove'", field='direction')

        try:
            amount = to_money(amount)
        except (ArithmeticError, ValueError, TypeError):
            raise ValidationError('amount must be a number', field='amount')

        if amount <= 0:
            raise ValidationError('amount must be greater than zero', field='amount')

        tenant = Tenant.query.get(self.tenant_id)

        # Unlocked read: no row lock is held across the Shopify call.
        # append_entry re-checks the balance under the lock.
        customer = Customer.query.filter_by(id=customer_id, tenant_id=self.tenant_id).first()
        if not customer:
            raise CustomerNotFoundError(customer_id)

        if direction == DIRECTION_ADD:
            cap = tenant.max_manual_credit(current_app.config['MAX_MANUAL_CREDIT'])
            if amount > cap:
                raise LimitExceededError('Manual credit', limit=cap, current=amount)
        else:
            balance = Decimal(str(customer.store_credit or 0))
            if amount > balance:
                raise InsufficientBalanceError(current=balance, required=amount)

        shopify_reference = None
        if sync_to_shopify:
            if direction == DIRECTION_ADD:
                result = self.shopify_client.add_store_credit(customer.shopify_customer_id, amount)
            else:
                result = self.shopify_client.debit_store_credit(customer.shopify_customer_id, amount)
            shopify_reference = result.get('transaction_id')
            current_app.logger.info(
                f'Shopify store credit {direction} {amount} for customer {customer.id}, '
                f'Shopify balance now {result.get("new_balance")}'
            )

        signed = amount if direction == DIRECTION_ADD else -amount
        try:
            entry = self.append_entry(
                customer.id,
                signed,
                LedgerEntryType.MANUAL_ADJUSTMENT,
                LedgerSource.APP_MANUAL,
                shopify_reference=shopify_reference,
                description=reason or f'Manual {direction}',
                created_by=created_by,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            if shopify_reference:
                current_app.logger.error(
                    f'Shopify {direction} {amount} for customer {customer.id} succeeded '
                    f'({shopify_reference}) but the ledger write failed; reconcile to repair'
                )
            raise

        current_app.logger.info(
            f'Manual credit {direction} {amount} for customer {customer.id} by {created_by}'
        )
        return entry

    # ==================== Queries ====================

    def get_ledger(self, customer_id: int, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        """Ledger history, newest first."""
        customer = Customer.query.filter_by(id=customer_id, tenant_id=self.tenant_id).first()
        if not customer:
            raise CustomerNotFoundError(customer_id)

        query = StoreCreditLedger.query.filter_by(customer_id=customer.id)
        total = query.count()
        entries = (
            query.order_by(StoreCreditLedger.created_at.desc(), StoreCreditLedger.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

        return {
            'customer_id': customer.id,
            'store_credit': float(customer.store_credit or 0),
            'entries': [e.to_dict() for e in entries],
            'total': total,
            'limit': limit,
            'offset': offset,
        }

    def entries_in_order(self, customer_id: int) -> List[StoreCreditLedger]:
        return (
            StoreCreditLedger.query
            .filter_by(customer_id=customer_id)
            .order_by(StoreCreditLedger.created_at.asc(), StoreCreditLedger.id.asc())
            .all()
        )

    # ==================== Verification ====================

    def verify_ledger(self, customer_id: int) -> Dict[str, Any]:
        """
        Replay a customer's ledger and check every stored balance.

        Raises:
            LedgerInvariantError: On the first mismatch. Nothing is corrected.
        """
        customer = Customer.query.filter_by(id=customer_id, tenant_id=self.tenant_id).first()
        if not customer:
            raise CustomerNotFoundError(customer_id)

        running = Decimal('0')
        entries = self.entries_in_order(customer.id)

        for entry in entries:
            running += Decimal(str(entry.amount))
            if Decimal(str(entry.balance)) != running:
                self._fail(customer.id, f'entry {entry.id} balance {entry.balance} != replayed {running}')
            if entry.type in NON_NEGATIVE_TYPES and running < 0:
                self._fail(customer.id, f'entry {entry.id} ({entry.type}) left balance negative')

        cached = Decimal(str(customer.store_credit or 0))
        if cached != running:
            self._fail(customer.id, f'cached store_credit {cached} != ledger balance {running}')

        return {'customer_id': customer.id, 'entries': len(entries), 'balance': float(running)}

    def verify_all(self) -> Dict[str, Any]:
        """Verify every customer in the tenant, collecting violations."""
        checked = 0
        violations = []
        for customer in Customer.query.filter_by(tenant_id=self.tenant_id).all():
            checked += 1
            try:
                self.verify_ledger(customer.id)
            except LedgerInvariantError as e:
                violations.append({'customer_id': customer.id, 'error': e.message})

        return {'checked': checked, 'violations': violations}

    def _fail(self, customer_id: int, message: str):
        error = LedgerInvariantError(customer_id, message)
        logger.error(error.message)
        raise error
