"""
Reconciliation Sync.

Brings local store credit in line with the customer's native Shopify
store credit account. Shopify's balance wins: any difference above
RECONCILE_EPSILON is booked as a SHOPIFY_SYNC / RECONCILIATION ledger
entry, so the ledger still explains every change to the cached balance.

Also publishes the local balance to the customer's
cashback.store_credit_balance metafield for storefront display.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List

from flask import current_app

from ..extensions import db
from ..models import Customer, LedgerEntryType, LedgerSource, JobKind, MigrationHistory
from ..utils.exceptions import CustomerNotFoundError, RewardsProError, ValidationError
from .shopify_client import ShopifyClient
from .ledger_service import LedgerService
from .migration_jobs import JobTracker, ImportTask, submit

logger = logging.getLogger(__name__)

MODE_STALE = 'stale'
MODE_ALL = 'all'

PROGRESS_BATCH = 50


@dataclass
class ReconcileDelta:
    """Outcome of reconciling one customer."""
    customer_id: int
    local_balance: Decimal
    shopify_balance: Decimal
    delta: Decimal
    adjusted: bool
    entry_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('local_balance', 'shopify_balance', 'delta'):
            data[key] = float(data[key])
        return data


class ReconciliationService:
    """
    Reconciles store credit for one tenant.

    Usage:
        service = ReconciliationService(tenant_id)
        delta = service.reconcile(customer_id)
    """

    def __init__(self, tenant_id: int, shopify_client: ShopifyClient = None, tracker: JobTracker = None):
        self.tenant_id = tenant_id
        self._shopify_client = shopify_client
        self.tracker = tracker or JobTracker(tenant_id)

    @property
    def shopify_client(self) -> ShopifyClient:
        if self._shopify_client is None:
            self._shopify_client = ShopifyClient.for_tenant(self.tenant_id)
        return self._shopify_client

    @property
    def ledger(self) -> LedgerService:
        return LedgerService(self.tenant_id, self._shopify_client)

    def _get_customer(self, customer_id: int) -> Customer:
        customer = Customer.query.filter_by(id=customer_id, tenant_id=self.tenant_id).first()
        if not customer:
            raise CustomerNotFoundError(customer_id)
        return customer

    # ==================== Single customer ====================

    def reconcile(self, customer_id: int) -> ReconcileDelta:
        """
        Align one customer's local balance with Shopify.

        The Shopify balance is read before the row lock is taken so no lock
        is held across the network call. last_synced_at is stamped even
        when no adjustment is needed.

        Raises:
            CustomerNotFoundError: Unknown customer
            ShopifyError: Balance could not be read
        """
        customer = self._get_customer(customer_id)
        remote = self.shopify_client.get_store_credit_balance(customer.shopify_customer_id)
        shopify_balance = Decimal(str(remote['balance']))

        ledger = self.ledger
        customer = ledger.lock_customer(customer.id)
        local_balance = Decimal(str(customer.store_credit or 0))
        delta = shopify_balance - local_balance
        now = datetime.utcnow()

        entry = None
        if abs(delta) > current_app.config['RECONCILE_EPSILON']:
            entry = ledger.append_entry(
                customer.id,
                delta,
                LedgerEntryType.SHOPIFY_SYNC,
                LedgerSource.RECONCILIATION,
                shopify_reference=remote.get('account_id'),
                description=f'Reconciled to Shopify balance {shopify_balance:.2f} (was {local_balance:.2f})',
                created_by='system',
                reconciled_at=now,
            )

        customer.last_synced_at = now
        db.session.commit()

        if entry is not None:
            logger.info(
                f'Reconciled customer {customer.id}: {local_balance} -> {shopify_balance} ({delta:+})'
            )

        return ReconcileDelta(
            customer_id=customer.id,
            local_balance=local_balance,
            shopify_balance=shopify_balance,
            delta=delta,
            adjusted=entry is not None,
            entry_id=entry.id if entry is not None else None,
        )

    def publish_balance(self, customer_id: int) -> Dict[str, Any]:
        """Write the local balance to the customer's balance metafield."""
        customer = self._get_customer(customer_id)
        balance = Decimal(str(customer.store_credit or 0))
        self.shopify_client.set_balance_metafield(customer.shopify_customer_id, balance)
        return {'customer_id': customer.id, 'store_credit': float(balance)}

    # ==================== Bulk ====================

    def bulk_reconcile(self, mode: str = MODE_STALE, started_by: str = 'staff') -> MigrationHistory:
        """
        Start a reconciliation job over the tenant's active customers.

        Raises:
            ValidationError: Unknown mode
            ImportAlreadyRunningError: Another job is active for this shop
        """
        if mode not in (MODE_STALE, MODE_ALL):
            raise ValidationError("mode must be 'stale' or 'all'", field='mode')

        job = self.tracker.create_job(JobKind.RECONCILIATION, {'mode': mode, 'startedBy': started_by})
        submit(ImportTask(job.id, self.tenant_id, JobKind.RECONCILIATION))
        return self.tracker.get_job(job.id, refresh=True)

    def customers_to_reconcile(self, mode: str = MODE_STALE, now: datetime = None) -> List[int]:
        query = db.session.query(Customer.id).filter(
            Customer.tenant_id == self.tenant_id,
            Customer.is_active.is_(True),
        )
        if mode == MODE_STALE:
            now = now or datetime.utcnow()
            cutoff = now - timedelta(hours=current_app.config.get('RECONCILE_STALE_HOURS', 24))
            query = query.filter(db.or_(Customer.last_synced_at.is_(None), Customer.last_synced_at < cutoff))
        return [row.id for row in query.order_by(Customer.id).all()]

    def run_bulk_job(self, job_id: int) -> Dict[str, Any]:
        """Execute a PENDING reconciliation job."""
        job = self.tracker.get_job(job_id, refresh=True)
        mode = (job.job_metadata or {}).get('mode', MODE_STALE)
        results = {'adjusted': 0, 'unchanged': 0, 'total_delta': 0.0}

        if not self.tracker.start(job_id):
            logger.warning(f'Reconciliation job {job_id} is {job.status}, not starting')
            return results

        customer_ids = self.customers_to_reconcile(mode)
        total = len(customer_ids)
        processed = failed = 0
        total_delta = Decimal('0')
        workers = current_app.config.get('RECONCILE_WORKERS', 1)

        for start in range(0, total, PROGRESS_BATCH):
            batch = customer_ids[start:start + PROGRESS_BATCH]
            errors = []

            for customer_id, outcome in self._reconcile_batch(batch, workers):
                if isinstance(outcome, ReconcileDelta):
                    processed += 1
                    if outcome.adjusted:
                        results['adjusted'] += 1
                        total_delta += outcome.delta
                    else:
                        results['unchanged'] += 1
                else:
                    failed += 1
                    errors.append(f'Customer {customer_id}: {outcome}')

            self.tracker.record_progress(job_id, total, processed, failed, errors)
            if self.tracker.is_cancelled(job_id):
                logger.info(f'Reconciliation job {job_id} cancelled')
                return results

        results['total_delta'] = float(total_delta)
        self.tracker.complete(job_id, dict(results, total=total, processed=processed, failed=failed))
        logger.info(f'Reconciliation job {job_id} completed: {results["adjusted"]} adjusted, {failed} failed')
        return results

    def _reconcile_batch(self, customer_ids: List[int], workers: int):
        """Yield (customer_id, ReconcileDelta or error message)."""
        if workers <= 1:
            for customer_id in customer_ids:
                yield customer_id, self._safe_reconcile(customer_id)
            return

        app = current_app._get_current_object()

        def run(customer_id):
            with app.app_context():
                return ReconciliationService(self.tenant_id)._safe_reconcile(customer_id)

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(run, customer_id): customer_id for customer_id in customer_ids}
            for future in as_completed(futures):
                yield futures[future], future.result()

    def _safe_reconcile(self, customer_id: int):
        try:
            return self.reconcile(customer_id)
        except Exception as e:
            db.session.rollback()
            reason = e.message if isinstance(e, RewardsProError) else str(e)
            logger.warning(f'Reconciliation failed for customer {customer_id}: {reason}')
            return reason
