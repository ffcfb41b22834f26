"""
Order Import Orchestrator.

Pages paid Shopify orders for a date range and turns each into a cashback
transaction plus a CASHBACK_EARNED ledger entry. The cashback is issued as
Shopify store credit first, so a later reconcile finds both sides agreeing.
If Shopify rejects the credit the order fails and can be retried.

- Each order is processed in its own DB transaction. A failing order is
  rolled back, recorded on the job as "Order #1004: <reason>", and the
  import carries on.
- Re-importing is idempotent: transactions are keyed on
  (tenant_id, shopify_order_id). In 'new' mode existing orders are
  skipped; in 'all' mode they are recalculated in place without a second
  ledger entry.
- A feed failure (GraphQL errors, HTTP errors, timeouts after retries)
  stops the import and fails the job. Orders already committed stay.
- Cancellation is checked between pages.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Any, Set, List

from flask import current_app

from ..extensions import db
from ..models import (
    Customer,
    CashbackTransaction,
    TransactionStatus,
    LedgerEntryType,
    LedgerSource,
    JobKind,
    MigrationHistory,
)
from ..utils.exceptions import (
    RewardsProError,
    ShopifyError,
    ShopifyTimeoutError,
    ValidationError,
    NoActiveTiersError,
)
from .shopify_client import ShopifyClient
from .order_feed import (
    OrderFeed,
    OrderPage,
    PageCursor,
    DateRange,
    EligibleOrder,
    SkippedOrder,
    MalformedOrder,
    SKIP_OUTSIDE_RANGE,
)
from .ledger_service import LedgerService
from .tier_service import TierService
from .analytics_service import AnalyticsService
from .migration_jobs import JobTracker, ImportTask, submit

logger = logging.getLogger(__name__)

MODE_NEW = 'new'
MODE_ALL = 'all'
IMPORT_MODES = (MODE_NEW, MODE_ALL)

CENT = Decimal('0.01')

OUTCOME_CREATED = 'created'
OUTCOME_UPDATED = 'updated'
OUTCOME_EXISTING = 'existing'


def calculate_cashback(order_amount: Decimal, cashback_percent) -> Decimal:
    """order_amount x percent / 100, rounded down to the cent."""
    raw = Decimal(str(order_amount)) * Decimal(str(cashback_percent)) / Decimal('100')
    return raw.quantize(CENT, rounding=ROUND_DOWN)


@dataclass
class ImportCounters:
    total: int = 0
    processed: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    skipped: Dict[str, int] = field(default_factory=dict)
    pages: int = 0

    def skip(self, reason: str) -> None:
        self.skipped[reason] = self.skipped.get(reason, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'processed': self.processed,
            'failed': self.failed,
            'created': self.created,
            'updated': self.updated,
            'skipped': dict(self.skipped),
            'pages': self.pages,
        }


class OrderImportService:
    """
    Imports historical orders as cashback for one tenant.

    Usage:
        service = OrderImportService(tenant_id)
        job = service.start_import(date(2024, 1, 1), date(2024, 12, 31), mode='new')
    """

    def __init__(
        self,
        tenant_id: int,
        shopify_client: ShopifyClient = None,
        tracker: JobTracker = None,
        tier_service: TierService = None,
    ):
        self.tenant_id = tenant_id
        self._shopify_client = shopify_client
        self.tracker = tracker or JobTracker(tenant_id)
        self.tier_service = tier_service or TierService(tenant_id)
        self.ledger = LedgerService(tenant_id)

    @property
    def shopify_client(self) -> ShopifyClient:
        if self._shopify_client is None:
            self._shopify_client = ShopifyClient.for_tenant(self.tenant_id)
        return self._shopify_client

    # ==================== Start ====================

    def start_import(
        self,
        start_date: date,
        end_date: date,
        mode: str = MODE_NEW,
        update_tiers: bool = True,
        started_by: str = 'staff',
    ) -> MigrationHistory:
        """
        Validate, create a PENDING job and hand it to the background worker.

        Raises:
            ValidationError: Bad mode or date range
            NoActiveTiersError: No tiers to compute cashback with
            ImportAlreadyRunningError: Another job is active for this shop
        """
        if mode not in IMPORT_MODES:
            raise ValidationError(f"mode must be one of {', '.join(IMPORT_MODES)}", field='mode')

        try:
            DateRange.from_dates(start_date, end_date)
        except ValueError as e:
            raise ValidationError(str(e), field='end_date')

        self.tier_service.catalog.require_active_tiers()

        job = self.tracker.create_job(JobKind.ORDER_IMPORT, {
            'startDate': start_date.isoformat(),
            'endDate': end_date.isoformat(),
            'importType': mode,
            'updateTiers': bool(update_tiers),
            'startedBy': started_by,
        })

        task = ImportTask(job.id, self.tenant_id, JobKind.ORDER_IMPORT)
        submit(task)
        current_app.logger.info(f'Order import {task.task_id} submitted for tenant {self.tenant_id}')

        return self.tracker.get_job(job.id, refresh=True)

    # ==================== Run ====================

    def run_import(self, job_id: int) -> ImportCounters:
        """Execute a PENDING import job to completion, failure or cancellation."""
        job = self.tracker.get_job(job_id, refresh=True)
        metadata = job.job_metadata or {}
        counters = ImportCounters()

        if not self.tracker.start(job_id):
            logger.warning(f'Import job {job_id} is {job.status}, not starting')
            return counters

        try:
            self.tier_service.catalog.require_active_tiers()
            date_range = DateRange.from_dates(
                date.fromisoformat(metadata['startDate']),
                date.fromisoformat(metadata['endDate'])
            )
            feed = OrderFeed(self.shopify_client, date_range)
            cursor = PageCursor(page_size=current_app.config.get('IMPORT_PAGE_SIZE', 50))
        except (NoActiveTiersError, KeyError, ValueError) as e:
            message = e.message if isinstance(e, RewardsProError) else f'Invalid import job: {e}'
            self.tracker.fail(job_id, message, counters.to_dict())
            return counters

        mode = metadata.get('importType', MODE_NEW)
        touched: Set[int] = set()
        delay = current_app.config.get('IMPORT_PAGE_DELAY', 0)

        while True:
            try:
                page = self._fetch_page(feed, cursor)
            except ShopifyError as e:
                self._save_progress(job_id, counters, [])
                self.tracker.fail(
                    job_id,
                    f'Order feed failed on page {cursor.page_number + 1}: {e.message}',
                    counters.to_dict()
                )
                self._finish_customers(job_id, touched, update_tiers=False)
                return counters

            counters.pages += 1
            page_errors = self._process_page(page, mode, job_id, counters, touched)
            self._save_progress(job_id, counters, page_errors)

            if self.tracker.is_cancelled(job_id):
                logger.info(f'Import job {job_id} cancelled after {counters.pages} pages')
                self._finish_customers(job_id, touched, update_tiers=False)
                return counters

            if not page.has_next_page:
                break

            if not page.end_cursor:
                self.tracker.fail(job_id, 'Order feed reported more pages without a cursor', counters.to_dict())
                return counters

            cursor = cursor.advance(page.end_cursor)
            if delay:
                time.sleep(delay)

        post = self._finish_customers(job_id, touched, update_tiers=metadata.get('updateTiers', True))

        results = counters.to_dict()
        results.update(post)
        self.tracker.complete(job_id, results)

        logger.info(
            f'Import job {job_id} completed: {counters.total} orders, '
            f'{counters.processed} processed, {counters.failed} failed'
        )
        return counters

    def _fetch_page(self, feed: OrderFeed, cursor: PageCursor) -> OrderPage:
        retries = current_app.config.get('IMPORT_PAGE_RETRIES', 0)
        attempt = 0
        while True:
            try:
                return feed.fetch_page(cursor)
            except ShopifyTimeoutError:
                attempt += 1
                if attempt > retries:
                    raise
                logger.warning(f'Order page {cursor.page_number + 1} timed out, retry {attempt}/{retries}')

    def _save_progress(self, job_id: int, counters: ImportCounters, errors: List[str]) -> None:
        self.tracker.record_progress(job_id, counters.total, counters.processed, counters.failed, errors)

    def _process_page(
        self,
        page: OrderPage,
        mode: str,
        job_id: int,
        counters: ImportCounters,
        touched: Set[int],
    ) -> List[str]:
        errors = []

        for result in page.results:
            if isinstance(result, SkippedOrder):
                if result.reason == SKIP_OUTSIDE_RANGE:
                    continue
                counters.total += 1
                counters.processed += 1
                counters.skip(result.reason)
                continue

            counters.total += 1

            if isinstance(result, MalformedOrder):
                counters.failed += 1
                errors.append(f'Order {result.label}: {result.error}')
                continue

            try:
                outcome, customer_id = self.import_order(result, mode, triggered_by=f'import:{job_id}')
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                reason = e.message if isinstance(e, RewardsProError) else str(e)
                logger.warning(f'Import job {job_id}: order {result.order_name} failed: {reason}')
                counters.failed += 1
                errors.append(f'Order {result.order_name}: {reason}')
                continue

            counters.processed += 1
            touched.add(customer_id)
            if outcome == OUTCOME_CREATED:
                counters.created += 1
            elif outcome == OUTCOME_UPDATED:
                counters.updated += 1
            else:
                counters.skip(OUTCOME_EXISTING)

        return errors

    # ==================== Per-order ====================

    def upsert_customer(self, shopify_customer_id: str, email: str = None, triggered_by: str = 'system') -> Customer:
        """Find or create the local customer, giving new ones the base tier. Does not commit."""
        customer = Customer.query.filter_by(
            tenant_id=self.tenant_id,
            shopify_customer_id=shopify_customer_id
        ).first()

        if not customer:
            customer = Customer(
                tenant_id=self.tenant_id,
                shopify_customer_id=shopify_customer_id,
                email=email,
                store_credit=Decimal('0'),
                total_earned=Decimal('0'),
            )
            db.session.add(customer)
            db.session.flush()
            self.tier_service.assign_initial_tier(customer, triggered_by=triggered_by)
        elif email and not customer.email:
            customer.email = email

        return customer

    def import_order(self, order: EligibleOrder, mode: str = MODE_NEW, triggered_by: str = 'system'):
        """
        Upsert the customer and transaction for one order. Does not commit.

        Returns:
            (outcome, customer_id)
        """
        customer = self.upsert_customer(order.customer_id, order.customer_email, triggered_by)

        existing = CashbackTransaction.query.filter_by(
            tenant_id=self.tenant_id,
            shopify_order_id=order.order_id
        ).first()

        if existing and mode == MODE_NEW:
            return OUTCOME_EXISTING, customer.id

        membership = customer.active_membership or self.tier_service.assign_initial_tier(
            customer, triggered_by=triggered_by
        )
        percent = Decimal(str(membership.tier.cashback_percent))
        cashback = calculate_cashback(order.total_amount, percent)

        if existing:
            existing.order_amount = order.total_amount
            existing.cashback_amount = cashback
            existing.cashback_percent = percent
            existing.shopify_order_name = order.order_name
            existing.created_at = order.created_at
            db.session.flush()
            return OUTCOME_UPDATED, customer.id

        transaction = CashbackTransaction(
            tenant_id=self.tenant_id,
            customer_id=customer.id,
            shopify_order_id=order.order_id,
            shopify_order_name=order.order_name,
            order_amount=order.total_amount,
            cashback_amount=cashback,
            cashback_percent=percent,
            status=TransactionStatus.COMPLETED.value,
            created_at=order.created_at,
        )
        db.session.add(transaction)
        db.session.flush()

        if cashback > 0 and current_app.config.get('ISSUE_SHOPIFY_CREDIT', True):
            # ShopifyError propagates: the caller rolls the order back
            result = self.shopify_client.add_store_credit(customer.shopify_customer_id, cashback)
            transaction.shopify_transaction_id = result.get('transaction_id')
            transaction.status = TransactionStatus.SYNCED_TO_SHOPIFY.value

        try:
            self.ledger.append_entry(
                customer.id,
                cashback,
                LedgerEntryType.CASHBACK_EARNED,
                LedgerSource.APP_CASHBACK,
                shopify_reference=order.order_id,
                description=f'{percent}% cashback on order {order.order_name}',
                created_by=triggered_by,
            )
        except Exception:
            if transaction.shopify_transaction_id:
                logger.error(
                    f'Shopify credited {cashback} for order {order.order_name} '
                    f'({transaction.shopify_transaction_id}) but the ledger write failed; reconcile to repair'
                )
            raise
        customer.total_earned = Decimal(str(customer.total_earned or 0)) + cashback

        return OUTCOME_CREATED, customer.id

    # ==================== Post-processing ====================

    def _finish_customers(self, job_id: int, touched: Set[int], update_tiers: bool) -> Dict[str, Any]:
        """Re-evaluate tiers (optional) and refresh analytics for touched customers."""
        post: Dict[str, Any] = {'customers': len(touched)}
        if not touched:
            return post

        customer_ids = sorted(touched)

        if update_tiers:
            try:
                tiers = self.tier_service.batch_evaluate(customer_ids, triggered_by=f'import:{job_id}')
                post['tierChanges'] = tiers['changed']
                post['tierErrors'] = len(tiers['errors'])
            except NoActiveTiersError as e:
                logger.warning(f'Import job {job_id}: skipping tier evaluation: {e.message}')

        analytics = AnalyticsService(self.tenant_id, self.tier_service).recompute_many(customer_ids)
        post['analyticsUpdated'] = analytics['updated']
        return post
