"""
Customer analytics.

Recomputes the per-customer CustomerAnalytics row from transactions,
memberships and the tier change log.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Dict, Any

from sqlalchemy import func

from ..extensions import db
from ..models import (
    Customer,
    CustomerAnalytics,
    CashbackTransaction,
    TierChangeLog,
    TierChangeType,
    SPEND_STATUSES,
)
from .tier_service import TierService

logger = logging.getLogger(__name__)

WINDOWS = {
    'yearly_spending': timedelta(days=365),
    'quarterly_spending': timedelta(days=90),
    'monthly_spending': timedelta(days=30),
}


class AnalyticsService:

    def __init__(self, tenant_id: int, tier_service: TierService = None):
        self.tenant_id = tenant_id
        self.tier_service = tier_service or TierService(tenant_id)

    def _spend_since(self, customer_id: int, since: datetime = None) -> Decimal:
        query = db.session.query(func.coalesce(func.sum(CashbackTransaction.order_amount), 0)).filter(
            CashbackTransaction.customer_id == customer_id,
            CashbackTransaction.status.in_(SPEND_STATUSES),
        )
        if since is not None:
            query = query.filter(CashbackTransaction.created_at >= since)
        return Decimal(str(query.scalar() or 0))

    def recompute(self, customer_id: int, now: datetime = None) -> CustomerAnalytics:
        """Rebuild one customer's analytics row. Does not commit."""
        now = now or datetime.utcnow()
        customer = Customer.query.filter_by(id=customer_id, tenant_id=self.tenant_id).first()
        if not customer:
            return None

        analytics = customer.analytics
        if analytics is None:
            analytics = CustomerAnalytics(customer_id=customer.id)
            db.session.add(analytics)

        order_count, last_order = db.session.query(
            func.count(CashbackTransaction.id),
            func.max(CashbackTransaction.created_at),
        ).filter(
            CashbackTransaction.customer_id == customer.id,
            CashbackTransaction.status.in_(SPEND_STATUSES),
        ).one()

        lifetime = self._spend_since(customer.id)
        analytics.lifetime_spending = lifetime
        for column, window in WINDOWS.items():
            setattr(analytics, column, self._spend_since(customer.id, now - window))

        analytics.order_count = order_count or 0
        analytics.avg_order_value = (
            (lifetime / order_count).quantize(Decimal('0.01')) if order_count else Decimal('0')
        )
        analytics.last_order_date = last_order
        analytics.days_since_last_order = (now - last_order).days if last_order else None

        membership = customer.active_membership
        analytics.current_tier_days = (now - membership.start_date).days if membership else 0

        analytics.tier_upgrade_count = TierChangeLog.query.filter_by(
            customer_id=customer.id,
            change_type=TierChangeType.AUTOMATIC_UPGRADE.value,
        ).count()
        analytics.last_tier_change = db.session.query(func.max(TierChangeLog.created_at)).filter(
            TierChangeLog.customer_id == customer.id
        ).scalar()

        progress = self.tier_service.get_customer_tier_info(customer.id)['next_tier_progress']
        analytics.next_tier_progress = Decimal(str(progress)) if progress is not None else None
        analytics.calculated_at = now

        db.session.flush()
        return analytics

    def recompute_many(self, customer_ids: Iterable[int]) -> Dict[str, Any]:
        """Recompute and commit per customer, collecting failures."""
        updated = 0
        errors = []
        for customer_id in customer_ids:
            try:
                self.recompute(customer_id)
                db.session.commit()
                updated += 1
            except Exception as e:
                db.session.rollback()
                logger.warning(f'Analytics update failed for customer {customer_id}: {e}')
                errors.append({'customer_id': customer_id, 'error': str(e)})
        return {'updated': updated, 'errors': errors}
