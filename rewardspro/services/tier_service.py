"""
Tier Management Service.

Cashback tiers are earned by spend. Each tier measures spend over its own
evaluation period (lifetime or the trailing 12 months). The highest tier
whose threshold is met wins; the base tier (no threshold) is the fallback.

Only AUTOMATIC memberships are re-evaluated. Manual, promotional and
imported memberships hold until their end_date, after which
handle_expired_memberships reverts them to automatic evaluation.

Every change deactivates the old membership, creates a new one and
writes a TierChangeLog row, all in one transaction.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import (
    Customer,
    Tier,
    CustomerMembership,
    TierChangeLog,
    CashbackTransaction,
    EvaluationPeriod,
    AssignmentType,
    TierChangeType,
    SPEND_STATUSES,
)
from ..utils.exceptions import (
    CustomerNotFoundError,
    TierNotFoundError,
    NoActiveTiersError,
    DuplicateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ANNUAL_WINDOW = timedelta(days=365)


class TierCatalog:
    """Active tiers of one tenant, ordered by threshold."""

    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id

    @staticmethod
    def sort_key(tier: Tier):
        # Base tier (null min_spend) first, then ascending threshold
        return (
            tier.min_spend is not None,
            Decimal(str(tier.min_spend or 0)),
            Decimal(str(tier.cashback_percent)),
        )

    def active_tiers(self) -> List[Tier]:
        tiers = Tier.query.filter_by(tenant_id=self.tenant_id, is_active=True).all()
        return sorted(tiers, key=self.sort_key)

    def require_active_tiers(self) -> List[Tier]:
        tiers = self.active_tiers()
        if not tiers:
            raise NoActiveTiersError()
        return tiers

    def default_tier(self) -> Optional[Tier]:
        """The base tier, or the lowest threshold tier if there is no base."""
        tiers = self.active_tiers()
        return tiers[0] if tiers else None

    def get_tier(self, tier_id: int) -> Tier:
        tier = Tier.query.filter_by(id=tier_id, tenant_id=self.tenant_id).first()
        if not tier:
            raise TierNotFoundError(tier_id)
        return tier

    def create_tier(
        self,
        name: str,
        cashback_percent,
        min_spend=None,
        evaluation_period: str = EvaluationPeriod.ANNUAL.value,
    ) -> Tier:
        """
        Create a tier. At most one active tier may have no threshold.

        Raises:
            ValidationError: Bad percent, threshold or period
            DuplicateError: A second base tier, or a duplicate name
        """
        cashback_percent = Decimal(str(cashback_percent))
        if not Decimal('0') <= cashback_percent <= Decimal('100'):
            raise ValidationError('cashback_percent must be between 0 and 100', field='cashback_percent')

        if min_spend is not None:
            min_spend = Decimal(str(min_spend))
            if min_spend < 0:
                raise ValidationError('min_spend must not be negative', field='min_spend')

        evaluation_period = getattr(evaluation_period, 'value', evaluation_period)
        if evaluation_period not in {p.value for p in EvaluationPeriod}:
            raise ValidationError(f'Unknown evaluation period {evaluation_period}', field='evaluation_period')

        if Tier.query.filter_by(tenant_id=self.tenant_id, name=name).first():
            raise DuplicateError('Tier', f"name '{name}'")

        if min_spend is None and self._active_base_tier() is not None:
            raise DuplicateError('Base tier')

        tier = Tier(
            tenant_id=self.tenant_id,
            name=name,
            cashback_percent=cashback_percent,
            min_spend=min_spend,
            evaluation_period=evaluation_period,
            is_active=True,
        )
        db.session.add(tier)
        db.session.commit()
        return tier

    def set_tier_active(self, tier_id: int, is_active: bool) -> Tier:
        tier = self.get_tier(tier_id)
        if is_active and tier.min_spend is None:
            base = self._active_base_tier()
            if base is not None and base.id != tier.id:
                raise DuplicateError('Base tier')
        tier.is_active = is_active
        db.session.commit()
        return tier

    def _active_base_tier(self) -> Optional[Tier]:
        return Tier.query.filter(
            Tier.tenant_id == self.tenant_id,
            Tier.is_active.is_(True),
            Tier.min_spend.is_(None),
        ).first()

    def distribution(self) -> List[Dict[str, Any]]:
        """Active customers per active tier."""
        tiers = self.active_tiers()
        counts = dict(
            db.session.query(CustomerMembership.tier_id, func.count(CustomerMembership.id))
            .join(Customer, Customer.id == CustomerMembership.customer_id)
            .filter(
                Customer.tenant_id == self.tenant_id,
                Customer.is_active.is_(True),
                CustomerMembership.is_active.is_(True),
            )
            .group_by(CustomerMembership.tier_id)
            .all()
        )
        total = sum(counts.values())

        return [
            {
                'tier_id': tier.id,
                'tier_name': tier.name,
                'cashback_percent': float(tier.cashback_percent),
                'member_count': counts.get(tier.id, 0),
                'percentage': round(counts.get(tier.id, 0) / total * 100, 1) if total else 0,
            }
            for tier in tiers
        ]


class TierService:
    """
    Evaluates and assigns tiers for one tenant.

    Usage:
        service = TierService(tenant_id)
        result = service.evaluate(customer_id)
    """

    def __init__(self, tenant_id: int, catalog: TierCatalog = None):
        self.tenant_id = tenant_id
        self.catalog = catalog or TierCatalog(tenant_id)

    def _get_customer(self, customer_id: int) -> Customer:
        customer = Customer.query.filter_by(id=customer_id, tenant_id=self.tenant_id).first()
        if not customer:
            raise CustomerNotFoundError(customer_id)
        return customer

    # ==================== Spend ====================

    def spend_for_period(self, customer_id: int, period: str, now: datetime = None) -> Decimal:
        """Sum of counted order amounts in the period."""
        now = now or datetime.utcnow()
        query = db.session.query(func.coalesce(func.sum(CashbackTransaction.order_amount), 0)).filter(
            CashbackTransaction.customer_id == customer_id,
            CashbackTransaction.status.in_(SPEND_STATUSES),
        )
        if period == EvaluationPeriod.ANNUAL.value:
            query = query.filter(CashbackTransaction.created_at >= now - ANNUAL_WINDOW)

        return Decimal(str(query.scalar() or 0))

    def select_tier(self, customer_id: int, tiers: List[Tier], now: datetime = None) -> Tier:
        """Highest tier whose threshold the customer meets."""
        spend_cache = {}
        for tier in sorted(tiers, key=TierCatalog.sort_key, reverse=True):
            if tier.min_spend is None:
                continue
            period = tier.evaluation_period
            if period not in spend_cache:
                spend_cache[period] = self.spend_for_period(customer_id, period, now)
            if spend_cache[period] >= Decimal(str(tier.min_spend)):
                return tier

        return sorted(tiers, key=TierCatalog.sort_key)[0]

    # ==================== Assignment ====================

    def assign_initial_tier(self, customer: Customer, triggered_by: str = 'system') -> CustomerMembership:
        """
        Give a new customer the default tier. Does not commit.

        Raises:
            NoActiveTiersError: The tenant has no active tiers
        """
        existing = customer.active_membership
        if existing:
            return existing

        tier = self.catalog.default_tier()
        if not tier:
            raise NoActiveTiersError()

        return self._switch_membership(
            customer,
            current=None,
            new_tier=tier,
            assignment_type=AssignmentType.AUTOMATIC,
            change_type=TierChangeType.INITIAL_ASSIGNMENT,
            reason='Initial tier assignment',
            triggered_by=triggered_by,
        )

    def evaluate(self, customer_id: int, triggered_by: str = 'system', commit: bool = True) -> Dict[str, Any]:
        """
        Re-score a customer and move them if their qualifying tier changed.

        Returns:
            Dict with changed flag, tier name and change type
        """
        customer = self._get_customer(customer_id)
        current = customer.active_membership

        if current and current.assignment_type != AssignmentType.AUTOMATIC.value:
            return {
                'customer_id': customer.id,
                'changed': False,
                'skipped': True,
                'reason': f'{current.assignment_type.lower()} assignment',
                'tier': current.tier.name,
            }

        tiers = self.catalog.require_active_tiers()
        new_tier = self.select_tier(customer.id, tiers)

        if current and current.tier_id == new_tier.id:
            return {'customer_id': customer.id, 'changed': False, 'skipped': False, 'tier': new_tier.name}

        if current is None:
            change_type = TierChangeType.INITIAL_ASSIGNMENT
        else:
            change_type = self._direction(current.tier, new_tier)

        self._switch_membership(
            customer,
            current=current,
            new_tier=new_tier,
            assignment_type=AssignmentType.AUTOMATIC,
            change_type=change_type,
            reason=f'Spend qualifies for {new_tier.name}',
            triggered_by=triggered_by,
        )

        if commit:
            db.session.commit()

        logger.info(
            f'Tier {change_type.value} for customer {customer.id}: '
            f'{current.tier.name if current else None} -> {new_tier.name}'
        )

        return {
            'customer_id': customer.id,
            'changed': True,
            'skipped': False,
            'tier': new_tier.name,
            'previous_tier': current.tier.name if current else None,
            'change_type': change_type.value,
        }

    def assign_tier_manually(
        self,
        customer_id: int,
        tier_id: int,
        assigned_by: str,
        reason: str = None,
        end_date: datetime = None,
        assignment_type: AssignmentType = AssignmentType.MANUAL,
    ) -> CustomerMembership:
        """Pin a customer to a tier. Automatic evaluation skips them until end_date."""
        customer = self._get_customer(customer_id)
        tier = self.catalog.get_tier(tier_id)
        if not tier.is_active:
            raise ValidationError(f'Tier {tier.name} is inactive', field='tier_id')

        if end_date is not None and end_date <= datetime.utcnow():
            raise ValidationError('end_date must be in the future', field='end_date')

        membership = self._switch_membership(
            customer,
            current=customer.active_membership,
            new_tier=tier,
            assignment_type=assignment_type,
            change_type=TierChangeType.MANUAL_OVERRIDE,
            reason=reason or 'Manual assignment',
            triggered_by=assigned_by,
            end_date=end_date,
        )
        db.session.commit()

        current_app.logger.info(f'Tier manually set: customer {customer.id} -> {tier.name} by {assigned_by}')
        return membership

    def handle_expired_memberships(self, now: datetime = None) -> Dict[str, Any]:
        """Revert non-automatic memberships past their end_date to automatic evaluation."""
        now = now or datetime.utcnow()
        expired = (
            CustomerMembership.query
            .join(Customer, Customer.id == CustomerMembership.customer_id)
            .filter(
                Customer.tenant_id == self.tenant_id,
                CustomerMembership.is_active.is_(True),
                CustomerMembership.assignment_type != AssignmentType.AUTOMATIC.value,
                CustomerMembership.end_date.isnot(None),
                CustomerMembership.end_date <= now,
            )
            .all()
        )

        if not expired:
            return {'reverted': 0, 'errors': []}

        tiers = self.catalog.require_active_tiers()
        reverted = 0
        errors = []

        for membership in expired:
            customer = membership.customer
            try:
                new_tier = self.select_tier(customer.id, tiers, now)
                self._switch_membership(
                    customer,
                    current=membership,
                    new_tier=new_tier,
                    assignment_type=AssignmentType.AUTOMATIC,
                    change_type=TierChangeType.EXPIRATION_REVERT,
                    reason=f'{membership.assignment_type.title()} assignment expired',
                    triggered_by='system',
                    deactivated_at=membership.end_date,
                )
                db.session.commit()
                reverted += 1
            except Exception as e:
                db.session.rollback()
                logger.error(f'Expired membership revert failed for customer {customer.id}: {e}')
                errors.append({'customer_id': customer.id, 'error': str(e)})

        logger.info(f'Tenant {self.tenant_id}: reverted {reverted} expired tier assignments')
        return {'reverted': reverted, 'errors': errors}

    def batch_evaluate(self, customer_ids: List[int] = None, triggered_by: str = 'system') -> Dict[str, Any]:
        """Evaluate many customers; failures are collected per customer."""
        self.catalog.require_active_tiers()

        if customer_ids is None:
            customer_ids = [
                row.id for row in
                db.session.query(Customer.id).filter_by(tenant_id=self.tenant_id, is_active=True).all()
            ]

        results = {'evaluated': 0, 'changed': 0, 'skipped': 0, 'errors': []}
        for customer_id in customer_ids:
            try:
                outcome = self.evaluate(customer_id, triggered_by=triggered_by)
                results['evaluated'] += 1
                if outcome['changed']:
                    results['changed'] += 1
                if outcome.get('skipped'):
                    results['skipped'] += 1
            except Exception as e:
                db.session.rollback()
                logger.warning(f'Tier evaluation failed for customer {customer_id}: {e}')
                results['errors'].append({'customer_id': customer_id, 'error': str(e)})

        return results

    # ==================== Info ====================

    def get_customer_tier_info(self, customer_id: int) -> Dict[str, Any]:
        """Current tier plus progress toward the next threshold."""
        customer = self._get_customer(customer_id)
        membership = customer.active_membership
        current_tier = membership.tier if membership else None

        tiers = self.catalog.active_tiers()
        next_tier = None
        if current_tier is not None:
            current_key = TierCatalog.sort_key(current_tier)
            for tier in tiers:
                if tier.min_spend is not None and TierCatalog.sort_key(tier) > current_key:
                    next_tier = tier
                    break

        info = {
            'customer_id': customer.id,
            'tier': current_tier.to_dict() if current_tier else None,
            'membership': membership.to_dict() if membership else None,
            'next_tier': next_tier.to_dict() if next_tier else None,
            'spend_to_next_tier': None,
            'next_tier_progress': None,
        }

        if next_tier is not None:
            spend = self.spend_for_period(customer.id, next_tier.evaluation_period)
            threshold = Decimal(str(next_tier.min_spend))
            info['spend_to_next_tier'] = float(max(threshold - spend, Decimal('0')))
            info['next_tier_progress'] = (
                float(min(spend / threshold * 100, Decimal('100')).quantize(Decimal('0.01')))
                if threshold > 0 else 100.0
            )

        return info

    # ==================== Internals ====================

    @staticmethod
    def _direction(old_tier: Tier, new_tier: Tier) -> TierChangeType:
        old_rate = Decimal(str(old_tier.cashback_percent))
        new_rate = Decimal(str(new_tier.cashback_percent))
        if new_rate != old_rate:
            upgrade = new_rate > old_rate
        else:
            upgrade = TierCatalog.sort_key(new_tier) > TierCatalog.sort_key(old_tier)
        return TierChangeType.AUTOMATIC_UPGRADE if upgrade else TierChangeType.AUTOMATIC_DOWNGRADE

    def _switch_membership(
        self,
        customer: Customer,
        current: Optional[CustomerMembership],
        new_tier: Tier,
        assignment_type: AssignmentType,
        change_type: TierChangeType,
        reason: str,
        triggered_by: str,
        end_date: datetime = None,
        deactivated_at: datetime = None,
    ) -> CustomerMembership:
        now = datetime.utcnow()
        previous_tier_id = current.tier_id if current else None

        if current is not None:
            current.is_active = False
            current.end_date = deactivated_at or now
            # Release the one-active-membership index before inserting
            db.session.flush()

        membership = CustomerMembership(
            customer_id=customer.id,
            tier_id=new_tier.id,
            is_active=True,
            assignment_type=assignment_type.value,
            start_date=now,
            end_date=end_date,
            assigned_by=triggered_by,
            reason=reason,
            previous_tier_id=previous_tier_id,
        )
        db.session.add(membership)

        db.session.add(TierChangeLog(
            customer_id=customer.id,
            from_tier_id=previous_tier_id,
            to_tier_id=new_tier.id,
            change_type=change_type.value,
            change_reason=reason,
            triggered_by=triggered_by,
            extra_data={
                'assignment_type': assignment_type.value,
                'cashback_percent': float(new_tier.cashback_percent),
            },
        ))
        db.session.flush()
        return membership
