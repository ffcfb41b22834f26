"""
Tier models.

- Tier: cashback level a customer qualifies for by spend
- CustomerMembership: which tier a customer holds (one active at a time)
- TierChangeLog: immutable audit trail of every tier change
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class EvaluationPeriod(str, Enum):
    """Spend window a tier threshold is measured over."""
    LIFETIME = 'LIFETIME'
    ANNUAL = 'ANNUAL'  # Rolling 12 months


class AssignmentType(str, Enum):
    """How a membership came about."""
    AUTOMATIC = 'AUTOMATIC'
    MANUAL = 'MANUAL'
    PROMOTIONAL = 'PROMOTIONAL'
    IMPORTED = 'IMPORTED'


class TierChangeType(str, Enum):
    """Audit categories for tier changes."""
    INITIAL_ASSIGNMENT = 'INITIAL_ASSIGNMENT'
    AUTOMATIC_UPGRADE = 'AUTOMATIC_UPGRADE'
    AUTOMATIC_DOWNGRADE = 'AUTOMATIC_DOWNGRADE'
    MANUAL_OVERRIDE = 'MANUAL_OVERRIDE'
    EXPIRATION_REVERT = 'EXPIRATION_REVERT'


class Tier(db.Model):
    """
    Cashback tier.

    ``min_spend`` is null for the base tier every new customer starts on.
    """
    __tablename__ = 'tiers'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'name', name='uq_tier_tenant_name'),
        db.Index(
            'uq_tier_one_active_base',
            'tenant_id',
            unique=True,
            postgresql_where=db.text('min_spend IS NULL AND is_active'),
            sqlite_where=db.text('min_spend IS NULL AND is_active = 1'),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)

    name = db.Column(db.String(100), nullable=False)
    cashback_percent = db.Column(db.Numeric(5, 2), nullable=False)
    min_spend = db.Column(db.Numeric(12, 2))
    evaluation_period = db.Column(db.String(20), nullable=False, default=EvaluationPeriod.ANNUAL.value)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<Tier {self.name} {self.cashback_percent}%>'

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'cashback_percent': float(self.cashback_percent),
            'min_spend': float(self.min_spend) if self.min_spend is not None else None,
            'evaluation_period': self.evaluation_period,
            'is_active': self.is_active,
        }


class CustomerMembership(db.Model):
    """A customer's tier assignment. History is kept by deactivating rows."""
    __tablename__ = 'customer_memberships'
    __table_args__ = (
        db.Index(
            'uq_membership_one_active',
            'customer_id',
            unique=True,
            postgresql_where=db.text('is_active'),
            sqlite_where=db.text('is_active = 1'),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'), nullable=False, index=True)
    tier_id = db.Column(db.Integer, db.ForeignKey('tiers.id'), nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    assignment_type = db.Column(db.String(20), nullable=False, default=AssignmentType.AUTOMATIC.value)

    start_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    end_date = db.Column(db.DateTime)  # Set on deactivation, or expiry for manual assignments

    assigned_by = db.Column(db.String(100))
    reason = db.Column(db.String(500))
    previous_tier_id = db.Column(db.Integer, db.ForeignKey('tiers.id'))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    tier = db.relationship('Tier', foreign_keys=[tier_id])
    previous_tier = db.relationship('Tier', foreign_keys=[previous_tier_id])

    def __repr__(self):
        return f'<CustomerMembership customer={self.customer_id} tier={self.tier_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'customer_id': self.customer_id,
            'tier_id': self.tier_id,
            'tier_name': self.tier.name if self.tier else None,
            'is_active': self.is_active,
            'assignment_type': self.assignment_type,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'assigned_by': self.assigned_by,
            'reason': self.reason,
            'previous_tier_id': self.previous_tier_id,
        }


class TierChangeLog(db.Model):
    """Immutable record of a tier change."""
    __tablename__ = 'tier_change_logs'

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'), nullable=False, index=True)

    from_tier_id = db.Column(db.Integer, db.ForeignKey('tiers.id'))
    to_tier_id = db.Column(db.Integer, db.ForeignKey('tiers.id'), nullable=False)

    change_type = db.Column(db.String(30), nullable=False)
    change_reason = db.Column(db.String(500))
    triggered_by = db.Column(db.String(100))  # 'system', 'import:<job id>', staff email
    extra_data = db.Column(db.JSON, default=dict)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    from_tier = db.relationship('Tier', foreign_keys=[from_tier_id])
    to_tier = db.relationship('Tier', foreign_keys=[to_tier_id])

    def to_dict(self):
        return {
            'id': self.id,
            'customer_id': self.customer_id,
            'from_tier': self.from_tier.name if self.from_tier else None,
            'to_tier': self.to_tier.name if self.to_tier else None,
            'change_type': self.change_type,
            'change_reason': self.change_reason,
            'triggered_by': self.triggered_by,
            'extra_data': self.extra_data or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
