"""
Per-customer spend analytics, recomputed after imports and tier evaluation.
"""
from datetime import datetime
from decimal import Decimal
from ..extensions import db


class CustomerAnalytics(db.Model):
    __tablename__ = 'customer_analytics'

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'), nullable=False, unique=True)

    # Spending windows
    lifetime_spending = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))
    yearly_spending = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))
    quarterly_spending = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))
    monthly_spending = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))

    avg_order_value = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))
    order_count = db.Column(db.Integer, nullable=False, default=0)
    last_order_date = db.Column(db.DateTime)
    days_since_last_order = db.Column(db.Integer)

    # Tier standing
    current_tier_days = db.Column(db.Integer, nullable=False, default=0)
    tier_upgrade_count = db.Column(db.Integer, nullable=False, default=0)
    last_tier_change = db.Column(db.DateTime)
    next_tier_progress = db.Column(db.Numeric(5, 2))  # 0-100, null at top tier

    calculated_at = db.Column(db.DateTime, default=datetime.utcnow)

    customer = db.relationship('Customer', backref=db.backref('analytics', uselist=False))

    def to_dict(self):
        return {
            'customer_id': self.customer_id,
            'lifetime_spending': float(self.lifetime_spending),
            'yearly_spending': float(self.yearly_spending),
            'quarterly_spending': float(self.quarterly_spending),
            'monthly_spending': float(self.monthly_spending),
            'avg_order_value': float(self.avg_order_value),
            'order_count': self.order_count,
            'last_order_date': self.last_order_date.isoformat() if self.last_order_date else None,
            'days_since_last_order': self.days_since_last_order,
            'current_tier_days': self.current_tier_days,
            'tier_upgrade_count': self.tier_upgrade_count,
            'last_tier_change': self.last_tier_change.isoformat() if self.last_tier_change else None,
            'next_tier_progress': float(self.next_tier_progress) if self.next_tier_progress is not None else None,
            'calculated_at': self.calculated_at.isoformat() if self.calculated_at else None,
        }
