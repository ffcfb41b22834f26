"""
Customer model.

A customer is created the first time one of their paid orders is imported.
``store_credit`` is a cached copy of the latest ledger balance and is only
written by LedgerService.append_entry.
"""
from datetime import datetime
from decimal import Decimal
from ..extensions import db


class Customer(db.Model):
    """A shop customer earning cashback."""
    __tablename__ = 'customers'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'shopify_customer_id', name='uq_customer_tenant_shopify'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)

    shopify_customer_id = db.Column(db.String(50), nullable=False)
    email = db.Column(db.String(255))

    # Balances
    store_credit = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))
    total_earned = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0'))

    # Null until the first reconciliation with Shopify
    last_synced_at = db.Column(db.DateTime)

    # Customers are deactivated, never deleted
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    memberships = db.relationship('CustomerMembership', backref='customer', lazy='dynamic')
    transactions = db.relationship('CashbackTransaction', backref='customer', lazy='dynamic')
    ledger_entries = db.relationship('StoreCreditLedger', backref='customer', lazy='dynamic')

    def __repr__(self):
        return f'<Customer {self.shopify_customer_id}>'

    @property
    def active_membership(self):
        from .tier import CustomerMembership
        return self.memberships.filter(CustomerMembership.is_active.is_(True)).first()

    @property
    def current_tier(self):
        membership = self.active_membership
        return membership.tier if membership else None

    def to_dict(self, include_tier: bool = True):
        data = {
            'id': self.id,
            'shopify_customer_id': self.shopify_customer_id,
            'email': self.email,
            'store_credit': float(self.store_credit or 0),
            'total_earned': float(self.total_earned or 0),
            'last_synced_at': self.last_synced_at.isoformat() if self.last_synced_at else None,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        if include_tier:
            tier = self.current_tier
            data['tier'] = tier.to_dict() if tier else None
        return data
