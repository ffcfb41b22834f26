"""
Tenant model for multi-tenant SaaS.
"""
from datetime import datetime
from decimal import Decimal
from ..extensions import db


class Tenant(db.Model):
    """
    A Shopify shop using the cashback program.
    Every other table is partitioned by tenant_id.
    """
    __tablename__ = 'tenants'

    id = db.Column(db.Integer, primary_key=True)
    shop_name = db.Column(db.String(255), nullable=False)

    # Shopify integration
    shopify_domain = db.Column(db.String(255), unique=True, nullable=False)
    shopify_access_token = db.Column(db.Text)  # Encrypted in production

    # Settings (JSON for flexibility)
    settings = db.Column(db.JSON, default=dict)

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    customers = db.relationship('Customer', backref='tenant', lazy='dynamic')
    tiers = db.relationship('Tier', backref='tenant', lazy='dynamic')

    def __repr__(self):
        return f'<Tenant {self.shopify_domain}>'

    def get_setting(self, key: str, default=None):
        return (self.settings or {}).get(key, default)

    def max_manual_credit(self, fallback: Decimal) -> Decimal:
        """Per-shop override of the manual credit cap."""
        override = self.get_setting('max_manual_credit')
        if override is None:
            return fallback
        return Decimal(str(override))

    def to_dict(self):
        return {
            'id': self.id,
            'shop_name': self.shop_name,
            'shopify_domain': self.shopify_domain,
            'is_active': self.is_active
        }
