"""
Cashback transaction model. One row per imported Shopify order.
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class TransactionStatus(str, Enum):
    PENDING = 'PENDING'
    COMPLETED = 'COMPLETED'
    SYNCED_TO_SHOPIFY = 'SYNCED_TO_SHOPIFY'
    FAILED = 'FAILED'


# Statuses whose order amount counts toward tier spend
SPEND_STATUSES = (TransactionStatus.COMPLETED.value, TransactionStatus.SYNCED_TO_SHOPIFY.value)


class CashbackTransaction(db.Model):
    __tablename__ = 'cashback_transactions'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'shopify_order_id', name='uq_transaction_tenant_order'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'), nullable=False, index=True)

    shopify_order_id = db.Column(db.String(50), nullable=False)
    shopify_order_name = db.Column(db.String(50))  # '#1004'

    order_amount = db.Column(db.Numeric(12, 2), nullable=False)
    cashback_amount = db.Column(db.Numeric(12, 2), nullable=False)
    cashback_percent = db.Column(db.Numeric(5, 2), nullable=False)  # Tier rate when processed

    status = db.Column(db.String(30), nullable=False, default=TransactionStatus.COMPLETED.value)
    # Store credit transaction that paid out the cashback
    shopify_transaction_id = db.Column(db.String(255))

    # Order date, not insert time
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<CashbackTransaction {self.shopify_order_name or self.shopify_order_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'customer_id': self.customer_id,
            'shopify_order_id': self.shopify_order_id,
            'shopify_order_name': self.shopify_order_name,
            'order_amount': float(self.order_amount),
            'cashback_amount': float(self.cashback_amount),
            'cashback_percent': float(self.cashback_percent),
            'status': self.status,
            'shopify_transaction_id': self.shopify_transaction_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
