"""
Store credit ledger.

Append-only record of every store credit movement. Each row stores the
signed amount and the balance after applying it, so replaying a
customer's rows in order reproduces Customer.store_credit.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, Any
from ..extensions import db


class LedgerEntryType(str, Enum):
    """Kinds of store credit movement."""
    CASHBACK_EARNED = 'CASHBACK_EARNED'
    ORDER_PAYMENT = 'ORDER_PAYMENT'        # Credit spent at checkout (negative)
    REFUND_CREDIT = 'REFUND_CREDIT'
    MANUAL_ADJUSTMENT = 'MANUAL_ADJUSTMENT'
    SHOPIFY_SYNC = 'SHOPIFY_SYNC'          # Reconciliation delta
    INITIAL_IMPORT = 'INITIAL_IMPORT'


class LedgerSource(str, Enum):
    """Where a movement originated."""
    APP_CASHBACK = 'APP_CASHBACK'
    APP_MANUAL = 'APP_MANUAL'
    SHOPIFY_ADMIN = 'SHOPIFY_ADMIN'
    SHOPIFY_ORDER = 'SHOPIFY_ORDER'
    RECONCILIATION = 'RECONCILIATION'


# Entry types that may never take a balance below zero
NON_NEGATIVE_TYPES = frozenset({
    LedgerEntryType.MANUAL_ADJUSTMENT.value,
    LedgerEntryType.ORDER_PAYMENT.value,
})


class StoreCreditLedger(db.Model):
    """
    Store credit ledger entry.

    Rows are never updated or deleted. Order within a customer is
    (created_at, id).
    """
    __tablename__ = 'store_credit_ledger'
    __table_args__ = (
        db.Index('ix_ledger_customer_order', 'customer_id', 'created_at', 'id'),
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'), nullable=False, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)   # + credit, - debit
    balance = db.Column(db.Numeric(12, 2), nullable=False)  # Balance after this entry
    type = db.Column(db.String(30), nullable=False)
    source = db.Column(db.String(30), nullable=False)

    shopify_reference = db.Column(db.String(255))  # Order GID, store credit transaction GID
    description = db.Column(db.String(500))
    reconciled_at = db.Column(db.DateTime)
    created_by = db.Column(db.String(100))  # Staff identifier or 'system'

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<StoreCreditLedger {self.type} {self.amount}>'

    def to_dict(self) -> Dict[str, Any]:
        """Serialize ledger entry to dictionary."""
        return {
            'id': self.id,
            'customer_id': self.customer_id,
            'amount': float(self.amount),
            'balance': float(self.balance),
            'type': self.type,
            'source': self.source,
            'shopify_reference': self.shopify_reference,
            'description': self.description,
            'reconciled_at': self.reconciled_at.isoformat() if self.reconciled_at else None,
            'created_by': self.created_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
