"""
Migration job record.

Tracks long-running order imports and bulk reconciliations. The
partial unique index allows one PENDING/PROCESSING job per tenant.
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class MigrationStatus(str, Enum):
    PENDING = 'PENDING'
    PROCESSING = 'PROCESSING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'


class JobKind(str, Enum):
    ORDER_IMPORT = 'order_import'
    RECONCILIATION = 'reconciliation'


ACTIVE_STATUSES = (MigrationStatus.PENDING.value, MigrationStatus.PROCESSING.value)
TERMINAL_STATUSES = (
    MigrationStatus.COMPLETED.value,
    MigrationStatus.FAILED.value,
    MigrationStatus.CANCELLED.value,
)

# Allowed status transitions
TRANSITIONS = {
    MigrationStatus.PENDING.value: {MigrationStatus.PROCESSING.value, MigrationStatus.CANCELLED.value,
                                    MigrationStatus.FAILED.value},
    MigrationStatus.PROCESSING.value: set(TERMINAL_STATUSES),
}


class MigrationHistory(db.Model):
    __tablename__ = 'migration_history'
    __table_args__ = (
        db.Index(
            'uq_migration_one_active',
            'tenant_id',
            unique=True,
            postgresql_where=db.text("status IN ('PENDING', 'PROCESSING')"),
            sqlite_where=db.text("status IN ('PENDING', 'PROCESSING')"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)

    kind = db.Column(db.String(30), nullable=False, default=JobKind.ORDER_IMPORT.value, index=True)
    status = db.Column(db.String(20), nullable=False, default=MigrationStatus.PENDING.value)

    total_records = db.Column(db.Integer, nullable=False, default=0)
    processed_records = db.Column(db.Integer, nullable=False, default=0)
    failed_records = db.Column(db.Integer, nullable=False, default=0)

    errors = db.Column(db.JSON, default=list)
    # 'metadata' is reserved on declarative models
    job_metadata = db.Column('metadata', db.JSON, default=dict)

    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f'<MigrationHistory {self.id} {self.status}>'

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        total = self.total_records or 0
        done = (self.processed_records or 0) + (self.failed_records or 0)
        return {
            'id': self.id,
            'status': self.status,
            'type': self.kind,
            'total_records': total,
            'processed_records': self.processed_records or 0,
            'failed_records': self.failed_records or 0,
            'progress_percent': round(done / total * 100, 1) if total else 0,
            'errors': self.errors or [],
            'metadata': self.job_metadata or {},
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
