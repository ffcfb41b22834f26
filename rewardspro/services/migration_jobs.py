"""
Migration Job Tracker.

Lifecycle of import and reconciliation jobs:

    PENDING -> PROCESSING -> COMPLETED | FAILED | CANCELLED
    PENDING -> CANCELLED

Status changes are compare-and-set UPDATEs filtered on the current status,
so a job is closed exactly once even if the worker and a cancel request
race. One PENDING/PROCESSING job per tenant is enforced by a pre-check
and the uq_migration_one_active partial index.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import MigrationHistory, MigrationStatus, JobKind
from ..models.migration import ACTIVE_STATUSES, TRANSITIONS
from ..utils.exceptions import (
    ImportAlreadyRunningError,
    InvalidStatusTransitionError,
    JobNotFoundError,
)

logger = logging.getLogger(__name__)


class JobTracker:
    """Creates and advances MigrationHistory rows for one tenant."""

    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id

    # ==================== Lookup ====================

    def get_job(self, job_id: int, refresh: bool = False) -> MigrationHistory:
        query = MigrationHistory.query.filter_by(id=job_id, tenant_id=self.tenant_id)
        if refresh:
            query = query.populate_existing()
        job = query.first()
        if not job:
            raise JobNotFoundError(job_id)
        return job

    def active_job(self) -> Optional[MigrationHistory]:
        return MigrationHistory.query.filter(
            MigrationHistory.tenant_id == self.tenant_id,
            MigrationHistory.status.in_(ACTIVE_STATUSES),
        ).first()

    def list_jobs(self, limit: int = 20, kind: str = None) -> List[MigrationHistory]:
        query = MigrationHistory.query.filter_by(tenant_id=self.tenant_id)
        if kind:
            query = query.filter_by(kind=getattr(kind, 'value', kind))
        return (
            query
            .order_by(MigrationHistory.created_at.desc(), MigrationHistory.id.desc())
            .limit(limit)
            .all()
        )

    # ==================== Creation ====================

    def create_job(self, kind: JobKind, metadata: Dict[str, Any] = None) -> MigrationHistory:
        """
        Create a PENDING job.

        Raises:
            ImportAlreadyRunningError: Another job is pending or processing
        """
        existing = self.active_job()
        if existing:
            raise ImportAlreadyRunningError(existing.id)

        job = MigrationHistory(
            tenant_id=self.tenant_id,
            kind=getattr(kind, 'value', kind),
            status=MigrationStatus.PENDING.value,
            errors=[],
            job_metadata=dict(metadata or {}),
        )
        db.session.add(job)

        try:
            db.session.commit()
        except IntegrityError:
            # Lost the race to a concurrent start
            db.session.rollback()
            existing = self.active_job()
            raise ImportAlreadyRunningError(existing.id if existing else None)

        logger.info(f'Job {job.id} ({job.kind}) created for tenant {self.tenant_id}')
        return job

    # ==================== Transitions ====================

    def _transition(self, job_id: int, to_status: MigrationStatus, values: Dict = None) -> bool:
        """Compare-and-set the status. Returns False if the job was not in an allowed state."""
        to_status = to_status.value
        from_statuses = [s for s, targets in TRANSITIONS.items() if to_status in targets]

        updates = {MigrationHistory.status: to_status}
        for key, value in (values or {}).items():
            updates[getattr(MigrationHistory, key)] = value

        updated = (
            MigrationHistory.query
            .filter(
                MigrationHistory.id == job_id,
                MigrationHistory.tenant_id == self.tenant_id,
                MigrationHistory.status.in_(from_statuses),
            )
            .update(updates, synchronize_session=False)
        )
        db.session.commit()
        return updated == 1

    def start(self, job_id: int) -> bool:
        started = self._transition(job_id, MigrationStatus.PROCESSING, {'started_at': datetime.utcnow()})
        if started:
            logger.info(f'Job {job_id} processing')
        return started

    def complete(self, job_id: int, results: Dict[str, Any] = None) -> bool:
        return self._close(job_id, MigrationStatus.COMPLETED, results)

    def fail(self, job_id: int, error: str, results: Dict[str, Any] = None) -> bool:
        job = self.get_job(job_id, refresh=True)
        errors = self._bounded((job.errors or []) + [error])
        results = dict(results or {}, error=error)
        closed = self._close(job_id, MigrationStatus.FAILED, results, {'errors': errors})
        if closed:
            logger.error(f'Job {job_id} failed: {error}')
        return closed

    def cancel(self, job_id: int) -> MigrationHistory:
        """
        Request cancellation. A processing job stops at its next page boundary.

        Raises:
            InvalidStatusTransitionError: The job already finished
        """
        job = self.get_job(job_id, refresh=True)
        if not self._close(job_id, MigrationStatus.CANCELLED):
            job = self.get_job(job_id, refresh=True)
            raise InvalidStatusTransitionError('job', job.status, MigrationStatus.CANCELLED.value)

        logger.info(f'Job {job_id} cancelled')
        return self.get_job(job.id, refresh=True)

    def _close(self, job_id: int, status: MigrationStatus, results: Dict = None, values: Dict = None) -> bool:
        values = dict(values or {}, completed_at=datetime.utcnow())
        if results is not None:
            job = self.get_job(job_id, refresh=True)
            metadata = dict(job.job_metadata or {})
            metadata['results'] = dict(metadata.get('results') or {}, **results)
            values['job_metadata'] = metadata
        return self._transition(job_id, status, values)

    # ==================== Progress ====================

    def record_progress(
        self,
        job_id: int,
        total: int,
        processed: int,
        failed: int,
        new_errors: List[str] = None,
    ) -> None:
        """Write running counters and append errors, keeping at most MAX_JOB_ERRORS."""
        job = self.get_job(job_id, refresh=True)
        job.total_records = total
        job.processed_records = processed
        job.failed_records = failed
        if new_errors:
            job.errors = self._bounded((job.errors or []) + list(new_errors))
        db.session.commit()

    def is_cancelled(self, job_id: int) -> bool:
        return self.get_job(job_id, refresh=True).status == MigrationStatus.CANCELLED.value

    @staticmethod
    def _bounded(errors: List[str]) -> List[str]:
        return errors[:current_app.config.get('MAX_JOB_ERRORS', 100)]


class ImportTask:
    """
    Background unit of work for one job.

    Submitted to the task scheduler under ``task_id`` so the job record
    and the running task share an identity.
    """

    def __init__(self, job_id: int, tenant_id: int, kind: str):
        self.job_id = job_id
        self.tenant_id = tenant_id
        self.kind = getattr(kind, 'value', kind)

    @property
    def task_id(self) -> str:
        return f'{self.kind}-{self.job_id}'

    def __repr__(self):
        return f'<ImportTask {self.task_id}>'

    def run(self) -> None:
        """Execute the job. Any unexpected error closes it as FAILED."""
        tracker = JobTracker(self.tenant_id)
        try:
            if self.kind == JobKind.ORDER_IMPORT.value:
                from .order_import import OrderImportService
                OrderImportService(self.tenant_id).run_import(self.job_id)
            elif self.kind == JobKind.RECONCILIATION.value:
                from .reconciliation import ReconciliationService
                ReconciliationService(self.tenant_id).run_bulk_job(self.job_id)
            else:
                raise ValueError(f'Unknown job kind {self.kind}')
        except Exception as e:
            db.session.rollback()
            logger.exception(f'{self!r} crashed')
            tracker.fail(self.job_id, f'Unexpected error: {e}')


def submit(task: ImportTask) -> None:
    """Hand a task to the background scheduler (or run it inline)."""
    from ..utils.scheduler import submit_task
    submit_task(task.task_id, task.run)
