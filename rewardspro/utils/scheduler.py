"""
Background scheduler for jobs and automated tasks.

Handles:
- One-shot import/reconciliation tasks submitted by API requests
- Daily reconciliation of stale balances (3 AM UTC)
- Daily revert of expired manual tier assignments (midnight UTC)
"""
import os
import atexit
import logging

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler = None
_flask_app = None  # Flask app reference for job context


def init_scheduler(app):
    """
    Initialize the background scheduler.

    Disabled in testing and when RUN_TASKS_INLINE is set (tasks then run
    in the request). Cron jobs are only registered with ENABLE_SCHEDULER.
    Only one gunicorn process should run cron jobs.
    """
    global _scheduler, _flask_app

    _flask_app = app

    if app.config.get('TESTING') or app.config.get('RUN_TASKS_INLINE'):
        logger.info('[Scheduler] Disabled, tasks run inline')
        return

    if _scheduler is not None and _scheduler.running:
        return

    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.cron import CronTrigger

    _scheduler = BackgroundScheduler(
        timezone='UTC',
        job_defaults={
            'coalesce': True,  # Combine missed runs
            'max_instances': 1,  # Prevent concurrent runs
            'misfire_grace_time': 3600  # 1 hour grace period
        }
    )

    cron_enabled = app.config.get('ENABLE_SCHEDULER') and os.getenv('SCHEDULER_RUNNING') != 'true'
    if cron_enabled:
        # Expired manual tiers - Daily at midnight UTC
        _scheduler.add_job(
            run_expire_manual_tiers,
            trigger=CronTrigger(hour=0, minute=0),
            id='expire_manual_tiers',
            name='Revert expired manual tier assignments',
            replace_existing=True
        )

        # Stale balance reconciliation - Daily at 3 AM UTC
        _scheduler.add_job(
            run_reconcile_all_tenants,
            trigger=CronTrigger(hour=3, minute=0),
            id='reconcile_all_tenants',
            name='Reconcile stale store credit balances',
            replace_existing=True
        )
        os.environ['SCHEDULER_RUNNING'] = 'true'

    _scheduler.start()
    logger.info(f'[Scheduler] Started ({"with" if cron_enabled else "without"} daily jobs)')

    atexit.register(shutdown_scheduler)


def shutdown_scheduler():
    """Gracefully shutdown the scheduler."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info('[Scheduler] Shutdown complete')


def submit_task(task_id: str, func, *args):
    """
    Run ``func`` in the background under ``task_id``.

    Falls back to running inline (in the caller's app context) when no
    scheduler is running, which is the case in tests.
    """
    if _scheduler is None or not _scheduler.running:
        logger.info(f'[Scheduler] Running task {task_id} inline')
        func(*args)
        return

    _scheduler.add_job(
        _run_in_app_context,
        trigger='date',
        args=[task_id, func] + list(args),
        id=task_id,
        name=task_id,
        misfire_grace_time=None,
    )
    logger.info(f'[Scheduler] Task {task_id} queued')


def _run_in_app_context(task_id, func, *args):
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    with _flask_app.app_context():
        logger.info(f'[Scheduler] Task {task_id} started')
        func(*args)
        logger.info(f'[Scheduler] Task {task_id} finished')


def run_expire_manual_tiers():
    """Revert expired manual/promotional tier assignments for all tenants."""
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    with _flask_app.app_context():
        from ..models.tenant import Tenant
        from ..services.tier_service import TierService

        for tenant in Tenant.query.filter_by(is_active=True).all():
            try:
                result = TierService(tenant.id).handle_expired_memberships()
                if result['reverted']:
                    logger.info(f'[Scheduler] Tenant {tenant.id}: reverted {result["reverted"]} tiers')
            except Exception as e:
                logger.error(f'[Scheduler] Tier expiry failed for tenant {tenant.id}: {e}')


def run_reconcile_all_tenants():
    """Queue a stale-balance reconciliation job per tenant."""
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    with _flask_app.app_context():
        from ..models.tenant import Tenant
        from ..services.reconciliation import ReconciliationService, MODE_STALE
        from .exceptions import ImportAlreadyRunningError

        for tenant in Tenant.query.filter_by(is_active=True).all():
            try:
                job = ReconciliationService(tenant.id).bulk_reconcile(MODE_STALE, started_by='system:scheduler')
                logger.info(f'[Scheduler] Tenant {tenant.id}: reconciliation job {job.id} queued')
            except ImportAlreadyRunningError:
                logger.info(f'[Scheduler] Tenant {tenant.id}: skipped, another job is running')
            except Exception as e:
                logger.error(f'[Scheduler] Reconciliation failed for tenant {tenant.id}: {e}')
