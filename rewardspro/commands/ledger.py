"""
CLI Commands for the store credit ledger and reconciliation.
"""
import click
from flask.cli import with_appcontext

from ..models import Tenant, JobKind
from ..services.ledger_service import LedgerService
from ..services.reconciliation import ReconciliationService, MODE_STALE, MODE_ALL


@click.group('ledger')
def ledger_cli():
    """Store credit ledger commands."""
    pass


@ledger_cli.command('verify')
@click.option('--tenant-id', type=int, required=True)
@with_appcontext
def verify_ledgers(tenant_id):
    """Replay every customer's ledger and report balance mismatches."""
    tenant = Tenant.query.get(tenant_id)
    if not tenant:
        raise click.ClickException(f'Tenant {tenant_id} not found')

    result = LedgerService(tenant.id).verify_all()
    click.echo(f"Checked {result['checked']} customers")

    if result['violations']:
        for violation in result['violations']:
            click.echo(f"  - {violation['error']}", err=True)
        raise click.ClickException(f"{len(result['violations'])} ledger violations")

    click.echo('All ledgers consistent')


@click.group('reconcile')
def reconcile_cli():
    """Shopify reconciliation commands."""
    pass


@reconcile_cli.command('run')
@click.option('--tenant-id', type=int, required=True)
@click.option('--all', 'reconcile_all', is_flag=True, help='Include recently synced customers')
@with_appcontext
def run_reconciliation(tenant_id, reconcile_all):
    """Reconcile balances with Shopify (runs in the foreground)."""
    tenant = Tenant.query.get(tenant_id)
    if not tenant:
        raise click.ClickException(f'Tenant {tenant_id} not found')

    service = ReconciliationService(tenant.id)
    job = service.tracker.create_job(JobKind.RECONCILIATION, {
        'mode': MODE_ALL if reconcile_all else MODE_STALE,
        'startedBy': 'cli',
    })
    results = service.run_bulk_job(job.id)
    job = service.tracker.get_job(job.id, refresh=True)

    click.echo(f'Job {job.id}: {job.status}')
    click.echo(f"  Customers: {job.total_records}")
    click.echo(f"  Adjusted: {results['adjusted']}")
    click.echo(f"  Failed: {job.failed_records}")


def init_app(app):
    """Register ledger and reconciliation commands with Flask app."""
    app.cli.add_command(ledger_cli)
    app.cli.add_command(reconcile_cli)
