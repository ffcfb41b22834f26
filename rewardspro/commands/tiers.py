"""
CLI Commands for tier management.

Tier expiry can also run from cron:

# Revert expired manual tiers (daily at midnight)
0 0 * * * cd /app && flask tiers expire
"""
import click
from flask.cli import with_appcontext

from ..models.tenant import Tenant
from ..services.tier_service import TierService, TierCatalog
from ..utils.exceptions import RewardsProError

DEFAULT_TIERS = [
    # name, cashback %, min spend
    ('Bronze', '1', None),
    ('Silver', '2', '500'),
    ('Gold', '3', '1000'),
]


def _tenants(tenant_id):
    if tenant_id:
        tenant = Tenant.query.get(tenant_id)
        if not tenant:
            raise click.ClickException(f'Tenant {tenant_id} not found')
        return [tenant]
    return Tenant.query.filter_by(is_active=True).all()


@click.group('tiers')
def tiers_cli():
    """Tier management commands."""
    pass


@tiers_cli.command('seed')
@click.option('--tenant-id', type=int, required=True, help='Tenant to seed')
@click.option('--period', type=click.Choice(['ANNUAL', 'LIFETIME']), default='ANNUAL',
              help='Evaluation period for the seeded tiers')
@with_appcontext
def seed_tiers(tenant_id, period):
    """Create the default Bronze/Silver/Gold tiers."""
    catalog = TierCatalog(_tenants(tenant_id)[0].id)

    for name, percent, min_spend in DEFAULT_TIERS:
        try:
            tier = catalog.create_tier(name, percent, min_spend, period)
            click.echo(f'  Created {tier.name}: {percent}% (min spend {min_spend or "none"})')
        except RewardsProError as e:
            click.echo(f'  Skipped {name}: {e.message}')


@tiers_cli.command('evaluate')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@with_appcontext
def evaluate_tiers(tenant_id):
    """Re-evaluate automatic tier memberships."""
    for tenant in _tenants(tenant_id):
        click.echo(f'\nEvaluating tenant: {tenant.shopify_domain}')
        try:
            result = TierService(tenant.id).batch_evaluate(triggered_by='cli')
        except RewardsProError as e:
            click.echo(f'  Skipped: {e.message}')
            continue

        click.echo(f"  Evaluated: {result['evaluated']}")
        click.echo(f"  Changed: {result['changed']}")
        click.echo(f"  Skipped (manual): {result['skipped']}")
        if result['errors']:
            click.echo(f"  Errors: {len(result['errors'])}")
            for error in result['errors'][:5]:
                click.echo(f"    - Customer {error['customer_id']}: {error['error']}")


@tiers_cli.command('expire')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@with_appcontext
def expire_tiers(tenant_id):
    """Revert expired manual tier assignments."""
    total = 0
    for tenant in _tenants(tenant_id):
        result = TierService(tenant.id).handle_expired_memberships()
        total += result['reverted']
        if result['reverted'] or result['errors']:
            click.echo(f"{tenant.shopify_domain}: {result['reverted']} reverted, {len(result['errors'])} errors")

    click.echo(f'TOTAL: {total} reverted')


@tiers_cli.command('distribution')
@click.option('--tenant-id', type=int, required=True)
@with_appcontext
def tier_distribution(tenant_id):
    """Show customers per tier."""
    for row in TierCatalog(_tenants(tenant_id)[0].id).distribution():
        click.echo(f"  {row['tier_name']:<12} {row['member_count']:>6}  ({row['percentage']}%)")


def init_app(app):
    """Register tier commands with Flask app."""
    app.cli.add_command(tiers_cli)
