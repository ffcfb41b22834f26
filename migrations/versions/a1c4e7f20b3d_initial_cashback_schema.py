"""Initial cashback ledger schema

Revision ID: a1c4e7f20b3d
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1c4e7f20b3d'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create tenants, customers, tiers, transactions, ledger, jobs and analytics."""
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop_name', sa.String(255), nullable=False),
        sa.Column('shopify_domain', sa.String(255), nullable=False),
        sa.Column('shopify_access_token', sa.Text(), nullable=True),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shopify_domain')
    )

    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('shopify_customer_id', sa.String(50), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('store_credit', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_earned', sa.Numeric(12, 2), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'shopify_customer_id', name='uq_customer_tenant_shopify')
    )
    op.create_index('ix_customers_tenant_id', 'customers', ['tenant_id'])

    op.create_table(
        'tiers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('cashback_percent', sa.Numeric(5, 2), nullable=False),
        sa.Column('min_spend', sa.Numeric(12, 2), nullable=True),
        sa.Column('evaluation_period', sa.String(20), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'name', name='uq_tier_tenant_name')
    )
    op.create_index('ix_tiers_tenant_id', 'tiers', ['tenant_id'])
    # One active base tier (no min_spend) per tenant
    op.create_index(
        'uq_tier_one_active_base', 'tiers', ['tenant_id'], unique=True,
        postgresql_where=sa.text('min_spend IS NULL AND is_active'),
        sqlite_where=sa.text('min_spend IS NULL AND is_active = 1')
    )

    op.create_table(
        'customer_memberships',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('tier_id', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('assignment_type', sa.String(20), nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('assigned_by', sa.String(100), nullable=True),
        sa.Column('reason', sa.String(500), nullable=True),
        sa.Column('previous_tier_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.ForeignKeyConstraint(['tier_id'], ['tiers.id']),
        sa.ForeignKeyConstraint(['previous_tier_id'], ['tiers.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_customer_memberships_customer_id', 'customer_memberships', ['customer_id'])
    # One active membership per customer
    op.create_index(
        'uq_membership_one_active', 'customer_memberships', ['customer_id'], unique=True,
        postgresql_where=sa.text('is_active'),
        sqlite_where=sa.text('is_active = 1')
    )

    op.create_table(
        'tier_change_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('from_tier_id', sa.Integer(), nullable=True),
        sa.Column('to_tier_id', sa.Integer(), nullable=False),
        sa.Column('change_type', sa.String(30), nullable=False),
        sa.Column('change_reason', sa.String(500), nullable=True),
        sa.Column('triggered_by', sa.String(100), nullable=True),
        sa.Column('extra_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.ForeignKeyConstraint(['from_tier_id'], ['tiers.id']),
        sa.ForeignKeyConstraint(['to_tier_id'], ['tiers.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_tier_change_logs_customer_id', 'tier_change_logs', ['customer_id'])
    op.create_index('ix_tier_change_logs_created_at', 'tier_change_logs', ['created_at'])

    op.create_table(
        'cashback_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('shopify_order_id', sa.String(50), nullable=False),
        sa.Column('shopify_order_name', sa.String(50), nullable=True),
        sa.Column('order_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('cashback_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('cashback_percent', sa.Numeric(5, 2), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('shopify_transaction_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'shopify_order_id', name='uq_transaction_tenant_order')
    )
    op.create_index('ix_cashback_transactions_tenant_id', 'cashback_transactions', ['tenant_id'])
    op.create_index('ix_cashback_transactions_customer_id', 'cashback_transactions', ['customer_id'])
    op.create_index('ix_cashback_transactions_created_at', 'cashback_transactions', ['created_at'])

    op.create_table(
        'store_credit_ledger',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('balance', sa.Numeric(12, 2), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('source', sa.String(30), nullable=False),
        sa.Column('shopify_reference', sa.String(255), nullable=True),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('reconciled_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_store_credit_ledger_customer_id', 'store_credit_ledger', ['customer_id'])
    op.create_index('ix_ledger_customer_order', 'store_credit_ledger', ['customer_id', 'created_at', 'id'])

    op.create_table(
        'migration_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(30), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('total_records', sa.Integer(), nullable=False),
        sa.Column('processed_records', sa.Integer(), nullable=False),
        sa.Column('failed_records', sa.Integer(), nullable=False),
        sa.Column('errors', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_migration_history_tenant_id', 'migration_history', ['tenant_id'])
    op.create_index('ix_migration_history_created_at', 'migration_history', ['created_at'])
    op.create_index('ix_migration_history_kind', 'migration_history', ['kind'])
    # One pending/processing job per tenant
    op.create_index(
        'uq_migration_one_active', 'migration_history', ['tenant_id'], unique=True,
        postgresql_where=sa.text("status IN ('PENDING', 'PROCESSING')"),
        sqlite_where=sa.text("status IN ('PENDING', 'PROCESSING')")
    )

    op.create_table(
        'customer_analytics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('lifetime_spending', sa.Numeric(12, 2), nullable=False),
        sa.Column('yearly_spending', sa.Numeric(12, 2), nullable=False),
        sa.Column('quarterly_spending', sa.Numeric(12, 2), nullable=False),
        sa.Column('monthly_spending', sa.Numeric(12, 2), nullable=False),
        sa.Column('avg_order_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('order_count', sa.Integer(), nullable=False),
        sa.Column('last_order_date', sa.DateTime(), nullable=True),
        sa.Column('days_since_last_order', sa.Integer(), nullable=True),
        sa.Column('current_tier_days', sa.Integer(), nullable=False),
        sa.Column('tier_upgrade_count', sa.Integer(), nullable=False),
        sa.Column('last_tier_change', sa.DateTime(), nullable=True),
        sa.Column('next_tier_progress', sa.Numeric(5, 2), nullable=True),
        sa.Column('calculated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('customer_id')
    )


def downgrade():
    """Drop the cashback schema."""
    op.drop_table('customer_analytics')
    op.drop_index('uq_migration_one_active', 'migration_history')
    op.drop_index('ix_migration_history_kind', 'migration_history')
    op.drop_index('ix_migration_history_created_at', 'migration_history')
    op.drop_index('ix_migration_history_tenant_id', 'migration_history')
    op.drop_table('migration_history')
    op.drop_index('ix_ledger_customer_order', 'store_credit_ledger')
    op.drop_index('ix_store_credit_ledger_customer_id', 'store_credit_ledger')
    op.drop_table('store_credit_ledger')
    op.drop_index('ix_cashback_transactions_created_at', 'cashback_transactions')
    op.drop_index('ix_cashback_transactions_customer_id', 'cashback_transactions')
    op.drop_index('ix_cashback_transactions_tenant_id', 'cashback_transactions')
    op.drop_table('cashback_transactions')
    op.drop_index('ix_tier_change_logs_created_at', 'tier_change_logs')
    op.drop_index('ix_tier_change_logs_customer_id', 'tier_change_logs')
    op.drop_table('tier_change_logs')
    op.drop_index('uq_membership_one_active', 'customer_memberships')
    op.drop_index('ix_customer_memberships_customer_id', 'customer_memberships')
    op.drop_table('customer_memberships')
    op.drop_index('uq_tier_one_active_base', 'tiers')
    op.drop_index('ix_tiers_tenant_id', 'tiers')
    op.drop_table('tiers')
    op.drop_index('ix_customers_tenant_id', 'customers')
    op.drop_table('customers')
    op.drop_table('tenants')
