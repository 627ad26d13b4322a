"""create billing reconciliation tables

Revision ID: 0001_billing_reconciliation
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_billing_reconciliation'
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    op.create_table(
        'tenant_billing',
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('external_customer_id', sa.String(length=255), nullable=True),
        sa.Column('external_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('billing_status', sa.String(length=32), nullable=False, server_default='trial'),
        sa.Column('subscription_metadata', JSON_TYPE, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('tenant_id'),
    )
    op.create_index('ix_tenant_billing_external_customer_id', 'tenant_billing', ['external_customer_id'])
    op.create_index('ix_tenant_billing_external_subscription_id', 'tenant_billing', ['external_subscription_id'])
    op.create_index('ix_tenant_billing_billing_status', 'tenant_billing', ['billing_status'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('source', sa.String(length=50), nullable=False, server_default='asaas'),
        sa.Column('external_event_id', sa.String(length=255), nullable=True),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('payload', JSON_TYPE, nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('result', JSON_TYPE, nullable=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source', 'external_event_id', name='uq_webhook_events_source_external_id'),
    )
    op.create_index('ix_webhook_events_retry', 'webhook_events', ['status', 'attempts', 'created_at'])
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('ix_webhook_events_tenant_id', 'webhook_events', ['tenant_id'])

    op.create_table(
        'billing_plans',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_in_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=True, server_default='BRL'),
        sa.Column('cycle', sa.String(length=20), nullable=True, server_default='MONTHLY'),
        sa.Column('trial_days', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('features', JSON_TYPE, nullable=True),
        sa.Column('metadata', JSON_TYPE, nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column('is_public', sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column('sort_order', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )


def downgrade() -> None:
    op.drop_table('billing_plans')
    op.drop_index('ix_webhook_events_tenant_id', table_name='webhook_events')
    op.drop_index('ix_webhook_events_event_type', table_name='webhook_events')
    op.drop_index('ix_webhook_events_retry', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_tenant_billing_billing_status', table_name='tenant_billing')
    op.drop_index('ix_tenant_billing_external_subscription_id', table_name='tenant_billing')
    op.drop_index('ix_tenant_billing_external_customer_id', table_name='tenant_billing')
    op.drop_table('tenant_billing')
