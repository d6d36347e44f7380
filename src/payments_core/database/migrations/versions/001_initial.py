"""Initial migration - create provider_credentials, payment_events, subscriptions, invoices and contributions tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create provider_credentials table
    op.create_table(
        'provider_credentials',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(255), nullable=False),
        sa.Column('provider_type', sa.String(50), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_sandbox', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('fields_json', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('tenant_id', 'provider_type', name='uq_provider_credentials_tenant_provider'),
    )
    op.create_index('ix_provider_credentials_tenant_id', 'provider_credentials', ['tenant_id'])

    # Create payment_events table; the unique key is the ledger's dedup mechanism
    op.create_table(
        'payment_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('provider_event_id', sa.String(255), nullable=False),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('confidence', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='received'),
        sa.Column('status_reason', sa.Text(), nullable=True),
        sa.Column('raw_payload', sa.Text(), nullable=False),
        sa.Column('normalized_json', sa.Text(), nullable=False),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('provider', 'provider_event_id', name='uq_payment_events_provider_event_id'),
    )
    op.create_index('ix_payment_events_status', 'payment_events', ['status'])
    op.create_index('ix_payment_events_received_at', 'payment_events', ['received_at'])

    # Create subscriptions table
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('owner_id', sa.String(255), nullable=False, unique=True),
        sa.Column('owner_type', sa.String(20), nullable=False, server_default='user'),
        sa.Column('provider', sa.String(50), nullable=False, server_default='stripe'),
        sa.Column('plan', sa.String(20), nullable=False, server_default='free'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('external_customer_id', sa.String(255), nullable=True),
        sa.Column('external_subscription_id', sa.String(255), nullable=True),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('trial_start', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_subscriptions_external_subscription_id', 'subscriptions', ['external_subscription_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    # Create invoices table
    op.create_table(
        'invoices',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('external_invoice_id', sa.String(255), nullable=False),
        sa.Column('external_subscription_id', sa.String(255), nullable=True),
        sa.Column('amount_paid', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('invoice_url', sa.Text(), nullable=True),
        sa.Column('hosted_invoice_url', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('provider', 'external_invoice_id', name='uq_invoices_provider_external_id'),
    )
    op.create_index('ix_invoices_owner_id', 'invoices', ['owner_id'])

    # Create contributions table
    op.create_table(
        'contributions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(50), nullable=True),
        sa.Column('bill_id', sa.String(255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='MYR'),
        sa.Column('contributor_name', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_contributions_tenant_id', 'contributions', ['tenant_id'])
    op.create_index('ix_contributions_bill_id', 'contributions', ['bill_id'])
    op.create_index('ix_contributions_id_bill_id', 'contributions', ['id', 'bill_id'])


def downgrade() -> None:
    op.drop_index('ix_contributions_id_bill_id', table_name='contributions')
    op.drop_index('ix_contributions_bill_id', table_name='contributions')
    op.drop_index('ix_contributions_tenant_id', table_name='contributions')
    op.drop_table('contributions')

    op.drop_index('ix_invoices_owner_id', table_name='invoices')
    op.drop_table('invoices')

    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_index('ix_subscriptions_external_subscription_id', table_name='subscriptions')
    op.drop_table('subscriptions')

    op.drop_index('ix_payment_events_received_at', table_name='payment_events')
    op.drop_index('ix_payment_events_status', table_name='payment_events')
    op.drop_table('payment_events')

    op.drop_index('ix_provider_credentials_tenant_id', table_name='provider_credentials')
    op.drop_table('provider_credentials')
