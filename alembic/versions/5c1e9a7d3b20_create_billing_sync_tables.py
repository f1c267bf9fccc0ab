"""Create billing sync tables

Revision ID: 5c1e9a7d3b20
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5c1e9a7d3b20'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('organizations',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('processor_account_ref', sa.String(length=255), nullable=True),
        sa.Column('status', sa.Enum('PENDING', 'ONBOARDING_STARTED', 'ACTIVE', 'BLOCKED', name='organizationstatus'), nullable=False),
        sa.Column('charges_enabled', sa.Boolean(), nullable=False),
        sa.Column('payouts_enabled', sa.Boolean(), nullable=False),
        sa.Column('details_submitted', sa.Boolean(), nullable=False),
        sa.Column('onboarded_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_organizations_id'), 'organizations', ['id'], unique=False)
    op.create_index(op.f('ix_organizations_processor_account_ref'), 'organizations', ['processor_account_ref'], unique=True)

    op.create_table('customers',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('organization_id', sa.UUID(), nullable=False),
        sa.Column('external_id', sa.String(length=255), nullable=True),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('billing_address', sa.JSON(), nullable=True),
        sa.Column('processor_customer_ref', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_customers_id'), 'customers', ['id'], unique=False)
    op.create_index(op.f('ix_customers_organization_id'), 'customers', ['organization_id'], unique=False)
    op.create_index(op.f('ix_customers_processor_customer_ref'), 'customers', ['processor_customer_ref'], unique=False)
    op.create_index(
        'uq_customers_org_external_id', 'customers', ['organization_id', 'external_id'], unique=True,
        postgresql_where=sa.text('external_id IS NOT NULL AND is_deleted = false')
    )
    op.create_index(
        'uq_customers_org_email', 'customers', ['organization_id', 'email'], unique=True,
        postgresql_where=sa.text('is_deleted = false')
    )

    op.create_table('products',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('organization_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('recurring_interval', sa.Enum('MONTH', 'YEAR', name='billinginterval'), nullable=False),
        sa.Column('recurring_interval_count', sa.Integer(), nullable=False),
        sa.Column('trial_days', sa.Integer(), nullable=False),
        sa.Column('processor_product_ref', sa.String(length=255), nullable=True),
        sa.Column('is_archived', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_products_id'), 'products', ['id'], unique=False)
    op.create_index(op.f('ix_products_organization_id'), 'products', ['organization_id'], unique=False)

    op.create_table('product_prices',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('product_id', sa.UUID(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('processor_price_ref', sa.String(length=255), nullable=True),
        sa.Column('is_archived', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_product_prices_id'), 'product_prices', ['id'], unique=False)
    op.create_index(op.f('ix_product_prices_product_id'), 'product_prices', ['product_id'], unique=False)
    op.create_index(op.f('ix_product_prices_processor_price_ref'), 'product_prices', ['processor_price_ref'], unique=False)

    op.create_table('features',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('organization_id', sa.UUID(), nullable=False),
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('feature_type', sa.Enum('BOOLEAN_FLAG', 'USAGE_QUOTA', 'NUMERIC_LIMIT', name='featuretype'), nullable=False),
        sa.Column('properties', sa.JSON(), nullable=False),
        sa.Column('processor_feature_ref', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_features_id'), 'features', ['id'], unique=False)
    op.create_index(op.f('ix_features_organization_id'), 'features', ['organization_id'], unique=False)
    op.create_index(op.f('ix_features_processor_feature_ref'), 'features', ['processor_feature_ref'], unique=False)

    op.create_table('product_features',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('product_id', sa.UUID(), nullable=False),
        sa.Column('feature_id', sa.UUID(), nullable=False),
        sa.Column('config', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['feature_id'], ['features.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'feature_id', name='uq_product_features_product_feature')
    )
    op.create_index(op.f('ix_product_features_id'), 'product_features', ['id'], unique=False)
    op.create_index(op.f('ix_product_features_product_id'), 'product_features', ['product_id'], unique=False)
    op.create_index(op.f('ix_product_features_feature_id'), 'product_features', ['feature_id'], unique=False)

    op.create_table('subscriptions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('organization_id', sa.UUID(), nullable=False),
        sa.Column('customer_id', sa.UUID(), nullable=False),
        sa.Column('product_id', sa.UUID(), nullable=False),
        sa.Column('price_id', sa.UUID(), nullable=False),
        sa.Column('status', sa.Enum('ACTIVE', 'TRIALING', 'PAST_DUE', 'INCOMPLETE', 'CANCELED', 'CANCELLED', 'ENDED', name='subscriptionstatus'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('trial_start', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('processor_subscription_ref', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id']),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['price_id'], ['product_prices.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_subscriptions_id'), 'subscriptions', ['id'], unique=False)
    op.create_index(op.f('ix_subscriptions_organization_id'), 'subscriptions', ['organization_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_customer_id'), 'subscriptions', ['customer_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_status'), 'subscriptions', ['status'], unique=False)
    op.create_index(op.f('ix_subscriptions_processor_subscription_ref'), 'subscriptions', ['processor_subscription_ref'], unique=True)

    op.create_table('feature_grants',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('customer_id', sa.UUID(), nullable=False),
        sa.Column('subscription_id', sa.UUID(), nullable=True),
        sa.Column('feature_id', sa.UUID(), nullable=False),
        sa.Column('granted_at', sa.DateTime(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('properties', sa.JSON(), nullable=False),
        sa.Column('processor_entitlement_ref', sa.String(length=255), nullable=True),
        sa.Column('sync_status', sa.Enum('PENDING', 'SYNCED', 'FAILED', name='grantsyncstatus'), nullable=False),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.ForeignKeyConstraint(['feature_id'], ['features.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_feature_grants_id'), 'feature_grants', ['id'], unique=False)
    op.create_index(op.f('ix_feature_grants_customer_id'), 'feature_grants', ['customer_id'], unique=False)
    op.create_index(op.f('ix_feature_grants_subscription_id'), 'feature_grants', ['subscription_id'], unique=False)
    op.create_index(op.f('ix_feature_grants_feature_id'), 'feature_grants', ['feature_id'], unique=False)
    op.create_index(op.f('ix_feature_grants_processor_entitlement_ref'), 'feature_grants', ['processor_entitlement_ref'], unique=False)

    op.create_table('usage_records',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('customer_id', sa.UUID(), nullable=False),
        sa.Column('feature_id', sa.UUID(), nullable=False),
        sa.Column('subscription_id', sa.UUID(), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('consumed_units', sa.Integer(), nullable=False),
        sa.Column('limit_units', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.ForeignKeyConstraint(['feature_id'], ['features.id']),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subscription_id', 'feature_id', 'period_start', name='uq_usage_records_period')
    )
    op.create_index(op.f('ix_usage_records_id'), 'usage_records', ['id'], unique=False)
    op.create_index(op.f('ix_usage_records_customer_id'), 'usage_records', ['customer_id'], unique=False)
    op.create_index(op.f('ix_usage_records_subscription_id'), 'usage_records', ['subscription_id'], unique=False)

    op.create_table('subscription_changes',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('subscription_id', sa.UUID(), nullable=False),
        sa.Column('organization_id', sa.UUID(), nullable=False),
        sa.Column('change_type', sa.Enum('UPGRADE', 'DOWNGRADE', 'LATERAL', name='changetype'), nullable=False),
        sa.Column('from_price_id', sa.UUID(), nullable=False),
        sa.Column('to_price_id', sa.UUID(), nullable=False),
        sa.Column('from_amount', sa.Integer(), nullable=False),
        sa.Column('to_amount', sa.Integer(), nullable=False),
        sa.Column('proration_credit', sa.Integer(), nullable=False),
        sa.Column('proration_charge', sa.Integer(), nullable=False),
        sa.Column('net_amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.Enum('SCHEDULED', 'PROCESSING', 'COMPLETED', 'FAILED', name='changestatus'), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_reason', sa.Text(), nullable=True),
        sa.Column('processor_invoice_ref', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id']),
        sa.ForeignKeyConstraint(['from_price_id'], ['product_prices.id']),
        sa.ForeignKeyConstraint(['to_price_id'], ['product_prices.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_subscription_changes_id'), 'subscription_changes', ['id'], unique=False)
    op.create_index(op.f('ix_subscription_changes_subscription_id'), 'subscription_changes', ['subscription_id'], unique=False)
    op.create_index(op.f('ix_subscription_changes_organization_id'), 'subscription_changes', ['organization_id'], unique=False)
    op.create_index(op.f('ix_subscription_changes_status'), 'subscription_changes', ['status'], unique=False)
    op.create_index(op.f('ix_subscription_changes_scheduled_for'), 'subscription_changes', ['scheduled_for'], unique=False)

    op.create_table('checkout_metadata',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('organization_id', sa.UUID(), nullable=False),
        sa.Column('customer_id', sa.UUID(), nullable=True),
        sa.Column('product_id', sa.UUID(), nullable=False),
        sa.Column('price_id', sa.UUID(), nullable=False),
        sa.Column('customer_email', sa.String(length=320), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('customer_external_id', sa.String(length=255), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('price_amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('billing_interval', sa.String(length=20), nullable=False),
        sa.Column('billing_interval_count', sa.Integer(), nullable=False),
        sa.Column('trial_period_days', sa.Integer(), nullable=True),
        sa.Column('success_url', sa.Text(), nullable=True),
        sa.Column('cancel_url', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'EXPIRED', 'FAILED', name='checkoutstatus'), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('checkout_session_ref', sa.String(length=255), nullable=True),
        sa.Column('subscription_id', sa.UUID(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id']),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['price_id'], ['product_prices.id']),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_checkout_metadata_id'), 'checkout_metadata', ['id'], unique=False)
    op.create_index(op.f('ix_checkout_metadata_organization_id'), 'checkout_metadata', ['organization_id'], unique=False)
    op.create_index(op.f('ix_checkout_metadata_status'), 'checkout_metadata', ['status'], unique=False)
    op.create_index(op.f('ix_checkout_metadata_expires_at'), 'checkout_metadata', ['expires_at'], unique=False)
    op.create_index(op.f('ix_checkout_metadata_checkout_session_ref'), 'checkout_metadata', ['checkout_session_ref'], unique=False)

    op.create_table('webhook_events',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('livemode', sa.Boolean(), nullable=False),
        sa.Column('account_id', sa.String(length=255), nullable=True),
        sa.Column('api_version', sa.String(length=50), nullable=True),
        sa.Column('status', sa.Enum('PENDING', 'PROCESSED', 'FAILED', name='webhookeventstatus'), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_webhook_events_id'), 'webhook_events', ['id'], unique=False)
    op.create_index(op.f('ix_webhook_events_event_id'), 'webhook_events', ['event_id'], unique=True)
    op.create_index(op.f('ix_webhook_events_event_type'), 'webhook_events', ['event_type'], unique=False)

    op.create_table('reconciliation_queue',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('type', sa.Enum(
            'AUTOMATIC_REFUND', 'REFUND_FAILED', 'SYNC_FAILED', 'WEBHOOK_PROCESSING_FAILED',
            'SCHEDULED_CHANGE_FAILED', 'COMPENSATION_FAILED', name='reconciliationtype'
        ), nullable=False),
        sa.Column('reference_id', sa.String(length=255), nullable=False),
        sa.Column('status', sa.Enum(
            'PENDING', 'COMPLETED', 'PENDING_MANUAL_REVIEW', 'MANUAL_REVIEW', 'RESOLVED',
            name='reconciliationstatus'
        ), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('resolved_by', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('priority >= 1 AND priority <= 10', name='ck_reconciliation_queue_priority'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_reconciliation_queue_id'), 'reconciliation_queue', ['id'], unique=False)
    op.create_index(op.f('ix_reconciliation_queue_type'), 'reconciliation_queue', ['type'], unique=False)
    op.create_index(op.f('ix_reconciliation_queue_reference_id'), 'reconciliation_queue', ['reference_id'], unique=False)
    op.create_index(op.f('ix_reconciliation_queue_status'), 'reconciliation_queue', ['status'], unique=False)

    op.create_table('refunds',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('payment_ref', sa.String(length=255), nullable=False),
        sa.Column('processor_refund_ref', sa.String(length=255), nullable=True),
        sa.Column('processor_account_ref', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('initiated_by', sa.Enum('AUTOMATIC', 'MANUAL', name='refundinitiator'), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('processor_refund_ref')
    )
    op.create_index(op.f('ix_refunds_id'), 'refunds', ['id'], unique=False)
    op.create_index(op.f('ix_refunds_payment_ref'), 'refunds', ['payment_ref'], unique=False)

    op.create_table('sync_events',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('organization_id', sa.UUID(), nullable=True),
        sa.Column('entity_type', sa.String(length=50), nullable=False),
        sa.Column('entity_id', sa.UUID(), nullable=True),
        sa.Column('processor_object_ref', sa.String(length=255), nullable=False),
        sa.Column('operation', sa.Enum('CREATE', 'UPDATE', 'DELETE', name='syncoperation'), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('triggered_by', sa.String(length=50), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_events_id'), 'sync_events', ['id'], unique=False)
    op.create_index(op.f('ix_sync_events_organization_id'), 'sync_events', ['organization_id'], unique=False)

    op.create_table('advisory_locks',
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('owner', sa.String(length=64), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('key')
    )
    op.create_index(op.f('ix_advisory_locks_expires_at'), 'advisory_locks', ['expires_at'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('advisory_locks')
    op.drop_table('sync_events')
    op.drop_table('refunds')
    op.drop_table('reconciliation_queue')
    op.drop_table('webhook_events')
    op.drop_table('checkout_metadata')
    op.drop_table('subscription_changes')
    op.drop_table('usage_records')
    op.drop_table('feature_grants')
    op.drop_table('subscriptions')
    op.drop_table('product_features')
    op.drop_table('features')
    op.drop_table('product_prices')
    op.drop_table('products')
    op.drop_table('customers')
    op.drop_table('organizations')

    for enum_name in (
        'syncoperation', 'refundinitiator', 'reconciliationstatus', 'reconciliationtype',
        'webhookeventstatus', 'checkoutstatus', 'changestatus', 'changetype', 'grantsyncstatus',
        'subscriptionstatus', 'featuretype', 'billinginterval', 'organizationstatus',
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
