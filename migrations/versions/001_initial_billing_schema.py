"""initial billing schema

Revision ID: 001_initial_billing_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_billing_schema'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(with_updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())]
    if with_updated:
        columns.append(sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()))
    return columns


def _user_fk() -> sa.Column:
    return sa.Column(
        'user_id',
        sa.Uuid(),
        sa.ForeignKey('profiles.id', ondelete='CASCADE'),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        'profiles',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='user'),
        sa.Column('subscription_tier', sa.String(length=20), nullable=False, server_default='free'),
        sa.Column('subscription_status', sa.String(length=32), nullable=False, server_default='active'),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('storage_used', sa.BigInteger(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_profiles')),
    )
    op.create_index(op.f('ix_profiles_email'), 'profiles', ['email'], unique=True)
    op.create_index(op.f('ix_profiles_stripe_customer_id'), 'profiles', ['stripe_customer_id'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        _user_fk(),
        sa.Column('stripe_subscription_id', sa.String(length=255), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=False),
        sa.Column('stripe_price_id', sa.String(length=255), nullable=True),
        sa.Column('tier', sa.String(length=20), nullable=False, server_default='free'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='incomplete'),
        sa.Column('interval', sa.String(length=10), nullable=False, server_default='month'),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_subscriptions')),
    )
    op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'])
    op.create_index(op.f('ix_subscriptions_stripe_subscription_id'), 'subscriptions', ['stripe_subscription_id'], unique=True)
    op.create_index(op.f('ix_subscriptions_stripe_customer_id'), 'subscriptions', ['stripe_customer_id'])

    op.create_table(
        'payment_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        _user_fk(),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_invoice_id', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('description', sa.String(length=500), nullable=True),
        *_timestamps(with_updated=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_payment_history')),
    )
    op.create_index(op.f('ix_payment_history_user_id'), 'payment_history', ['user_id'])
    op.create_index(op.f('ix_payment_history_stripe_payment_intent_id'), 'payment_history', ['stripe_payment_intent_id'])
    op.create_index(op.f('ix_payment_history_stripe_invoice_id'), 'payment_history', ['stripe_invoice_id'])
    op.create_index(op.f('ix_payment_history_created_at'), 'payment_history', ['created_at'])

    op.create_table(
        'usage_tracking',
        sa.Column('id', sa.Uuid(), nullable=False),
        _user_fk(),
        sa.Column('feature', sa.String(length=50), nullable=False),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('date', sa.Date(), nullable=False, server_default=sa.func.current_date()),
        *_timestamps(with_updated=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_usage_tracking')),
        sa.UniqueConstraint('user_id', 'feature', 'date', name='uq_usage_tracking_user_feature_date'),
    )
    op.create_index(op.f('ix_usage_tracking_user_id'), 'usage_tracking', ['user_id'])

    op.create_table(
        'experiences',
        sa.Column('id', sa.Uuid(), nullable=False),
        _user_fk(),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location', sa.String(length=255), nullable=True),
        *_timestamps(with_updated=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_experiences')),
    )
    op.create_index(op.f('ix_experiences_user_id'), 'experiences', ['user_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('processing_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_processing_attempt', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('event_data', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='{}'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_webhook_events')),
    )
    op.create_index(op.f('ix_webhook_events_stripe_event_id'), 'webhook_events', ['stripe_event_id'], unique=True)
    op.create_index(op.f('ix_webhook_events_event_type'), 'webhook_events', ['event_type'])
    op.create_index(op.f('ix_webhook_events_processed'), 'webhook_events', ['processed'])
    op.create_index(op.f('ix_webhook_events_created_at'), 'webhook_events', ['created_at'])

    op.create_table(
        'system_alerts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('alert_type', sa.String(length=100), nullable=False),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default='{}'),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by', sa.String(length=255), nullable=True),
        *_timestamps(with_updated=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_system_alerts')),
    )
    op.create_index(op.f('ix_system_alerts_alert_type'), 'system_alerts', ['alert_type'])
    op.create_index(op.f('ix_system_alerts_severity'), 'system_alerts', ['severity'])
    op.create_index(op.f('ix_system_alerts_resolved'), 'system_alerts', ['resolved'])
    op.create_index(op.f('ix_system_alerts_created_at'), 'system_alerts', ['created_at'])


def downgrade() -> None:
    for table in (
        'system_alerts',
        'webhook_events',
        'experiences',
        'usage_tracking',
        'payment_history',
        'subscriptions',
        'profiles',
    ):
        op.drop_table(table)
