"""create profiles, subscriptions and stripe_webhook_events

Revision ID: 3c9e1a7f5b20
Revises:
Create Date: 2026-09-14 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = '3c9e1a7f5b20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'profiles',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('username', sa.Text(), nullable=False),
        sa.Column('plan', sa.Text(), server_default='free', nullable=False),
        sa.Column('next_plan', sa.Text(), nullable=True),
        sa.Column('plan_expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('plan_source', sa.Text(), server_default='manual', nullable=False),
        sa.Column('stripe_customer_id', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("plan in ('free', 'plus', 'pro')", name='ck_profiles_plan_valid'),
        sa.CheckConstraint(
            "next_plan is null or next_plan in ('free', 'plus', 'pro')",
            name='ck_profiles_next_plan_valid',
        ),
    )
    op.create_index('ix_profiles_username', 'profiles', ['username'], unique=True)
    op.create_index('ix_profiles_stripe_customer_id', 'profiles', ['stripe_customer_id'])
    op.create_index(
        'ix_profiles_plan_expires_at',
        'profiles',
        ['plan_expires_at'],
        postgresql_where=sa.text('plan_expires_at is not null'),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.Text(), server_default='stripe', nullable=False),
        sa.Column('subscription_id', sa.Text(), nullable=True),
        sa.Column('stripe_customer_id', sa.Text(), nullable=True),
        sa.Column('stripe_subscription_id', sa.Text(), nullable=True),
        sa.Column('plan', sa.Text(), nullable=False),
        sa.Column('pending_plan', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('price_id', sa.Text(), nullable=True),
        sa.Column('pending_price_id', sa.Text(), nullable=True),
        sa.Column('current_period_start', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancel_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('ended_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('is_current', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['profiles.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'stripe_subscription_id', name='uq_subscriptions_user_stripe_subscription'),
        sa.UniqueConstraint('provider', 'subscription_id', name='uq_subscriptions_provider_subscription'),
        sa.CheckConstraint("plan in ('free', 'plus', 'pro')", name='ck_subscriptions_plan_valid'),
        sa.CheckConstraint(
            "pending_plan is null or pending_plan in ('free', 'plus', 'pro')",
            name='ck_subscriptions_pending_plan_valid',
        ),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    # At most one current subscription per user
    op.create_index(
        'uq_subscriptions_user_current',
        'subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text('is_current'),
    )

    op.create_table(
        'stripe_webhook_events',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.Text(), nullable=False),
        sa.Column('event_type', sa.Text(), nullable=False),
        sa.Column('processed_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', name='uq_stripe_webhook_events_event_id'),
    )


def downgrade() -> None:
    op.drop_table('stripe_webhook_events')
    op.drop_index('uq_subscriptions_user_current', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_profiles_plan_expires_at', table_name='profiles')
    op.drop_index('ix_profiles_stripe_customer_id', table_name='profiles')
    op.drop_index('ix_profiles_username', table_name='profiles')
    op.drop_table('profiles')
