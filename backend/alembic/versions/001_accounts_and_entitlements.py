"""Accounts, entitlements and the processed-event ledger.

Revision ID: 001_accounts_and_entitlements
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_accounts_and_entitlements'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('username', sa.String(64), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('saved_channels', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_username', 'users', ['username'], unique=True)
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'entitlements',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('stripe_price_id', sa.String(255), nullable=True),
        sa.Column('plan_tier', sa.String(20), nullable=False, server_default='none'),
        sa.Column('status', sa.String(20), nullable=False, server_default='none'),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_payment_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('event_clock', sa.JSON(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_entitlements_user_id', 'entitlements', ['user_id'], unique=True)
    op.create_index('ix_entitlements_stripe_customer_id', 'entitlements', ['stripe_customer_id'], unique=True)
    op.create_index('ix_entitlements_stripe_subscription_id', 'entitlements', ['stripe_subscription_id'])
    op.create_index('ix_entitlements_plan_tier', 'entitlements', ['plan_tier'])
    op.create_index('ix_entitlements_status', 'entitlements', ['status'])

    op.create_table(
        'processed_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('applied_event_id', sa.String(255), nullable=True),
        sa.Column('event_kind', sa.String(50), nullable=False),
        sa.Column('outcome', sa.String(32), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('effective_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('applied_event_id', name='uq_processed_events_applied_event_id'),
    )
    op.create_index('ix_processed_events_event_id', 'processed_events', ['event_id'])
    op.create_index('ix_processed_events_outcome', 'processed_events', ['outcome'])
    op.create_index('ix_processed_events_user_id', 'processed_events', ['user_id'])
    op.create_index('ix_processed_events_recorded_at', 'processed_events', ['recorded_at'])


def downgrade() -> None:
    op.drop_index('ix_processed_events_recorded_at', table_name='processed_events')
    op.drop_index('ix_processed_events_user_id', table_name='processed_events')
    op.drop_index('ix_processed_events_outcome', table_name='processed_events')
    op.drop_index('ix_processed_events_event_id', table_name='processed_events')
    op.drop_table('processed_events')

    op.drop_index('ix_entitlements_status', table_name='entitlements')
    op.drop_index('ix_entitlements_plan_tier', table_name='entitlements')
    op.drop_index('ix_entitlements_stripe_subscription_id', table_name='entitlements')
    op.drop_index('ix_entitlements_stripe_customer_id', table_name='entitlements')
    op.drop_index('ix_entitlements_user_id', table_name='entitlements')
    op.drop_table('entitlements')

    op.drop_index('ix_users_email', table_name='users')
    op.drop_index('ix_users_username', table_name='users')
    op.drop_table('users')
