"""create subscription tables

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = '0a1b2c3d4e5f'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SUBSCRIPTION_STATUSES = ('pending', 'active', 'cancelled', 'expired', 'payment_failed')
TRANSACTION_STATUSES = ('pending', 'success', 'failed')


def upgrade() -> None:
    op.create_table(
        'plans',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('plan_code', sa.String(length=50), nullable=False, comment='local code, e.g. monthly'),
        sa.Column('gateway_plan_code', sa.String(length=100), nullable=True, comment='PLN_xxx issued by Paystack'),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False, comment='kobo'),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('interval', sa.String(length=20), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('plan_code'),
        sa.UniqueConstraint('gateway_plan_code'),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subscription_code', sa.String(length=100), nullable=False),
        sa.Column('initial_reference', sa.String(length=100), nullable=True),
        sa.Column('user_id', sa.String(length=128), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('customer_code', sa.String(length=100), nullable=True),
        sa.Column('email_token', sa.String(length=100), nullable=True, comment='gateway capability for disable/enable'),
        sa.Column('plan_code', sa.String(length=100), nullable=False),
        sa.Column('plan_name', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False, comment='smallest currency unit'),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('interval', sa.Enum('monthly', 'yearly', name='billing_interval'), nullable=False),
        sa.Column('status', sa.Enum(*SUBSCRIPTION_STATUSES, name='subscription_status'), nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('next_payment_date', sa.DateTime(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('last_payment_date', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('last_event_key', sa.String(length=255), nullable=True),
        sa.Column('revision', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('initial_reference'),
    )
    op.create_index('ix_subscriptions_subscription_code', 'subscriptions', ['subscription_code'], unique=True)
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_email', 'subscriptions', ['email'])
    op.create_index('ix_subscriptions_customer_code', 'subscriptions', ['customer_code'])
    op.create_index('ix_subscriptions_plan_code', 'subscriptions', ['plan_code'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('reference', sa.String(length=100), nullable=False),
        sa.Column('subscription_code', sa.String(length=100), nullable=True),
        sa.Column('user_id', sa.String(length=128), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False, comment='smallest currency unit'),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('status', sa.Enum(*TRANSACTION_STATUSES, name='transaction_status'), nullable=False),
        sa.Column('channel', sa.String(length=50), nullable=True),
        sa.Column('gateway_response', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_transactions_reference', 'transactions', ['reference'], unique=True)
    op.create_index('ix_transactions_subscription_code', 'transactions', ['subscription_code'])
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_key', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('subscription_code', sa.String(length=100), nullable=True),
        sa.Column('outcome', sa.String(length=50), nullable=True),
        sa.Column('processed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_webhook_events_event_key', 'webhook_events', ['event_key'], unique=True)
    op.create_index('ix_webhook_events_subscription_code', 'webhook_events', ['subscription_code'])

    op.create_table(
        'payment_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('subscription_code', sa.String(length=100), nullable=True),
        sa.Column('user_id', sa.String(length=128), nullable=True),
        sa.Column('reference', sa.String(length=100), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_logs_action', 'payment_logs', ['action'])
    op.create_index('ix_payment_logs_subscription_code', 'payment_logs', ['subscription_code'])
    op.create_index('ix_payment_logs_user_id', 'payment_logs', ['user_id'])
    op.create_index('ix_payment_logs_created_at', 'payment_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('payment_logs')
    op.drop_table('webhook_events')
    op.drop_table('transactions')
    op.drop_table('subscriptions')
    op.drop_table('plans')
