"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the resource catalog, purchase ledger and subscription tables."""

    # ========================================================================
    # Create resources table (catalog mirror)
    # ========================================================================
    op.create_table(
        'resources',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('storage_key', sa.String(1024), nullable=False),
        sa.Column('title', sa.String(500), nullable=False, server_default=''),
        sa.Column('price_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),

        sa.CheckConstraint('price_minor >= 0', name='ck_resource_price_non_negative'),
    )

    # ========================================================================
    # Create subscription_plans table
    # ========================================================================
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('unlimited_access', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('duration_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    # ========================================================================
    # Create purchases table (append-only ledger)
    # ========================================================================
    op.create_table(
        'purchases',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('principal_id', sa.String(255), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('payment_method', sa.String(20), nullable=False),
        sa.Column('external_order_id', sa.String(255), nullable=True),
        sa.Column('external_payment_id', sa.String(255), nullable=True),
        sa.Column('external_signature', sa.String(512), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('access_granted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('access_expired', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('expiry_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),

        # Constraints
        sa.CheckConstraint('amount_minor >= 0', name='ck_purchase_amount_non_negative'),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded', 'expired')",
            name='ck_purchase_status',
        ),
        sa.CheckConstraint(
            "payment_method IN ('processor', 'subscription', 'free')",
            name='ck_purchase_payment_method',
        ),
        sa.CheckConstraint(
            "NOT access_granted OR status = 'completed'",
            name='ck_purchase_granted_requires_completed',
        ),
    )

    # Indexes for purchases
    op.create_index(
        'uq_purchases_one_pending', 'purchases', ['principal_id', 'resource_id'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )
    op.create_index('idx_purchases_principal_resource', 'purchases', ['principal_id', 'resource_id'])
    op.create_index('idx_purchases_order_id', 'purchases', ['external_order_id'])
    op.create_index('uq_purchases_payment_id', 'purchases', ['external_payment_id'], unique=True)
    op.create_index('idx_purchases_status_expiry', 'purchases', ['status', 'expiry_at'])

    # ========================================================================
    # Create subscriptions table
    # ========================================================================
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('principal_id', sa.String(255), nullable=False),
        sa.Column('plan_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('external_subscription_id', sa.String(255), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),

        # Constraints
        sa.CheckConstraint("status IN ('active', 'cancelled', 'expired')", name='ck_subscription_status'),
        sa.CheckConstraint('end_date > start_date', name='ck_subscription_window'),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], name='fk_subscriptions_plan'),
    )

    # Indexes for subscriptions
    op.create_index(
        'uq_subscriptions_one_active', 'subscriptions', ['principal_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )
    op.create_index('idx_subscriptions_external_id', 'subscriptions', ['external_subscription_id'])
    op.create_index('idx_subscriptions_status_end', 'subscriptions', ['status', 'end_date'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('subscriptions')
    op.drop_table('purchases')
    op.drop_table('subscription_plans')
    op.drop_table('resources')
