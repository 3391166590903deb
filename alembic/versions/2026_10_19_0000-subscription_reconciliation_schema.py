"""subscription reconciliation schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create plans, subscriptions and ledger_entries."""

    # ========================================================================
    # Create plans table (catalog, maintained outside this service)
    # ========================================================================
    op.create_table(
        'plans',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('key', sa.String(100), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('android_product_id', sa.String(255), nullable=True, unique=True),
        sa.Column('ios_product_id', sa.String(255), nullable=True, unique=True),
        sa.Column('unit_amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('display_price', sa.String(50), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('unit_amount_minor >= 0', name='ck_plans_amount_non_negative'),
    )

    # ========================================================================
    # Create subscriptions table
    # ========================================================================
    op.create_table(
        'subscriptions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('environment', sa.String(20), nullable=False),
        sa.Column('plan_id', UUID(as_uuid=True), sa.ForeignKey('plans.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('device_type', sa.String(10), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=False),
        sa.Column('external_anchor_id', sa.String(4096), nullable=False),
        sa.Column('current_transaction_id', sa.String(255), nullable=True),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('user_id', 'environment', name='uq_subscriptions_user_environment'),
        sa.CheckConstraint("environment IN ('sandbox', 'production')", name='ck_subscriptions_environment'),
        sa.CheckConstraint("device_type IN ('ANDROID', 'IOS')", name='ck_subscriptions_device_type'),
        sa.CheckConstraint(
            "status IN ('incomplete', 'trialing', 'active', 'past_due', 'canceling', 'canceled')",
            name='ck_subscriptions_status',
        ),
        sa.CheckConstraint('amount_minor >= 0', name='ck_subscriptions_amount_non_negative'),
    )

    op.create_index('idx_subscriptions_anchor_environment', 'subscriptions', ['external_anchor_id', 'environment'])
    op.create_index('idx_subscriptions_status', 'subscriptions', ['status'])

    # ========================================================================
    # Create ledger_entries table (append-only)
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('transaction_id', sa.String(255), nullable=False, unique=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('plan_id', UUID(as_uuid=True), sa.ForeignKey('plans.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('platform', sa.String(20), nullable=False),
        sa.Column('environment', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='succeeded'),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("status IN ('succeeded', 'refunded')", name='ck_ledger_entries_status'),
        sa.CheckConstraint('amount_minor >= 0', name='ck_ledger_entries_amount_non_negative'),
        sa.CheckConstraint(
            "(status = 'refunded') = (refunded_at IS NOT NULL)",
            name='ck_ledger_entries_refunded_at',
        ),
    )

    op.create_index('ix_ledger_entries_user_id', 'ledger_entries', ['user_id'])
    op.create_index('idx_ledger_entries_paid_at', 'ledger_entries', ['paid_at'])


def downgrade() -> None:
    """Drop reconciliation tables."""
    op.drop_index('idx_ledger_entries_paid_at', table_name='ledger_entries')
    op.drop_index('ix_ledger_entries_user_id', table_name='ledger_entries')
    op.drop_table('ledger_entries')
    op.drop_index('idx_subscriptions_status', table_name='subscriptions')
    op.drop_index('idx_subscriptions_anchor_environment', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('plans')
