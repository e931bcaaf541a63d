"""Create pending_stripe_payment, cart_order_mapping and stripe_event_log tables.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create settlement tables."""
    # PaymentIntents linked to orders, awaiting settlement
    op.create_table(
        'pending_stripe_payment',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('payment_intent_id', sa.String(255), nullable=False, unique=True),
        sa.Column('order_id', sa.String(36), nullable=False, index=True),
        sa.Column('order_code', sa.String(100), nullable=False, index=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('failure_type', sa.String(20), nullable=True),
        sa.Column('is_retryable', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('manual_settlement', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('settled_by', sa.String(255), nullable=True),
        sa.Column('canceled_by', sa.String(255), nullable=True),
    )

    # Index for status-based queries (monitoring, cleanup)
    op.create_index(
        'ix_pending_stripe_payment_status_created_at',
        'pending_stripe_payment',
        ['status', 'created_at'],
    )

    # Storefront cart to order mapping
    op.create_table(
        'cart_order_mapping',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('cart_uuid', sa.String(255), nullable=False, unique=True),
        sa.Column('order_id', sa.String(36), nullable=False),
        sa.Column('order_code', sa.String(100), nullable=False, index=True),
        sa.Column('payment_intent_id', sa.String(255), nullable=True, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Stripe webhook events for deduplication
    op.create_table(
        'stripe_event_log',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False, index=True),
        sa.Column('payment_intent_id', sa.String(255), nullable=True, index=True),
        sa.Column('payload_hash', sa.String(64), nullable=False),
        sa.Column('payload', postgresql.JSONB, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='received'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_index(
        'ix_stripe_event_log_status_received_at',
        'stripe_event_log',
        ['status', 'received_at'],
    )


def downgrade() -> None:
    """Drop settlement tables."""
    op.drop_index('ix_stripe_event_log_status_received_at', table_name='stripe_event_log')
    op.drop_table('stripe_event_log')
    op.drop_table('cart_order_mapping')
    op.drop_index('ix_pending_stripe_payment_status_created_at', table_name='pending_stripe_payment')
    op.drop_table('pending_stripe_payment')
