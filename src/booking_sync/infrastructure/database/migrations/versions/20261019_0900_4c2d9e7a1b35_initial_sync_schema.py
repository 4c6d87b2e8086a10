"""Initial sync schema

Revision ID: 4c2d9e7a1b35
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4c2d9e7a1b35'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create processed_orders table
    op.create_table('processed_orders',
    sa.Column('order_id', sa.String(length=255), nullable=False),
    sa.Column('order_number', sa.String(length=50), nullable=True),
    sa.Column('payment_status', sa.String(length=50), nullable=True),
    sa.Column('bookings', sa.JSON(), nullable=False),
    sa.Column('calendar_event_id', sa.String(length=255), nullable=True),
    sa.Column('sync_source', sa.String(length=50), nullable=True),
    sa.Column('processed_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('order_id')
    )
    op.create_index('ix_processed_orders_processed_at', 'processed_orders', ['processed_at'], unique=False)

    # Create retry_queue table
    op.create_table('retry_queue',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('order_id', sa.String(length=255), nullable=False),
    sa.Column('order_data', sa.Text(), nullable=False),
    sa.Column('failure_reason', sa.Text(), nullable=True),
    sa.Column('failure_category', sa.String(length=50), nullable=True),
    sa.Column('retry_count', sa.Integer(), nullable=False),
    sa.Column('max_retries', sa.Integer(), nullable=False),
    sa.Column('last_attempt_at', sa.DateTime(), nullable=True),
    sa.Column('next_retry_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    sa.Column('resolved_at', sa.DateTime(), nullable=True),
    sa.Column('resolution', sa.String(length=50), nullable=True),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('order_id')
    )
    op.create_index('ix_retry_queue_ready', 'retry_queue', ['resolved_at', 'next_retry_at'], unique=False)

    # Create sync_lock table
    op.create_table('sync_lock',
    sa.Column('scope', sa.String(length=255), nullable=False),
    sa.Column('locked', sa.Boolean(), nullable=False),
    sa.Column('owner', sa.String(length=255), nullable=True),
    sa.Column('locked_at', sa.DateTime(), nullable=True),
    sa.Column('expires_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('scope')
    )

    # Create sync_state table
    op.create_table('sync_state',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('status', sa.String(length=50), nullable=False),
    sa.Column('run_id', sa.String(length=64), nullable=True),
    sa.Column('started_at', sa.DateTime(), nullable=True),
    sa.Column('completed_at', sa.DateTime(), nullable=True),
    sa.Column('last_sync_time', sa.DateTime(), nullable=True),
    sa.Column('last_order_id', sa.String(length=255), nullable=True),
    sa.Column('orders_checked', sa.Integer(), nullable=False),
    sa.Column('orders_processed', sa.Integer(), nullable=False),
    sa.Column('orders_successful', sa.Integer(), nullable=False),
    sa.Column('orders_failed', sa.Integer(), nullable=False),
    sa.Column('orders_skipped', sa.Integer(), nullable=False),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )

    # Create sync_metrics table
    op.create_table('sync_metrics',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('total_syncs', sa.Integer(), nullable=False),
    sa.Column('successful_syncs', sa.Integer(), nullable=False),
    sa.Column('failed_syncs', sa.Integer(), nullable=False),
    sa.Column('total_orders', sa.Integer(), nullable=False),
    sa.Column('successful_orders', sa.Integer(), nullable=False),
    sa.Column('failed_orders', sa.Integer(), nullable=False),
    sa.Column('last_sync_at', sa.DateTime(), nullable=True),
    sa.Column('last_sync_duration_ms', sa.Integer(), nullable=True),
    sa.Column('average_sync_duration_ms', sa.Integer(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )

    # Create sync_errors table
    op.create_table('sync_errors',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('context', sa.String(length=50), nullable=False),
    sa.Column('run_id', sa.String(length=64), nullable=True),
    sa.Column('error', sa.Text(), nullable=False),
    sa.Column('details', sa.Text(), nullable=True),
    sa.Column('occurred_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_errors_occurred_at'), 'sync_errors', ['occurred_at'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_sync_errors_occurred_at'), table_name='sync_errors')
    op.drop_table('sync_errors')
    op.drop_table('sync_metrics')
    op.drop_table('sync_state')
    op.drop_table('sync_lock')
    op.drop_index('ix_retry_queue_ready', table_name='retry_queue')
    op.drop_table('retry_queue')
    op.drop_index('ix_processed_orders_processed_at', table_name='processed_orders')
    op.drop_table('processed_orders')
