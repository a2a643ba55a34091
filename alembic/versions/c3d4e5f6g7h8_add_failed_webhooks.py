"""Add failed webhooks table for retry processing and dead-letter queue

Stores inbound webhooks whose handler failed so they can be retried with
exponential backoff and, once retries are exhausted, kept for manual
replay or deletion.

Revision ID: c3d4e5f6g7h8
Revises:
Create Date: 2026-01-13

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'c3d4e5f6g7h8'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON(none_as_null=True).with_variant(postgresql.JSONB(none_as_null=True), "postgresql")


def upgrade() -> None:
    """Add failed_webhooks table."""

    op.create_table(
        'failed_webhooks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('webhook_type', sa.String(100), nullable=False),
        sa.Column('webhook_url', sa.String(500), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=True),
        sa.Column('payload', JSONType, nullable=False),  # Full webhook payload
        sa.Column('headers', JSONType, nullable=True),
        sa.Column('payload_version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('attempt_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default='5', nullable=False),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_stack', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Index for the retry scheduler's due-record scan
    op.create_index('idx_failed_webhooks_status_next_retry', 'failed_webhooks', ['status', 'next_retry_at'])
    # Index for dead letter queue listing and counts
    op.create_index('idx_failed_webhooks_status_attempts', 'failed_webhooks', ['status', 'attempt_count'])
    op.create_index('idx_failed_webhooks_webhook_type', 'failed_webhooks', ['webhook_type'])
    op.create_index('idx_failed_webhooks_created_at', 'failed_webhooks', ['created_at'])
    # Index for de-duplicating provider event ids
    op.create_index('idx_failed_webhooks_event_id', 'failed_webhooks', ['event_id'], unique=True)


def downgrade() -> None:
    """Remove failed_webhooks table."""
    op.drop_index('idx_failed_webhooks_event_id', 'failed_webhooks')
    op.drop_index('idx_failed_webhooks_created_at', 'failed_webhooks')
    op.drop_index('idx_failed_webhooks_webhook_type', 'failed_webhooks')
    op.drop_index('idx_failed_webhooks_status_attempts', 'failed_webhooks')
    op.drop_index('idx_failed_webhooks_status_next_retry', 'failed_webhooks')
    op.drop_table('failed_webhooks')
