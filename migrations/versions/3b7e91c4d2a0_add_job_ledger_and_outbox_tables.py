"""Add job ledger and outbox tables

Revision ID: 3b7e91c4d2a0
Revises:
Create Date: 2026-10-17 09:12:41.518203

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b7e91c4d2a0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Idempotency ledger, one row per job_id
    op.create_table(
        'job_ledger',
        sa.Column('job_id', sa.String(255), nullable=False, comment='Stable job identifier'),
        sa.Column('job_type', sa.Text(), nullable=False, comment='Handler discriminator'),
        sa.Column('status', sa.String(32), nullable=False, server_default='claimed',
                  comment='claimed|processing|retry_scheduled|completed|failed'),
        sa.Column('attempt', sa.SmallInteger(), nullable=False, server_default='1',
                  comment='Attempt currently owned'),
        sa.Column('claimed_at', sa.dialects.postgresql.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.Column('claimed_by', sa.Text(), nullable=True, comment='Worker holding the claim'),
        sa.Column('completed_at', sa.dialects.postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True, comment='Last failure reason'),
        sa.Column('updated_at', sa.dialects.postgresql.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('job_id'),
        sa.CheckConstraint(
            "status IN ('claimed', 'processing', 'retry_scheduled', 'completed', 'failed')",
            name='job_ledger_status_check',
        ),
        sa.CheckConstraint('attempt >= 1', name='job_ledger_attempt_check'),
    )

    # Lease scans look for stale claims by status and age
    op.create_index('ix_job_ledger_status_claimed_at', 'job_ledger', ['status', 'claimed_at'])

    # Transactional outbox
    op.create_table(
        'outbox_events',
        sa.Column('id', sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column('event_id', sa.dialects.postgresql.UUID(), nullable=False,
                  server_default=sa.text('gen_random_uuid()'), comment='Broker message id'),
        sa.Column('aggregate_id', sa.String(255), nullable=False, comment='Ordering key'),
        sa.Column('event_type', sa.String(255), nullable=False,
                  comment='Routing key on the events exchange'),
        sa.Column('payload', sa.dialects.postgresql.JSON(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending',
                  comment='pending|relayed|failed'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.dialects.postgresql.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.Column('relayed_at', sa.dialects.postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', name='outbox_events_event_id_key'),
        sa.CheckConstraint(
            "status IN ('pending', 'relayed', 'failed')",
            name='outbox_events_status_check',
        ),
    )

    # Relay polls the oldest pending rows
    op.create_index(
        'ix_outbox_events_status_created_at', 'outbox_events', ['status', 'created_at', 'id']
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_outbox_events_status_created_at', table_name='outbox_events')
    op.drop_table('outbox_events')
    op.drop_index('ix_job_ledger_status_claimed_at', table_name='job_ledger')
    op.drop_table('job_ledger')
