"""
Persistent state owned by the job engine: the idempotency ledger and the
transactional outbox.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobengine.infra.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class LedgerStatus(str, Enum):
    """Ledger status enumeration."""

    CLAIMED = "claimed"
    PROCESSING = "processing"
    RETRY_SCHEDULED = "retry_scheduled"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({LedgerStatus.COMPLETED, LedgerStatus.FAILED})
ACTIVE_STATUSES = frozenset({LedgerStatus.CLAIMED, LedgerStatus.PROCESSING})

# Allowed ledger moves. RETRY_SCHEDULED -> CLAIMED only happens through a
# claim for an equal or later attempt.
VALID_TRANSITIONS: dict[LedgerStatus, frozenset[LedgerStatus]] = {
    LedgerStatus.CLAIMED: frozenset(
        {LedgerStatus.PROCESSING, LedgerStatus.FAILED}
    ),
    LedgerStatus.PROCESSING: frozenset(
        {
            LedgerStatus.COMPLETED,
            LedgerStatus.FAILED,
            LedgerStatus.RETRY_SCHEDULED,
        }
    ),
    LedgerStatus.RETRY_SCHEDULED: frozenset({LedgerStatus.CLAIMED}),
    LedgerStatus.COMPLETED: frozenset(),
    LedgerStatus.FAILED: frozenset(),
}


def is_valid_transition(current: LedgerStatus, target: LedgerStatus) -> bool:
    """Check a ledger move against the transition table."""
    return target in VALID_TRANSITIONS[current]


class LedgerEntry(Base):
    """
    One row per job identifier ever claimed.

    The unique job_id is what turns at-least-once delivery into
    effectively-once processing: exactly one consumer can insert it.
    """

    __tablename__ = "job_ledger"

    job_id: Mapped[str] = mapped_column(
        String(255), primary_key=True, comment="Stable job identifier"
    )
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Handler discriminator"
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=LedgerStatus.CLAIMED.value,
        comment="claimed|processing|retry_scheduled|completed|failed",
    )
    attempt: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=1, comment="Attempt currently owned"
    )
    claimed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    claimed_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker holding the claim"
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last failure reason"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('claimed', 'processing', 'retry_scheduled', 'completed', 'failed')",
            name="job_ledger_status_check",
        ),
        CheckConstraint("attempt >= 1", name="job_ledger_attempt_check"),
        Index("ix_job_ledger_status_claimed_at", "status", "claimed_at"),
    )

    @property
    def ledger_status(self) -> LedgerStatus:
        return LedgerStatus(self.status)

    def is_terminal(self) -> bool:
        return self.ledger_status in TERMINAL_STATUSES


class OutboxStatus(str, Enum):
    """Outbox status enumeration."""

    PENDING = "pending"
    RELAYED = "relayed"
    FAILED = "failed"


class OutboxEntry(Base):
    """Domain event waiting to be published, written with its causing change."""

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    event_id: Mapped[UUID] = mapped_column(
        Uuid, nullable=False, unique=True, default=uuid4, comment="Broker message id"
    )
    aggregate_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Ordering key"
    )
    event_type: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Routing key on the events exchange"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=OutboxStatus.PENDING.value,
        comment="pending|relayed|failed",
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    relayed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'relayed', 'failed')",
            name="outbox_events_status_check",
        ),
        Index("ix_outbox_events_status_created_at", "status", "created_at", "id"),
    )
