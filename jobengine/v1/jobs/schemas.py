"""
Wire messages, handler results and API schemas for the job engine.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RetryDescriptor(BaseModel):
    """Travels with a delayed redelivery; never persisted outside the broker."""

    job_id: str
    attempt: int = Field(..., ge=1, description="Attempt the redelivery will run as")
    next_delay: float = Field(..., ge=0, description="Delay applied, in seconds")
    last_error: str | None = Field(default=None, description="Failure summary")


class JobMessage(BaseModel):
    """Unit of work delivered by the broker."""

    job_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Stable across redeliveries of the same logical job",
    )
    type: str = Field(..., description="Handler discriminator")
    payload: dict[str, Any] = Field(default_factory=dict, description="Opaque data")
    attempt: int = Field(default=1, ge=1, description="Delivery attempt number")
    enqueued_at: datetime = Field(
        default_factory=_utcnow, description="Original submission time"
    )
    retry: RetryDescriptor | None = Field(
        default=None, description="Present when redelivered through the delay route"
    )

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, body: bytes) -> "JobMessage":
        return cls.model_validate_json(body)

    def next_attempt(self, delay: float, last_error: str | None) -> "JobMessage":
        """Copy of this message for the following attempt."""
        attempt = self.attempt + 1
        return self.model_copy(
            update={
                "attempt": attempt,
                "retry": RetryDescriptor(
                    job_id=self.job_id,
                    attempt=attempt,
                    next_delay=delay,
                    last_error=last_error,
                ),
            }
        )


@dataclass(frozen=True)
class OutboundEvent:
    """Domain event a handler wants published after its job commits."""

    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    aggregate_id: str | None = None


# Handler results. Handlers return one of these; the consumer persists it.


@dataclass(frozen=True)
class Success:
    result: dict[str, Any] | None = None
    events: list[OutboundEvent] = field(default_factory=list)


@dataclass(frozen=True)
class RetryableFailure:
    reason: str


@dataclass(frozen=True)
class FatalFailure:
    reason: str


JobResult = Success | RetryableFailure | FatalFailure


# API schemas


class JobEnqueueRequest(BaseModel):
    """Schema for enqueueing jobs via API."""

    type: str = Field(..., description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload")
    job_id: str | None = Field(
        default=None,
        max_length=255,
        description="Caller supplied identifier; resubmitting it is a no-op once processed",
    )


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: str
    type: str
    enqueued_at: datetime


class LedgerEntryResponse(BaseModel):
    """Schema for a ledger entry."""

    job_id: str
    job_type: str
    status: str
    attempt: int
    claimed_at: datetime
    claimed_by: str | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    updated_at: datetime

    class Config:
        from_attributes = True


class LedgerStatsResponse(BaseModel):
    """Schema for ledger statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    in_progress: int  # claimed + processing


class OutboxStatsResponse(BaseModel):
    """Schema for outbox statistics."""

    by_status: dict[str, int]
    oldest_pending_at: datetime | None = None
