"""
Job service for enqueueing jobs and inspecting engine state.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.config.settings import Settings
from jobengine.infra.broker import Broker
from jobengine.v1.core.exceptions import (
    BrokerUnavailableError,
    NotFoundError,
    ValidationError,
)
from jobengine.v1.core.registries import JobRegistry, job_registry
from jobengine.v1.core.retry import retry_transient
from jobengine.v1.jobs.ledger import IdempotencyLedger
from jobengine.v1.jobs.models import LedgerEntry
from jobengine.v1.jobs.outbox import outbox_stats, requeue_failed_event
from jobengine.v1.jobs.schemas import (
    JobEnqueueRequest,
    JobEnqueueResponse,
    JobMessage,
    LedgerStatsResponse,
    OutboxStatsResponse,
)

logger = logging.getLogger(__name__)


class JobService:
    """Service for submitting jobs and reading ledger/outbox state."""

    def __init__(self, settings: Settings, registry: JobRegistry | None = None):
        self.settings = settings
        self.registry = registry if registry is not None else job_registry
        # Read-only use: no claims are made through this instance.
        self.ledger = IdempotencyLedger(settings, worker_id="admin")

    async def enqueue_job(
        self, broker: Broker, job_request: JobEnqueueRequest, strict: bool = True
    ) -> JobEnqueueResponse:
        """
        Publish attempt 1 of a new job to the primary route.

        Args:
            broker: Connected broker
            job_request: Job type, payload and optional caller job_id
            strict: Reject types with no registered handler in this process

        Returns:
            Job enqueue response with the job_id to poll
        """
        if strict and self.registry.list() and job_request.type not in self.registry:
            raise ValidationError(
                f"Unknown job type: {job_request.type}",
                details={"registered": self.registry.list()},
            )

        fields = {"type": job_request.type, "payload": job_request.payload}
        if job_request.job_id:
            fields["job_id"] = job_request.job_id
        message = JobMessage(**fields)

        await retry_transient(
            "publish job",
            lambda: broker.publish_job(
                message.to_bytes(), message_id=f"{message.job_id}:{message.attempt}"
            ),
            attempts=self.settings.transient_retry_attempts,
            base_delay=self.settings.transient_retry_base_ms / 1000,
            exceptions=(BrokerUnavailableError,),
        )

        logger.info(
            "Job enqueued",
            extra={"job_id": message.job_id, "type": message.type},
        )

        return JobEnqueueResponse(
            job_id=message.job_id, type=message.type, enqueued_at=message.enqueued_at
        )

    async def get_job(self, session: AsyncSession, job_id: str) -> LedgerEntry:
        """Get the ledger entry for a job."""
        entry = await self.ledger.get(session, job_id)
        if entry is None:
            raise NotFoundError("Job not found", details={"job_id": job_id})
        return entry

    async def get_job_stats(self, session: AsyncSession) -> LedgerStatsResponse:
        return await self.ledger.stats(session)

    async def get_outbox_stats(self, session: AsyncSession) -> OutboxStatsResponse:
        return await outbox_stats(session)

    async def requeue_outbox_event(self, session: AsyncSession, outbox_id: int) -> bool:
        """Give a FAILED outbox event another round of relay attempts."""
        success = await requeue_failed_event(session, outbox_id)
        if success:
            logger.info("Outbox event requeued", extra={"outbox_id": outbox_id})
        return success
