"""
Idempotency ledger (inbox) for broker deliveries.

The broker delivers at least once, so the same job_id can show up several
times, even concurrently. The ledger is the single source of truth that
decides which delivery gets to run a job.
"""

from enum import Enum

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.config.logging import get_logger
from jobengine.config.settings import Settings
from jobengine.v1.jobs.models import (
    ACTIVE_STATUSES,
    LedgerEntry,
    LedgerStatus,
    is_valid_transition,
    utcnow,
)
from jobengine.v1.jobs.schemas import LedgerStatsResponse

logger = get_logger(__name__)


class ClaimOutcome(str, Enum):
    """Result of claiming a job for one delivery."""

    ACQUIRED = "acquired"
    ALREADY_TERMINAL = "already_terminal"
    ALREADY_IN_PROGRESS = "already_in_progress"
    SUPERSEDED = "superseded"


class IdempotencyLedger:
    """
    Ledger of claimed job identifiers.

    Claims commit on their own. Status transitions run inside the caller's
    transaction so they can be committed together with outbox rows.
    """

    def __init__(self, settings: Settings, worker_id: str):
        self.settings = settings
        self.worker_id = worker_id

    async def claim(
        self,
        session: AsyncSession,
        job_id: str,
        attempt: int,
        job_type: str,
        owner: str | None = None,
    ) -> ClaimOutcome:
        """
        Claim ``job_id`` for the delivery of ``attempt``.

        A new job is inserted as CLAIMED; the unique key guarantees a single
        winner. An existing row is taken over only when it is waiting for
        a retry of this attempt (or an earlier one). A CLAIMED or PROCESSING
        row is never taken over: a claim left behind by a dead worker stays
        put for reconciliation, and its deliveries keep being deferred.
        """
        owner = owner or self.worker_id
        now = utcnow()

        session.add(
            LedgerEntry(
                job_id=job_id,
                job_type=job_type,
                status=LedgerStatus.CLAIMED.value,
                attempt=attempt,
                claimed_at=now,
                claimed_by=owner,
                updated_at=now,
            )
        )
        try:
            await session.commit()
            logger.debug("Job claimed", job_id=job_id, attempt=attempt)
            return ClaimOutcome.ACQUIRED
        except IntegrityError:
            await session.rollback()

        result = await session.execute(
            update(LedgerEntry)
            .where(
                and_(
                    LedgerEntry.job_id == job_id,
                    LedgerEntry.attempt <= attempt,
                    LedgerEntry.status == LedgerStatus.RETRY_SCHEDULED.value,
                )
            )
            .values(
                status=LedgerStatus.CLAIMED.value,
                attempt=attempt,
                claimed_at=now,
                claimed_by=owner,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await session.commit()
            logger.info("Job claim re-acquired", job_id=job_id, attempt=attempt)
            return ClaimOutcome.ACQUIRED

        await session.rollback()
        entry = await self.get(session, job_id)
        if entry is None:
            # Row vanished between statements; let the broker offer it again.
            return ClaimOutcome.ALREADY_IN_PROGRESS

        if entry.is_terminal():
            return ClaimOutcome.ALREADY_TERMINAL
        if entry.attempt > attempt:
            return ClaimOutcome.SUPERSEDED
        return ClaimOutcome.ALREADY_IN_PROGRESS

    async def _transition(
        self,
        session: AsyncSession,
        job_id: str,
        target: LedgerStatus,
        expected: set[LedgerStatus],
        owner: str | None,
        **values,
    ) -> bool:
        """Compare-and-set status move; a miss is logged and reported as False."""
        invalid = [s.value for s in expected if not is_valid_transition(s, target)]
        if invalid:
            raise ValueError(f"Invalid ledger transition {invalid} -> {target.value}")

        now = utcnow()
        result = await session.execute(
            update(LedgerEntry)
            .where(
                and_(
                    LedgerEntry.job_id == job_id,
                    LedgerEntry.status.in_([s.value for s in expected]),
                    LedgerEntry.claimed_by == (owner or self.worker_id),
                )
            )
            .values(status=target.value, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            logger.warning(
                "Ignored ledger transition",
                job_id=job_id,
                target=target.value,
                expected=sorted(s.value for s in expected),
            )
            return False

        logger.debug("Ledger transition", job_id=job_id, status=target.value)
        return True

    async def mark_processing(
        self, session: AsyncSession, job_id: str, owner: str | None = None
    ) -> bool:
        return await self._transition(
            session, job_id, LedgerStatus.PROCESSING, {LedgerStatus.CLAIMED}, owner
        )

    async def mark_completed(
        self, session: AsyncSession, job_id: str, owner: str | None = None
    ) -> bool:
        return await self._transition(
            session,
            job_id,
            LedgerStatus.COMPLETED,
            {LedgerStatus.PROCESSING},
            owner,
            completed_at=utcnow(),
            last_error=None,
        )

    async def mark_failed(
        self,
        session: AsyncSession,
        job_id: str,
        reason: str,
        owner: str | None = None,
    ) -> bool:
        return await self._transition(
            session,
            job_id,
            LedgerStatus.FAILED,
            {LedgerStatus.CLAIMED, LedgerStatus.PROCESSING},
            owner,
            completed_at=utcnow(),
            last_error=reason,
        )

    async def mark_retry_scheduled(
        self,
        session: AsyncSession,
        job_id: str,
        next_attempt: int,
        reason: str,
        owner: str | None = None,
    ) -> bool:
        """Close this attempt while keeping the job open for ``next_attempt``."""
        return await self._transition(
            session,
            job_id,
            LedgerStatus.RETRY_SCHEDULED,
            {LedgerStatus.PROCESSING},
            owner,
            attempt=next_attempt,
            last_error=reason,
            claimed_by=None,
        )

    async def get(self, session: AsyncSession, job_id: str) -> LedgerEntry | None:
        result = await session.execute(
            select(LedgerEntry).where(LedgerEntry.job_id == job_id)
        )
        return result.scalar_one_or_none()

    async def stats(self, session: AsyncSession) -> LedgerStatsResponse:
        """Counts by status and by job type."""
        status_result = await session.execute(
            select(LedgerEntry.status, func.count(LedgerEntry.job_id)).group_by(
                LedgerEntry.status
            )
        )
        by_status = {status: count for status, count in status_result.all()}

        type_result = await session.execute(
            select(LedgerEntry.job_type, func.count(LedgerEntry.job_id)).group_by(
                LedgerEntry.job_type
            )
        )
        by_type = {job_type: count for job_type, count in type_result.all()}

        return LedgerStatsResponse(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_type=by_type,
            in_progress=sum(by_status.get(s.value, 0) for s in ACTIVE_STATUSES),
        )
