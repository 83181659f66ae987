"""
Job consumer: turns broker deliveries into ledger-guarded handler runs.

A delivery is acknowledged only after the write that records its outcome
(terminal status, or retry handoff) has committed. If that write fails the
delivery is requeued and the ledger keeps a second run from starting; the
claim stays CLAIMED or PROCESSING until it is reconciled.
"""

import asyncio
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from jobengine.config.logging import get_logger
from jobengine.config.settings import Settings
from jobengine.infra.broker import Broker, Delivery
from jobengine.infra.database import Database
from jobengine.v1.core.registries import JobRegistry, job_registry
from jobengine.v1.core.retry import retry_transient
from jobengine.v1.jobs.drain import DrainCoordinator
from jobengine.v1.jobs.ledger import ClaimOutcome, IdempotencyLedger
from jobengine.v1.jobs.outbox import add_events
from jobengine.v1.jobs.scheduler import RetryScheduler
from jobengine.v1.jobs.schemas import (
    FatalFailure,
    JobMessage,
    JobResult,
    OutboundEvent,
    RetryableFailure,
    Success,
)

logger = get_logger(__name__)

JOB_COMPLETED_EVENT = "job.completed"
JOB_FAILED_EVENT = "job.failed"


class JobConsumer:
    """Consumes the primary queue with a bounded number of worker slots."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        broker: Broker,
        ledger: IdempotencyLedger,
        scheduler: RetryScheduler,
        drain: DrainCoordinator,
        registry: JobRegistry | None = None,
    ):
        self.settings = settings
        self.database = database
        self.broker = broker
        self.ledger = ledger
        self.scheduler = scheduler
        self.drain = drain
        self.registry = registry if registry is not None else job_registry
        self._slots = asyncio.Semaphore(settings.job_concurrency)

    @property
    def max_attempts(self) -> int:
        return self.settings.job_max_attempts

    async def start(self) -> None:
        await self.broker.start_consuming(
            self.on_delivery, prefetch=self.settings.job_concurrency
        )

    async def stop(self) -> None:
        """Cancel the subscription; deliveries already received keep running."""
        await self.broker.stop_consuming()

    async def on_delivery(self, delivery: Delivery) -> None:
        """Broker callback for one delivery."""
        if not self.drain.accepting:
            await _settle(delivery, ack=False)
            return

        async with self.drain.track():
            async with self._slots:
                await self._process(delivery)

    async def _process(self, delivery: Delivery) -> None:
        try:
            message = JobMessage.from_bytes(delivery.body)
        except ValidationError as e:
            logger.error("Discarding undecodable job message", error=str(e))
            await _settle(delivery, ack=False, requeue=False)
            return

        log = logger.bind(
            job_id=message.job_id,
            job_type=message.type,
            attempt=message.attempt,
            redelivered=delivery.redelivered,
        )
        owner = f"{self.ledger.worker_id}:{uuid4().hex[:12]}"

        try:
            outcome = await retry_transient(
                "ledger claim",
                lambda: self._claim(message, owner),
                attempts=self.settings.transient_retry_attempts,
                base_delay=self.settings.transient_retry_base_ms / 1000,
                exceptions=(SQLAlchemyError, OSError),
            )
        except Exception:
            log.exception("Ledger unavailable, requeueing delivery")
            await _settle(delivery, ack=False)
            return

        if outcome in (ClaimOutcome.ALREADY_TERMINAL, ClaimOutcome.SUPERSEDED):
            log.info("Discarding duplicate delivery", outcome=outcome.value)
            await _settle(delivery, ack=True)
            return

        if outcome is ClaimOutcome.ALREADY_IN_PROGRESS:
            await self._defer(delivery, message, log)
            return

        await self._run_claimed(delivery, message, owner, log)

    async def _claim(self, message: JobMessage, owner: str) -> ClaimOutcome:
        async with self.database.SessionLocal() as session:
            return await self.ledger.claim(
                session, message.job_id, message.attempt, message.type, owner=owner
            )

    async def _defer(self, delivery: Delivery, message: JobMessage, log) -> None:
        """Another worker holds the claim: offer the message again later."""
        try:
            await self.scheduler.defer(message, self.settings.job_defer_delay_s)
        except Exception:
            log.exception("Could not defer in-progress job, requeueing delivery")
            await _settle(delivery, ack=False)
            return
        await _settle(delivery, ack=True)

    async def _run_claimed(
        self, delivery: Delivery, message: JobMessage, owner: str, log
    ) -> None:
        try:
            async with self.database.SessionLocal() as session:
                marked = await self.ledger.mark_processing(
                    session, message.job_id, owner=owner
                )
                await session.commit()
        except Exception:
            log.exception("Failed to mark job processing, requeueing delivery")
            await _settle(delivery, ack=False)
            return

        if not marked:
            log.warning("Claim lost before processing started")
            await _settle(delivery, ack=True)
            return

        log.info("Processing job started")
        result = await self._invoke(message, log)

        try:
            recorded = await self._record_outcome(message, result, owner, log)
        except Exception:
            # Outcome not recorded: the ledger still blocks a second run.
            log.exception("Failed to record job outcome, requeueing delivery")
            await _settle(delivery, ack=False)
            return

        if not recorded:
            log.warning("Claim lost before outcome was recorded")
        await _settle(delivery, ack=True)

    async def _invoke(self, message: JobMessage, log) -> JobResult:
        """Run the business handler and classify whatever it produced."""
        try:
            handler = self.registry.get(message.type)
        except KeyError:
            return FatalFailure(f"No handler registered for job type '{message.type}'")

        try:
            result = await handler.handle(message.payload, message.attempt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("Job handler raised")
            return RetryableFailure(f"{type(e).__name__}: {e}")

        if not isinstance(result, (Success, RetryableFailure, FatalFailure)):
            return FatalFailure(
                f"Handler returned unsupported result {type(result).__name__}"
            )
        return result

    async def _record_outcome(
        self, message: JobMessage, result: JobResult, owner: str, log
    ) -> bool:
        """
        Persist the outcome in one transaction.

        Returns False when the ledger no longer lists this delivery as the
        owner; nothing is written in that case.
        """
        job_id = message.job_id

        async with self.database.SessionLocal() as session:
            if isinstance(result, Success):
                recorded = await self.ledger.mark_completed(session, job_id, owner=owner)
                if recorded:
                    add_events(
                        session,
                        [
                            *result.events,
                            OutboundEvent(
                                JOB_COMPLETED_EVENT,
                                {
                                    "job_id": job_id,
                                    "type": message.type,
                                    "attempt": message.attempt,
                                    "result": result.result,
                                },
                            ),
                        ],
                        default_aggregate_id=job_id,
                    )

            elif isinstance(result, RetryableFailure) and message.attempt < self.max_attempts:
                recorded = await self.ledger.mark_retry_scheduled(
                    session, job_id, message.attempt + 1, result.reason, owner=owner
                )
                if recorded:
                    # Publish before commit: a failed publish rolls the handoff back.
                    await self.scheduler.schedule_retry(message, result.reason)

            else:
                if isinstance(result, RetryableFailure):
                    reason = (
                        f"Retries exhausted after {message.attempt} attempts: {result.reason}"
                    )
                else:
                    reason = result.reason

                recorded = await self.ledger.mark_failed(
                    session, job_id, reason, owner=owner
                )
                if recorded:
                    add_events(
                        session,
                        [
                            OutboundEvent(
                                JOB_FAILED_EVENT,
                                {
                                    "job_id": job_id,
                                    "type": message.type,
                                    "attempt": message.attempt,
                                    "reason": reason,
                                },
                            )
                        ],
                        default_aggregate_id=job_id,
                    )

            if not recorded:
                await session.rollback()
                return False

            await session.commit()

        if isinstance(result, Success):
            log.info("Processing job completed successfully")
        elif isinstance(result, RetryableFailure) and message.attempt < self.max_attempts:
            log.warning("Job attempt failed, retry scheduled", reason=result.reason)
        else:
            log.error("Job failed", reason=reason)
        return True


async def _settle(delivery: Delivery, *, ack: bool, requeue: bool = True) -> None:
    """Ack or nack; a broken channel means the broker redelivers anyway."""
    try:
        if ack:
            await delivery.ack()
        else:
            await delivery.nack(requeue=requeue)
    except Exception:
        logger.exception("Failed to settle delivery", ack=ack, requeue=requeue)
