"""
Transactional outbox and its relay loop.

Events are inserted in the same transaction as the ledger write that
caused them, and published later by a polling loop. Several processes may
run a relay: an aggregate is only relayed by the process that holds the row
lock on its oldest pending event.
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from jobengine.config.logging import get_logger
from jobengine.config.settings import Settings
from jobengine.infra.broker import Broker
from jobengine.infra.database import Database
from jobengine.v1.jobs.models import OutboxEntry, OutboxStatus, utcnow
from jobengine.v1.jobs.schemas import OutboundEvent, OutboxStatsResponse

logger = get_logger(__name__)


class EventEnvelope(BaseModel):
    """Body of a relayed event on the events exchange."""

    event_id: str
    event_type: str
    aggregate_id: str
    payload: dict
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: OutboxEntry) -> "EventEnvelope":
        return cls(
            event_id=str(entry.event_id),
            event_type=entry.event_type,
            aggregate_id=entry.aggregate_id,
            payload=entry.payload,
            created_at=entry.created_at,
        )


def add_events(
    session: AsyncSession,
    events: Iterable[OutboundEvent],
    default_aggregate_id: str,
) -> list[OutboxEntry]:
    """Stage outbox rows in the caller's transaction; nothing is committed here."""
    entries = [
        OutboxEntry(
            aggregate_id=event.aggregate_id or default_aggregate_id,
            event_type=event.event_type,
            payload=event.payload,
            status=OutboxStatus.PENDING.value,
            attempts=0,
            created_at=utcnow(),
        )
        for event in events
    ]
    session.add_all(entries)
    return entries


def pending_heads(limit: int) -> Select:
    """Oldest PENDING row of each aggregate, skipping rows another relay has locked."""
    older = aliased(OutboxEntry)
    older_pending = (
        select(older.id)
        .where(
            older.aggregate_id == OutboxEntry.aggregate_id,
            older.status == OutboxStatus.PENDING.value,
            or_(
                older.created_at < OutboxEntry.created_at,
                and_(
                    older.created_at == OutboxEntry.created_at,
                    older.id < OutboxEntry.id,
                ),
            ),
        )
        .exists()
    )
    return (
        select(OutboxEntry)
        .where(OutboxEntry.status == OutboxStatus.PENDING.value, ~older_pending)
        .order_by(OutboxEntry.created_at, OutboxEntry.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )


@dataclass
class RelayCycleResult:
    relayed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.relayed + self.retried + self.failed


class OutboxRelay:
    """
    Continuous outbox relay.

    Each cycle reads the oldest PENDING rows, publishes aggregates
    concurrently and the rows of one aggregate strictly in order. A failed
    row holds back the later rows of its aggregate until it is relayed or
    given up on.
    """

    def __init__(self, settings: Settings, database: Database, broker: Broker):
        self.settings = settings
        self.database = database
        self.broker = broker
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def poll_interval(self) -> float:
        return self.settings.relay_poll_interval_ms / 1000

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Spawn the relay loop."""
        if self.is_running():
            raise RuntimeError("Outbox relay is already running")

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="outbox-relay")

    async def stop(self) -> None:
        """Signal the loop and wait for the current cycle to finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run(self) -> None:
        logger.info(
            "Outbox relay started",
            poll_interval_s=self.poll_interval,
            batch_size=self.settings.relay_batch_size,
        )
        while not self._stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Outbox relay cycle failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Outbox relay stopped")

    async def run_cycle(self) -> RelayCycleResult:
        """Relay one batch of pending events and commit the outcome."""
        result = RelayCycleResult()

        async with self.database.SessionLocal() as session:
            rows = await self._lock_batch(session)

            if not rows:
                return result

            by_aggregate: dict[str, list[OutboxEntry]] = {}
            for row in rows:
                by_aggregate.setdefault(row.aggregate_id, []).append(row)

            await asyncio.gather(
                *(self._relay_aggregate(group, result) for group in by_aggregate.values())
            )
            await session.commit()

        if result.processed:
            logger.info(
                "Outbox relay cycle",
                relayed=result.relayed,
                retried=result.retried,
                failed=result.failed,
                skipped=result.skipped,
            )
        return result

    async def _lock_batch(self, session: AsyncSession) -> list[OutboxEntry]:
        """
        Lock the next batch of pending rows.

        Aggregate heads are taken with SKIP LOCKED; the later rows of those
        aggregates are then locked too. A relay that loses the race for a
        head never sees the rest of that aggregate, because the locked head
        is still PENDING and keeps the later rows from being heads.
        """
        batch_size = self.settings.relay_batch_size
        heads = (await session.execute(pending_heads(batch_size))).scalars().all()
        if not heads:
            return []

        aggregate_ids = sorted({head.aggregate_id for head in heads})
        result = await session.execute(
            select(OutboxEntry)
            .where(
                OutboxEntry.status == OutboxStatus.PENDING.value,
                OutboxEntry.aggregate_id.in_(aggregate_ids),
            )
            .order_by(OutboxEntry.created_at, OutboxEntry.id)
            .limit(batch_size)
            .with_for_update()
        )
        return list(result.scalars().all())

    async def _relay_aggregate(
        self, rows: list[OutboxEntry], result: RelayCycleResult
    ) -> None:
        for index, row in enumerate(rows):
            try:
                await self.broker.publish_event(
                    row.event_type,
                    EventEnvelope.from_entry(row).model_dump_json().encode("utf-8"),
                    message_id=str(row.event_id),
                    headers={"aggregate_id": row.aggregate_id},
                )
            except Exception as e:
                row.attempts += 1
                row.last_error = str(e)

                if row.attempts >= self.settings.relay_max_attempts:
                    row.status = OutboxStatus.FAILED.value
                    result.failed += 1
                    logger.error(
                        "Outbox event failed permanently",
                        outbox_id=row.id,
                        event_type=row.event_type,
                        aggregate_id=row.aggregate_id,
                        attempts=row.attempts,
                        error=str(e),
                    )
                    continue

                result.retried += 1
                result.skipped += len(rows) - index - 1
                logger.warning(
                    "Outbox publish failed, will retry",
                    outbox_id=row.id,
                    aggregate_id=row.aggregate_id,
                    attempts=row.attempts,
                    error=str(e),
                )
                return

            row.status = OutboxStatus.RELAYED.value
            row.relayed_at = utcnow()
            result.relayed += 1


async def outbox_stats(session: AsyncSession) -> OutboxStatsResponse:
    """Counts by status and the age of the oldest pending row."""
    status_result = await session.execute(
        select(OutboxEntry.status, func.count(OutboxEntry.id)).group_by(OutboxEntry.status)
    )
    oldest_result = await session.execute(
        select(func.min(OutboxEntry.created_at)).where(
            OutboxEntry.status == OutboxStatus.PENDING.value
        )
    )
    return OutboxStatsResponse(
        by_status={status: count for status, count in status_result.all()},
        oldest_pending_at=oldest_result.scalar(),
    )


async def requeue_failed_event(session: AsyncSession, outbox_id: int) -> bool:
    """
    Put a FAILED event back to PENDING with a fresh attempt budget.

    Giving up on an event unblocks the later events of its aggregate, so
    those may already be relayed. A requeued event is then published after
    them, out of ``created_at`` order; consumers that care compare the
    envelope's ``created_at``.
    """
    result = await session.execute(
        update(OutboxEntry)
        .where(
            OutboxEntry.id == outbox_id,
            OutboxEntry.status == OutboxStatus.FAILED.value,
        )
        .values(status=OutboxStatus.PENDING.value, attempts=0, last_error=None)
    )
    await session.commit()
    return result.rowcount > 0
