"""End-to-end tests for the job consumer"""

import asyncio

import pytest
from sqlalchemy import select

from jobengine.v1.jobs.consumer import JOB_COMPLETED_EVENT, JOB_FAILED_EVENT
from jobengine.v1.jobs.engine import JobEngine
from jobengine.v1.jobs.ledger import IdempotencyLedger
from jobengine.v1.jobs.models import LedgerEntry, LedgerStatus, OutboxEntry
from jobengine.v1.jobs.schemas import (
    FatalFailure,
    JobEnqueueRequest,
    JobMessage,
    OutboundEvent,
    RetryableFailure,
    Success,
)
from jobengine.v1.jobs.service import JobService


class ScriptedHandler:
    """Returns (or raises) the scripted results in order; the last one repeats."""

    def __init__(self, *results, delay: float = 0.0):
        self.results = list(results)
        self.delay = delay
        self.calls: list[int] = []

    async def handle(self, payload, attempt):
        self.calls.append(attempt)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


async def _ledger_entry(database, job_id="job-1") -> LedgerEntry:
    async with database.SessionLocal() as session:
        return await session.get(LedgerEntry, job_id)


async def _outbox(database) -> list[OutboxEntry]:
    async with database.SessionLocal() as session:
        result = await session.execute(select(OutboxEntry).order_by(OutboxEntry.id))
        return list(result.scalars().all())


async def _enqueue(settings, broker, registry, job_type="email", job_id="job-1", payload=None):
    service = JobService(settings, registry)
    return await service.enqueue_job(
        broker, JobEnqueueRequest(type=job_type, job_id=job_id, payload=payload or {})
    )


@pytest.fixture
async def engine(settings, database, broker, registry):
    engine = JobEngine(settings, database=database, broker=broker, registry=registry)
    await engine.start()
    yield engine
    if engine.running:
        await engine.stop()


class TestRetryFlow:
    @pytest.mark.asyncio
    async def test_fail_fail_succeed_completes_once(
        self, settings, database, broker, registry, engine, wait
    ):
        handler = ScriptedHandler(
            RetryableFailure("smtp down"),
            RetryableFailure("smtp down"),
            Success({"sent": True}),
        )
        registry.register("email", handler)

        await _enqueue(settings, broker, registry, payload={"to": "a@example.com"})
        await wait(lambda: len(handler.calls) == 3 and broker.idle)
        await wait(lambda: any(e.routing_key == JOB_COMPLETED_EVENT for e in broker.events))

        assert handler.calls == [1, 2, 3]

        published = broker.jobs_for("job-1")
        assert [p.message.attempt for p in published] == [1, 2, 3]
        assert [p.delay for p in published] == [None, 0.1, 0.2]
        assert [p.message_id for p in published] == ["job-1:1", "job-1:2", "job-1:3"]
        assert published[2].message.retry.last_error == "smtp down"

        entry = await _ledger_entry(database)
        assert entry.status == LedgerStatus.COMPLETED.value
        assert entry.attempt == 3

        rows = await _outbox(database)
        assert [(r.event_type, r.aggregate_id) for r in rows] == [(JOB_COMPLETED_EVENT, "job-1")]
        assert rows[0].payload["result"] == {"sent": True}
        assert all(d.acked for d in broker.deliveries)

    @pytest.mark.asyncio
    async def test_exception_counts_as_retryable(
        self, settings, database, broker, registry, engine, wait
    ):
        handler = ScriptedHandler(ConnectionError("reset"), Success())
        registry.register("email", handler)

        await _enqueue(settings, broker, registry)
        await wait(lambda: len(handler.calls) == 2 and broker.idle)

        entry = await _ledger_entry(database)
        assert entry.status == LedgerStatus.COMPLETED.value
        assert broker.jobs_for("job-1")[1].message.retry.last_error == "ConnectionError: reset"

    @pytest.mark.asyncio
    async def test_retries_stop_at_max_attempts(
        self, settings_factory, database, broker, registry, wait
    ):
        settings = settings_factory(job_max_attempts=2)
        engine = JobEngine(settings, database=database, broker=broker, registry=registry)
        handler = ScriptedHandler(RuntimeError("boom"))
        registry.register("email", handler)
        await engine.start()
        try:
            await _enqueue(settings, broker, registry)
            await wait(lambda: len(handler.calls) == 2 and broker.idle)
        finally:
            await engine.stop()

        assert len(broker.jobs_for("job-1")) == 2

        entry = await _ledger_entry(database)
        assert entry.status == LedgerStatus.FAILED.value
        assert entry.last_error == "Retries exhausted after 2 attempts: RuntimeError: boom"

        rows = await _outbox(database)
        assert [r.event_type for r in rows] == [JOB_FAILED_EVENT]


class TestTerminalOutcomes:
    @pytest.mark.asyncio
    async def test_fatal_failure_is_not_retried(
        self, settings, database, broker, registry, engine, wait
    ):
        handler = ScriptedHandler(FatalFailure("invalid address"))
        registry.register("email", handler)

        await _enqueue(settings, broker, registry)
        await wait(lambda: len(handler.calls) == 1 and broker.idle)
        await wait(lambda: any(e.routing_key == JOB_FAILED_EVENT for e in broker.events))

        assert len(broker.jobs_for("job-1")) == 1
        entry = await _ledger_entry(database)
        assert entry.status == LedgerStatus.FAILED.value
        assert entry.last_error == "invalid address"

    @pytest.mark.asyncio
    async def test_unknown_job_type_fails_without_retry(
        self, settings, database, broker, registry, engine, wait
    ):
        broker.deliver(JobMessage(job_id="job-1", type="unknown").to_bytes())
        await wait(lambda: broker.idle)

        entry = await _ledger_entry(database)
        assert entry.status == LedgerStatus.FAILED.value
        assert "No handler registered" in entry.last_error
        assert broker.jobs == []

    @pytest.mark.asyncio
    async def test_unsupported_result_is_fatal(
        self, settings, database, broker, registry, engine, wait
    ):
        registry.register("email", ScriptedHandler({"sent": True}))

        await _enqueue(settings, broker, registry)
        await wait(lambda: broker.idle)

        entry = await _ledger_entry(database)
        assert entry.status == LedgerStatus.FAILED.value
        assert "unsupported result dict" in entry.last_error

    @pytest.mark.asyncio
    async def test_handler_events_share_the_transaction(
        self, settings, database, broker, registry, engine, wait
    ):
        registry.register(
            "email",
            ScriptedHandler(
                Success(
                    events=[
                        OutboundEvent("email.sent", {"to": "a@example.com"}),
                        OutboundEvent("user.notified", {}, aggregate_id="user-7"),
                    ]
                )
            ),
        )

        await _enqueue(settings, broker, registry)
        await wait(lambda: broker.idle)

        rows = await _outbox(database)
        assert [(r.event_type, r.aggregate_id) for r in rows] == [
            ("email.sent", "job-1"),
            ("user.notified", "user-7"),
            (JOB_COMPLETED_EVENT, "job-1"),
        ]

    @pytest.mark.asyncio
    async def test_undecodable_message_is_dead_lettered(self, broker, engine, wait):
        delivery = broker.deliver(b"not json")
        await wait(lambda: delivery.settled)

        assert delivery.nacked is True
        assert delivery.requeue is False


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_redelivery_after_completion_is_acked_without_running(
        self, settings, database, broker, registry, engine, wait
    ):
        handler = ScriptedHandler(Success())
        registry.register("email", handler)
        await _enqueue(settings, broker, registry)
        await wait(lambda: broker.idle)

        body = broker.jobs_for("job-1")[0].message.to_bytes()
        duplicate = broker.deliver(body, redelivered=True)
        await wait(lambda: duplicate.settled)

        assert duplicate.acked is True
        assert handler.calls == [1]
        assert len(await _outbox(database)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_run_once(
        self, settings, database, broker, registry, engine, wait
    ):
        handler = ScriptedHandler(Success(), delay=0.3)
        registry.register("email", handler)
        body = JobMessage(job_id="job-1", type="email").to_bytes()

        broker.deliver(body)
        broker.deliver(body, redelivered=True)
        await wait(lambda: len(handler.calls) == 1 and broker.idle)

        assert handler.calls == [1]
        deferred = [p for p in broker.jobs_for("job-1") if p.delay]
        assert deferred
        assert all(p.message.attempt == 1 for p in deferred)

        entry = await _ledger_entry(database)
        assert entry.status == LedgerStatus.COMPLETED.value
        completed = [r for r in await _outbox(database) if r.event_type == JOB_COMPLETED_EVENT]
        assert len(completed) == 1

    @pytest.mark.asyncio
    async def test_duplicate_of_long_running_job_is_deferred_until_it_finishes(
        self, settings, database, broker, registry, engine, wait
    ):
        handler = ScriptedHandler(Success(), delay=0.6)
        registry.register("email", handler)
        body = JobMessage(job_id="job-1", type="email").to_bytes()

        broker.deliver(body)
        await wait(lambda: len(handler.calls) == 1)
        broker.deliver(body, redelivered=True)
        await wait(lambda: broker.idle and not engine.in_flight)

        assert handler.calls == [1]
        deferred = [p for p in broker.jobs_for("job-1") if p.delay]
        assert len(deferred) >= 3
        assert all(d.acked for d in broker.deliveries)

        entry = await _ledger_entry(database)
        assert entry.status == LedgerStatus.COMPLETED.value
        completed = [r for r in await _outbox(database) if r.event_type == JOB_COMPLETED_EVENT]
        assert len(completed) == 1


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_failed_retry_handoff_requeues_delivery(
        self, settings, database, broker, registry, engine, wait
    ):
        registry.register("email", ScriptedHandler(RetryableFailure("smtp down")))
        broker.fail_job_publishes = 100

        delivery = broker.deliver(JobMessage(job_id="job-1", type="email").to_bytes())
        await wait(lambda: delivery.settled)

        assert delivery.nacked is True
        assert delivery.requeue is True
        # The retry handoff was rolled back with the failed publish
        entry = await _ledger_entry(database)
        assert entry.status == LedgerStatus.PROCESSING.value
        assert entry.attempt == 1

    @pytest.mark.asyncio
    async def test_unexpected_publish_error_requeues_delivery(
        self, settings, database, broker, registry, engine, wait
    ):
        handler = ScriptedHandler(RetryableFailure("smtp down"))
        registry.register("email", handler)
        broker.job_publish_error = RuntimeError("channel is reconnecting")

        delivery = broker.deliver(JobMessage(job_id="job-1", type="email").to_bytes())
        await wait(lambda: delivery.settled)

        assert delivery.nacked is True
        assert delivery.requeue is True
        assert handler.calls == [1]
        entry = await _ledger_entry(database)
        assert entry.status == LedgerStatus.PROCESSING.value
        assert entry.attempt == 1

    @pytest.mark.asyncio
    async def test_deliveries_after_shutdown_are_requeued(
        self, settings, database, broker, registry, make_delivery
    ):
        registry.register("email", ScriptedHandler(Success()))
        engine = JobEngine(settings, database=database, broker=broker, registry=registry)
        await engine.start()
        await engine.stop()

        delivery = make_delivery(JobMessage(job_id="job-1", type="email").to_bytes())
        await engine.consumer.on_delivery(delivery)

        assert delivery.nacked is True
        assert delivery.requeue is True
        assert await _ledger_entry(database) is None


class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_waits_for_running_job(
        self, settings, database, broker, registry, wait
    ):
        handler = ScriptedHandler(Success(), delay=0.2)
        registry.register("email", handler)
        engine = JobEngine(settings, database=database, broker=broker, registry=registry)
        await engine.start()

        await _enqueue(settings, broker, registry)
        await wait(lambda: engine.in_flight == 1)

        report = await engine.stop()

        assert report.completed is True
        assert report.abandoned == 0
        entry = await _ledger_entry(database)
        assert entry.status == LedgerStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_drain_timeout_abandons_job(
        self, settings_factory, database, broker, registry, wait
    ):
        settings = settings_factory(drain_timeout_s=0.1)
        handler = ScriptedHandler(Success(), delay=0.5)
        registry.register("email", handler)
        engine = JobEngine(settings, database=database, broker=broker, registry=registry)
        await engine.start()

        await _enqueue(settings, broker, registry)
        await wait(lambda: engine.in_flight == 1)

        report = await engine.stop()

        assert report.completed is False
        assert report.abandoned == 1
        # The handler is left to finish on its own
        await wait(lambda: engine.in_flight == 0)

    @pytest.mark.asyncio
    async def test_engine_cannot_start_twice(self, engine):
        with pytest.raises(RuntimeError):
            await engine.start()

    @pytest.mark.asyncio
    async def test_worker_id_is_bound_to_claims(
        self, settings, database, broker, registry, engine, wait
    ):
        registry.register("email", ScriptedHandler(Success()))

        await _enqueue(settings, broker, registry)
        await wait(lambda: broker.idle)

        entry = await _ledger_entry(database)
        assert entry.claimed_by.startswith(f"{engine.worker_id}:")
        assert isinstance(engine.ledger, IdempotencyLedger)
