import asyncio
from collections.abc import Callable, Generator
from dataclasses import dataclass
from typing import Any

import pytest
from fastapi.testclient import TestClient

from jobengine.config.settings import Settings, get_settings
from jobengine.infra.broker import get_broker
from jobengine.infra.database import Database, get_database
from jobengine.main import create_app
from jobengine.v1.core.exceptions import BrokerUnavailableError
from jobengine.v1.core.registries import JobRegistry
from jobengine.v1.jobs.schemas import JobMessage


@dataclass
class PublishedJob:
    message: JobMessage
    message_id: str
    delay: float | None


@dataclass
class PublishedEvent:
    routing_key: str
    body: bytes
    message_id: str
    headers: dict[str, Any]


class FakeDelivery:
    """Records how the consumer settled a message."""

    def __init__(self, body: bytes, redelivered: bool = False):
        self.body = body
        self.redelivered = redelivered
        self.acked = False
        self.nacked = False
        self.requeue: bool | None = None

    @property
    def settled(self) -> bool:
        return self.acked or self.nacked

    async def ack(self) -> None:
        assert not self.settled, "delivery settled twice"
        self.acked = True

    async def nack(self, requeue: bool = True) -> None:
        assert not self.settled, "delivery settled twice"
        self.nacked = True
        self.requeue = requeue


class FakeBroker:
    """
    In-memory broker.

    Delayed publishes are delivered with ``loop.call_later``; nacked
    deliveries are recorded, not redelivered.
    """

    def __init__(self):
        self.connected = False
        self.jobs: list[PublishedJob] = []
        self.events: list[PublishedEvent] = []
        self.deliveries: list[FakeDelivery] = []
        self.undelivered: list[FakeDelivery] = []
        self.fail_job_publishes = 0
        self.job_publish_error: Exception | None = None
        self.fail_event: Callable[[str, bytes], bool] | None = None
        self.prefetch: int | None = None
        self._callback = None
        self._tasks: set[asyncio.Task] = set()
        self._timers: list[asyncio.TimerHandle] = []
        self._scheduled = 0

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        self._scheduled = 0
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    async def publish_job(
        self, body: bytes, *, message_id: str, delay: float | None = None
    ) -> None:
        if self.fail_job_publishes:
            self.fail_job_publishes -= 1
            raise BrokerUnavailableError("publish rejected")
        if self.job_publish_error is not None:
            raise self.job_publish_error

        self.jobs.append(PublishedJob(JobMessage.from_bytes(body), message_id, delay))
        if delay:
            loop = asyncio.get_running_loop()
            self._scheduled += 1
            self._timers.append(loop.call_later(delay, self._deliver_later, body))
        else:
            self.deliver(body)

    async def publish_event(
        self,
        routing_key: str,
        body: bytes,
        *,
        message_id: str,
        headers: dict[str, Any] | None = None,
    ) -> None:
        if self.fail_event is not None and self.fail_event(routing_key, body):
            raise BrokerUnavailableError("event publish rejected")
        self.events.append(PublishedEvent(routing_key, body, message_id, headers or {}))

    async def start_consuming(self, callback, prefetch: int) -> None:
        self._callback = callback
        self.prefetch = prefetch
        pending, self.undelivered = self.undelivered, []
        for delivery in pending:
            self._dispatch(delivery)

    async def stop_consuming(self) -> None:
        self._callback = None

    @property
    def idle(self) -> bool:
        """No delayed message pending and every delivery settled."""
        return self._scheduled == 0 and all(d.settled for d in self.deliveries)

    def _deliver_later(self, body: bytes) -> None:
        self._scheduled -= 1
        self.deliver(body)

    def deliver(self, body: bytes, redelivered: bool = False) -> FakeDelivery:
        delivery = FakeDelivery(body, redelivered)
        self.deliveries.append(delivery)
        if self._callback is None:
            self.undelivered.append(delivery)
        else:
            self._dispatch(delivery)
        return delivery

    def _dispatch(self, delivery: FakeDelivery) -> None:
        task = asyncio.get_running_loop().create_task(self._callback(delivery))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def jobs_for(self, job_id: str) -> list[PublishedJob]:
        return [job for job in self.jobs if job.message.job_id == job_id]


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        "debug": False,
        "job_max_attempts": 5,
        "job_backoff_base_ms": 100,
        "job_max_backoff_s": 2,
        "job_backoff_jitter": 0.0,
        "job_concurrency": 4,
        "job_defer_delay_s": 0.1,
        "relay_poll_interval_ms": 20,
        "relay_max_attempts": 3,
        "drain_timeout_s": 2.0,
        "transient_retry_attempts": 2,
        "transient_retry_base_ms": 1,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test SQLite file."""
    return make_settings(tmp_path)


@pytest.fixture
def settings_factory(tmp_path) -> Callable[..., Settings]:
    """Build settings with overrides, sharing the per-test SQLite file."""
    return lambda **overrides: make_settings(tmp_path, **overrides)


@pytest.fixture
def wait():
    return wait_until


@pytest.fixture
async def database(settings):
    """Database with tables created, disposed after the test."""
    db = Database(settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def registry() -> JobRegistry:
    """Fresh handler registry, isolated from the global one."""
    return JobRegistry()


@pytest.fixture
def api_database(settings) -> Database:
    """Database for sync API tests; tables are created up front."""
    db = Database(settings)
    asyncio.run(db.create_all())
    return db


@pytest.fixture
def app(settings, api_database, broker):
    """Create a test FastAPI application with test database and broker."""
    app = create_app()

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_database] = lambda: api_database
    app.dependency_overrides[get_broker] = lambda: broker

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_delivery():
    return FakeDelivery
