"""
Broker-backed job engine wiring: consumer, retry scheduler, outbox relay
and drain coordinator sharing one database and one broker connection.
"""

import asyncio
import os
import socket

from sqlalchemy.exc import SQLAlchemyError

from jobengine.config.logging import bind_worker_context, get_logger
from jobengine.config.settings import Settings
from jobengine.infra.broker import Broker, RabbitBroker
from jobengine.infra.database import Database
from jobengine.v1.core.exceptions import BrokerUnavailableError
from jobengine.v1.core.registries import JobRegistry
from jobengine.v1.core.retry import retry_transient
from jobengine.v1.jobs.consumer import JobConsumer
from jobengine.v1.jobs.drain import DrainCoordinator, DrainReport
from jobengine.v1.jobs.ledger import IdempotencyLedger
from jobengine.v1.jobs.outbox import OutboxRelay
from jobengine.v1.jobs.scheduler import RetryScheduler

logger = get_logger(__name__)


class JobEngine:
    """
    Production job engine.

    Features:
    - Ledger claims turn at-least-once delivery into effectively-once runs
    - Exponential backoff with jitter through the broker's delayed route
    - Outbox relay started once core resources are healthy
    - Bounded graceful drain on shutdown
    """

    def __init__(
        self,
        settings: Settings,
        database: Database | None = None,
        broker: Broker | None = None,
        registry: JobRegistry | None = None,
    ):
        self.settings = settings
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.database = database or Database(settings)
        self.broker = broker or RabbitBroker(settings)
        self.running = False

        self.ledger = IdempotencyLedger(settings, self.worker_id)
        self.scheduler = RetryScheduler(settings, self.broker)
        self.drain = DrainCoordinator(settings.drain_timeout_s)
        self.consumer = JobConsumer(
            settings,
            self.database,
            self.broker,
            self.ledger,
            self.scheduler,
            self.drain,
            registry=registry,
        )
        self.drain.set_stop_intake(self.consumer.stop)
        self.relay = OutboxRelay(settings, self.database, self.broker)

    @property
    def in_flight(self) -> int:
        return self.drain.in_flight

    async def start(self) -> None:
        """Check core resources, then start the relay and the consumer."""
        if self.running:
            raise RuntimeError("Engine is already running")

        bind_worker_context(self.worker_id)
        retry_options = {
            "attempts": self.settings.transient_retry_attempts,
            "base_delay": self.settings.transient_retry_base_ms / 1000,
        }

        await retry_transient(
            "database ping",
            self.database.ping,
            exceptions=(SQLAlchemyError, OSError),
            **retry_options,
        )
        await retry_transient(
            "broker connect",
            self.broker.connect,
            exceptions=(BrokerUnavailableError,),
            **retry_options,
        )

        await self.relay.start()
        await self.consumer.start()
        self.running = True

        logger.info(
            "Job engine started",
            concurrency=self.settings.job_concurrency,
            max_attempts=self.settings.job_max_attempts,
            drain_timeout_s=self.settings.drain_timeout_s,
        )

    async def stop(self) -> DrainReport:
        """Drain in-flight jobs, stop the relay, release connections."""
        logger.info("Stopping job engine")
        report = await self.drain.begin_shutdown()

        await self.relay.stop()
        await self.broker.close()
        await self.database.close()
        self.running = False

        logger.info(
            "Job engine stopped",
            drained=report.completed,
            abandoned=report.abandoned,
        )
        return report

    async def run_until(self, stop_event: asyncio.Event) -> DrainReport:
        """Run until ``stop_event`` is set, then shut down gracefully."""
        await self.start()
        await stop_event.wait()
        return await self.stop()
