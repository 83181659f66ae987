"""
AMQP broker adapter.

Topology declared on connect:

- ``jobs`` direct exchange -> primary queue (quorum by default)
- ``jobs.delayed`` direct exchange -> one TTL queue per delay bucket; each
  dead-letters into the jobs exchange once its TTL elapses, which gives
  "deliver after N seconds" without a broker plugin
- ``domain.events`` topic exchange for relayed outbox events
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPException, ChannelInvalidStateError
from fastapi import Depends

from jobengine.config.logging import get_logger
from jobengine.config.settings import Settings, get_settings
from jobengine.v1.core.exceptions import BrokerUnavailableError

logger = get_logger(__name__)

# Publish failures that mean "not delivered, try again later". A robust
# channel raises ChannelInvalidStateError while it reconnects.
_PUBLISH_ERRORS = (AMQPException, ChannelInvalidStateError, asyncio.TimeoutError, OSError)


class Delivery(Protocol):
    """A message handed to the consumer; settled exactly once."""

    @property
    def body(self) -> bytes: ...

    @property
    def redelivered(self) -> bool: ...

    async def ack(self) -> None: ...

    async def nack(self, requeue: bool = True) -> None: ...


DeliveryCallback = Callable[[Delivery], Awaitable[None]]


class Broker(Protocol):
    """What the engine needs from the message broker."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    def is_connected(self) -> bool: ...

    async def publish_job(
        self, body: bytes, *, message_id: str, delay: float | None = None
    ) -> None: ...

    async def publish_event(
        self,
        routing_key: str,
        body: bytes,
        *,
        message_id: str,
        headers: dict[str, Any] | None = None,
    ) -> None: ...

    async def start_consuming(self, callback: DeliveryCallback, prefetch: int) -> None: ...

    async def stop_consuming(self) -> None: ...


class AmqpDelivery:
    """Delivery backed by an aio-pika incoming message."""

    def __init__(self, message: AbstractIncomingMessage):
        self._message = message

    @property
    def body(self) -> bytes:
        return self._message.body

    @property
    def redelivered(self) -> bool:
        return bool(self._message.redelivered)

    async def ack(self) -> None:
        await self._message.ack()

    async def nack(self, requeue: bool = True) -> None:
        await self._message.nack(requeue=requeue)


class RabbitBroker:
    """RabbitMQ implementation of the Broker protocol."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._jobs_exchange: AbstractExchange | None = None
        self._delay_exchange: AbstractExchange | None = None
        self._events_exchange: AbstractExchange | None = None
        self._jobs_queue: AbstractQueue | None = None
        self._consumer_tag: str | None = None
        # routing key -> monotonic time of last declaration
        self._delay_routes: dict[str, float] = {}
        self._declare_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open the connection and declare the topology."""
        try:
            self._connection = await aio_pika.connect_robust(self.settings.broker_url)
            self._channel = await self._connection.channel(publisher_confirms=True)
            await self._declare_topology()
        except (AMQPException, OSError) as e:
            raise BrokerUnavailableError(
                "Could not connect to broker", details={"error": str(e)}
            ) from e

        logger.info(
            "Broker connected",
            jobs_queue=self.settings.jobs_queue,
            queue_type=self.settings.queue_type.value,
        )

    async def _declare_topology(self) -> None:
        channel = self._require_channel()
        s = self.settings

        self._jobs_exchange = await channel.declare_exchange(
            s.jobs_exchange, ExchangeType.DIRECT, durable=True
        )
        self._jobs_queue = await channel.declare_queue(
            s.jobs_queue,
            durable=True,
            arguments={"x-queue-type": s.queue_type.value},
        )
        await self._jobs_queue.bind(self._jobs_exchange, routing_key=s.jobs_routing_key)

        self._delay_exchange = await channel.declare_exchange(
            s.delay_exchange, ExchangeType.DIRECT, durable=True
        )
        self._events_exchange = await channel.declare_exchange(
            s.events_exchange, ExchangeType.TOPIC, durable=True
        )

    async def close(self) -> None:
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._connection = None
        self._channel = None
        self._delay_routes.clear()
        logger.info("Broker connection closed")

    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    def _require_channel(self) -> AbstractChannel:
        if self._channel is None:
            raise BrokerUnavailableError("Broker is not connected")
        return self._channel

    async def _delay_route(self, delay_ms: int) -> str:
        """Declare (or refresh) the TTL queue for one delay bucket."""
        routing_key = f"{self.settings.delay_queue_prefix}.{delay_ms}"
        # Idle queues expire even while holding messages, so the expiry must
        # outlive the TTL and declarations are refreshed before half of it.
        expires_ms = max(self.settings.delay_queue_expires_s * 1000, delay_ms * 2)

        declared_at = self._delay_routes.get(routing_key)
        if declared_at is not None and (time.monotonic() - declared_at) * 1000 < expires_ms / 2:
            return routing_key

        async with self._declare_lock:
            channel = self._require_channel()
            queue = await channel.declare_queue(
                routing_key,
                durable=True,
                arguments={
                    "x-message-ttl": delay_ms,
                    "x-dead-letter-exchange": self.settings.jobs_exchange,
                    "x-dead-letter-routing-key": self.settings.jobs_routing_key,
                    "x-expires": expires_ms,
                },
            )
            await queue.bind(self._delay_exchange, routing_key=routing_key)
            self._delay_routes[routing_key] = time.monotonic()

        return routing_key

    async def publish_job(
        self, body: bytes, *, message_id: str, delay: float | None = None
    ) -> None:
        """Publish to the primary route, or through the delay route when delay > 0."""
        self._require_channel()
        message = Message(
            body,
            message_id=message_id,
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
        )

        try:
            if delay and delay > 0:
                routing_key = await self._delay_route(int(round(delay * 1000)))
                await self._delay_exchange.publish(
                    message, routing_key=routing_key, mandatory=True
                )
            else:
                await self._jobs_exchange.publish(
                    message, routing_key=self.settings.jobs_routing_key, mandatory=True
                )
        except _PUBLISH_ERRORS as e:
            raise BrokerUnavailableError(
                "Failed to publish job",
                details={"message_id": message_id, "error": str(e)},
            ) from e

    async def publish_event(
        self,
        routing_key: str,
        body: bytes,
        *,
        message_id: str,
        headers: dict[str, Any] | None = None,
    ) -> None:
        self._require_channel()
        message = Message(
            body,
            message_id=message_id,
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            headers=headers or {},
        )
        try:
            await self._events_exchange.publish(message, routing_key=routing_key)
        except _PUBLISH_ERRORS as e:
            raise BrokerUnavailableError(
                "Failed to publish event",
                details={"message_id": message_id, "error": str(e)},
            ) from e

    async def start_consuming(self, callback: DeliveryCallback, prefetch: int) -> None:
        """Subscribe to the primary queue; at most ``prefetch`` unacked messages."""
        channel = self._require_channel()
        await channel.set_qos(prefetch_count=prefetch)

        async def on_message(message: AbstractIncomingMessage) -> None:
            await callback(AmqpDelivery(message))

        self._consumer_tag = await self._jobs_queue.consume(on_message)
        logger.info("Consuming jobs", queue=self.settings.jobs_queue, prefetch=prefetch)

    async def stop_consuming(self) -> None:
        """Cancel the subscription; in-flight messages can still be settled."""
        if self._consumer_tag is None or self._jobs_queue is None:
            return
        await self._jobs_queue.cancel(self._consumer_tag)
        self._consumer_tag = None
        logger.info("Stopped consuming jobs", queue=self.settings.jobs_queue)


# Global broker instance for the admin API process
_broker: RabbitBroker | None = None


async def get_broker(settings: Settings = Depends(get_settings)) -> Broker:
    """Get the global broker, connecting on first use."""
    global _broker
    if _broker is None:
        _broker = RabbitBroker(settings)
    if not _broker.is_connected():
        await _broker.connect()
    return _broker


# Convenience type alias for dependency injection
BrokerDep = Depends(get_broker)
