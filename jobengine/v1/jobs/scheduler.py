"""
Retry scheduling through the broker's delayed route.

Broker-native requeue offers no backoff, so a failed attempt is
republished as a new message that sits in a TTL queue for the computed
delay before being dead-lettered back into the primary queue.
"""

import random

from jobengine.config.logging import get_logger
from jobengine.config.settings import Settings
from jobengine.infra.broker import Broker
from jobengine.v1.core.exceptions import BrokerUnavailableError, RetryLimitExceeded
from jobengine.v1.core.retry import retry_transient
from jobengine.v1.jobs.schemas import JobMessage, RetryDescriptor

logger = get_logger(__name__)

# Smallest delay the delayed route is used for; 0 would mean the primary route.
MIN_DELAY_S = 0.1


def compute_backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff for the retry that follows ``attempt``: base * 2^(attempt-1), capped."""
    if attempt < 1:
        raise ValueError("attempt starts at 1")
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def quantize_delay(delay: float) -> float:
    # Each distinct delay is its own TTL queue; coarse buckets keep them few.
    if delay < 10:
        return max(MIN_DELAY_S, round(delay, 1))
    return float(round(delay))


class RetryScheduler:
    """Computes retry delays and republishes jobs onto the delayed route."""

    def __init__(
        self,
        settings: Settings,
        broker: Broker,
        rng: random.Random | None = None,
    ):
        self.settings = settings
        self.broker = broker
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self.settings.job_max_attempts

    @property
    def base_delay(self) -> float:
        return self.settings.job_backoff_base_ms / 1000

    @property
    def max_delay(self) -> float:
        return float(self.settings.job_max_backoff_s)

    def backoff(self, attempt: int) -> float:
        """
        Delay before the attempt after ``attempt``.

        Jitter only adds up to ``job_backoff_jitter`` of the delay; with the
        ratio capped at 1 the jittered delay of attempt n never exceeds the
        bare delay of attempt n+1, so the sequence stays non-decreasing.
        """
        delay = compute_backoff(attempt, self.base_delay, self.max_delay)
        jitter = delay * self.settings.job_backoff_jitter * self._rng.random()
        return quantize_delay(min(self.max_delay, delay + jitter))

    async def schedule_retry(self, message: JobMessage, cause: str) -> RetryDescriptor:
        """
        Publish the next attempt of ``message`` to the delayed route.

        Raises:
            RetryLimitExceeded: The next attempt would pass ``job_max_attempts``
            TransientRetryError: The broker kept rejecting the publish
        """
        if message.attempt + 1 > self.max_attempts:
            raise RetryLimitExceeded(message.job_id, message.attempt + 1, self.max_attempts)

        delay = self.backoff(message.attempt)
        retry_message = message.next_attempt(delay, _summarize(cause))

        await self._publish(retry_message, delay)

        logger.info(
            "Job retry scheduled",
            job_id=message.job_id,
            job_type=message.type,
            attempt=retry_message.attempt,
            delay_s=delay,
        )
        return retry_message.retry

    async def defer(self, message: JobMessage, delay: float) -> None:
        """Offer the same attempt again after ``delay`` seconds."""
        await self._publish(message, quantize_delay(delay))
        logger.info(
            "Job delivery deferred",
            job_id=message.job_id,
            attempt=message.attempt,
            delay_s=delay,
        )

    async def _publish(self, message: JobMessage, delay: float) -> None:
        body = message.to_bytes()
        message_id = f"{message.job_id}:{message.attempt}"

        await retry_transient(
            "publish delayed job",
            lambda: self.broker.publish_job(body, message_id=message_id, delay=delay),
            attempts=self.settings.transient_retry_attempts,
            base_delay=self.settings.transient_retry_base_ms / 1000,
            exceptions=(BrokerUnavailableError,),
        )


def _summarize(cause: str, limit: int = 500) -> str:
    if len(cause) <= limit:
        return cause
    return cause[: limit - 3] + "..."
