"""
Graceful shutdown: stop intake, then wait for in-flight jobs.
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from jobengine.config.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DrainReport:
    completed: bool
    abandoned: int
    elapsed_s: float


class DrainCoordinator:
    """
    Counts in-flight deliveries and bounds how long shutdown waits for them.

    The counter is only touched from the event loop, so increments and
    decrements cannot interleave with each other.
    """

    def __init__(
        self,
        timeout_s: float,
        stop_intake: Callable[[], Awaitable[None]] | None = None,
    ):
        self.timeout_s = timeout_s
        self._stop_intake = stop_intake
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._accepting = True
        self._report: DrainReport | None = None
        self._shutdown_lock = asyncio.Lock()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def accepting(self) -> bool:
        return self._accepting

    def set_stop_intake(self, stop_intake: Callable[[], Awaitable[None]]) -> None:
        self._stop_intake = stop_intake

    def enter(self) -> None:
        self._in_flight += 1
        self._idle.clear()

    def exit(self) -> None:
        if self._in_flight == 0:
            raise RuntimeError("DrainCoordinator.exit() called with nothing in flight")
        self._in_flight -= 1
        if self._in_flight == 0:
            self._idle.set()

    @asynccontextmanager
    async def track(self) -> AsyncIterator[None]:
        """Hold one in-flight slot for the duration of the block."""
        self.enter()
        try:
            yield
        finally:
            self.exit()

    async def begin_shutdown(self) -> DrainReport:
        """
        Stop intake and wait for in-flight work, at most ``timeout_s``.

        Running handlers are never interrupted. Jobs still running at the
        deadline are reported as abandoned; they stay claimed in the ledger.
        Later calls return the first report.
        """
        async with self._shutdown_lock:
            if self._report is not None:
                return self._report

            loop = asyncio.get_running_loop()
            started = loop.time()
            self._accepting = False
            logger.info(
                "Drain started", in_flight=self._in_flight, timeout_s=self.timeout_s
            )

            if self._stop_intake is not None:
                try:
                    await self._stop_intake()
                except Exception:
                    logger.exception("Failed to stop intake, draining anyway")

            try:
                await asyncio.wait_for(self._idle.wait(), timeout=self.timeout_s)
                completed = True
            except asyncio.TimeoutError:
                completed = False

            elapsed = loop.time() - started
            abandoned = 0 if completed else self._in_flight

            if completed:
                logger.info("Drain completed", elapsed_s=round(elapsed, 3))
            else:
                logger.warning(
                    "Drain timed out, abandoning in-flight jobs",
                    abandoned=abandoned,
                    elapsed_s=round(elapsed, 3),
                )

            self._report = DrainReport(
                completed=completed, abandoned=abandoned, elapsed_s=elapsed
            )
            return self._report
