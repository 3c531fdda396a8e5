"""Clock and periodic timer primitives for taskrelay.

The lifecycle engine never calls ``datetime.now`` directly: every component
takes a ``Clock`` so tests can pin time. Background services (overtime
detector, reconciler sweep, session janitor, heartbeat monitor) share the
``PeriodicService`` loop, which supports suspension and clean cancellation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone

import structlog

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from stores without timezone support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PeriodicService:
    """Base class for background services that run on a fixed interval.

    Subclasses implement ``run_once``. The loop:
    - runs ``run_once`` then sleeps ``interval_seconds``
    - skips runs while paused, without losing its schedule
    - logs and survives any exception raised by a run
    - exits promptly when ``stop`` cancels it

    Attributes:
        name: Service name used in log events.
        interval_seconds: Seconds between runs.
    """

    name = "periodic_service"

    def __init__(self, interval_seconds: float):
        self.interval_seconds = interval_seconds
        self._running = False
        self._paused = False
        self._loop_task: asyncio.Task[None] | None = None
        self._logger = structlog.get_logger(__name__).bind(service=self.name)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def run_once(self) -> object:
        """Perform one unit of periodic work."""
        raise NotImplementedError

    async def start(self) -> None:
        """Start the background loop. No-op if already running."""
        if self._running:
            self._logger.warning("service_already_running")
            return

        self._running = True
        self._paused = False
        self._loop_task = asyncio.create_task(self._loop())
        self._logger.info("service_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop scheduling and cancel the background loop."""
        if not self._running:
            self._logger.warning("service_not_running")
            return

        self._running = False

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        self._logger.info("service_stopped")

    def pause(self) -> None:
        """Suspend runs until ``resume`` is called."""
        self._paused = True
        self._logger.info("service_paused")

    def resume(self) -> None:
        """Resume runs after ``pause``."""
        self._paused = False
        self._logger.info("service_resumed")

    async def _loop(self) -> None:
        while self._running:
            try:
                if not self._paused:
                    await self.run_once()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                self._logger.info("service_loop_cancelled")
                break
            except Exception as e:
                self._logger.error("service_loop_error", error=str(e), exc_info=True)
                # Continue on the normal schedule despite errors
                await asyncio.sleep(self.interval_seconds)
