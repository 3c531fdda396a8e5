"""Worker availability derivation for taskrelay.

A worker's availability is never set by hand: it is recomputed from the
store. The implied value is:

    offline  no live session, whatever the tasks
    busy     live, holding at least one task
    idle     live, holding no task

``AvailabilityManager`` is the only component that writes
``users.availability``. Every write is conditional on the value it read, so
a concurrent writer makes the write miss instead of overwriting.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from taskrelay.database.models.user import Role, WorkerAvailability
from taskrelay.database.queries.session import count_live_sessions
from taskrelay.database.queries.task import count_holding_tasks
from taskrelay.database.queries.user import get_user, update_availability_if
from taskrelay.errors import ConflictError, NotFoundError
from taskrelay.orchestrator.timer import Clock, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)

# Recompute re-reads and retries when a concurrent writer got in between
_MAX_RECOMPUTE_ATTEMPTS = 3


@dataclass(frozen=True)
class AvailabilityChange:
    """A committed change of a worker's availability."""

    worker_id: UUID
    previous: WorkerAvailability | None
    current: WorkerAvailability
    reason: str


class AvailabilityManager:
    """Derives and writes worker availability.

    Args:
        liveness_window_seconds: Maximum age of a session's last activity
            for it to count as live.
        clock: Time source.
    """

    def __init__(self, liveness_window_seconds: int, clock: Clock = utcnow):
        self.liveness_window = timedelta(seconds=liveness_window_seconds)
        self._clock = clock
        self.logger = logger.bind(component="AvailabilityManager")

    async def is_live(self, session: AsyncSession, user_id: UUID) -> bool:
        """Whether the user has at least one live session."""
        live = await count_live_sessions(session, user_id, self._clock(), self.liveness_window)
        return live > 0

    async def expected_availability(
        self,
        session: AsyncSession,
        worker_id: UUID,
    ) -> WorkerAvailability:
        """Availability implied by the worker's sessions and held tasks."""
        if not await self.is_live(session, worker_id):
            return WorkerAvailability.offline
        if await count_holding_tasks(session, worker_id) > 0:
            return WorkerAvailability.busy
        return WorkerAvailability.idle

    async def recompute(
        self,
        session: AsyncSession,
        worker_id: UUID,
        reason: str,
    ) -> AvailabilityChange | None:
        """Bring a worker's stored availability in line with store state.

        Idempotent: when the stored value already matches, nothing is
        written and None is returned, so callers publish no event.

        Args:
            session: Session of the enclosing transaction.
            worker_id: Worker to recompute.
            reason: Reason attached to the resulting change.

        Returns:
            The change written, or None if nothing changed.

        Raises:
            NotFoundError: If the worker does not exist.
        """
        for attempt in range(1, _MAX_RECOMPUTE_ATTEMPTS + 1):
            worker = await get_user(session, worker_id)
            if worker is None or worker.role != Role.worker:
                raise NotFoundError("Worker", str(worker_id))

            expected = await self.expected_availability(session, worker_id)
            if worker.availability == expected:
                return None

            if await update_availability_if(session, worker_id, worker.availability, expected):
                self.logger.info(
                    "worker_availability_changed",
                    worker_id=str(worker_id),
                    from_status=worker.availability.value if worker.availability else None,
                    to_status=expected.value,
                    reason=reason,
                )
                return AvailabilityChange(
                    worker_id=worker_id,
                    previous=worker.availability,
                    current=expected,
                    reason=reason,
                )

            self.logger.debug(
                "availability_write_missed",
                worker_id=str(worker_id),
                attempt=attempt,
            )

        self.logger.warning("availability_recompute_gave_up", worker_id=str(worker_id))
        return None

    async def claim(
        self,
        session: AsyncSession,
        worker_id: UUID,
        reason: str = "task_accepted",
    ) -> AvailabilityChange:
        """Flip an idle worker to busy as part of taking a task.

        Raises:
            ConflictError: If the worker was not idle at write time; the
                caller's transaction must roll back.
        """
        if not await update_availability_if(
            session, worker_id, WorkerAvailability.idle, WorkerAvailability.busy
        ):
            raise ConflictError(f"Worker {worker_id} is not idle")

        self.logger.info(
            "worker_availability_changed",
            worker_id=str(worker_id),
            from_status=WorkerAvailability.idle.value,
            to_status=WorkerAvailability.busy.value,
            reason=reason,
        )
        return AvailabilityChange(
            worker_id=worker_id,
            previous=WorkerAvailability.idle,
            current=WorkerAvailability.busy,
            reason=reason,
        )
