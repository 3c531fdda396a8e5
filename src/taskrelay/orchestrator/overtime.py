"""Overtime detection for taskrelay.

The detector periodically scans started tasks and moves those whose elapsed
time reached their allotted duration into overtime. Marking is idempotent:
a task already in overtime is skipped, so rescans are no-ops. A failure on
one task is recorded in the scan report and never stops the scan.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from taskrelay.database.connection import transaction
from taskrelay.database.queries.task import list_timed_tasks
from taskrelay.orchestrator.state_machine import is_overdue
from taskrelay.orchestrator.timer import Clock, PeriodicService, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from taskrelay.database.models.task import Task
    from taskrelay.orchestrator.state_machine import TaskStateMachine

logger = structlog.get_logger(__name__)


class OvertimeScanReport(BaseModel):
    """Outcome of one overtime scan.

    Attributes:
        scanned: Started tasks examined.
        marked: IDs of tasks moved into overtime.
        failures: Task ID to error message for tasks that could not be marked.
    """

    scanned: int = 0
    marked: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)


class OvertimeDetector(PeriodicService):
    """Periodic scan that marks overdue tasks as overtime.

    Args:
        session_factory: Factory for store sessions.
        state_machine: Performs the overtime transition.
        interval_seconds: Seconds between scans.
        clock: Time source.
    """

    name = "overtime_detector"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: TaskStateMachine,
        interval_seconds: float = 60,
        clock: Clock = utcnow,
    ):
        super().__init__(interval_seconds)
        self._session_factory = session_factory
        self._state_machine = state_machine
        self._clock = clock

    async def run_once(self) -> OvertimeScanReport:
        """Scan every started task once."""
        report = OvertimeScanReport()

        async with transaction(self._session_factory) as session:
            tasks = await list_timed_tasks(session)

        report.scanned = len(tasks)
        now = self._clock()
        candidates = [
            task for task in tasks
            if is_overdue(task, now, self._state_machine.exclude_paused_time)
        ]

        for task in candidates:
            try:
                marked = await self._state_machine.mark_overtime(task.id)
            except Exception as e:
                report.failures[str(task.id)] = str(e)
                self._logger.warning(
                    "overtime_mark_failed",
                    task_id=str(task.id),
                    error=str(e),
                )
                continue
            if marked is not None:
                report.marked.append(str(task.id))

        if report.marked or report.failures:
            self._logger.info(
                "overtime_scan_completed",
                scanned=report.scanned,
                marked=len(report.marked),
                failed=len(report.failures),
            )
        return report

    async def check_task(self, task_id: UUID) -> Task | None:
        """Check a single task on demand; returns it if it was marked."""
        return await self._state_machine.mark_overtime(task_id)
