"""Consistency reconciliation for taskrelay.

Missed events, crashed clients and sessions that lapse without a logout all
leave stored state behind the truth. The reconciler repairs it after the
fact with two checks:

    availability drift  stored availability differs from the value implied
                        by held tasks and live sessions; corrected through
                        the availability manager
    liveness drift      a worker has no live session; it is forced offline
                        and every task it still holds is flagged for a
                        dispatcher decision (never transitioned)

Both checks only move state toward the invariant, so they are safe to run
at any time and alongside user actions. The periodic sweep and the
on-demand ``check_user`` call the same code.

``SessionJanitor`` expires and purges sessions, then runs ``check_user``
for every user whose sessions it expired.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from taskrelay.database.connection import transaction
from taskrelay.database.models.user import Role
from taskrelay.database.queries.audit import log_task_action
from taskrelay.database.queries.session import expire_sessions, purge_sessions
from taskrelay.database.queries.task import list_holding_tasks, set_attention_flag
from taskrelay.database.queries.user import get_user, list_users
from taskrelay.orchestrator.events import (
    EventName,
    LifecycleEvent,
    task_event,
    worker_status_event,
)
from taskrelay.orchestrator.timer import Clock, PeriodicService, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from taskrelay.database.models.task import Task
    from taskrelay.orchestrator.availability import AvailabilityManager
    from taskrelay.orchestrator.events import EventBroadcaster

logger = structlog.get_logger(__name__)

SYSTEM_CORRECTED = "system_corrected"
WORKER_OFFLINE_REASON = "worker_offline"


class ReconcileReport(BaseModel):
    """Outcome of a reconciliation pass.

    Attributes:
        workers_checked: Workers examined.
        corrected: Worker ID to the availability it was corrected to.
        offline_workers: Workers found without a live session.
        flagged_tasks: Tasks newly flagged for dispatcher attention.
        cleared_tasks: Tasks whose attention flag was cleared.
        errors: Worker ID to error message for workers that failed.
    """

    workers_checked: int = 0
    corrected: dict[str, str] = Field(default_factory=dict)
    offline_workers: list[str] = Field(default_factory=list)
    flagged_tasks: list[str] = Field(default_factory=list)
    cleared_tasks: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)

    def merge(self, other: ReconcileReport) -> ReconcileReport:
        self.workers_checked = max(self.workers_checked, other.workers_checked)
        self.corrected.update(other.corrected)
        self.offline_workers.extend(
            w for w in other.offline_workers if w not in self.offline_workers
        )
        self.flagged_tasks.extend(other.flagged_tasks)
        self.cleared_tasks.extend(other.cleared_tasks)
        self.errors.update(other.errors)
        return self


class ConsistencyReconciler(PeriodicService):
    """Detects and corrects availability and liveness drift.

    Args:
        session_factory: Factory for store sessions.
        availability: Writer of worker availability.
        broadcaster: Receives correction events.
        interval_seconds: Seconds between sweeps.
    """

    name = "consistency_reconciler"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        availability: AvailabilityManager,
        broadcaster: EventBroadcaster,
        interval_seconds: float = 120,
    ):
        super().__init__(interval_seconds)
        self._session_factory = session_factory
        self._availability = availability
        self._broadcaster = broadcaster

    async def run_once(self) -> ReconcileReport:
        return await self.sweep()

    async def sweep(self) -> ReconcileReport:
        """Run both checks over every worker."""
        report = await self.check_availability_drift()
        report.merge(await self.check_liveness_drift())
        if report.corrected or report.flagged_tasks or report.errors:
            self._logger.info(
                "reconcile_sweep_completed",
                workers_checked=report.workers_checked,
                corrected=len(report.corrected),
                flagged=len(report.flagged_tasks),
                errors=len(report.errors),
            )
        return report

    async def check_user(self, user_id: UUID) -> ReconcileReport:
        """Run both checks for one user; a no-op for non-workers."""
        async with transaction(self._session_factory) as session:
            user = await get_user(session, user_id)

        if user is None or user.role != Role.worker:
            return ReconcileReport()

        report = await self.check_availability_drift(user_id)
        report.merge(await self.check_liveness_drift(user_id))
        self._logger.debug(
            "reconcile_user_checked",
            user_id=str(user_id),
            corrected=str(user_id) in report.corrected,
        )
        return report

    async def check_availability_drift(self, worker_id: UUID | None = None) -> ReconcileReport:
        """Correct stored availability and clear stale attention flags.

        Args:
            worker_id: Restrict the check to one worker; all workers if None.
        """
        report = ReconcileReport()
        worker_ids = await self._worker_ids(worker_id)
        report.workers_checked = len(worker_ids)

        for wid in worker_ids:
            events: list[LifecycleEvent] = []
            try:
                async with transaction(self._session_factory) as session:
                    change = await self._availability.recompute(session, wid, SYSTEM_CORRECTED)
                    if change is not None:
                        report.corrected[str(wid)] = change.current.value
                        events.append(worker_status_event(change))

                    if await self._availability.is_live(session, wid):
                        cleared = await self._clear_attention(session, wid)
                        report.cleared_tasks.extend(str(t.id) for t in cleared)
                        events.extend(
                            task_event(EventName.TASK_UPDATED, t, fields=["needs_attention"])
                            for t in cleared
                        )
            except Exception as e:
                report.errors[str(wid)] = str(e)
                self._logger.warning("availability_check_failed", worker_id=str(wid), error=str(e))
                continue

            if events:
                self._logger.info(
                    "availability_drift_corrected",
                    worker_id=str(wid),
                    availability=report.corrected.get(str(wid)),
                )
            await self._broadcaster.publish_all(events)

        return report

    async def check_liveness_drift(self, worker_id: UUID | None = None) -> ReconcileReport:
        """Force workers without a live session offline and flag their tasks.

        Args:
            worker_id: Restrict the check to one worker; all workers if None.
        """
        report = ReconcileReport()
        worker_ids = await self._worker_ids(worker_id)
        report.workers_checked = len(worker_ids)

        for wid in worker_ids:
            events: list[LifecycleEvent] = []
            try:
                async with transaction(self._session_factory) as session:
                    if await self._availability.is_live(session, wid):
                        continue

                    report.offline_workers.append(str(wid))
                    change = await self._availability.recompute(session, wid, SYSTEM_CORRECTED)
                    if change is not None:
                        report.corrected[str(wid)] = change.current.value
                        events.append(worker_status_event(change))

                    held = await list_holding_tasks(session, wid)
                    to_flag = [t for t in held if not t.needs_attention]
                    if to_flag:
                        await set_attention_flag(
                            session, [t.id for t in to_flag], True, WORKER_OFFLINE_REASON
                        )
                        for task in to_flag:
                            await log_task_action(
                                session, task.id, "attention_flagged",
                                details={"reason": WORKER_OFFLINE_REASON, "worker_id": str(wid)},
                            )
                        flagged = await list_holding_tasks(session, wid)
                        flagged_ids = {t.id for t in to_flag}
                        for task in flagged:
                            if task.id in flagged_ids:
                                report.flagged_tasks.append(str(task.id))
                                events.append(
                                    task_event(
                                        EventName.TASK_ATTENTION_REQUIRED,
                                        task,
                                        reason=WORKER_OFFLINE_REASON,
                                    )
                                )
            except Exception as e:
                report.errors[str(wid)] = str(e)
                self._logger.warning("liveness_check_failed", worker_id=str(wid), error=str(e))
                continue

            if events:
                self._logger.info(
                    "liveness_drift_detected",
                    worker_id=str(wid),
                    flagged_tasks=sum(1 for e in events if e.name == EventName.TASK_ATTENTION_REQUIRED),
                )
            await self._broadcaster.publish_all(events)

        return report

    async def _worker_ids(self, worker_id: UUID | None) -> list[UUID]:
        if worker_id is not None:
            return [worker_id]
        async with transaction(self._session_factory) as session:
            workers = await list_users(session, role=Role.worker, active_only=False)
        return [w.id for w in workers]

    async def _clear_attention(self, session: AsyncSession, worker_id: UUID) -> list[Task]:
        """Clear liveness flags on a live worker's tasks, returning them."""
        held = await list_holding_tasks(session, worker_id)
        stale = [
            t for t in held
            if t.needs_attention and t.attention_reason == WORKER_OFFLINE_REASON
        ]
        if not stale:
            return []

        await set_attention_flag(session, [t.id for t in stale], False)
        for task in stale:
            await log_task_action(session, task.id, "attention_cleared")
        stale_ids = {t.id for t in stale}
        return [t for t in await list_holding_tasks(session, worker_id) if t.id in stale_ids]


class JanitorReport(BaseModel):
    expired_users: list[str] = Field(default_factory=list)
    purged: int = 0


class SessionJanitor(PeriodicService):
    """Expires lapsed sessions and purges old inactive ones.

    Args:
        session_factory: Factory for store sessions.
        reconciler: Checked for every user whose sessions expired.
        retention_days: Age after which inactive sessions are deleted.
        interval_seconds: Seconds between runs.
        clock: Time source.
    """

    name = "session_janitor"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reconciler: ConsistencyReconciler,
        retention_days: int = 30,
        interval_seconds: float = 300,
        clock: Clock = utcnow,
    ):
        super().__init__(interval_seconds)
        self._session_factory = session_factory
        self._reconciler = reconciler
        self.retention = timedelta(days=retention_days)
        self._clock = clock

    async def run_once(self) -> JanitorReport:
        now = self._clock()
        async with transaction(self._session_factory) as session:
            expired_users = await expire_sessions(session, now)
            purged = await purge_sessions(session, now - self.retention)

        report = JanitorReport(expired_users=[str(u) for u in expired_users], purged=purged)

        for user_id in expired_users:
            try:
                await self._reconciler.check_user(user_id)
            except Exception as e:
                self._logger.warning("janitor_reconcile_failed", user_id=str(user_id), error=str(e))

        if expired_users or purged:
            self._logger.info(
                "session_cleanup_completed",
                expired_users=len(expired_users),
                purged=purged,
            )
        return report
