"""Task state machine for taskrelay.

This module implements the task lifecycle: the authoritative transition
table, the preconditions of every operation, and the side effects each
transition carries (timestamps, audit entries, worker release, queue
promotion, auto-rejection of open extension requests).

Each operation runs as one store transaction. Status changes are
conditional updates on the status that was read, so of two concurrent
writers only one wins; the loser gets a reported error and nothing it did
commits. Events are collected during the transaction and published only
after it committed.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog

from taskrelay.database.connection import transaction
from taskrelay.database.models.task import (
    HOLDING_STATUSES,
    TERMINAL_STATUSES,
    TIMED_STATUSES,
    Task,
    TaskStatus,
)
from taskrelay.database.models.user import Role, WorkerAvailability
from taskrelay.database.queries.audit import list_task_logs, log_task_action
from taskrelay.database.queries.task import (
    create_task,
    get_next_queue_order,
    get_next_queued_task,
    get_task,
    list_holding_tasks,
    list_tasks,
    update_task_if_status,
)
from taskrelay.database.queries.user import get_user
from taskrelay.errors import (
    AlreadyTakenError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from taskrelay.orchestrator.events import (
    EventName,
    LifecycleEvent,
    extension_event,
    task_event,
    worker_status_event,
)
from taskrelay.orchestrator.timer import Clock, ensure_utc, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from taskrelay.auth import Actor
    from taskrelay.database.models.task_log import TaskLog
    from taskrelay.orchestrator.availability import AvailabilityManager
    from taskrelay.orchestrator.events import EventBroadcaster
    from taskrelay.orchestrator.extensions import ExtensionNegotiator
    from taskrelay.schemas import TaskCreate, TaskEdit

logger = structlog.get_logger(__name__)

MAX_TASK_DURATION_MINUTES = 1440

NON_TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(TaskStatus) - TERMINAL_STATUSES

# Authoritative state machine definition
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.pending: {TaskStatus.accepted, TaskStatus.queued, TaskStatus.cancelled},
    # queued -> queued and accepted -> accepted are reassignments
    TaskStatus.queued: {TaskStatus.accepted, TaskStatus.queued, TaskStatus.cancelled},
    TaskStatus.accepted: {
        TaskStatus.in_progress,
        TaskStatus.queued,
        TaskStatus.accepted,
        TaskStatus.cancelled,
    },
    TaskStatus.in_progress: {
        TaskStatus.paused,
        TaskStatus.overtime,
        TaskStatus.completed,
        TaskStatus.cancelled,
    },
    TaskStatus.paused: {
        TaskStatus.in_progress,
        TaskStatus.overtime,
        TaskStatus.completed,
        TaskStatus.cancelled,
    },
    # overtime -> in_progress/paused only when an extension clears it
    TaskStatus.overtime: {
        TaskStatus.in_progress,
        TaskStatus.paused,
        TaskStatus.completed,
        TaskStatus.cancelled,
    },
    TaskStatus.completed: set(),  # Terminal
    TaskStatus.cancelled: set(),  # Terminal
}


def validate_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Validate if a state transition is allowed.

    Args:
        current: Current task status.
        target: Target task status.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


def elapsed_seconds(task: Task, now: datetime, exclude_paused: bool = False) -> float:
    """Seconds of work elapsed on a task.

    Args:
        task: Task to measure.
        now: Current time.
        exclude_paused: Subtract accumulated and ongoing pause time.

    Returns:
        Elapsed seconds, 0 for tasks that have not started.
    """
    if task.started_at is None:
        return 0.0

    elapsed = (now - ensure_utc(task.started_at)).total_seconds()
    if exclude_paused:
        paused = float(task.paused_seconds or 0)
        if task.paused_at is not None:
            paused += (now - ensure_utc(task.paused_at)).total_seconds()
        elapsed -= paused
    return max(elapsed, 0.0)


def is_overdue(task: Task, now: datetime, exclude_paused: bool = False) -> bool:
    """Whether elapsed time has reached the allotted duration."""
    return elapsed_seconds(task, now, exclude_paused) >= task.duration_minutes * 60


def _pause_accumulated(task: Task, now: datetime) -> int:
    """Total pause seconds including a pause still in progress."""
    total = task.paused_seconds or 0
    if task.paused_at is not None:
        total += int((now - ensure_utc(task.paused_at)).total_seconds())
    return total


class TaskStateMachine:
    """Runs task lifecycle operations against the store.

    Args:
        session_factory: Factory for store sessions.
        availability: Writer of worker availability.
        broadcaster: Receives the events of committed operations.
        extensions: Negotiator used to auto-reject open requests when a
            task reaches a terminal state.
        exclude_paused_time: Overtime policy, see ``elapsed_seconds``.
        clock: Time source.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        availability: AvailabilityManager,
        broadcaster: EventBroadcaster,
        extensions: ExtensionNegotiator | None = None,
        exclude_paused_time: bool = False,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._availability = availability
        self._broadcaster = broadcaster
        self._extensions = extensions
        self.exclude_paused_time = exclude_paused_time
        self._clock = clock
        self.logger = logger.bind(component="TaskStateMachine")

    # --- Reads ---

    async def get(self, task_id: UUID, actor: Actor) -> Task:
        """Fetch a task the actor may see."""
        async with transaction(self._session_factory) as session:
            task = await self._load(session, task_id)
        self._require_visible(task, actor)
        return task

    async def list_visible(
        self,
        actor: Actor,
        status_filter: TaskStatus | None = None,
        needs_attention: bool | None = None,
    ) -> list[Task]:
        """List the tasks visible to an actor.

        Dispatchers see the tasks they own, workers see their assigned tasks
        plus the pool of unassigned pending tasks, administrators see all.
        """
        async with transaction(self._session_factory) as session:
            if actor.role == Role.dispatcher:
                return await list_tasks(
                    session,
                    dispatcher_id=actor.user_id,
                    status_filter=status_filter,
                    needs_attention=needs_attention,
                )
            if actor.role == Role.worker:
                return await list_tasks(
                    session,
                    worker_id=actor.user_id,
                    status_filter=status_filter,
                    include_unassigned=True,
                    needs_attention=needs_attention,
                )
            return await list_tasks(
                session, status_filter=status_filter, needs_attention=needs_attention
            )

    async def history(self, task_id: UUID, actor: Actor) -> list[TaskLog]:
        """Audit entries of a task, oldest first."""
        async with transaction(self._session_factory) as session:
            task = await self._load(session, task_id)
            self._require_visible(task, actor)
            return await list_task_logs(session, task_id)

    # --- Transitions ---

    async def create(self, actor: Actor, data: TaskCreate) -> Task:
        """Create a task owned by the acting dispatcher.

        Without ``worker_id`` the task enters the pending pool. With one,
        it is assigned directly: an idle worker gets it accepted, a busy
        worker gets it queued behind its current work.

        Raises:
            ValidationError: If a required field is blank or the duration is
                out of range.
            NotFoundError: If the named worker does not exist.
            ConflictError: If the named worker is offline.
        """
        customer_name, game_name = self._validate_create(data)
        events: list[LifecycleEvent] = []

        async with transaction(self._session_factory) as session:
            now = self._clock()
            fields: dict[str, Any] = {
                "dispatcher_id": actor.user_id,
                "customer_name": customer_name,
                "game_name": game_name,
                "duration_minutes": data.duration_minutes,
                "customer_contact": data.customer_contact,
                "game_mode": data.game_mode,
                "requirements": data.requirements,
            }

            if data.worker_id is None:
                task = await create_task(session, **fields)
                await log_task_action(
                    session, task.id, "create", user_id=actor.user_id,
                    details={"status": task.status.value},
                )
                events.append(task_event(EventName.TASK_CREATED, task, roles=(Role.worker,)))
            else:
                availability = await self._current_availability(
                    session, data.worker_id, "assignment_check", events
                )
                if availability == WorkerAvailability.idle:
                    task = await create_task(
                        session,
                        **fields,
                        status=TaskStatus.accepted,
                        worker_id=data.worker_id,
                        accepted_at=now,
                    )
                    change = await self._availability.claim(
                        session, data.worker_id, reason="task_assigned"
                    )
                    events.append(worker_status_event(change))
                    events.append(task_event(EventName.TASK_ACCEPTED, task, assigned=True))
                elif availability == WorkerAvailability.busy:
                    task = await create_task(
                        session,
                        **fields,
                        status=TaskStatus.queued,
                        worker_id=data.worker_id,
                        queue_order=await get_next_queue_order(session, data.worker_id),
                        queued_at=now,
                    )
                    events.append(
                        task_event(EventName.TASK_QUEUED, task, queue_order=task.queue_order)
                    )
                else:
                    raise ConflictError(f"Worker {data.worker_id} is offline")

                await log_task_action(
                    session, task.id, "create", user_id=actor.user_id,
                    details={"status": task.status.value, "worker_id": str(data.worker_id)},
                )
                events.insert(0, task_event(EventName.TASK_CREATED, task))

        self.logger.info(
            "task_created",
            task_id=str(task.id),
            dispatcher_id=str(actor.user_id),
            status=task.status.value,
            worker_id=str(task.worker_id) if task.worker_id else None,
        )
        await self._broadcaster.publish_all(events)
        return task

    async def accept(self, task_id: UUID, actor: Actor) -> Task:
        """Take a pending task for the acting worker.

        The task's status change and the worker's idle -> busy flip commit
        together or not at all.

        Raises:
            AlreadyTakenError: If another worker took the task first.
            ConflictError: If the acting worker is not idle.
            InvalidStateError: If the task is already terminal.
        """
        events: list[LifecycleEvent] = []

        async with transaction(self._session_factory) as session:
            task = await self._load(session, task_id)
            if task.status in HOLDING_STATUSES:
                raise AlreadyTakenError(str(task_id))
            if task.status != TaskStatus.pending:
                raise InvalidStateError(str(task_id), task.status.value, "accept")

            worker = await get_user(session, actor.user_id)
            if worker is None or worker.role != Role.worker:
                raise PermissionDeniedError("Only workers can accept tasks")
            if worker.availability != WorkerAvailability.idle:
                availability = worker.availability.value if worker.availability else None
                raise ConflictError(f"Worker {actor.user_id} is not idle ({availability})")

            now = self._clock()
            won = await update_task_if_status(
                session,
                task_id,
                {TaskStatus.pending},
                status=TaskStatus.accepted,
                worker_id=actor.user_id,
                accepted_at=now,
            )
            if not won:
                raise AlreadyTakenError(str(task_id))

            change = await self._availability.claim(session, actor.user_id)
            await log_task_action(
                session, task_id, "accept", user_id=actor.user_id,
                details={"from_status": TaskStatus.pending.value, "to_status": TaskStatus.accepted.value},
            )
            task = await self._load(session, task_id)

            # Other workers learn the task left the pool
            events.append(task_event(EventName.TASK_ACCEPTED, task, roles=(Role.worker,)))
            events.append(worker_status_event(change))

        self.logger.info("task_accepted", task_id=str(task_id), worker_id=str(actor.user_id))
        await self._broadcaster.publish_all(events)
        return task

    async def start(self, task_id: UUID, actor: Actor) -> Task:
        """Begin work on an accepted task (assigned worker only)."""
        async with transaction(self._session_factory) as session:
            task = await self._load(session, task_id)
            self._require_assigned_worker(task, actor)
            task = await self._transition(
                session, task, TaskStatus.in_progress, "start", actor.user_id,
                started_at=self._clock(),
            )
            events = [task_event(EventName.TASK_STARTED, task)]

        await self._broadcaster.publish_all(events)
        return task

    async def pause(self, task_id: UUID, actor: Actor) -> Task:
        """Suspend work on an in-progress task."""
        async with transaction(self._session_factory) as session:
            task = await self._load(session, task_id)
            self._require_participant(task, actor)
            if task.status != TaskStatus.in_progress:
                raise InvalidStateError(str(task_id), task.status.value, "pause")
            task = await self._transition(
                session, task, TaskStatus.paused, "pause", actor.user_id,
                paused_at=self._clock(),
            )
            events = [task_event(EventName.TASK_PAUSED, task)]

        await self._broadcaster.publish_all(events)
        return task

    async def resume(self, task_id: UUID, actor: Actor) -> Task:
        """Resume work on a paused task, accumulating the pause."""
        async with transaction(self._session_factory) as session:
            task = await self._load(session, task_id)
            self._require_participant(task, actor)
            if task.status != TaskStatus.paused:
                raise InvalidStateError(str(task_id), task.status.value, "resume")
            now = self._clock()
            task = await self._transition(
                session, task, TaskStatus.in_progress, "resume", actor.user_id,
                paused_seconds=_pause_accumulated(task, now),
                paused_at=None,
            )
            events = [task_event(EventName.TASK_RESUMED, task)]

        await self._broadcaster.publish_all(events)
        return task

    async def complete(self, task_id: UUID, actor: Actor) -> Task:
        """Finish a started task and release its worker.

        The worker's next queued task, if any, is promoted to accepted, so a
        worker with a queue stays busy.
        """
        events: list[LifecycleEvent] = []

        async with transaction(self._session_factory) as session:
            task = await self._load(session, task_id)
            self._require_participant(task, actor)
            now = self._clock()
            task = await self._transition(
                session, task, TaskStatus.completed, "complete", actor.user_id,
                completed_at=now,
                paused_seconds=_pause_accumulated(task, now),
                paused_at=None,
            )
            events.append(task_event(EventName.TASK_COMPLETED, task))
            await self._close_out(session, task, actor.user_id, "task_completed", events)

        self.logger.info(
            "task_completed",
            task_id=str(task_id),
            worker_id=str(task.worker_id) if task.worker_id else None,
            duration_minutes=task.duration_minutes,
        )
        await self._broadcaster.publish_all(events)
        return task

    async def cancel(self, task_id: UUID, actor: Actor, reason: str | None = None) -> Task:
        """Abandon a non-terminal task, releasing its worker if it had one.

        Raises:
            PermissionDeniedError: Unless the actor owns the task, is its
                assigned worker, or is an administrator.
            InvalidStateError: If the task is already terminal.
        """
        events: list[LifecycleEvent] = []

        async with transaction(self._session_factory) as session:
            task = await self._load(session, task_id)
            self._require_participant(task, actor)
            now = self._clock()
            task = await self._transition(
                session, task, TaskStatus.cancelled, "cancel", actor.user_id,
                details={"reason": reason} if reason else None,
                cancelled_at=now,
                queue_order=None,
                paused_seconds=_pause_accumulated(task, now),
                paused_at=None,
            )
            events.append(task_event(EventName.TASK_CANCELLED, task, reason=reason))
            await self._close_out(session, task, actor.user_id, "task_cancelled", events)

        self.logger.info("task_cancelled", task_id=str(task_id), reason=reason)
        await self._broadcaster.publish_all(events)
        return task

    async def mark_overtime(self, task_id: UUID) -> Task | None:
        """Move a started task whose time is up into overtime.

        System-only. Returns None without writing anything when the task is
        not eligible: not started, not in progress or paused, already in
        overtime, or still within its allotted duration. The worker stays
        busy.

        Raises:
            NotFoundError: If the task does not exist.
        """
        async with transaction(self._session_factory) as session:
            task = await self._load(session, task_id)
            now = self._clock()
            if task.status not in TIMED_STATUSES or not is_overdue(
                task, now, self.exclude_paused_time
            ):
                return None

            previous = task.status
            won = await update_task_if_status(
                session,
                task_id,
                {previous},
                status=TaskStatus.overtime,
                overtime_at=now,
                pre_overtime_status=previous,
            )
            if not won:
                self.logger.debug("overtime_mark_missed", task_id=str(task_id))
                return None

            elapsed_minutes = round(elapsed_seconds(task, now, self.exclude_paused_time) / 60, 1)
            await log_task_action(
                session, task_id, "overtime",
                details={
                    "from_status": previous.value,
                    "to_status": TaskStatus.overtime.value,
                    "elapsed_minutes": elapsed_minutes,
                    "duration_minutes": task.duration_minutes,
                },
            )
            task = await self._load(session, task_id)
            events = [task_event(EventName.TASK_OVERTIME, task, elapsed_minutes=elapsed_minutes)]

        self.logger.info(
            "task_overtime",
            task_id=str(task_id),
            from_status=previous.value,
            elapsed_minutes=elapsed_minutes,
            duration_minutes=task.duration_minutes,
        )
        await self._broadcaster.publish_all(events)
        return task

    async def reassign(self, task_id: UUID, worker_id: UUID, actor: Actor) -> Task:
        """Move a queued or accepted task to another worker.

        The new worker gets the task accepted when idle or queued when busy;
        the previous worker is released.

        Raises:
            InvalidStateError: If the task is not queued or accepted.
            ValidationError: If the task is already assigned to that worker.
            ConflictError: If the new worker is offline.
        """
        events: list[LifecycleEvent] = []

        async with transaction(self._session_factory) as session:
            task = await self._load(session, task_id)
            self._require_owner(task, actor)
            if task.status not in (TaskStatus.queued, TaskStatus.accepted):
                raise InvalidStateError(str(task_id), task.status.value, "reassign")
            if task.worker_id == worker_id:
                raise ValidationError("Task is already assigned to this worker")

            previous_worker_id = task.worker_id
            availability = await self._current_availability(
                session, worker_id, "assignment_check", events
            )
            now = self._clock()
            if availability == WorkerAvailability.idle:
                target = TaskStatus.accepted
                values: dict[str, Any] = {
                    "accepted_at": now,
                    "queue_order": None,
                    "queued_at": None,
                }
            elif availability == WorkerAvailability.busy:
                target = TaskStatus.queued
                values = {
                    "accepted_at": None,
                    "queue_order": await get_next_queue_order(session, worker_id),
                    "queued_at": now,
                }
            else:
                raise ConflictError(f"Worker {worker_id} is offline")

            task = await self._transition(
                session, task, target, "reassign", actor.user_id,
                expected_worker_id=previous_worker_id,
                details={
                    "previous_worker_id": str(previous_worker_id) if previous_worker_id else None,
                    "worker_id": str(worker_id),
                },
                worker_id=worker_id,
                **values,
            )
            if target == TaskStatus.accepted:
                change = await self._availability.claim(session, worker_id, reason="task_assigned")
                events.append(worker_status_event(change))

            events.insert(
                0,
                task_event(
                    EventName.TASK_REASSIGNED,
                    task,
                    extra_user_ids=[previous_worker_id] if previous_worker_id else [],
                    previous_worker_id=str(previous_worker_id) if previous_worker_id else None,
                ),
            )
            if previous_worker_id is not None:
                await self._release_worker(
                    session, previous_worker_id, actor.user_id, "task_reassigned", events
                )

        self.logger.info(
            "task_reassigned",
            task_id=str(task_id),
            from_worker=str(previous_worker_id) if previous_worker_id else None,
            to_worker=str(worker_id),
            status=task.status.value,
        )
        await self._broadcaster.publish_all(events)
        return task

    async def edit(self, task_id: UUID, actor: Actor, fields: TaskEdit) -> Task:
        """Change descriptive fields of a non-terminal task.

        The allotted duration is not editable here; it only changes through
        extensions.
        """
        values = fields.model_dump(exclude_unset=True)
        for required in ("customer_name", "game_name"):
            if required in values:
                if values[required] is None or not values[required].strip():
                    raise ValidationError(f"{required} must not be blank")
                values[required] = values[required].strip()
        if not values:
            raise ValidationError("No fields to update")

        async with transaction(self._session_factory) as session:
            task = await self._load(session, task_id)
            self._require_owner(task, actor)
            if task.status in TERMINAL_STATUSES:
                raise InvalidStateError(str(task_id), task.status.value, "edit")

            if not await update_task_if_status(session, task_id, NON_TERMINAL_STATUSES, **values):
                raise ConflictError(f"Task {task_id} changed concurrently; re-read and retry")

            await log_task_action(
                session, task_id, "edit", user_id=actor.user_id,
                details={"fields": sorted(values)},
            )
            task = await self._load(session, task_id)
            events = [task_event(EventName.TASK_UPDATED, task, fields=sorted(values))]

        await self._broadcaster.publish_all(events)
        return task

    # --- Internals ---

    async def _load(self, session: AsyncSession, task_id: UUID) -> Task:
        task = await get_task(session, task_id)
        if task is None:
            raise NotFoundError("Task", str(task_id))
        return task

    async def _transition(
        self,
        session: AsyncSession,
        task: Task,
        target: TaskStatus,
        action: str,
        actor_id: UUID | None,
        expected_worker_id: UUID | None = None,
        details: dict[str, Any] | None = None,
        **values: Any,
    ) -> Task:
        """Validate and apply one status change, returning the fresh task."""
        current = task.status
        if not validate_transition(current, target):
            raise InvalidStateError(str(task.id), current.value, action)

        won = await update_task_if_status(
            session,
            task.id,
            {current},
            expected_worker_id=expected_worker_id,
            status=target,
            **values,
        )
        if not won:
            raise ConflictError(f"Task {task.id} changed concurrently; re-read and retry")

        await log_task_action(
            session,
            task.id,
            action,
            user_id=actor_id,
            details={"from_status": current.value, "to_status": target.value, **(details or {})},
        )
        self.logger.info(
            "task_transition",
            task_id=str(task.id),
            from_status=current.value,
            to_status=target.value,
            action=action,
        )
        return await self._load(session, task.id)

    async def _close_out(
        self,
        session: AsyncSession,
        task: Task,
        actor_id: UUID,
        reason: str,
        events: list[LifecycleEvent],
    ) -> None:
        """Side effects shared by the terminal transitions."""
        if self._extensions is not None:
            rejected = await self._extensions.auto_reject_pending(
                session, task.id, f"Task {task.status.value} before review"
            )
            if rejected is not None:
                events.append(extension_event(EventName.EXTENSION_REVIEWED, rejected))

        if task.worker_id is not None:
            await self._release_worker(session, task.worker_id, actor_id, reason, events)

    async def _release_worker(
        self,
        session: AsyncSession,
        worker_id: UUID,
        actor_id: UUID,
        reason: str,
        events: list[LifecycleEvent],
    ) -> None:
        """Promote the worker's next queued task and recompute availability."""
        promoted = await self._promote_next_queued(session, worker_id, actor_id)
        if promoted is not None:
            events.append(task_event(EventName.TASK_ACCEPTED, promoted, promoted=True))

        change = await self._availability.recompute(session, worker_id, reason)
        if change is not None:
            events.append(worker_status_event(change))

    async def _promote_next_queued(
        self,
        session: AsyncSession,
        worker_id: UUID,
        actor_id: UUID,
    ) -> Task | None:
        """Accept the worker's first queued task once nothing else is active."""
        holding = await list_holding_tasks(session, worker_id)
        if any(t.status != TaskStatus.queued for t in holding):
            return None

        next_task = await get_next_queued_task(session, worker_id)
        if next_task is None:
            return None

        won = await update_task_if_status(
            session,
            next_task.id,
            {TaskStatus.queued},
            expected_worker_id=worker_id,
            status=TaskStatus.accepted,
            accepted_at=self._clock(),
            queue_order=None,
        )
        if not won:
            self.logger.debug("queue_promotion_missed", task_id=str(next_task.id))
            return None

        await log_task_action(
            session, next_task.id, "promote", user_id=actor_id,
            details={"from_status": TaskStatus.queued.value, "to_status": TaskStatus.accepted.value},
        )
        self.logger.info(
            "queued_task_promoted",
            task_id=str(next_task.id),
            worker_id=str(worker_id),
        )
        return await self._load(session, next_task.id)

    async def _current_availability(
        self,
        session: AsyncSession,
        worker_id: UUID,
        reason: str,
        events: list[LifecycleEvent],
    ) -> WorkerAvailability:
        """Recompute a worker's availability before assigning to it."""
        worker = await get_user(session, worker_id)
        if worker is None:
            raise NotFoundError("Worker", str(worker_id))
        if worker.role != Role.worker:
            raise ValidationError(f"User {worker_id} is not a worker")
        if not worker.is_active:
            raise ConflictError(f"Worker {worker_id} is disabled")

        change = await self._availability.recompute(session, worker_id, reason)
        if change is not None:
            events.append(worker_status_event(change))
            return change.current
        return worker.availability or WorkerAvailability.offline

    def _validate_create(self, data: TaskCreate) -> tuple[str, str]:
        customer_name = (data.customer_name or "").strip()
        game_name = (data.game_name or "").strip()
        if not customer_name:
            raise ValidationError("customer_name is required")
        if not game_name:
            raise ValidationError("game_name is required")
        if not 0 < data.duration_minutes <= MAX_TASK_DURATION_MINUTES:
            raise ValidationError(
                f"duration_minutes must be between 1 and {MAX_TASK_DURATION_MINUTES}"
            )
        return customer_name, game_name

    # --- Per-resource checks ---

    @staticmethod
    def _require_assigned_worker(task: Task, actor: Actor) -> None:
        if task.worker_id is None or task.worker_id != actor.user_id:
            raise PermissionDeniedError("You are not assigned to this task")

    @staticmethod
    def _require_owner(task: Task, actor: Actor) -> None:
        if actor.is_admin:
            return
        if actor.role != Role.dispatcher or task.dispatcher_id != actor.user_id:
            raise PermissionDeniedError("You do not own this task")

    @staticmethod
    def _require_participant(task: Task, actor: Actor) -> None:
        """Assigned worker, owning dispatcher or administrator."""
        if actor.is_admin:
            return
        if task.worker_id is not None and task.worker_id == actor.user_id:
            return
        if actor.role == Role.dispatcher and task.dispatcher_id == actor.user_id:
            return
        raise PermissionDeniedError("You do not have permission to act on this task")

    @staticmethod
    def _require_visible(task: Task, actor: Actor) -> None:
        if actor.is_admin:
            return
        if actor.role == Role.dispatcher and task.dispatcher_id == actor.user_id:
            return
        if actor.role == Role.worker and (
            task.worker_id == actor.user_id
            or (task.worker_id is None and task.status == TaskStatus.pending)
        ):
            return
        raise PermissionDeniedError("You do not have permission to view this task")
