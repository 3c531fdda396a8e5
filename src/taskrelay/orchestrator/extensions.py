"""Time extension negotiation for taskrelay.

A worker asks for more time on a started task; the owning dispatcher
approves or rejects. Approval and a dispatcher's direct extension are the
only ways a task's allotted duration changes, and the increment is applied
by the database so concurrent extensions add up.

A request leaves ``pending`` exactly once: the review is a conditional
update on the pending status, shared with the auto-rejection that happens
when the task reaches a terminal state first.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError

from taskrelay.database.connection import transaction
from taskrelay.database.models.extension import ExtensionRequest, ExtensionStatus
from taskrelay.database.models.task import TERMINAL_STATUSES, Task, TaskStatus
from taskrelay.database.models.user import Role
from taskrelay.database.queries.audit import log_task_action
from taskrelay.database.queries.extension import (
    create_extension_request,
    get_extension_request,
    get_pending_request_for_task,
    list_extension_requests,
    resolve_extension_request,
)
from taskrelay.database.queries.task import add_task_duration, get_task, update_task_if_status
from taskrelay.errors import (
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
)
from taskrelay.orchestrator.state_machine import NON_TERMINAL_STATUSES, elapsed_seconds
from taskrelay.orchestrator.timer import Clock, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from taskrelay.auth import Actor
    from taskrelay.config import ExtensionConfig
    from taskrelay.orchestrator.events import EventBroadcaster

logger = structlog.get_logger(__name__)

# Statuses a worker may ask for more time in
EXTENDABLE_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.in_progress, TaskStatus.paused, TaskStatus.overtime}
)


class ExtensionNegotiator:
    """Request, review and direct-extension workflow.

    Args:
        session_factory: Factory for store sessions.
        broadcaster: Receives the events of committed operations.
        config: Extension bounds.
        exclude_paused_time: Elapsed-time policy used when deciding whether
            an extension clears overtime.
        clock: Time source.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: EventBroadcaster,
        config: ExtensionConfig,
        exclude_paused_time: bool = False,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._broadcaster = broadcaster
        self.config = config
        self.exclude_paused_time = exclude_paused_time
        self._clock = clock
        self.logger = logger.bind(component="ExtensionNegotiator")

    def validate_minutes(self, minutes: int) -> None:
        """Check an extension against the configured bounds.

        Raises:
            ValidationError: If minutes is outside [min_minutes, max_minutes].
        """
        if isinstance(minutes, bool) or not isinstance(minutes, int):
            raise ValidationError("minutes must be an integer")
        if not self.config.min_minutes <= minutes <= self.config.max_minutes:
            raise ValidationError(
                f"minutes must be between {self.config.min_minutes} "
                f"and {self.config.max_minutes}"
            )

    async def request(
        self,
        task_id: UUID,
        actor: Actor,
        minutes: int,
        reason: str | None = None,
    ) -> ExtensionRequest:
        """Ask for more time on a started task.

        Raises:
            ValidationError: If minutes is out of bounds.
            PermissionDeniedError: If the actor is not the assigned worker.
            InvalidStateError: If the task is not in progress, paused or in
                overtime.
            ConflictError: If the task already has a pending request.
        """
        self.validate_minutes(minutes)

        async with transaction(self._session_factory) as session:
            task = await self._load_task(session, task_id)
            if task.worker_id is None or task.worker_id != actor.user_id:
                raise PermissionDeniedError("Only the assigned worker can request an extension")
            if task.status not in EXTENDABLE_STATUSES:
                raise InvalidStateError(str(task_id), task.status.value, "request extension")
            if await get_pending_request_for_task(session, task_id) is not None:
                raise ConflictError(f"Task {task_id} already has a pending extension request")

            try:
                request = await create_extension_request(
                    session,
                    task_id=task_id,
                    worker_id=actor.user_id,
                    dispatcher_id=task.dispatcher_id,
                    requested_minutes=minutes,
                    reason=reason,
                )
            except IntegrityError as e:
                # Lost a race against a concurrent request for the same task
                raise ConflictError(
                    f"Task {task_id} already has a pending extension request"
                ) from e

            await log_task_action(
                session, task_id, "extension_requested", user_id=actor.user_id,
                details={"request_id": str(request.id), "minutes": minutes, "reason": reason},
            )

        self.logger.info(
            "extension_requested",
            request_id=str(request.id),
            task_id=str(task_id),
            worker_id=str(actor.user_id),
            minutes=minutes,
        )
        await self._broadcaster.publish(extension_event(EventName.EXTENSION_REQUESTED, request))
        return request

    async def review(
        self,
        request_id: UUID,
        actor: Actor,
        decision: ExtensionStatus,
        reason: str | None = None,
    ) -> ExtensionRequest:
        """Approve or reject a pending request.

        Approval adds exactly the requested minutes to the task. If the task
        is in overtime and its new allotted duration exceeds the elapsed
        time, it returns to the status it had before overtime.

        Raises:
            ValidationError: If decision is not approved or rejected.
            PermissionDeniedError: Unless the actor owns the task or is an
                administrator.
            InvalidStateError: If the request was already reviewed, or the
                task is terminal.
        """
        if decision not in (ExtensionStatus.approved, ExtensionStatus.rejected):
            raise ValidationError("decision must be approved or rejected")

        events: list[LifecycleEvent] = []

        async with transaction(self._session_factory) as session:
            request = await get_extension_request(session, request_id)
            if request is None:
                raise NotFoundError("Extension request", str(request_id))
            if not actor.is_admin and request.dispatcher_id != actor.user_id:
                raise PermissionDeniedError("You do not own the task of this request")

            now = self._clock()
            if not await resolve_extension_request(
                session,
                request_id,
                decision,
                reviewed_at=now,
                reviewed_by=actor.user_id,
                review_reason=reason,
            ):
                current = await get_extension_request(session, request_id)
                raise InvalidStateError(
                    str(request_id),
                    current.status.value if current else "unknown",
                    "review",
                )

            if decision == ExtensionStatus.approved:
                task = await self._apply_extension(
                    session, request.task_id, request.requested_minutes
                )
                events.append(
                    task_event(
                        EventName.DURATION_EXTENDED,
                        task,
                        minutes=request.requested_minutes,
                        request_id=str(request_id),
                    )
                )

            await log_task_action(
                session, request.task_id, f"extension_{decision.value}", user_id=actor.user_id,
                details={
                    "request_id": str(request_id),
                    "minutes": request.requested_minutes,
                    "reason": reason,
                },
            )
            request = await get_extension_request(session, request_id)
            events.insert(0, extension_event(EventName.EXTENSION_REVIEWED, request))

        self.logger.info(
            "extension_reviewed",
            request_id=str(request_id),
            task_id=str(request.task_id),
            decision=decision.value,
            reviewer_id=str(actor.user_id),
        )
        await self._broadcaster.publish_all(events)
        return request

    async def extend_direct(
        self,
        task_id: UUID,
        actor: Actor,
        minutes: int,
        reason: str | None = None,
    ) -> Task:
        """Extend a task without a request, as its dispatcher.

        Same bounds and effect as an approved request; recorded only as an
        audit entry.

        Raises:
            ValidationError: If minutes is out of bounds.
            PermissionDeniedError: Unless the actor owns the task or is an
                administrator.
            InvalidStateError: If the task is terminal.
        """
        self.validate_minutes(minutes)

        async with transaction(self._session_factory) as session:
            task = await self._load_task(session, task_id)
            if not actor.is_admin and (
                actor.role != Role.dispatcher or task.dispatcher_id != actor.user_id
            ):
                raise PermissionDeniedError("You do not own this task")
            if task.status in TERMINAL_STATUSES:
                raise InvalidStateError(str(task_id), task.status.value, "extend")

            task = await self._apply_extension(session, task_id, minutes)
            await log_task_action(
                session, task_id, "duration_extended", user_id=actor.user_id,
                details={"minutes": minutes, "reason": reason, "direct": True},
            )
            event = task_event(EventName.DURATION_EXTENDED, task, minutes=minutes, request_id=None)

        self.logger.info(
            "duration_extended",
            task_id=str(task_id),
            minutes=minutes,
            duration_minutes=task.duration_minutes,
            dispatcher_id=str(actor.user_id),
        )
        await self._broadcaster.publish(event)
        return task

    async def auto_reject_pending(
        self,
        session: AsyncSession,
        task_id: UUID,
        reason: str,
    ) -> ExtensionRequest | None:
        """Reject the open request of a task that reached a terminal state.

        Runs inside the caller's transaction. Returns the rejected request,
        or None if there was nothing to reject.
        """
        request = await get_pending_request_for_task(session, task_id)
        if request is None:
            return None

        if not await resolve_extension_request(
            session,
            request.id,
            ExtensionStatus.rejected,
            reviewed_at=self._clock(),
            review_reason=reason,
        ):
            return None

        await log_task_action(
            session, task_id, "extension_auto_rejected",
            details={"request_id": str(request.id), "reason": reason},
        )
        self.logger.info(
            "extension_auto_rejected",
            request_id=str(request.id),
            task_id=str(task_id),
            reason=reason,
        )
        return await get_extension_request(session, request.id)

    async def list_requests(
        self,
        actor: Actor,
        task_id: UUID | None = None,
        status_filter: ExtensionStatus | None = None,
    ) -> list[ExtensionRequest]:
        """List the requests visible to an actor.

        Dispatchers see requests on their tasks (pending ones unless a status
        is given), workers see their own requests, administrators see all.
        """
        async with transaction(self._session_factory) as session:
            if actor.role == Role.dispatcher:
                return await list_extension_requests(
                    session,
                    task_id=task_id,
                    dispatcher_id=actor.user_id,
                    status_filter=status_filter or ExtensionStatus.pending,
                )
            if actor.role == Role.worker:
                return await list_extension_requests(
                    session,
                    task_id=task_id,
                    worker_id=actor.user_id,
                    status_filter=status_filter,
                )
            return await list_extension_requests(
                session, task_id=task_id, status_filter=status_filter
            )

    # --- Internals ---

    async def _load_task(self, session: AsyncSession, task_id: UUID) -> Task:
        task = await get_task(session, task_id)
        if task is None:
            raise NotFoundError("Task", str(task_id))
        return task

    async def _apply_extension(
        self,
        session: AsyncSession,
        task_id: UUID,
        minutes: int,
    ) -> Task:
        """Add minutes to a task and clear overtime it no longer has."""
        if not await add_task_duration(session, task_id, minutes, NON_TERMINAL_STATUSES):
            task = await get_task(session, task_id)
            raise InvalidStateError(
                str(task_id), task.status.value if task else "unknown", "extend"
            )

        task = await self._load_task(session, task_id)
        now = self._clock()
        if task.status == TaskStatus.overtime and (
            task.duration_minutes * 60 > elapsed_seconds(task, now, self.exclude_paused_time)
        ):
            restored = task.pre_overtime_status or TaskStatus.in_progress
            if await update_task_if_status(
                session,
                task_id,
                {TaskStatus.overtime},
                status=restored,
                overtime_at=None,
                pre_overtime_status=None,
            ):
                await log_task_action(
                    session, task_id, "overtime_cleared",
                    details={
                        "from_status": TaskStatus.overtime.value,
                        "to_status": restored.value,
                        "duration_minutes": task.duration_minutes,
                    },
                )
                self.logger.info(
                    "task_overtime_cleared",
                    task_id=str(task_id),
                    restored_status=restored.value,
                    duration_minutes=task.duration_minutes,
                )
                task = await self._load_task(session, task_id)

        return task
