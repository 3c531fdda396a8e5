"""Lifecycle event fan-out for taskrelay.

Every committed transition produces a ``LifecycleEvent``. The
``EventBroadcaster`` resolves the event's audiences (user channels, role
channels, and always the administrator role channel) and hands one send per
audience to the transport collaborator.

Delivery is best-effort. A failed send is logged and reported to the
liveness callback, and is never raised into the operation that produced
the event: the state change has already committed.

Channel names:
    user:<uuid>   every connection of one user
    role:<role>   every connection of users holding the role
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol
from uuid import UUID

import structlog

from taskrelay.database.models.user import Role
from taskrelay.orchestrator.timer import utcnow
from taskrelay.schemas import ExtensionRequestView, TaskView

if TYPE_CHECKING:
    from taskrelay.database.models.extension import ExtensionRequest
    from taskrelay.database.models.task import Task
    from taskrelay.orchestrator.availability import AvailabilityChange

logger = structlog.get_logger(__name__)


class EventName(str, Enum):
    """Names of the events published to subscribers."""

    TASK_CREATED = "task_created"
    TASK_ACCEPTED = "task_accepted"
    TASK_QUEUED = "task_queued"
    TASK_STARTED = "task_started"
    TASK_PAUSED = "task_paused"
    TASK_RESUMED = "task_resumed"
    TASK_OVERTIME = "task_overtime"
    TASK_COMPLETED = "task_completed"
    TASK_CANCELLED = "task_cancelled"
    TASK_REASSIGNED = "task_reassigned"
    TASK_UPDATED = "task_updated"
    TASK_ATTENTION_REQUIRED = "task_attention_required"
    DURATION_EXTENDED = "duration_extended"
    WORKER_STATUS_CHANGED = "worker_status_changed"
    EXTENSION_REQUESTED = "extension_requested"
    EXTENSION_REVIEWED = "extension_reviewed"
    HEARTBEAT = "heartbeat"


def user_channel(user_id: UUID) -> str:
    return f"user:{user_id}"


def role_channel(role: Role) -> str:
    return f"role:{role.value}"


def parse_user_channel(audience: str) -> UUID | None:
    """Return the user ID addressed by a user channel, None for role channels."""
    prefix, _, value = audience.partition(":")
    if prefix != "user":
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


@dataclass
class LifecycleEvent:
    """A committed state change to publish.

    Attributes:
        name: Event name.
        payload: JSON-serializable event body.
        user_ids: Users addressed individually (owning dispatcher, worker).
        roles: Roles addressed as a whole.
        event_id: Unique ID; transports use it to drop duplicates when a
            connection is reached through more than one channel.
        occurred_at: Time the event was produced.
    """

    name: EventName
    payload: dict[str, Any]
    user_ids: tuple[UUID, ...] = ()
    roles: tuple[Role, ...] = ()
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=utcnow)

    def audiences(self) -> list[str]:
        """Channels this event is addressed to, without duplicates."""
        channels = [user_channel(uid) for uid in self.user_ids if uid is not None]
        channels.extend(role_channel(role) for role in self.roles)
        channels.append(role_channel(Role.administrator))
        return list(dict.fromkeys(channels))

    def envelope(self) -> dict[str, Any]:
        """Payload as handed to the transport."""
        return {
            "event_id": self.event_id,
            "occurred_at": self.occurred_at.isoformat(),
            **self.payload,
        }


# --- Event factories ---


def task_event(
    name: EventName,
    task: Task,
    extra_user_ids: Iterable[UUID] = (),
    roles: Iterable[Role] = (),
    **details: Any,
) -> LifecycleEvent:
    """Build a task event addressed to its dispatcher and assigned worker."""
    user_ids = [task.dispatcher_id]
    if task.worker_id is not None:
        user_ids.append(task.worker_id)
    user_ids.extend(extra_user_ids)
    payload: dict[str, Any] = {"task": TaskView.model_validate(task).model_dump(mode="json")}
    payload.update(details)
    return LifecycleEvent(
        name=name,
        payload=payload,
        user_ids=tuple(dict.fromkeys(user_ids)),
        roles=tuple(roles),
    )


def worker_status_event(change: AvailabilityChange) -> LifecycleEvent:
    """Build a worker_status_changed event for all dispatchers and the worker."""
    return LifecycleEvent(
        name=EventName.WORKER_STATUS_CHANGED,
        payload={
            "worker_id": str(change.worker_id),
            "status": change.current.value,
            "previous_status": change.previous.value if change.previous else None,
            "reason": change.reason,
        },
        user_ids=(change.worker_id,),
        roles=(Role.dispatcher,),
    )


def extension_event(name: EventName, request: ExtensionRequest) -> LifecycleEvent:
    """Build an extension event for the task's dispatcher and worker."""
    return LifecycleEvent(
        name=name,
        payload={"request": ExtensionRequestView.model_validate(request).model_dump(mode="json")},
        user_ids=tuple(dict.fromkeys([request.dispatcher_id, request.worker_id])),
    )


# --- Transport collaborator ---


class DeliveryError(Exception):
    """Raised by a transport when subscribers of an audience could not be reached."""

    def __init__(self, audience: str, connection_ids: list[str]):
        self.audience = audience
        self.connection_ids = connection_ids
        super().__init__(
            f"Delivery to {audience} failed for {len(connection_ids)} connection(s)"
        )


class Transport(Protocol):
    """Delivery channel to connected users."""

    async def send(self, audience: str, event_name: str, payload: dict[str, Any]) -> None:
        """Deliver one event to every connection subscribed to ``audience``."""
        ...

    async def broadcast_heartbeat(self) -> None:
        """Send a liveness probe to every connection."""
        ...


SendFailureCallback = Callable[[str, Exception], Awaitable[None]]


class EventBroadcaster:
    """Publishes lifecycle events to a transport.

    The broadcaster holds no state about events: publishing without a
    transport attached simply drops them.

    Attributes:
        transport: Current transport, None until one is attached.
    """

    def __init__(
        self,
        transport: Transport | None = None,
        on_send_failure: SendFailureCallback | None = None,
    ) -> None:
        self.transport = transport
        self._on_send_failure = on_send_failure
        self.logger = logger.bind(component="EventBroadcaster")

    def attach_transport(self, transport: Transport) -> None:
        self.transport = transport

    def set_failure_callback(self, callback: SendFailureCallback | None) -> None:
        self._on_send_failure = callback

    async def publish(self, event: LifecycleEvent) -> int:
        """Send an event to each of its audiences.

        Args:
            event: Event to publish.

        Returns:
            Number of audiences the transport accepted the event for.
        """
        if self.transport is None:
            self.logger.debug("event_dropped_no_transport", event_name=event.name.value)
            return 0

        delivered = 0
        envelope = event.envelope()

        for audience in event.audiences():
            try:
                await self.transport.send(audience, event.name.value, envelope)
                delivered += 1
            except Exception as e:
                self.logger.warning(
                    "event_send_failed",
                    event_name=event.name.value,
                    audience=audience,
                    error=str(e),
                )
                await self._report_failure(audience, e)

        self.logger.debug(
            "event_published",
            event_name=event.name.value,
            event_id=event.event_id,
            audiences=delivered,
        )
        return delivered

    async def publish_all(self, events: Iterable[LifecycleEvent]) -> None:
        """Publish events in order."""
        for event in events:
            await self.publish(event)

    async def broadcast_heartbeat(self) -> None:
        """Ask the transport to probe every connection."""
        if self.transport is None:
            return
        try:
            await self.transport.broadcast_heartbeat()
        except Exception as e:
            self.logger.warning("heartbeat_broadcast_failed", error=str(e))

    async def _report_failure(self, audience: str, error: Exception) -> None:
        if self._on_send_failure is None:
            return
        try:
            await self._on_send_failure(audience, error)
        except Exception as e:
            self.logger.error("send_failure_callback_error", audience=audience, error=str(e), exc_info=True)
