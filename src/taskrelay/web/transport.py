"""In-process SSE connection hub.

The hub is the transport the lifecycle engine publishes through. Every
stream connection gets its own bounded queue and is subscribed to its user
channel and role channel. A user subscribed through several audiences of
the same event receives it once: each connection remembers the IDs of the
events it recently queued and skips repeats.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator
from uuid import UUID

from taskrelay.database.models.user import Role
from taskrelay.logging import get_logger
from taskrelay.orchestrator.events import DeliveryError, EventName, role_channel, user_channel
from taskrelay.orchestrator.timer import Clock, utcnow

logger = get_logger(__name__)


@dataclass
class SSEMessage:
    """Server-Sent Event data structure."""

    event: str
    data: dict[str, Any]
    id: str | None = None
    retry: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert message to dictionary format for SSE transmission."""
        result: dict[str, Any] = {
            "event": self.event,
            "data": json.dumps(self.data),
        }
        if self.id is not None:
            result["id"] = self.id
        if self.retry is not None:
            result["retry"] = self.retry
        return result


@dataclass
class Connection:
    """One open event stream."""

    connection_id: str
    user_id: UUID
    role: Role
    queue: asyncio.Queue[SSEMessage | None]
    recent_ids: deque[str]
    channels: frozenset[str] = field(default_factory=frozenset)

    def seen(self, event_id: str) -> bool:
        return event_id in self.recent_ids


class ConnectionHub:
    """Tracks stream connections and delivers events to their queues.

    Args:
        max_queue_size: Messages buffered per connection before sends to it fail.
        dedup_window: Event IDs remembered per connection for deduplication.
        clock: Time source for heartbeat timestamps.
    """

    def __init__(
        self,
        max_queue_size: int = 256,
        dedup_window: int = 512,
        clock: Clock = utcnow,
    ) -> None:
        self.max_queue_size = max_queue_size
        self.dedup_window = dedup_window
        self._clock = clock
        self._connections: dict[str, Connection] = {}
        self.logger = logger.bind(component="ConnectionHub")

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def connect(self, user_id: UUID, role: Role) -> Connection:
        """Open a connection subscribed to the user's own and role channels."""
        connection = Connection(
            connection_id=uuid.uuid4().hex,
            user_id=user_id,
            role=role,
            queue=asyncio.Queue(maxsize=self.max_queue_size),
            recent_ids=deque(maxlen=self.dedup_window),
            channels=frozenset({user_channel(user_id), role_channel(role)}),
        )
        self._connections[connection.connection_id] = connection
        self.logger.info(
            "sse_client_connected",
            connection_id=connection.connection_id,
            user_id=str(user_id),
            total_clients=len(self._connections),
        )
        return connection

    def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        self.logger.info(
            "sse_client_disconnected",
            connection_id=connection_id,
            total_clients=len(self._connections),
        )

    def subscribers(self, audience: str) -> list[Connection]:
        return [c for c in self._connections.values() if audience in c.channels]

    async def send(self, audience: str, event_name: str, payload: dict[str, Any]) -> None:
        """Queue an event for every connection subscribed to ``audience``.

        Raises:
            DeliveryError: If any subscriber's queue is full.
        """
        event_id = payload.get("event_id")
        failed: list[str] = []

        for connection in self.subscribers(audience):
            if event_id is not None and connection.seen(event_id):
                continue
            try:
                connection.queue.put_nowait(SSEMessage(event=event_name, data=payload, id=event_id))
            except asyncio.QueueFull:
                failed.append(connection.connection_id)
                continue
            if event_id is not None:
                connection.recent_ids.append(event_id)

        if failed:
            raise DeliveryError(audience, failed)

    async def broadcast_heartbeat(self) -> None:
        """Queue a heartbeat probe on every connection.

        A full queue is skipped; the missing pong is what the heartbeat
        monitor acts on.
        """
        sent_at = self._clock().isoformat()
        for connection in list(self._connections.values()):
            message = SSEMessage(
                event=EventName.HEARTBEAT.value,
                data={"connection_id": connection.connection_id, "sent_at": sent_at},
            )
            try:
                connection.queue.put_nowait(message)
            except asyncio.QueueFull:
                self.logger.debug("heartbeat_skipped_queue_full", connection_id=connection.connection_id)

    async def stream(self, connection: Connection) -> AsyncIterator[SSEMessage]:
        """Yield queued messages until the connection is closed."""
        while True:
            message = await connection.queue.get()
            if message is None:  # Shutdown signal
                break
            yield message

    async def close_all(self) -> None:
        """Signal every open stream to finish."""
        for connection in list(self._connections.values()):
            try:
                connection.queue.put_nowait(None)
            except asyncio.QueueFull:
                # Drain one message to make room for the shutdown signal
                connection.queue.get_nowait()
                connection.queue.put_nowait(None)
