"""Heartbeat liveness tracking for taskrelay connections.

Each live transport connection carries a small state machine:

    connected ──probe──▶ awaiting_pong ──timeout──▶ reconnecting ──timeout──▶ offline
        ▲                     │                          │
        └────────pong─────────┴──────────pong────────────┘

Each missed window (awaiting_pong -> reconnecting, reconnecting -> offline)
triggers exactly one liveness check of the connection's user. A timeout
never disconnects anyone by itself: the reconciler decides from session
state. The timestamps kept here are local and advisory; the store remains
the source of truth.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from taskrelay.orchestrator.timer import Clock, PeriodicService, utcnow

if TYPE_CHECKING:
    from taskrelay.orchestrator.events import EventBroadcaster

logger = structlog.get_logger(__name__)

LivenessCheck = Callable[[UUID], Awaitable[object]]


class ConnectionState(str, Enum):
    """Heartbeat state of one connection."""

    CONNECTED = "connected"
    AWAITING_PONG = "awaiting_pong"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"


@dataclass
class ConnectionLiveness:
    """Heartbeat state machine for a single connection.

    Attributes:
        connection_id: Transport connection identifier.
        user_id: Owner of the connection.
        state: Current heartbeat state.
        last_seen: Last pong or registration time.
        window_started: Start of the current wait for a pong.
    """

    connection_id: str
    user_id: UUID
    last_seen: datetime
    state: ConnectionState = ConnectionState.CONNECTED
    window_started: datetime | None = field(default=None)

    def probe(self, now: datetime) -> bool:
        """Start waiting for a pong. Only connected connections are probed anew."""
        if self.state != ConnectionState.CONNECTED:
            return False
        self.state = ConnectionState.AWAITING_PONG
        self.window_started = now
        return True

    def pong(self, now: datetime) -> ConnectionState:
        """Record a pong; the connection is connected again from any state."""
        previous = self.state
        self.state = ConnectionState.CONNECTED
        self.last_seen = now
        self.window_started = None
        return previous

    def suspect(self, now: datetime) -> bool:
        """Treat a failed send like a sent probe."""
        return self.probe(now)

    def expire(self, now: datetime, timeout: timedelta) -> ConnectionState | None:
        """Advance past a missed window.

        Returns:
            The new state if a window was missed, None otherwise.
        """
        if self.window_started is None or now - self.window_started < timeout:
            return None

        if self.state == ConnectionState.AWAITING_PONG:
            self.state = ConnectionState.RECONNECTING
            self.window_started = now
            return self.state

        if self.state == ConnectionState.RECONNECTING:
            self.state = ConnectionState.OFFLINE
            self.window_started = None
            return self.state

        return None


class HeartbeatMonitor(PeriodicService):
    """Probes connections and triggers liveness checks on missed pongs.

    Args:
        broadcaster: Sends the heartbeat probe.
        on_timeout: Called with the user ID once per missed window.
        interval_seconds: Seconds between probes.
        timeout_seconds: Seconds to wait for a pong.
        clock: Time source.
    """

    name = "heartbeat_monitor"

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        on_timeout: LivenessCheck | None = None,
        interval_seconds: float = 25,
        timeout_seconds: float = 60,
        clock: Clock = utcnow,
    ):
        super().__init__(interval_seconds)
        self._broadcaster = broadcaster
        self._on_timeout = on_timeout
        self.timeout = timedelta(seconds=timeout_seconds)
        self._clock = clock
        self._connections: dict[str, ConnectionLiveness] = {}

    def set_timeout_callback(self, callback: LivenessCheck | None) -> None:
        self._on_timeout = callback

    @property
    def connections(self) -> dict[str, ConnectionLiveness]:
        return dict(self._connections)

    def register(self, connection_id: str, user_id: UUID) -> ConnectionLiveness:
        """Start tracking a connection."""
        liveness = ConnectionLiveness(
            connection_id=connection_id,
            user_id=user_id,
            last_seen=self._clock(),
        )
        self._connections[connection_id] = liveness
        self._logger.debug("connection_registered", connection_id=connection_id, user_id=str(user_id))
        return liveness

    def unregister(self, connection_id: str) -> None:
        """Stop tracking a connection on teardown."""
        if self._connections.pop(connection_id, None) is not None:
            self._logger.debug("connection_unregistered", connection_id=connection_id)

    def state_of(self, connection_id: str) -> ConnectionState | None:
        liveness = self._connections.get(connection_id)
        return liveness.state if liveness else None

    def pong(self, connection_id: str) -> bool:
        """Record a pong. Returns False for unknown connections."""
        liveness = self._connections.get(connection_id)
        if liveness is None:
            return False
        previous = liveness.pong(self._clock())
        if previous != ConnectionState.CONNECTED:
            self._logger.info(
                "connection_recovered",
                connection_id=connection_id,
                from_state=previous.value,
            )
        return True

    def report_send_failure(self, user_id: UUID) -> int:
        """Open a pong window on a user's connections after a failed send.

        Returns:
            Number of connections moved to awaiting_pong.
        """
        now = self._clock()
        suspected = 0
        for liveness in self._connections.values():
            if liveness.user_id == user_id and liveness.suspect(now):
                suspected += 1
        return suspected

    def suspect_connection(self, connection_id: str) -> bool:
        """Open a pong window on one connection a send stalled on.

        Returns:
            True if the connection moved to awaiting_pong.
        """
        liveness = self._connections.get(connection_id)
        if liveness is None:
            return False
        return liveness.suspect(self._clock())

    async def run_once(self) -> dict[str, ConnectionState]:
        """Advance timeouts, then probe connected connections.

        Returns:
            Connection ID to new state for connections that missed a window.
        """
        now = self._clock()
        transitions: dict[str, ConnectionState] = {}

        for connection_id, liveness in list(self._connections.items()):
            new_state = liveness.expire(now, self.timeout)
            if new_state is None:
                continue
            transitions[connection_id] = new_state
            self._logger.warning(
                "heartbeat_missed",
                connection_id=connection_id,
                user_id=str(liveness.user_id),
                state=new_state.value,
            )
            await self._check_user(liveness.user_id)

        probed = sum(1 for liveness in self._connections.values() if liveness.probe(now))
        if self._connections:
            await self._broadcaster.broadcast_heartbeat()
            self._logger.debug("heartbeat_sent", probed=probed, connections=len(self._connections))

        return transitions

    async def _check_user(self, user_id: UUID) -> None:
        if self._on_timeout is None:
            return
        try:
            await self._on_timeout(user_id)
        except Exception as e:
            self._logger.error(
                "heartbeat_liveness_check_failed",
                user_id=str(user_id),
                error=str(e),
                exc_info=True,
            )
