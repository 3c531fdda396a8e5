"""Unit tests for the connection heartbeat state machine and monitor."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from taskrelay.orchestrator.events import EventBroadcaster
from taskrelay.orchestrator.heartbeat import (
    ConnectionLiveness,
    ConnectionState,
    HeartbeatMonitor,
)

START = datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)
TIMEOUT = timedelta(seconds=60)


class ManualClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ProbeTransport:
    def __init__(self) -> None:
        self.heartbeats = 0

    async def send(self, audience: str, event_name: str, payload: dict) -> None:
        pass

    async def broadcast_heartbeat(self) -> None:
        self.heartbeats += 1


class TestConnectionLiveness:
    """Transitions of a single connection."""

    def make(self) -> ConnectionLiveness:
        return ConnectionLiveness(connection_id="c1", user_id=uuid.uuid4(), last_seen=START)

    def test_probe_moves_connected_to_awaiting_pong(self) -> None:
        liveness = self.make()
        assert liveness.probe(START)
        assert liveness.state == ConnectionState.AWAITING_PONG
        assert liveness.window_started == START

    def test_probe_does_not_restart_open_window(self) -> None:
        liveness = self.make()
        liveness.probe(START)
        assert not liveness.probe(START + timedelta(seconds=30))
        assert liveness.window_started == START

    def test_pong_restores_connected(self) -> None:
        liveness = self.make()
        liveness.probe(START)
        later = START + timedelta(seconds=5)
        assert liveness.pong(later) == ConnectionState.AWAITING_PONG
        assert liveness.state == ConnectionState.CONNECTED
        assert liveness.last_seen == later
        assert liveness.window_started is None

    def test_no_expiry_inside_window(self) -> None:
        liveness = self.make()
        liveness.probe(START)
        assert liveness.expire(START + timedelta(seconds=59), TIMEOUT) is None
        assert liveness.state == ConnectionState.AWAITING_PONG

    def test_missed_windows_lead_to_offline(self) -> None:
        liveness = self.make()
        liveness.probe(START)

        first = START + TIMEOUT
        assert liveness.expire(first, TIMEOUT) == ConnectionState.RECONNECTING
        assert liveness.window_started == first

        assert liveness.expire(first + timedelta(seconds=30), TIMEOUT) is None
        assert liveness.expire(first + TIMEOUT, TIMEOUT) == ConnectionState.OFFLINE
        assert liveness.expire(first + 3 * TIMEOUT, TIMEOUT) is None

    def test_pong_recovers_offline_connection(self) -> None:
        liveness = self.make()
        liveness.state = ConnectionState.OFFLINE
        assert liveness.pong(START) == ConnectionState.OFFLINE
        assert liveness.state == ConnectionState.CONNECTED

    def test_connected_never_expires(self) -> None:
        liveness = self.make()
        assert liveness.expire(START + timedelta(hours=1), TIMEOUT) is None


class TestHeartbeatMonitor:
    """Probing, timeouts and liveness callbacks."""

    @pytest.fixture
    def clock(self) -> ManualClock:
        return ManualClock()

    @pytest.fixture
    def transport(self) -> ProbeTransport:
        return ProbeTransport()

    @pytest.fixture
    def checked(self) -> list[UUID]:
        return []

    @pytest.fixture
    def monitor(
        self, clock: ManualClock, transport: ProbeTransport, checked: list[UUID]
    ) -> HeartbeatMonitor:
        async def on_timeout(user_id: UUID) -> None:
            checked.append(user_id)

        return HeartbeatMonitor(
            EventBroadcaster(transport),
            on_timeout=on_timeout,
            interval_seconds=25,
            timeout_seconds=60,
            clock=clock,
        )

    async def test_no_broadcast_without_connections(
        self, monitor: HeartbeatMonitor, transport: ProbeTransport
    ) -> None:
        assert await monitor.run_once() == {}
        assert transport.heartbeats == 0

    async def test_run_probes_registered_connections(
        self, monitor: HeartbeatMonitor, transport: ProbeTransport
    ) -> None:
        monitor.register("c1", uuid.uuid4())
        await monitor.run_once()
        assert transport.heartbeats == 1
        assert monitor.state_of("c1") == ConnectionState.AWAITING_PONG

    async def test_each_missed_window_checks_user_once(
        self, monitor: HeartbeatMonitor, clock: ManualClock, checked: list[UUID]
    ) -> None:
        user_id = uuid.uuid4()
        monitor.register("c1", user_id)
        await monitor.run_once()

        clock.advance(30)
        assert await monitor.run_once() == {}
        assert checked == []

        clock.advance(30)
        assert await monitor.run_once() == {"c1": ConnectionState.RECONNECTING}
        assert checked == [user_id]

        clock.advance(60)
        assert await monitor.run_once() == {"c1": ConnectionState.OFFLINE}
        assert checked == [user_id, user_id]

        clock.advance(600)
        assert await monitor.run_once() == {}
        assert checked == [user_id, user_id]

    async def test_pong_prevents_timeout(
        self, monitor: HeartbeatMonitor, clock: ManualClock, checked: list[UUID]
    ) -> None:
        monitor.register("c1", uuid.uuid4())
        await monitor.run_once()
        clock.advance(10)
        assert monitor.pong("c1")
        clock.advance(55)
        await monitor.run_once()
        assert checked == []
        assert monitor.state_of("c1") == ConnectionState.AWAITING_PONG

    async def test_pong_unknown_connection(self, monitor: HeartbeatMonitor) -> None:
        assert not monitor.pong("missing")

    async def test_send_failure_opens_window(
        self, monitor: HeartbeatMonitor, clock: ManualClock, checked: list[UUID]
    ) -> None:
        user_id = uuid.uuid4()
        monitor.register("c1", user_id)
        monitor.register("c2", uuid.uuid4())

        assert monitor.report_send_failure(user_id) == 1
        assert monitor.state_of("c1") == ConnectionState.AWAITING_PONG
        assert monitor.state_of("c2") == ConnectionState.CONNECTED

        clock.advance(60)
        await monitor.run_once()
        assert checked == [user_id]

    async def test_suspect_single_connection(self, monitor: HeartbeatMonitor) -> None:
        user_id = uuid.uuid4()
        monitor.register("c1", user_id)
        monitor.register("c2", user_id)

        assert monitor.suspect_connection("c1")
        assert monitor.state_of("c1") == ConnectionState.AWAITING_PONG
        assert monitor.state_of("c2") == ConnectionState.CONNECTED

        assert not monitor.suspect_connection("c1")
        assert not monitor.suspect_connection("missing")

    async def test_callback_errors_are_contained(
        self, clock: ManualClock, transport: ProbeTransport
    ) -> None:
        async def failing(user_id: UUID) -> None:
            raise RuntimeError("store down")

        monitor = HeartbeatMonitor(
            EventBroadcaster(transport), on_timeout=failing, timeout_seconds=60, clock=clock
        )
        monitor.register("c1", uuid.uuid4())
        await monitor.run_once()
        clock.advance(60)

        transitions = await monitor.run_once()

        assert transitions == {"c1": ConnectionState.RECONNECTING}

    async def test_unregister_stops_tracking(self, monitor: HeartbeatMonitor) -> None:
        monitor.register("c1", uuid.uuid4())
        monitor.unregister("c1")
        assert monitor.state_of("c1") is None
        assert monitor.connections == {}
