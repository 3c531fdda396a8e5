"""Lifecycle engine for taskrelay.

This module implements the task state machine, worker availability
derivation, extension negotiation, overtime detection, consistency
reconciliation, event fan-out, heartbeat liveness and session tracking.
"""

from __future__ import annotations

from taskrelay.orchestrator.availability import AvailabilityChange, AvailabilityManager
from taskrelay.orchestrator.events import (
    DeliveryError,
    EventBroadcaster,
    EventName,
    LifecycleEvent,
    Transport,
    role_channel,
    user_channel,
)
from taskrelay.orchestrator.extensions import ExtensionNegotiator
from taskrelay.orchestrator.heartbeat import (
    ConnectionLiveness,
    ConnectionState,
    HeartbeatMonitor,
)
from taskrelay.orchestrator.overtime import OvertimeDetector, OvertimeScanReport
from taskrelay.orchestrator.reconciler import (
    ConsistencyReconciler,
    JanitorReport,
    ReconcileReport,
    SessionJanitor,
)
from taskrelay.orchestrator.sessions import SessionService
from taskrelay.orchestrator.state_machine import (
    VALID_TRANSITIONS,
    TaskStateMachine,
    elapsed_seconds,
    validate_transition,
)
from taskrelay.orchestrator.timer import PeriodicService, ensure_utc, utcnow

__all__ = [
    "AvailabilityChange",
    "AvailabilityManager",
    "ConnectionLiveness",
    "ConnectionState",
    "ConsistencyReconciler",
    "DeliveryError",
    "EventBroadcaster",
    "EventName",
    "ExtensionNegotiator",
    "HeartbeatMonitor",
    "JanitorReport",
    "LifecycleEvent",
    "OvertimeDetector",
    "OvertimeScanReport",
    "PeriodicService",
    "ReconcileReport",
    "SessionJanitor",
    "SessionService",
    "TaskStateMachine",
    "Transport",
    "VALID_TRANSITIONS",
    "elapsed_seconds",
    "ensure_utc",
    "role_channel",
    "user_channel",
    "utcnow",
    "validate_transition",
]
