"""Application wiring for taskrelay.

``AppContext`` builds the store connection and every lifecycle component
from one configuration, and owns the background services. The web
application creates one in its lifespan; tests build their own around a
temporary database.

Usage:
    uvicorn --factory taskrelay.main:create_default_app
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from taskrelay.auth import SessionAuthResolver
from taskrelay.config import TaskRelayConfig, load_config
from taskrelay.database.connection import create_schema, get_engine, get_session_factory
from taskrelay.orchestrator.availability import AvailabilityManager
from taskrelay.orchestrator.events import DeliveryError, EventBroadcaster, parse_user_channel
from taskrelay.orchestrator.extensions import ExtensionNegotiator
from taskrelay.orchestrator.heartbeat import HeartbeatMonitor
from taskrelay.orchestrator.overtime import OvertimeDetector
from taskrelay.orchestrator.reconciler import ConsistencyReconciler, SessionJanitor
from taskrelay.orchestrator.sessions import SessionService
from taskrelay.orchestrator.state_machine import TaskStateMachine
from taskrelay.orchestrator.timer import Clock, utcnow

if TYPE_CHECKING:
    from fastapi import FastAPI

    from taskrelay.orchestrator.events import Transport
    from taskrelay.orchestrator.timer import PeriodicService

logger = structlog.get_logger(__name__)


class AppContext:
    """Application context shared by the web layer and background services.

    Attributes:
        config: Loaded taskrelay configuration
        clock: Time source shared by every component
        engine: Async SQLAlchemy engine
        session_factory: Factory for creating database sessions
        broadcaster: Event fan-out
        availability: Single writer of worker availability
        extensions: Extension negotiator
        state_machine: Task lifecycle operations
        overtime: Overtime detector service
        reconciler: Consistency reconciler service
        janitor: Session janitor service
        heartbeat: Heartbeat monitor service
        sessions: Session liveness service
        auth: Bearer token resolver
    """

    def __init__(
        self,
        config: TaskRelayConfig,
        transport: Transport | None = None,
        clock: Clock = utcnow,
    ):
        """Initialize application context.

        Args:
            config: taskrelay configuration
            transport: Event transport; attachable later
            clock: Time source shared by every component
        """
        self.config = config
        self.clock = clock
        self.engine = get_engine(config.database)
        self.session_factory = get_session_factory(self.engine)

        self.broadcaster = EventBroadcaster(transport, on_send_failure=self._on_send_failure)
        self.availability = AvailabilityManager(
            config.liveness.liveness_window_seconds, clock=clock
        )
        self.extensions = ExtensionNegotiator(
            self.session_factory,
            self.broadcaster,
            config.extension,
            exclude_paused_time=config.lifecycle.exclude_paused_time,
            clock=clock,
        )
        self.state_machine = TaskStateMachine(
            self.session_factory,
            self.availability,
            self.broadcaster,
            extensions=self.extensions,
            exclude_paused_time=config.lifecycle.exclude_paused_time,
            clock=clock,
        )
        self.overtime = OvertimeDetector(
            self.session_factory,
            self.state_machine,
            interval_seconds=config.lifecycle.overtime_check_interval_seconds,
            clock=clock,
        )
        self.reconciler = ConsistencyReconciler(
            self.session_factory,
            self.availability,
            self.broadcaster,
            interval_seconds=config.reconciler.sweep_interval_seconds,
        )
        self.janitor = SessionJanitor(
            self.session_factory,
            self.reconciler,
            retention_days=config.liveness.session_retention_days,
            interval_seconds=config.liveness.cleanup_interval_seconds,
            clock=clock,
        )
        self.heartbeat = HeartbeatMonitor(
            self.broadcaster,
            on_timeout=self.reconciler.check_user,
            interval_seconds=config.liveness.heartbeat_interval_seconds,
            timeout_seconds=config.liveness.heartbeat_timeout_seconds,
            clock=clock,
        )
        self.sessions = SessionService(
            self.session_factory,
            self.availability,
            self.broadcaster,
            session_ttl_seconds=config.liveness.session_ttl_seconds,
            clock=clock,
        )
        self.auth = SessionAuthResolver(self.sessions)

    @property
    def services(self) -> list[PeriodicService]:
        return [self.overtime, self.reconciler, self.janitor, self.heartbeat]

    async def start(self) -> None:
        """Prepare the store and start background services if configured."""
        if self.config.database.create_schema:
            await create_schema(self.engine)

        if self.config.web.start_background_services:
            for service in self.services:
                await service.start()

        logger.info(
            "app_context_started",
            background_services=self.config.web.start_background_services,
        )

    async def stop(self) -> None:
        """Stop background services and release the connection pool."""
        for service in self.services:
            if service.is_running:
                await service.stop()
        await self.engine.dispose()
        logger.info("app_context_stopped")

    async def _on_send_failure(self, audience: str, error: Exception) -> None:
        """Open a heartbeat window on the connections a send failed for.

        A ``DeliveryError`` names the stalled connections, which also covers
        role channels. Other errors fall back to every connection of the
        addressed user.
        """
        if isinstance(error, DeliveryError):
            suspected = sum(
                1 for cid in error.connection_ids if self.heartbeat.suspect_connection(cid)
            )
        else:
            user_id: UUID | None = parse_user_channel(audience)
            if user_id is None:
                return
            suspected = self.heartbeat.report_send_failure(user_id)
        logger.debug(
            "send_failure_reported",
            audience=audience,
            connections=suspected,
            error=str(error),
        )


def create_default_app() -> FastAPI:
    """Build the web application from the on-disk configuration."""
    from taskrelay.logging import setup_logging
    from taskrelay.web.app import create_app

    config = load_config()
    setup_logging(config.logging)
    return create_app(config)


def serve() -> None:
    """Run the web server with uvicorn using the configured host and port."""
    import uvicorn

    app_instance = create_default_app()
    config: TaskRelayConfig = app_instance.state.config
    uvicorn.run(
        app_instance,
        host=config.web.host,
        port=config.web.port,
        log_level=config.logging.level.lower(),
    )
