"""FastAPI application factory for taskrelay.

This module provides the application factory that creates and configures a
FastAPI application with:
- CORS middleware for cross-origin requests
- Request logging middleware with correlation IDs
- The SSE connection hub attached as the event transport
- Lifecycle management of the application context and background services
- Translation of TaskRelayError into JSON error responses

Example usage:
    >>> from taskrelay.config import TaskRelayConfig
    >>> from taskrelay.web.app import create_app
    >>>
    >>> config = TaskRelayConfig()
    >>> app = create_app(config)
    >>>
    >>> # Run with uvicorn
    >>> import uvicorn
    >>> uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskrelay import __version__
from taskrelay.config import TaskRelayConfig
from taskrelay.errors import TaskRelayError
from taskrelay.logging import get_logger
from taskrelay.main import AppContext
from taskrelay.web.middleware import RequestLoggingMiddleware
from taskrelay.web.routes.admin import create_admin_router
from taskrelay.web.routes.events import create_events_router
from taskrelay.web.routes.extensions import create_extensions_router
from taskrelay.web.routes.health import create_health_router
from taskrelay.web.routes.sessions import create_sessions_router
from taskrelay.web.routes.tasks import create_tasks_router
from taskrelay.web.routes.users import create_users_router, create_workers_router
from taskrelay.web.transport import ConnectionHub

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage the application context across the server's lifetime.

    A context passed to ``create_app`` belongs to the caller and is neither
    started nor stopped here; otherwise one is built from the config, started
    on startup and stopped on shutdown.

    Args:
        app: FastAPI application instance

    Yields:
        None after startup, cleans up on context exit
    """
    config: TaskRelayConfig = app.state.config
    hub: ConnectionHub = app.state.hub

    logger.info("app_startup_begin", host=config.web.host, port=config.web.port)

    owns_context = app.state.context is None
    if owns_context:
        app.state.context = AppContext(config, transport=hub)
        await app.state.context.start()
    context: AppContext = app.state.context

    yield

    logger.info("app_shutdown_begin", open_streams=hub.connection_count)
    await hub.close_all()
    if owns_context:
        await context.stop()
    logger.info("app_shutdown_complete")


async def handle_taskrelay_error(request: Request, exc: TaskRelayError) -> JSONResponse:
    """Render a TaskRelayError as ``{"detail": ..., "code": ...}``."""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_rejected",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def create_app(
    config: TaskRelayConfig | None = None,
    context: AppContext | None = None,
) -> FastAPI:
    """Create and configure a FastAPI application.

    Args:
        config: Optional TaskRelayConfig. If None, uses the context's config
            or creates a default config.
        context: Optional pre-built application context. It is wired to the
            connection hub immediately, so the app is usable without running
            the lifespan (as under an ASGI test transport).

    Returns:
        Configured FastAPI application instance.
    """
    if config is None:
        config = context.config if context is not None else TaskRelayConfig()

    app = FastAPI(
        title="taskrelay",
        version=__version__,
        description="Task lifecycle and worker availability engine",
        lifespan=lifespan,
    )

    hub = ConnectionHub(clock=context.clock) if context is not None else ConnectionHub()
    app.state.config = config
    app.state.hub = hub
    app.state.context = context
    if context is not None:
        context.broadcaster.attach_transport(hub)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(TaskRelayError, handle_taskrelay_error)  # type: ignore[arg-type]

    app.include_router(create_health_router())
    app.include_router(create_sessions_router())
    app.include_router(create_users_router())
    app.include_router(create_workers_router())
    app.include_router(create_tasks_router())
    app.include_router(create_extensions_router())
    app.include_router(create_admin_router())
    app.include_router(create_events_router())

    logger.info(
        "app_created",
        cors_origins=config.web.cors_origins,
        version=__version__,
    )

    return app
