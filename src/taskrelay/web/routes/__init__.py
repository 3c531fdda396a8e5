"""FastAPI route definitions for taskrelay.

Each module exposes a ``create_*_router`` factory; routes authenticate the
caller, check the role capability and delegate to the lifecycle engine held
by the application context.
"""

from __future__ import annotations

from taskrelay.web.routes.admin import create_admin_router
from taskrelay.web.routes.events import create_events_router
from taskrelay.web.routes.extensions import create_extensions_router
from taskrelay.web.routes.health import (
    HealthResponse,
    ReadinessResponse,
    create_health_router,
)
from taskrelay.web.routes.sessions import create_sessions_router
from taskrelay.web.routes.tasks import create_tasks_router
from taskrelay.web.routes.users import create_users_router, create_workers_router

__all__ = [
    "create_admin_router",
    "create_events_router",
    "create_extensions_router",
    # Health
    "HealthResponse",
    "ReadinessResponse",
    "create_health_router",
    "create_sessions_router",
    "create_tasks_router",
    "create_users_router",
    "create_workers_router",
]
