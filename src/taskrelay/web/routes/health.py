"""Health check endpoints for taskrelay.

Liveness (``/health/``) answers as long as the process serves requests.
Readiness (``/health/ready``) also verifies that the store accepts queries
and reports which background services are running.

Example:
    >>> from fastapi import FastAPI
    >>> from taskrelay.web.routes.health import create_health_router
    >>>
    >>> app = FastAPI()
    >>> app.include_router(create_health_router())
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import text

from taskrelay.logging import get_logger
from taskrelay.main import AppContext
from taskrelay.web.dependencies import get_context

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response model.

    Attributes:
        status: Current health status ("ok")
    """

    status: str


class ReadinessResponse(BaseModel):
    """Readiness check response model.

    Attributes:
        status: Current readiness status ("ok", "unhealthy")
        database: Database connectivity status ("connected", "disconnected")
        services: Background service name to running flag
    """

    status: str
    database: str
    services: dict[str, bool] = Field(default_factory=dict)


def create_health_router() -> APIRouter:
    """Create health check router with endpoints.

    Routes:
        GET /health/ - Basic liveness check
        GET /health/ready - Readiness check with database verification
    """
    router = APIRouter(prefix="/health", tags=["health"])

    @router.get("/", response_model=HealthResponse)
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @router.get("/ready", response_model=ReadinessResponse)
    async def readiness(
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> dict[str, Any]:
        """Readiness check with database connectivity verification."""
        services = {service.name: service.is_running for service in context.services}
        try:
            async with context.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            logger.warning(
                "readiness_check_failed",
                database="disconnected",
                error=str(exc),
            )
            return {"status": "unhealthy", "database": "disconnected", "services": services}

        logger.debug("readiness_check_passed", database="connected")
        return {"status": "ok", "database": "connected", "services": services}

    return router
