"""Operator endpoints for running background passes on demand."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from taskrelay.auth import Actor, Capability
from taskrelay.main import AppContext
from taskrelay.orchestrator.overtime import OvertimeScanReport
from taskrelay.orchestrator.reconciler import ReconcileReport
from taskrelay.web.dependencies import get_context, require


def create_admin_router() -> APIRouter:
    """Create the operator router.

    Routes:
        POST /admin/reconcile       - Full sweep, or one user with ?user_id=
        POST /admin/overtime-scan   - One overtime detection pass
    """
    router = APIRouter(prefix="/admin", tags=["admin"])

    @router.post("/reconcile", response_model=ReconcileReport)
    async def reconcile_endpoint(
        user_id: UUID | None = None,
        actor: Actor = Depends(require(Capability.RECONCILE)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> ReconcileReport:
        if user_id is not None:
            return await context.reconciler.check_user(user_id)
        return await context.reconciler.sweep()

    @router.post("/overtime-scan", response_model=OvertimeScanReport)
    async def overtime_scan_endpoint(
        actor: Actor = Depends(require(Capability.RECONCILE)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> OvertimeScanReport:
        return await context.overtime.run_once()

    return router
