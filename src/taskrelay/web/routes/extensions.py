"""Extension request endpoints for taskrelay."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from taskrelay.auth import Actor, Capability
from taskrelay.database.models.extension import ExtensionStatus
from taskrelay.main import AppContext
from taskrelay.schemas import (
    ExtensionRequestCreate,
    ExtensionRequestView,
    ExtensionReviewBody,
)
from taskrelay.web.dependencies import get_context, require


def create_extensions_router() -> APIRouter:
    """Create the extension request router.

    Routes:
        GET  /extensions/              - Requests visible to the caller
        POST /extensions/              - Worker asks for more time
        PUT  /extensions/{id}/review   - Dispatcher approves or rejects
    """
    router = APIRouter(prefix="/extensions", tags=["extensions"])

    @router.get("/", response_model=list[ExtensionRequestView])
    async def list_extensions_endpoint(
        task_id: UUID | None = None,
        status: ExtensionStatus | None = None,
        actor: Actor = Depends(require(Capability.EXTENSION_VIEW)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> list[ExtensionRequestView]:
        requests = await context.extensions.list_requests(
            actor, task_id=task_id, status_filter=status
        )
        return [ExtensionRequestView.model_validate(r) for r in requests]

    @router.post("/", response_model=ExtensionRequestView, status_code=201)
    async def request_extension_endpoint(
        body: ExtensionRequestCreate,
        actor: Actor = Depends(require(Capability.EXTENSION_REQUEST)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> ExtensionRequestView:
        request = await context.extensions.request(
            body.task_id, actor, body.minutes, reason=body.reason
        )
        return ExtensionRequestView.model_validate(request)

    @router.put("/{request_id}/review", response_model=ExtensionRequestView)
    async def review_extension_endpoint(
        request_id: UUID,
        body: ExtensionReviewBody,
        actor: Actor = Depends(require(Capability.EXTENSION_REVIEW)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> ExtensionRequestView:
        request = await context.extensions.review(
            request_id, actor, body.decision, reason=body.reason
        )
        return ExtensionRequestView.model_validate(request)

    return router
