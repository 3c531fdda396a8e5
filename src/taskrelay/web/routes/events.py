"""Server-Sent Events endpoints for real-time lifecycle updates.

A client opens ``/events/stream`` and first receives a ``connected`` event
carrying its connection ID. Lifecycle events for the user and the user's
role follow, interleaved with ``heartbeat`` probes that the client answers
with ``POST /events/pong``. A client that stops answering is reported to the
reconciler; it is never disconnected from here.
"""

from __future__ import annotations

from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from taskrelay.auth import Actor, Capability
from taskrelay.errors import NotFoundError
from taskrelay.logging import get_logger
from taskrelay.main import AppContext
from taskrelay.schemas import PongBody
from taskrelay.web.dependencies import get_actor, get_context, require
from taskrelay.web.transport import ConnectionHub, SSEMessage

logger = get_logger(__name__)

CONNECTED_EVENT = "connected"


class PongResponse(BaseModel):
    connection_id: str
    state: str


def get_hub(request: Request) -> ConnectionHub:
    """Dependency that retrieves the connection hub from app state."""
    return request.app.state.hub  # type: ignore[no-any-return]


def create_events_router() -> APIRouter:
    """Create the events router.

    Routes:
        GET  /events/stream - Event stream for the authenticated user
        POST /events/pong   - Answer a heartbeat probe
    """
    router = APIRouter(prefix="/events", tags=["events"])

    @router.get("/stream")
    async def stream_events(
        request: Request,
        actor: Actor = Depends(require(Capability.EVENTS_SUBSCRIBE)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
        hub: ConnectionHub = Depends(get_hub),  # noqa: B008
    ) -> EventSourceResponse:
        connection = hub.connect(actor.user_id, actor.role)
        context.heartbeat.register(connection.connection_id, actor.user_id)

        async def event_generator() -> AsyncIterator[dict[str, Any]]:
            try:
                yield SSEMessage(
                    event=CONNECTED_EVENT,
                    data={"connection_id": connection.connection_id},
                ).to_dict()
                async for message in hub.stream(connection):
                    if await request.is_disconnected():
                        break
                    yield message.to_dict()
            finally:
                hub.disconnect(connection.connection_id)
                context.heartbeat.unregister(connection.connection_id)

        return EventSourceResponse(event_generator())

    @router.post("/pong", response_model=PongResponse)
    async def pong_endpoint(
        body: PongBody,
        actor: Actor = Depends(get_actor),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
        hub: ConnectionHub = Depends(get_hub),  # noqa: B008
    ) -> PongResponse:
        connection = hub.get(body.connection_id)
        if connection is None or connection.user_id != actor.user_id:
            raise NotFoundError("Connection", body.connection_id)

        context.heartbeat.pong(body.connection_id)
        state = context.heartbeat.state_of(body.connection_id)
        logger.debug("heartbeat_pong", connection_id=body.connection_id)
        return PongResponse(
            connection_id=body.connection_id,
            state=state.value if state is not None else "unknown",
        )

    return router
