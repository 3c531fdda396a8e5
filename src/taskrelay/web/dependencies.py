"""FastAPI dependencies shared by the route modules.

Authentication happens once per request: ``get_actor`` resolves the bearer
token through the session service, which also refreshes the session, and
``require`` layers a capability check on top.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Depends, Header, Query, Request

from taskrelay.auth import Actor, Capability, authorize
from taskrelay.main import AppContext


def get_context(request: Request) -> AppContext:
    """Dependency that retrieves the application context from app state."""
    return request.app.state.context  # type: ignore[no-any-return]


async def get_actor(
    authorization: str | None = Header(default=None),
    access_token: str | None = Query(default=None),
    context: AppContext = Depends(get_context),  # noqa: B008
) -> Actor:
    """Resolve the calling actor from the Authorization header.

    Browsers cannot set headers on an EventSource, so the token may also
    arrive as the ``access_token`` query parameter.
    """
    if authorization is None and access_token:
        authorization = f"Bearer {access_token}"
    return await context.auth.resolve(authorization)


def require(capability: Capability) -> Callable[..., Awaitable[Actor]]:
    """Build a dependency that authenticates and checks one capability."""

    async def dependency(actor: Actor = Depends(get_actor)) -> Actor:  # noqa: B008
        return authorize(actor, capability)

    return dependency
