"""Session endpoints for taskrelay.

Tokens are issued by the external auth service, which hands each one to
``POST /sessions/`` together with the user it belongs to. When
``web.session_issuer_key`` is configured the call must carry the same value
in ``X-Session-Issuer-Key``.
"""

from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header

from taskrelay.auth import Actor, parse_bearer_token
from taskrelay.database.connection import transaction
from taskrelay.database.queries.user import get_user
from taskrelay.errors import AuthenticationError, NotFoundError
from taskrelay.main import AppContext
from taskrelay.schemas import SessionOpen, SessionView, UserView
from taskrelay.web.dependencies import get_actor, get_context


def create_sessions_router() -> APIRouter:
    """Create the session router.

    Routes:
        POST   /sessions/         - Record a session for an issued token
        GET    /sessions/current  - The account behind the caller's token
        DELETE /sessions/current  - Log out
    """
    router = APIRouter(prefix="/sessions", tags=["sessions"])

    @router.post("/", response_model=SessionView, status_code=201)
    async def open_session_endpoint(
        body: SessionOpen,
        x_session_issuer_key: str | None = Header(default=None),
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> SessionView:
        expected = context.config.web.session_issuer_key
        if expected is not None and not hmac.compare_digest(
            expected.encode(), (x_session_issuer_key or "").encode()
        ):
            raise AuthenticationError("Invalid session issuer key")

        user_session = await context.sessions.open_session(body.user_id, body.token)
        return SessionView.model_validate(user_session)

    @router.get("/current", response_model=UserView)
    async def current_user_endpoint(
        actor: Actor = Depends(get_actor),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> UserView:
        async with transaction(context.session_factory) as session:
            user = await get_user(session, actor.user_id)
        if user is None:
            raise NotFoundError("User", str(actor.user_id))
        return UserView.model_validate(user)

    @router.delete("/current", status_code=204)
    async def close_session_endpoint(
        authorization: str | None = Header(default=None),
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> None:
        await context.sessions.close_session(parse_bearer_token(authorization))

    return router
