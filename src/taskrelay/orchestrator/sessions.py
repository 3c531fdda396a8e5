"""Session liveness service for taskrelay.

Sessions are the durable proof that a user is live. Opening a session
supersedes the user's previous ones (single login), every authenticated
request refreshes the session's activity, and logging out or disabling the
account deactivates it.
Each change that can flip a worker's liveness is followed by an
availability recompute in the same transaction.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from taskrelay.auth import Actor
from taskrelay.database.connection import transaction
from taskrelay.database.models.user import Role, WorkerAvailability
from taskrelay.database.queries.session import (
    create_user_session,
    deactivate_session,
    deactivate_user_sessions,
    get_active_session_by_token,
    touch_user_session,
)
from taskrelay.database.queries.user import get_user, set_user_active
from taskrelay.errors import AuthenticationError, NotFoundError, PermissionDeniedError, ValidationError
from taskrelay.logging import bind_actor_context
from taskrelay.orchestrator.events import worker_status_event
from taskrelay.orchestrator.timer import Clock, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from taskrelay.database.models.session import UserSession
    from taskrelay.database.models.user import User
    from taskrelay.orchestrator.availability import AvailabilityManager
    from taskrelay.orchestrator.events import EventBroadcaster, LifecycleEvent

logger = structlog.get_logger(__name__)


class SessionService:
    """Opens, refreshes and closes user sessions.

    Args:
        session_factory: Factory for store sessions.
        availability: Recomputes workers whose liveness may have changed.
        broadcaster: Receives availability change events.
        session_ttl_seconds: Lifetime of a new session.
        clock: Time source.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        availability: AvailabilityManager,
        broadcaster: EventBroadcaster,
        session_ttl_seconds: int = 86400,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._availability = availability
        self._broadcaster = broadcaster
        self.session_ttl = timedelta(seconds=session_ttl_seconds)
        self._clock = clock
        self.logger = logger.bind(component="SessionService")

    async def open_session(self, user_id: UUID, token: str) -> UserSession:
        """Record a session for a token issued by the auth service.

        Raises:
            ValidationError: If the token is blank.
            NotFoundError: If the user does not exist.
            PermissionDeniedError: If the account is disabled.
        """
        if not token or not token.strip():
            raise ValidationError("token is required")

        events: list[LifecycleEvent] = []
        async with transaction(self._session_factory) as session:
            user = await self._load_user(session, user_id)
            if not user.is_active:
                raise PermissionDeniedError("Account is disabled")

            now = self._clock()
            superseded = await deactivate_user_sessions(session, user_id, now)
            user_session = await create_user_session(
                session, user_id, token, expires_at=now + self.session_ttl, now=now
            )
            await self._recompute_worker(session, user, "session_opened", events)

        self.logger.info(
            "session_opened",
            user_id=str(user_id),
            session_id=str(user_session.id),
            superseded=superseded,
        )
        await self._broadcaster.publish_all(events)
        return user_session

    async def authenticate(self, token: str) -> Actor:
        """Resolve a bearer token to its actor and refresh the session.

        A worker marked offline whose session is still valid is brought back
        online by the refresh.

        Raises:
            AuthenticationError: If no active, unexpired session matches.
        """
        events: list[LifecycleEvent] = []
        async with transaction(self._session_factory) as session:
            now = self._clock()
            user_session = await get_active_session_by_token(session, token, now)
            if user_session is None:
                raise AuthenticationError("Invalid or expired session")

            user = await get_user(session, user_session.user_id)
            if user is None or not user.is_active:
                raise AuthenticationError("Account is not active")

            await touch_user_session(session, user_session.id, now)
            if user.role == Role.worker and user.availability == WorkerAvailability.offline:
                await self._recompute_worker(session, user, "session_active", events)

        bind_actor_context(str(user.id), user.role.value)
        await self._broadcaster.publish_all(events)
        return Actor(user_id=user.id, role=user.role)

    async def close_session(self, token: str) -> None:
        """Log out the session holding a token."""
        events: list[LifecycleEvent] = []
        async with transaction(self._session_factory) as session:
            now = self._clock()
            user_session = await get_active_session_by_token(session, token, now)
            if user_session is None:
                raise AuthenticationError("Invalid or expired session")

            await deactivate_session(session, user_session.id, now)
            user = await self._load_user(session, user_session.user_id)
            await self._recompute_worker(session, user, "session_closed", events)

        self.logger.info("session_closed", user_id=str(user_session.user_id), session_id=str(user_session.id))
        await self._broadcaster.publish_all(events)

    async def set_account_active(self, user_id: UUID, is_active: bool) -> User:
        """Enable or disable an account.

        Disabling ends every session of the user, so a worker goes offline
        in the same transaction. Held tasks stay assigned; flagging them is
        left to the reconciler.

        Raises:
            NotFoundError: If the user does not exist.
        """
        events: list[LifecycleEvent] = []
        async with transaction(self._session_factory) as session:
            user = await self._load_user(session, user_id)
            await set_user_active(session, user_id, is_active)

            ended = 0
            if not is_active:
                ended = await deactivate_user_sessions(session, user_id, self._clock())
                await self._recompute_worker(session, user, "account_disabled", events)
            user = await self._load_user(session, user_id)

        self.logger.info(
            "account_enabled" if is_active else "account_disabled",
            user_id=str(user_id),
            sessions_ended=ended,
        )
        await self._broadcaster.publish_all(events)
        return user

    async def _load_user(self, session: AsyncSession, user_id: UUID) -> User:
        user = await get_user(session, user_id)
        if user is None:
            raise NotFoundError("User", str(user_id))
        return user

    async def _recompute_worker(
        self,
        session: AsyncSession,
        user: User,
        reason: str,
        events: list[LifecycleEvent],
    ) -> None:
        if user.role != Role.worker:
            return
        change = await self._availability.recompute(session, user.id, reason)
        if change is not None:
            events.append(worker_status_event(change))
