"""Caller identity and role capabilities for taskrelay.

Authentication itself (credentials, token issuance) belongs to an external
service. taskrelay receives a bearer token, resolves it to an ``Actor``
through the user's session, and trusts that resolution.

Roles form a closed set. What each role may do is listed once in
``CAPABILITIES`` and checked at the HTTP boundary with ``authorize``; the
lifecycle engine only adds per-resource checks such as "the assigned
worker" or "the owning dispatcher".
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from taskrelay.database.models.user import Role
from taskrelay.errors import AuthenticationError, PermissionDeniedError

if TYPE_CHECKING:
    from taskrelay.orchestrator.sessions import SessionService

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    """A resolved caller."""

    user_id: UUID
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.administrator


class Capability(str, Enum):
    """Operations gated by role."""

    TASK_CREATE = "task_create"
    TASK_VIEW = "task_view"
    TASK_ACCEPT = "task_accept"
    TASK_START = "task_start"
    TASK_PAUSE = "task_pause"
    TASK_COMPLETE = "task_complete"
    TASK_CANCEL = "task_cancel"
    TASK_EDIT = "task_edit"
    TASK_REASSIGN = "task_reassign"
    EXTENSION_REQUEST = "extension_request"
    EXTENSION_REVIEW = "extension_review"
    EXTENSION_DIRECT = "extension_direct"
    EXTENSION_VIEW = "extension_view"
    WORKER_VIEW = "worker_view"
    USER_MANAGE = "user_manage"
    RECONCILE = "reconcile"
    EVENTS_SUBSCRIBE = "events_subscribe"


CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.dispatcher: frozenset(
        {
            Capability.TASK_CREATE,
            Capability.TASK_VIEW,
            Capability.TASK_PAUSE,
            Capability.TASK_COMPLETE,
            Capability.TASK_CANCEL,
            Capability.TASK_EDIT,
            Capability.TASK_REASSIGN,
            Capability.EXTENSION_REVIEW,
            Capability.EXTENSION_DIRECT,
            Capability.EXTENSION_VIEW,
            Capability.WORKER_VIEW,
            Capability.EVENTS_SUBSCRIBE,
        }
    ),
    Role.worker: frozenset(
        {
            Capability.TASK_VIEW,
            Capability.TASK_ACCEPT,
            Capability.TASK_START,
            Capability.TASK_PAUSE,
            Capability.TASK_COMPLETE,
            Capability.TASK_CANCEL,
            Capability.EXTENSION_REQUEST,
            Capability.EXTENSION_VIEW,
            Capability.EVENTS_SUBSCRIBE,
        }
    ),
    # Administrators hold every capability
    Role.administrator: frozenset(Capability),
}


def can(actor: Actor, capability: Capability) -> bool:
    return capability in CAPABILITIES.get(actor.role, frozenset())


def authorize(actor: Actor, capability: Capability) -> Actor:
    """Check a capability, returning the actor for chaining.

    Raises:
        PermissionDeniedError: If the actor's role lacks the capability.
    """
    if not can(actor, capability):
        logger.info(
            "capability_denied",
            user_id=str(actor.user_id),
            role=actor.role.value,
            capability=capability.value,
        )
        raise PermissionDeniedError(
            f"Role {actor.role.value} may not perform {capability.value}"
        )
    return actor


def parse_bearer_token(authorization: str | None) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header.

    Raises:
        AuthenticationError: If the header is missing or malformed.
    """
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Expected a Bearer token")
    return token.strip()


class SessionAuthResolver:
    """Resolves bearer tokens to actors through session records.

    Each successful resolution counts as inbound activity and refreshes the
    session's last-activity timestamp.
    """

    def __init__(self, sessions: SessionService):
        self._sessions = sessions

    async def resolve(self, authorization: str | None) -> Actor:
        token = parse_bearer_token(authorization)
        return await self._sessions.authenticate(token)
