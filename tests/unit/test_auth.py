"""Unit tests for role capabilities and bearer token parsing."""

from __future__ import annotations

import uuid

import pytest

from taskrelay.auth import (
    CAPABILITIES,
    Actor,
    Capability,
    authorize,
    can,
    parse_bearer_token,
)
from taskrelay.database.models.user import Role
from taskrelay.errors import AuthenticationError, PermissionDeniedError


def actor(role: Role) -> Actor:
    return Actor(user_id=uuid.uuid4(), role=role)


class TestCapabilities:
    def test_administrator_holds_every_capability(self) -> None:
        assert CAPABILITIES[Role.administrator] == frozenset(Capability)

    @pytest.mark.parametrize(
        "role,capability,allowed",
        [
            (Role.dispatcher, Capability.TASK_CREATE, True),
            (Role.dispatcher, Capability.EXTENSION_REVIEW, True),
            (Role.dispatcher, Capability.TASK_ACCEPT, False),
            (Role.dispatcher, Capability.EXTENSION_REQUEST, False),
            (Role.dispatcher, Capability.RECONCILE, False),
            (Role.worker, Capability.TASK_ACCEPT, True),
            (Role.worker, Capability.TASK_START, True),
            (Role.worker, Capability.EXTENSION_REQUEST, True),
            (Role.worker, Capability.TASK_CREATE, False),
            (Role.worker, Capability.EXTENSION_REVIEW, False),
            (Role.worker, Capability.WORKER_VIEW, False),
            (Role.administrator, Capability.USER_MANAGE, True),
        ],
    )
    def test_role_table(self, role: Role, capability: Capability, allowed: bool) -> None:
        assert can(actor(role), capability) is allowed

    def test_authorize_returns_actor(self) -> None:
        dispatcher = actor(Role.dispatcher)
        assert authorize(dispatcher, Capability.TASK_CREATE) is dispatcher

    def test_authorize_denies(self) -> None:
        with pytest.raises(PermissionDeniedError, match="task_accept"):
            authorize(actor(Role.dispatcher), Capability.TASK_ACCEPT)

    def test_is_admin(self) -> None:
        assert actor(Role.administrator).is_admin
        assert not actor(Role.dispatcher).is_admin


class TestParseBearerToken:
    def test_valid_header(self) -> None:
        assert parse_bearer_token("Bearer abc123") == "abc123"

    def test_scheme_is_case_insensitive(self) -> None:
        assert parse_bearer_token("bearer  abc123 ") == "abc123"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer   "])
    def test_invalid_headers(self, header: str | None) -> None:
        with pytest.raises(AuthenticationError):
            parse_bearer_token(header)
