"""Pytest fixtures for integration tests.

Integration tests run the real lifecycle engine against a file-backed
SQLite database in a temporary directory (aiosqlite). A file rather than
``:memory:`` is used so that concurrent transactions get separate
connections and actually contend, as they would on PostgreSQL.

Time is pinned with ``ManualClock`` and events are captured by
``RecordingTransport`` instead of a live connection hub.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable
from uuid import UUID

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from taskrelay.auth import Actor
from taskrelay.config import DatabaseConfig, TaskRelayConfig, WebConfig
from taskrelay.database.connection import create_schema, transaction
from taskrelay.database.models.task import Task
from taskrelay.database.models.user import Role
from taskrelay.database.queries.user import create_user, get_user
from taskrelay.main import AppContext
from taskrelay.schemas import TaskCreate
from taskrelay.web.app import create_app

START = datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingTransport:
    """Transport that keeps every send for inspection."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.heartbeats = 0

    async def send(self, audience: str, event_name: str, payload: dict[str, Any]) -> None:
        self.sent.append((audience, event_name, payload))

    async def broadcast_heartbeat(self) -> None:
        self.heartbeats += 1

    def names(self) -> list[str]:
        """Distinct event names in publish order."""
        seen: dict[str, str] = {}
        for _, name, payload in self.sent:
            seen.setdefault(payload["event_id"], name)
        return list(seen.values())

    def received_by(self, audience: str) -> list[str]:
        return [name for aud, name, _ in self.sent if aud == audience]

    def payloads(self, name: str) -> list[dict[str, Any]]:
        seen: dict[str, dict[str, Any]] = {}
        for _, event_name, payload in self.sent:
            if event_name == name:
                seen.setdefault(payload["event_id"], payload)
        return list(seen.values())

    def clear(self) -> None:
        self.sent.clear()


@dataclass
class Account:
    """A seeded user with an open session."""

    actor: Actor
    token: str
    username: str

    @property
    def id(self) -> UUID:
        return self.actor.user_id

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def config(tmp_path: Path) -> TaskRelayConfig:
    return TaskRelayConfig(
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'taskrelay.db'}"),
        web=WebConfig(start_background_services=False),
    )


@pytest_asyncio.fixture
async def context(
    config: TaskRelayConfig,
    transport: RecordingTransport,
    clock: ManualClock,
) -> AsyncGenerator[AppContext, None]:
    """Fully wired application context on a fresh database."""
    ctx = AppContext(config, transport=transport, clock=clock)
    await create_schema(ctx.engine)
    yield ctx
    await ctx.stop()


async def make_account(
    context: AppContext,
    username: str,
    role: Role,
    login: bool = True,
) -> Account:
    """Create a user and, unless told otherwise, open a session for it."""
    async with transaction(context.session_factory) as session:
        user = await create_user(session, username, role, display_name=username.title())
    token = f"token-{username}"
    if login:
        await context.sessions.open_session(user.id, token)
    return Account(actor=Actor(user_id=user.id, role=role), token=token, username=username)


async def availability_of(context: AppContext, account: Account) -> str | None:
    async with transaction(context.session_factory) as session:
        user = await get_user(session, account.id)
    assert user is not None
    return user.availability.value if user.availability else None


async def make_task(
    context: AppContext,
    dispatcher: Account,
    duration_minutes: int = 30,
    **fields: Any,
) -> Task:
    data = TaskCreate(
        customer_name=fields.pop("customer_name", "Alice"),
        game_name=fields.pop("game_name", "Valorant"),
        duration_minutes=duration_minutes,
        **fields,
    )
    return await context.state_machine.create(dispatcher.actor, data)


@pytest_asyncio.fixture
async def dispatcher(context: AppContext) -> Account:
    return await make_account(context, "dana", Role.dispatcher)


@pytest_asyncio.fixture
async def worker(context: AppContext) -> Account:
    return await make_account(context, "wes", Role.worker)


@pytest_asyncio.fixture
async def other_worker(context: AppContext) -> Account:
    return await make_account(context, "wren", Role.worker)


@pytest_asyncio.fixture
async def admin(context: AppContext) -> Account:
    return await make_account(context, "ada", Role.administrator)


@pytest.fixture
def app(context: AppContext) -> FastAPI:
    """Web application sharing the test context.

    The app attaches its connection hub as the context's transport, so
    events published from here on reach the hub, not the recorder.
    """
    return create_app(context.config, context=context)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the test application."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


AccountFactory = Callable[..., Awaitable[Account]]
TaskFactory = Callable[..., Awaitable[Task]]


@pytest.fixture
def account_factory(context: AppContext) -> AccountFactory:
    async def factory(username: str, role: Role, login: bool = True) -> Account:
        return await make_account(context, username, role, login=login)

    return factory


@pytest.fixture
def task_factory(context: AppContext, dispatcher: Account) -> TaskFactory:
    async def factory(duration_minutes: int = 30, **fields: Any) -> Task:
        return await make_task(context, dispatcher, duration_minutes, **fields)

    return factory


@pytest.fixture
def availability(context: AppContext) -> Callable[[Account], Awaitable[str | None]]:
    async def lookup(account: Account) -> str | None:
        return await availability_of(context, account)

    return lookup
