"""Pydantic schemas shared by the lifecycle engine and the web layer.

Views are built from ORM objects (``from_attributes``) and are what events
carry as payloads, so a subscriber sees the same shape as an API client.
Input models are deliberately loose: the lifecycle engine validates bounds
itself and reports ``ValidationError``.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from taskrelay.database.models.extension import ExtensionStatus
from taskrelay.database.models.task import TaskStatus
from taskrelay.database.models.user import Role, WorkerAvailability


# --- Inputs ---


class TaskCreate(BaseModel):
    """Fields a dispatcher supplies when creating a task."""

    customer_name: str
    game_name: str
    duration_minutes: int
    customer_contact: str | None = None
    game_mode: str | None = None
    requirements: str | None = None
    worker_id: UUID | None = None


class TaskEdit(BaseModel):
    """Descriptive fields that may change while a task is open."""

    customer_name: str | None = None
    customer_contact: str | None = None
    game_name: str | None = None
    game_mode: str | None = None
    requirements: str | None = None


class CancelBody(BaseModel):
    reason: str | None = None


class ReassignBody(BaseModel):
    worker_id: UUID


class ExtensionRequestCreate(BaseModel):
    task_id: UUID
    minutes: int
    reason: str | None = None


class ExtensionReviewBody(BaseModel):
    decision: ExtensionStatus
    reason: str | None = None


class DirectExtensionBody(BaseModel):
    minutes: int
    reason: str | None = None


class UserCreate(BaseModel):
    username: str
    role: Role
    display_name: str | None = None


class UserUpdate(BaseModel):
    is_active: bool


class SessionOpen(BaseModel):
    """Opens a session for an already authenticated user.

    Token issuance belongs to the external auth service; taskrelay only
    records the fingerprint of the token it was handed.
    """

    user_id: UUID
    token: str


class PongBody(BaseModel):
    connection_id: str


# --- Views ---


class TaskView(BaseModel):
    """Serialized task as published in events and API responses."""

    id: UUID
    dispatcher_id: UUID
    worker_id: UUID | None
    status: TaskStatus
    customer_name: str
    customer_contact: str | None
    game_name: str
    game_mode: str | None
    requirements: str | None
    duration_minutes: int
    original_duration_minutes: int
    accepted_at: datetime | None
    started_at: datetime | None
    paused_at: datetime | None
    paused_seconds: int
    overtime_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    queue_order: int | None
    needs_attention: bool
    attention_reason: str | None

    model_config = {"from_attributes": True}


class ExtensionRequestView(BaseModel):
    id: UUID
    task_id: UUID
    worker_id: UUID
    dispatcher_id: UUID
    reviewed_by: UUID | None
    requested_minutes: int
    reason: str | None
    status: ExtensionStatus
    review_reason: str | None
    reviewed_at: datetime | None

    model_config = {"from_attributes": True}


class UserView(BaseModel):
    id: UUID
    username: str
    display_name: str | None
    role: Role
    availability: WorkerAvailability | None
    is_active: bool

    model_config = {"from_attributes": True}


class SessionView(BaseModel):
    id: UUID
    user_id: UUID
    expires_at: datetime
    last_activity_at: datetime
    is_active: bool

    model_config = {"from_attributes": True}


class TaskLogView(BaseModel):
    id: UUID
    task_id: UUID
    user_id: UUID | None
    action: str
    details: dict | None
    created_at: datetime

    model_config = {"from_attributes": True}
