"""User and worker directory endpoints for taskrelay.

Account provisioning is an administrator concern; dispatchers only need to
see workers and their current availability to decide whom to assign.
Availability is shown as stored; it is never written from here.
"""

from __future__ import annotations

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError

from taskrelay.auth import Actor, Capability
from taskrelay.database.connection import transaction
from taskrelay.database.models.user import Role, WorkerAvailability
from taskrelay.database.queries.user import create_user, get_user, list_users
from taskrelay.errors import ConflictError, NotFoundError, ValidationError
from taskrelay.main import AppContext
from taskrelay.schemas import UserCreate, UserUpdate, UserView
from taskrelay.web.dependencies import get_context, require

logger = structlog.get_logger(__name__)


def create_users_router() -> APIRouter:
    """Create the account management router.

    Routes:
        GET  /users/ - All accounts, optionally filtered by role
        POST /users/ - Provision an account
        PUT  /users/{id} - Enable or disable an account
    """
    router = APIRouter(prefix="/users", tags=["users"])

    @router.get("/", response_model=list[UserView])
    async def list_users_endpoint(
        role: Role | None = None,
        include_inactive: bool = False,
        actor: Actor = Depends(require(Capability.USER_MANAGE)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> list[UserView]:
        async with transaction(context.session_factory) as session:
            users = await list_users(session, role=role, active_only=not include_inactive)
        return [UserView.model_validate(user) for user in users]

    @router.post("/", response_model=UserView, status_code=201)
    async def create_user_endpoint(
        body: UserCreate,
        actor: Actor = Depends(require(Capability.USER_MANAGE)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> UserView:
        username = body.username.strip()
        if not username:
            raise ValidationError("username is required")

        async with transaction(context.session_factory) as session:
            try:
                user = await create_user(
                    session, username, body.role, display_name=body.display_name
                )
            except IntegrityError as e:
                raise ConflictError(f"Username {username!r} is already taken") from e

        logger.info("user_provisioned", user_id=str(user.id), by=str(actor.user_id))
        return UserView.model_validate(user)

    @router.put("/{user_id}", response_model=UserView)
    async def update_user_endpoint(
        user_id: UUID,
        body: UserUpdate,
        actor: Actor = Depends(require(Capability.USER_MANAGE)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> UserView:
        if user_id == actor.user_id and not body.is_active:
            raise ValidationError("You cannot disable your own account")

        user = await context.sessions.set_account_active(user_id, body.is_active)
        if not body.is_active:
            # Tasks held by a disabled worker need a dispatcher's decision
            await context.reconciler.check_user(user_id)

        logger.info(
            "user_updated",
            user_id=str(user_id),
            is_active=body.is_active,
            by=str(actor.user_id),
        )
        return UserView.model_validate(user)

    return router


def create_workers_router() -> APIRouter:
    """Create the worker directory router.

    Routes:
        GET /workers/      - Active workers, optionally by availability
        GET /workers/{id}  - One worker
    """
    router = APIRouter(prefix="/workers", tags=["workers"])

    @router.get("/", response_model=list[UserView])
    async def list_workers_endpoint(
        availability: WorkerAvailability | None = None,
        actor: Actor = Depends(require(Capability.WORKER_VIEW)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> list[UserView]:
        async with transaction(context.session_factory) as session:
            workers = await list_users(session, role=Role.worker)
        if availability is not None:
            workers = [w for w in workers if w.availability == availability]
        return [UserView.model_validate(worker) for worker in workers]

    @router.get("/{worker_id}", response_model=UserView)
    async def get_worker_endpoint(
        worker_id: UUID,
        actor: Actor = Depends(require(Capability.WORKER_VIEW)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> UserView:
        async with transaction(context.session_factory) as session:
            worker = await get_user(session, worker_id)
        if worker is None or worker.role != Role.worker:
            raise NotFoundError("Worker", str(worker_id))
        return UserView.model_validate(worker)

    return router
