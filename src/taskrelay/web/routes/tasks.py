"""Task REST API endpoints for taskrelay.

Every mutating route delegates to the task state machine; the route only
authenticates, checks the role capability and serializes the result.
Lifecycle changes use PUT on a sub-resource named after the operation.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from taskrelay.auth import Actor, Capability
from taskrelay.database.models.task import TaskStatus
from taskrelay.main import AppContext
from taskrelay.schemas import (
    CancelBody,
    DirectExtensionBody,
    ReassignBody,
    TaskCreate,
    TaskEdit,
    TaskLogView,
    TaskView,
)
from taskrelay.web.dependencies import get_context, require


def create_tasks_router() -> APIRouter:
    """Create the task router.

    Routes:
        GET  /tasks/                      - Tasks visible to the caller
        POST /tasks/                      - Create a task
        GET  /tasks/{id}                  - Task detail
        PUT  /tasks/{id}                  - Edit descriptive fields
        GET  /tasks/{id}/logs             - Audit trail
        PUT  /tasks/{id}/accept|start|pause|resume|complete|cancel|reassign
        POST /tasks/{id}/extend           - Direct extension by the dispatcher
    """
    router = APIRouter(prefix="/tasks", tags=["tasks"])

    @router.get("/", response_model=list[TaskView])
    async def list_tasks_endpoint(
        status: TaskStatus | None = None,
        needs_attention: bool | None = None,
        actor: Actor = Depends(require(Capability.TASK_VIEW)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> list[TaskView]:
        tasks = await context.state_machine.list_visible(
            actor, status_filter=status, needs_attention=needs_attention
        )
        return [TaskView.model_validate(task) for task in tasks]

    @router.post("/", response_model=TaskView, status_code=201)
    async def create_task_endpoint(
        data: TaskCreate,
        actor: Actor = Depends(require(Capability.TASK_CREATE)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> TaskView:
        task = await context.state_machine.create(actor, data)
        return TaskView.model_validate(task)

    @router.get("/{task_id}", response_model=TaskView)
    async def get_task_endpoint(
        task_id: UUID,
        actor: Actor = Depends(require(Capability.TASK_VIEW)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> TaskView:
        task = await context.state_machine.get(task_id, actor)
        return TaskView.model_validate(task)

    @router.put("/{task_id}", response_model=TaskView)
    async def edit_task_endpoint(
        task_id: UUID,
        data: TaskEdit,
        actor: Actor = Depends(require(Capability.TASK_EDIT)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> TaskView:
        task = await context.state_machine.edit(task_id, actor, data)
        return TaskView.model_validate(task)

    @router.get("/{task_id}/logs", response_model=list[TaskLogView])
    async def task_logs_endpoint(
        task_id: UUID,
        actor: Actor = Depends(require(Capability.TASK_VIEW)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> list[TaskLogView]:
        logs = await context.state_machine.history(task_id, actor)
        return [TaskLogView.model_validate(entry) for entry in logs]

    @router.put("/{task_id}/accept", response_model=TaskView)
    async def accept_task_endpoint(
        task_id: UUID,
        actor: Actor = Depends(require(Capability.TASK_ACCEPT)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> TaskView:
        task = await context.state_machine.accept(task_id, actor)
        return TaskView.model_validate(task)

    @router.put("/{task_id}/start", response_model=TaskView)
    async def start_task_endpoint(
        task_id: UUID,
        actor: Actor = Depends(require(Capability.TASK_START)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> TaskView:
        task = await context.state_machine.start(task_id, actor)
        return TaskView.model_validate(task)

    @router.put("/{task_id}/pause", response_model=TaskView)
    async def pause_task_endpoint(
        task_id: UUID,
        actor: Actor = Depends(require(Capability.TASK_PAUSE)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> TaskView:
        task = await context.state_machine.pause(task_id, actor)
        return TaskView.model_validate(task)

    @router.put("/{task_id}/resume", response_model=TaskView)
    async def resume_task_endpoint(
        task_id: UUID,
        actor: Actor = Depends(require(Capability.TASK_PAUSE)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> TaskView:
        task = await context.state_machine.resume(task_id, actor)
        return TaskView.model_validate(task)

    @router.put("/{task_id}/complete", response_model=TaskView)
    async def complete_task_endpoint(
        task_id: UUID,
        actor: Actor = Depends(require(Capability.TASK_COMPLETE)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> TaskView:
        task = await context.state_machine.complete(task_id, actor)
        return TaskView.model_validate(task)

    @router.put("/{task_id}/cancel", response_model=TaskView)
    async def cancel_task_endpoint(
        task_id: UUID,
        body: CancelBody | None = None,
        actor: Actor = Depends(require(Capability.TASK_CANCEL)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> TaskView:
        reason = body.reason if body is not None else None
        task = await context.state_machine.cancel(task_id, actor, reason=reason)
        return TaskView.model_validate(task)

    @router.put("/{task_id}/reassign", response_model=TaskView)
    async def reassign_task_endpoint(
        task_id: UUID,
        body: ReassignBody,
        actor: Actor = Depends(require(Capability.TASK_REASSIGN)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> TaskView:
        task = await context.state_machine.reassign(task_id, body.worker_id, actor)
        return TaskView.model_validate(task)

    @router.post("/{task_id}/extend", response_model=TaskView)
    async def extend_task_endpoint(
        task_id: UUID,
        body: DirectExtensionBody,
        actor: Actor = Depends(require(Capability.EXTENSION_DIRECT)),  # noqa: B008
        context: AppContext = Depends(get_context),  # noqa: B008
    ) -> TaskView:
        task = await context.extensions.extend_direct(
            task_id, actor, body.minutes, reason=body.reason
        )
        return TaskView.model_validate(task)

    return router
