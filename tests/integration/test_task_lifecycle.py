"""Integration tests for the task lifecycle.

Covers creation into the pool and by direct assignment, the race to accept
a pending task, the timed statuses, terminal transitions with worker
release and queue promotion, reassignment, editing and visibility.
"""

from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from taskrelay.database.connection import transaction
from taskrelay.database.models.task import HOLDING_STATUSES, TaskStatus
from taskrelay.database.models.user import Role, WorkerAvailability
from taskrelay.database.queries.task import count_holding_tasks, list_tasks
from taskrelay.database.queries.user import get_user
from taskrelay.errors import (
    AlreadyTakenError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from taskrelay.main import AppContext
from taskrelay.orchestrator.events import user_channel
from taskrelay.schemas import TaskCreate, TaskEdit


# --- Create ---


async def test_create_pool_task(context: AppContext, task_factory, transport) -> None:
    """Test a task without a worker enters the pool and is announced to workers."""
    task = await task_factory(duration_minutes=45, game_mode="ranked")

    assert task.status == TaskStatus.pending
    assert task.worker_id is None
    assert task.duration_minutes == 45
    assert task.original_duration_minutes == 45
    assert task.game_mode == "ranked"
    assert task.needs_attention is False
    assert "task_created" in transport.received_by("role:worker")
    assert "task_created" in transport.received_by("role:administrator")


@pytest.mark.parametrize(
    "fields",
    [
        {"customer_name": "   "},
        {"game_name": ""},
        {"duration_minutes": 0},
        {"duration_minutes": -5},
        {"duration_minutes": 1441},
    ],
)
async def test_create_rejects_invalid_input(
    context: AppContext, dispatcher, fields: dict
) -> None:
    """Test blank names and out-of-range durations are validation errors."""
    data = {"customer_name": "Alice", "game_name": "Valorant", "duration_minutes": 30}
    data.update(fields)

    with pytest.raises(ValidationError):
        await context.state_machine.create(dispatcher.actor, TaskCreate(**data))


async def test_create_strips_names(context: AppContext, task_factory) -> None:
    """Test surrounding whitespace is removed from required names."""
    task = await task_factory(customer_name="  Alice ", game_name=" Dota 2 ")
    assert (task.customer_name, task.game_name) == ("Alice", "Dota 2")


async def test_create_assigned_to_idle_worker(
    context: AppContext, task_factory, worker, transport, availability
) -> None:
    """Test direct assignment to an idle worker accepts the task."""
    transport.clear()

    task = await task_factory(worker_id=worker.id)

    assert task.status == TaskStatus.accepted
    assert task.worker_id == worker.id
    assert task.accepted_at is not None
    assert await availability(worker) == "busy"
    assert transport.names()[0] == "task_created"
    assert "task_accepted" in transport.received_by(user_channel(worker.id))


async def test_create_assigned_to_busy_worker_queues(
    context: AppContext, task_factory, worker, transport
) -> None:
    """Test direct assignment to a busy worker queues behind its work."""
    await task_factory(worker_id=worker.id)
    second = await task_factory(worker_id=worker.id)
    third = await task_factory(worker_id=worker.id)

    assert second.status == TaskStatus.queued
    assert third.status == TaskStatus.queued
    assert (second.queue_order, third.queue_order) == (1, 2)
    assert second.queued_at is not None
    assert len(transport.payloads("task_queued")) == 2


async def test_create_assigned_to_offline_worker(
    context: AppContext, task_factory, account_factory
) -> None:
    """Test a worker without a live session cannot receive work."""
    absent = await account_factory("otto", Role.worker, login=False)

    with pytest.raises(ConflictError, match="offline"):
        await task_factory(worker_id=absent.id)


async def test_create_assigned_to_non_worker(context: AppContext, task_factory, admin) -> None:
    """Test only workers can be assigned."""
    with pytest.raises(ValidationError):
        await task_factory(worker_id=admin.id)


async def test_create_assigned_to_unknown_worker(context: AppContext, task_factory) -> None:
    """Test assigning to a missing user is reported as not found."""
    with pytest.raises(NotFoundError):
        await task_factory(worker_id=uuid4())


# --- Accept ---


async def test_accept_makes_worker_busy(
    context: AppContext, task_factory, worker, transport, availability
) -> None:
    """Test accepting flips the worker idle -> busy together with the task."""
    task = await task_factory()
    transport.clear()

    accepted = await context.state_machine.accept(task.id, worker.actor)

    assert accepted.status == TaskStatus.accepted
    assert accepted.worker_id == worker.id
    assert accepted.accepted_at is not None
    assert await availability(worker) == "busy"
    assert transport.names() == ["task_accepted", "worker_status_changed"]
    assert "task_accepted" in transport.received_by("role:worker")

    (status,) = transport.payloads("worker_status_changed")
    assert status["status"] == "busy"
    assert status["previous_status"] == "idle"


async def test_concurrent_accepts_have_one_winner(
    context: AppContext, task_factory, worker, other_worker, admin, availability
) -> None:
    """Test two workers racing for one task: one wins, the other is told it is taken."""
    task = await task_factory()

    results = await asyncio.gather(
        context.state_machine.accept(task.id, worker.actor),
        context.state_machine.accept(task.id, other_worker.actor),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], AlreadyTakenError)

    winner_id = winners[0].worker_id
    loser = other_worker if winner_id == worker.id else worker
    assert await availability(loser) == "idle"

    stored = await context.state_machine.get(task.id, admin.actor)
    assert stored.worker_id == winner_id
    assert stored.status == TaskStatus.accepted


async def test_busy_worker_cannot_accept(context: AppContext, task_factory, worker) -> None:
    """Test a worker holding a task cannot take a second one from the pool."""
    first = await task_factory()
    second = await task_factory()
    await context.state_machine.accept(first.id, worker.actor)

    with pytest.raises(ConflictError, match="not idle"):
        await context.state_machine.accept(second.id, worker.actor)

    pool = await context.state_machine.list_visible(worker.actor, TaskStatus.pending)
    assert [t.id for t in pool] == [second.id]


async def test_one_worker_racing_for_two_tasks(
    context: AppContext, task_factory, worker, admin, availability
) -> None:
    """Test a worker accepting two pool tasks at once ends up holding exactly one."""
    first = await task_factory()
    second = await task_factory()

    results = await asyncio.gather(
        context.state_machine.accept(first.id, worker.actor),
        context.state_machine.accept(second.id, worker.actor),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], ConflictError)

    async with transaction(context.session_factory) as session:
        assert await count_holding_tasks(session, worker.id) == 1
    assert await availability(worker) == "busy"

    loser_id = second.id if winners[0].id == first.id else first.id
    left_over = await context.state_machine.get(loser_id, admin.actor)
    assert left_over.status == TaskStatus.pending
    assert left_over.worker_id is None


async def test_invariants_hold_across_interleaved_sequence(
    context: AppContext, task_factory, dispatcher, worker, other_worker, admin
) -> None:
    """Test assignment and availability stay consistent after every step of two workers' runs."""
    sm = context.state_machine
    t1, t2, t3, t4 = [await task_factory() for _ in range(4)]

    async def check() -> None:
        async with transaction(context.session_factory) as session:
            for task in await list_tasks(session):
                if task.status in HOLDING_STATUSES:
                    assert task.worker_id is not None, task.status
                if task.status == TaskStatus.pending:
                    assert task.worker_id is None
            for account in (worker, other_worker):
                held = await count_holding_tasks(session, account.id)
                user = await get_user(session, account.id)
                assert held <= 1
                expected = WorkerAvailability.busy if held else WorkerAvailability.idle
                assert user.availability == expected, (account.username, held)

    steps = [
        lambda: sm.accept(t1.id, worker.actor),
        lambda: sm.accept(t2.id, other_worker.actor),
        lambda: sm.start(t1.id, worker.actor),
        lambda: sm.cancel(t2.id, dispatcher.actor, "customer left"),
        lambda: sm.accept(t3.id, other_worker.actor),
        lambda: sm.pause(t1.id, worker.actor),
        lambda: sm.start(t3.id, other_worker.actor),
        lambda: sm.resume(t1.id, worker.actor),
        lambda: sm.complete(t1.id, worker.actor),
        lambda: sm.accept(t4.id, worker.actor),
        lambda: sm.complete(t3.id, other_worker.actor),
        lambda: sm.cancel(t4.id, admin.actor),
    ]

    await check()
    for step in steps:
        await step()
        await check()


async def test_accept_taken_task(
    context: AppContext, task_factory, worker, other_worker
) -> None:
    """Test accepting a task someone else holds reports it as taken."""
    task = await task_factory()
    await context.state_machine.accept(task.id, worker.actor)

    with pytest.raises(AlreadyTakenError):
        await context.state_machine.accept(task.id, other_worker.actor)


async def test_accept_terminal_task(
    context: AppContext, task_factory, dispatcher, worker
) -> None:
    """Test a cancelled task cannot be accepted."""
    task = await task_factory()
    await context.state_machine.cancel(task.id, dispatcher.actor)

    with pytest.raises(InvalidStateError):
        await context.state_machine.accept(task.id, worker.actor)


async def test_offline_worker_cannot_accept(
    context: AppContext, task_factory, account_factory
) -> None:
    """Test a worker that never logged in is not idle."""
    absent = await account_factory("otto", Role.worker, login=False)
    task = await task_factory()

    with pytest.raises(ConflictError):
        await context.state_machine.accept(task.id, absent.actor)


async def test_accept_unknown_task(context: AppContext, worker) -> None:
    """Test accepting a missing task is reported as not found."""
    with pytest.raises(NotFoundError):
        await context.state_machine.accept(uuid4(), worker.actor)


# --- Start, pause, resume ---


async def test_start_requires_assigned_worker(
    context: AppContext, task_factory, worker, other_worker
) -> None:
    """Test only the assigned worker can start a task."""
    task = await task_factory(worker_id=worker.id)

    with pytest.raises(PermissionDeniedError):
        await context.state_machine.start(task.id, other_worker.actor)

    started = await context.state_machine.start(task.id, worker.actor)
    assert started.status == TaskStatus.in_progress
    assert started.started_at is not None


async def test_start_twice(context: AppContext, task_factory, worker) -> None:
    """Test starting an in-progress task is an invalid transition."""
    task = await task_factory(worker_id=worker.id)
    await context.state_machine.start(task.id, worker.actor)

    with pytest.raises(InvalidStateError):
        await context.state_machine.start(task.id, worker.actor)


async def test_pause_and_resume_accumulate(
    context: AppContext, task_factory, worker, clock
) -> None:
    """Test pause time is accumulated across pauses."""
    task = await task_factory(worker_id=worker.id)
    await context.state_machine.start(task.id, worker.actor)

    clock.advance(minutes=5)
    paused = await context.state_machine.pause(task.id, worker.actor)
    assert paused.status == TaskStatus.paused
    assert paused.paused_at is not None

    clock.advance(minutes=4)
    resumed = await context.state_machine.resume(task.id, worker.actor)
    assert resumed.status == TaskStatus.in_progress
    assert resumed.paused_at is None
    assert resumed.paused_seconds == 240

    await context.state_machine.pause(task.id, worker.actor)
    clock.advance(minutes=1)
    resumed = await context.state_machine.resume(task.id, worker.actor)
    assert resumed.paused_seconds == 300


async def test_pause_requires_in_progress(context: AppContext, task_factory, worker) -> None:
    """Test pausing an accepted task and resuming a running one are rejected."""
    task = await task_factory(worker_id=worker.id)

    with pytest.raises(InvalidStateError):
        await context.state_machine.pause(task.id, worker.actor)

    await context.state_machine.start(task.id, worker.actor)
    with pytest.raises(InvalidStateError):
        await context.state_machine.resume(task.id, worker.actor)


async def test_dispatcher_may_pause(context: AppContext, task_factory, dispatcher, worker) -> None:
    """Test the owning dispatcher can pause its task."""
    task = await task_factory(worker_id=worker.id)
    await context.state_machine.start(task.id, worker.actor)

    paused = await context.state_machine.pause(task.id, dispatcher.actor)
    assert paused.status == TaskStatus.paused


async def test_stranger_may_not_pause(
    context: AppContext, task_factory, worker, other_worker
) -> None:
    """Test a worker not assigned to the task cannot pause it."""
    task = await task_factory(worker_id=worker.id)
    await context.state_machine.start(task.id, worker.actor)

    with pytest.raises(PermissionDeniedError):
        await context.state_machine.pause(task.id, other_worker.actor)


# --- Complete and cancel ---


async def test_complete_releases_worker(
    context: AppContext, task_factory, worker, transport, availability
) -> None:
    """Test completing the only held task leaves the worker idle."""
    task = await task_factory(worker_id=worker.id)
    await context.state_machine.start(task.id, worker.actor)
    transport.clear()

    completed = await context.state_machine.complete(task.id, worker.actor)

    assert completed.status == TaskStatus.completed
    assert completed.completed_at is not None
    assert await availability(worker) == "idle"
    assert transport.names() == ["task_completed", "worker_status_changed"]


async def test_complete_accepted_task_is_invalid(
    context: AppContext, task_factory, worker
) -> None:
    """Test a task must be started before it can be completed."""
    task = await task_factory(worker_id=worker.id)

    with pytest.raises(InvalidStateError):
        await context.state_machine.complete(task.id, worker.actor)


async def test_complete_paused_task_closes_pause(
    context: AppContext, task_factory, worker, clock
) -> None:
    """Test an ongoing pause is folded into paused_seconds on completion."""
    task = await task_factory(worker_id=worker.id)
    await context.state_machine.start(task.id, worker.actor)
    await context.state_machine.pause(task.id, worker.actor)
    clock.advance(minutes=2)

    completed = await context.state_machine.complete(task.id, worker.actor)

    assert completed.paused_seconds == 120
    assert completed.paused_at is None


async def test_complete_promotes_next_queued(
    context: AppContext, task_factory, worker, transport, availability
) -> None:
    """Test the worker's first queued task is accepted when the current one ends."""
    current = await task_factory(worker_id=worker.id)
    first_queued = await task_factory(worker_id=worker.id)
    second_queued = await task_factory(worker_id=worker.id)
    await context.state_machine.start(current.id, worker.actor)
    transport.clear()

    await context.state_machine.complete(current.id, worker.actor)

    promoted = await context.state_machine.get(first_queued.id, worker.actor)
    waiting = await context.state_machine.get(second_queued.id, worker.actor)
    assert promoted.status == TaskStatus.accepted
    assert promoted.queue_order is None
    assert waiting.status == TaskStatus.queued
    assert await availability(worker) == "busy"

    (accepted,) = transport.payloads("task_accepted")
    assert accepted["promoted"] is True
    assert accepted["task"]["id"] == str(first_queued.id)
    assert transport.payloads("worker_status_changed") == []


async def test_cancel_pending_task(context: AppContext, task_factory, dispatcher) -> None:
    """Test a dispatcher can withdraw a task from the pool."""
    task = await task_factory()

    cancelled = await context.state_machine.cancel(task.id, dispatcher.actor, reason="no-show")

    assert cancelled.status == TaskStatus.cancelled
    assert cancelled.cancelled_at is not None


async def test_cancel_releases_worker(
    context: AppContext, task_factory, dispatcher, worker, availability
) -> None:
    """Test cancelling a held task returns its worker to idle."""
    task = await task_factory(worker_id=worker.id)
    await context.state_machine.start(task.id, worker.actor)

    await context.state_machine.cancel(task.id, dispatcher.actor)

    assert await availability(worker) == "idle"


async def test_cancel_queued_task_keeps_worker_busy(
    context: AppContext, task_factory, dispatcher, worker, availability
) -> None:
    """Test cancelling a queued task does not release the worker's active task."""
    await task_factory(worker_id=worker.id)
    queued = await task_factory(worker_id=worker.id)

    cancelled = await context.state_machine.cancel(queued.id, dispatcher.actor)

    assert cancelled.queue_order is None
    assert await availability(worker) == "busy"


async def test_cancel_terminal_task(context: AppContext, task_factory, dispatcher) -> None:
    """Test terminal tasks cannot be cancelled again."""
    task = await task_factory()
    await context.state_machine.cancel(task.id, dispatcher.actor)

    with pytest.raises(InvalidStateError):
        await context.state_machine.cancel(task.id, dispatcher.actor)


async def test_cancel_by_other_dispatcher(
    context: AppContext, task_factory, account_factory
) -> None:
    """Test a dispatcher cannot cancel another dispatcher's task."""
    rival = await account_factory("rex", Role.dispatcher)
    task = await task_factory()

    with pytest.raises(PermissionDeniedError):
        await context.state_machine.cancel(task.id, rival.actor)


# --- Reassign and edit ---


async def test_reassign_accepted_task_to_idle_worker(
    context: AppContext, task_factory, dispatcher, worker, other_worker, transport, availability
) -> None:
    """Test reassignment moves the task and releases the previous worker."""
    task = await task_factory(worker_id=worker.id)
    transport.clear()

    moved = await context.state_machine.reassign(task.id, other_worker.id, dispatcher.actor)

    assert moved.worker_id == other_worker.id
    assert moved.status == TaskStatus.accepted
    assert await availability(worker) == "idle"
    assert await availability(other_worker) == "busy"
    assert transport.names()[0] == "task_reassigned"
    assert "task_reassigned" in transport.received_by(user_channel(worker.id))
    (reassigned,) = transport.payloads("task_reassigned")
    assert reassigned["previous_worker_id"] == str(worker.id)


async def test_reassign_to_busy_worker_queues(
    context: AppContext, task_factory, dispatcher, worker, other_worker
) -> None:
    """Test reassigning to a busy worker queues the task there."""
    await task_factory(worker_id=other_worker.id)
    task = await task_factory(worker_id=worker.id)

    moved = await context.state_machine.reassign(task.id, other_worker.id, dispatcher.actor)

    assert moved.status == TaskStatus.queued
    assert moved.queue_order == 1
    assert moved.accepted_at is None


async def test_reassign_queued_task(
    context: AppContext, task_factory, dispatcher, worker, other_worker
) -> None:
    """Test a queued task can move to an idle worker."""
    await task_factory(worker_id=worker.id)
    queued = await task_factory(worker_id=worker.id)

    moved = await context.state_machine.reassign(queued.id, other_worker.id, dispatcher.actor)

    assert moved.status == TaskStatus.accepted
    assert moved.queue_order is None


async def test_reassign_started_task_is_invalid(
    context: AppContext, task_factory, dispatcher, worker, other_worker
) -> None:
    """Test work in progress cannot be reassigned."""
    task = await task_factory(worker_id=worker.id)
    await context.state_machine.start(task.id, worker.actor)

    with pytest.raises(InvalidStateError):
        await context.state_machine.reassign(task.id, other_worker.id, dispatcher.actor)


async def test_reassign_to_same_worker(
    context: AppContext, task_factory, dispatcher, worker
) -> None:
    """Test reassigning to the current worker is rejected."""
    task = await task_factory(worker_id=worker.id)

    with pytest.raises(ValidationError):
        await context.state_machine.reassign(task.id, worker.id, dispatcher.actor)


async def test_edit_descriptive_fields(
    context: AppContext, task_factory, dispatcher, transport
) -> None:
    """Test a dispatcher can edit descriptive fields of an open task."""
    task = await task_factory()
    transport.clear()

    edited = await context.state_machine.edit(
        task.id, dispatcher.actor, TaskEdit(game_mode="arena", customer_contact="discord#1")
    )

    assert edited.game_mode == "arena"
    assert edited.customer_contact == "discord#1"
    assert edited.duration_minutes == task.duration_minutes
    (updated,) = transport.payloads("task_updated")
    assert updated["fields"] == ["customer_contact", "game_mode"]


async def test_edit_rejects_blank_and_empty(
    context: AppContext, task_factory, dispatcher
) -> None:
    """Test blank required names and empty edits are validation errors."""
    task = await task_factory()

    with pytest.raises(ValidationError):
        await context.state_machine.edit(task.id, dispatcher.actor, TaskEdit(game_name=" "))
    with pytest.raises(ValidationError):
        await context.state_machine.edit(task.id, dispatcher.actor, TaskEdit())


async def test_edit_terminal_task(context: AppContext, task_factory, dispatcher) -> None:
    """Test closed tasks are read-only."""
    task = await task_factory()
    await context.state_machine.cancel(task.id, dispatcher.actor)

    with pytest.raises(InvalidStateError):
        await context.state_machine.edit(task.id, dispatcher.actor, TaskEdit(game_mode="x"))


async def test_worker_cannot_edit(context: AppContext, task_factory, worker) -> None:
    """Test only the owner edits a task."""
    task = await task_factory(worker_id=worker.id)

    with pytest.raises(PermissionDeniedError):
        await context.state_machine.edit(task.id, worker.actor, TaskEdit(game_mode="x"))


# --- Reads ---


async def test_history_records_each_transition(
    context: AppContext, task_factory, dispatcher, worker
) -> None:
    """Test the audit trail holds one entry per operation."""
    task = await task_factory()
    await context.state_machine.accept(task.id, worker.actor)
    await context.state_machine.start(task.id, worker.actor)
    await context.state_machine.complete(task.id, worker.actor)

    entries = await context.state_machine.history(task.id, dispatcher.actor)

    assert sorted(e.action for e in entries) == ["accept", "complete", "create", "start"]
    complete = next(e for e in entries if e.action == "complete")
    assert complete.details["from_status"] == "in_progress"
    assert complete.details["to_status"] == "completed"
    assert complete.user_id == worker.id


async def test_list_visible_per_role(
    context: AppContext, task_factory, account_factory, dispatcher, worker, other_worker, admin
) -> None:
    """Test each role sees its own slice of the tasks."""
    rival = await account_factory("rex", Role.dispatcher)
    pool_task = await task_factory()
    assigned = await task_factory(worker_id=worker.id)
    others = await task_factory(worker_id=other_worker.id)
    rival_task = await context.state_machine.create(
        rival.actor,
        TaskCreate(customer_name="Bob", game_name="Chess", duration_minutes=20),
    )

    dispatcher_view = {t.id for t in await context.state_machine.list_visible(dispatcher.actor)}
    worker_view = {t.id for t in await context.state_machine.list_visible(worker.actor)}
    admin_view = {t.id for t in await context.state_machine.list_visible(admin.actor)}

    assert dispatcher_view == {pool_task.id, assigned.id, others.id}
    assert worker_view == {pool_task.id, assigned.id, rival_task.id}
    assert admin_view == {pool_task.id, assigned.id, others.id, rival_task.id}


async def test_get_hides_other_workers_tasks(
    context: AppContext, task_factory, worker, other_worker
) -> None:
    """Test a worker cannot read a task assigned to someone else."""
    task = await task_factory(worker_id=worker.id)

    with pytest.raises(PermissionDeniedError):
        await context.state_machine.get(task.id, other_worker.actor)
