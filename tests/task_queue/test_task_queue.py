from __future__ import annotations

import asyncio

import pytest

from studioflow.errors import (
    ActivePlanError,
    LeaseExpiredError,
    LeaseMismatchError,
    QueueConflictError,
    TaskNotFoundError,
    TaskNotPendingError,
)
from studioflow.queue import PlanStatus, TaskQueue, TaskState
from studioflow.types import Result, TaskDescriptor


def _descriptors(count: int) -> list[TaskDescriptor]:
    return [TaskDescriptor.run_code(f"print({index})") for index in range(count)]


async def _enqueue(queue: TaskQueue, count: int, session_id: str = "s1", **kwargs) -> list[str]:
    plan_id = await queue.enqueue(session_id, _descriptors(count), **kwargs)
    plan = queue.get_plan(plan_id)
    assert plan is not None
    return [task.task_id for task in plan.tasks]


@pytest.mark.asyncio
async def test_enqueue_assigns_dense_sequence(clock) -> None:
    queue = TaskQueue(clock=clock)
    plan_id = await queue.enqueue("s1", _descriptors(3))

    plan = queue.get_plan(plan_id)
    assert plan is not None
    assert [task.sequence for task in plan.tasks] == [0, 1, 2]
    assert [task.step for task in plan.tasks] == [0, 1, 2]
    assert all(task.state is TaskState.PENDING for task in plan.tasks)
    assert queue.active_plan_id("s1") == plan_id


@pytest.mark.asyncio
async def test_enqueue_rejects_second_active_plan(clock) -> None:
    queue = TaskQueue(clock=clock)
    await queue.enqueue("s1", _descriptors(1))

    with pytest.raises(ActivePlanError):
        await queue.enqueue("s1", _descriptors(1))

    # other sessions are unaffected
    await queue.enqueue("s2", _descriptors(1))


@pytest.mark.asyncio
async def test_empty_plan_completes_immediately(clock) -> None:
    queue = TaskQueue(clock=clock)
    plan_id = await queue.enqueue("s1", [])

    plan = queue.get_plan(plan_id)
    assert plan is not None
    assert plan.status is PlanStatus.COMPLETED
    assert queue.active_plan_id("s1") is None
    assert await queue.next_deliverable("s1") is None


@pytest.mark.asyncio
async def test_next_deliverable_waits_for_predecessor(clock) -> None:
    queue = TaskQueue(clock=clock)
    first, second, third = await _enqueue(queue, 3)

    head = await queue.next_deliverable("s1")
    assert head is not None and head.task_id == first

    with pytest.raises(TaskNotPendingError):
        await queue.lease(second, "studio")

    await queue.lease(first, "studio")
    # leased head blocks delivery of later steps
    assert await queue.next_deliverable("s1") is None

    await queue.acknowledge(first, "studio", Result.success("ok"))
    head = await queue.next_deliverable("s1")
    assert head is not None and head.task_id == second

    with pytest.raises(TaskNotPendingError):
        await queue.lease(third, "studio")


@pytest.mark.asyncio
async def test_concurrent_lease_has_single_winner(clock) -> None:
    queue = TaskQueue(clock=clock)
    (task_id,) = await _enqueue(queue, 1)

    outcomes = await asyncio.gather(
        *(queue.lease(task_id, f"holder-{index}") for index in range(5)),
        return_exceptions=True,
    )

    leases = [item for item in outcomes if not isinstance(item, Exception)]
    conflicts = [item for item in outcomes if isinstance(item, QueueConflictError)]
    assert len(leases) == 1
    assert len(conflicts) == 4
    assert queue.active_lease_count == 1


@pytest.mark.asyncio
async def test_lease_unknown_task(clock) -> None:
    queue = TaskQueue(clock=clock)
    with pytest.raises(TaskNotFoundError):
        await queue.lease("missing", "studio")


@pytest.mark.asyncio
async def test_reclaim_expired_is_idempotent(clock) -> None:
    queue = TaskQueue(clock=clock, default_ttl_s=5)
    (task_id,) = await _enqueue(queue, 1)
    await queue.lease(task_id, "studio")

    clock.advance(6)
    assert await queue.reclaim_expired() == 1
    assert await queue.reclaim_expired() == 0

    task = queue.get_task(task_id)
    assert task is not None
    assert task.state is TaskState.PENDING
    assert task.lease_holder is None
    assert queue.active_lease_count == 0


@pytest.mark.asyncio
async def test_expired_lease_is_redelivered_to_another_holder(clock) -> None:
    queue = TaskQueue(clock=clock, default_ttl_s=5)
    (task_id,) = await _enqueue(queue, 1)
    first = await queue.poll("studio-a")
    assert first is not None

    clock.advance(6)
    second = await queue.poll("studio-b")

    assert second is not None
    assert second.task.task_id == task_id
    assert second.lease.holder == "studio-b"
    assert second.task.deliveries == 2


@pytest.mark.asyncio
async def test_failure_expires_remaining_steps() -> None:
    queue = TaskQueue()
    a, b, c = await _enqueue(queue, 3)

    await queue.lease(a, "studio")
    await queue.acknowledge(a, "studio", Result.success())
    await queue.lease(b, "studio")
    ack = await queue.acknowledge(b, "studio", Result.failure("script error"))

    assert ack.task.state is TaskState.FAILED
    assert ack.plan.status is PlanStatus.ABORTED
    assert ack.plan_drained
    assert ack.aborted is not None
    assert ack.aborted.failed_task_id == b
    assert ack.aborted.aborted_task_ids == (c,)
    task_c = queue.get_task(c)
    assert task_c is not None and task_c.state is TaskState.EXPIRED
    assert queue.active_plan_id("s1") is None


@pytest.mark.asyncio
async def test_acknowledge_records_result_once() -> None:
    queue = TaskQueue()
    a, _b = await _enqueue(queue, 2)
    await queue.lease(a, "studio")
    ack = await queue.acknowledge(a, "studio", Result.success({"parts": 1}))

    assert ack.task.result == Result.success({"parts": 1})
    assert ack.plan.status is PlanStatus.ACTIVE
    with pytest.raises(LeaseMismatchError):
        await queue.acknowledge(a, "studio", Result.success("again"))


@pytest.mark.asyncio
async def test_acknowledge_rejects_other_holder() -> None:
    queue = TaskQueue()
    (task_id,) = await _enqueue(queue, 1)
    await queue.lease(task_id, "studio-a")

    with pytest.raises(LeaseMismatchError) as excinfo:
        await queue.acknowledge(task_id, "studio-b", Result.success())
    assert not isinstance(excinfo.value, LeaseExpiredError)


@pytest.mark.asyncio
async def test_report_after_expiry_is_rejected(clock) -> None:
    queue = TaskQueue(clock=clock, default_ttl_s=5)
    (task_id,) = await _enqueue(queue, 1)
    await queue.lease(task_id, "studio-a")

    clock.advance(10)
    with pytest.raises(LeaseExpiredError):
        await queue.acknowledge(task_id, "studio-a", Result.success())

    redelivered = await queue.poll("studio-b")
    assert redelivered is not None
    with pytest.raises(LeaseMismatchError):
        await queue.acknowledge(task_id, "studio-a", Result.success())
    ack = await queue.acknowledge(task_id, "studio-b", Result.success())
    assert ack.plan.status is PlanStatus.COMPLETED


@pytest.mark.asyncio
async def test_poll_renews_held_lease(clock) -> None:
    queue = TaskQueue(clock=clock, default_ttl_s=5)
    await _enqueue(queue, 2)

    first = await queue.poll("studio")
    clock.advance(3)
    again = await queue.poll("studio")

    assert first is not None and again is not None
    assert again.renewed
    assert again.task.task_id == first.task.task_id
    assert again.lease.expires_at > first.lease.expires_at
    assert again.task.deliveries == 1


@pytest.mark.asyncio
async def test_poll_returns_none_without_work() -> None:
    queue = TaskQueue()
    assert await queue.poll("studio") is None


@pytest.mark.asyncio
async def test_renew_extends_expiry(clock) -> None:
    queue = TaskQueue(clock=clock, default_ttl_s=5)
    (task_id,) = await _enqueue(queue, 1)
    lease = await queue.lease(task_id, "studio")

    clock.advance(4)
    renewed = await queue.renew(task_id, "studio")
    assert renewed.expires_at > lease.expires_at

    clock.advance(4)
    assert await queue.reclaim_expired() == 0


@pytest.mark.asyncio
async def test_continuation_plan_keeps_step_numbering() -> None:
    queue = TaskQueue()
    parent_id = await queue.enqueue("s1", _descriptors(2), feedback=True)
    for task in queue.get_plan(parent_id).tasks:  # type: ignore[union-attr]
        await queue.lease(task.task_id, "studio")
        await queue.acknowledge(task.task_id, "studio", Result.success())

    child_id = await queue.enqueue("s1", _descriptors(2), parent_plan_id=parent_id)
    child = queue.get_plan(child_id)

    assert child is not None
    assert child.round == 1
    assert child.parent_plan_id == parent_id
    assert [task.step for task in child.tasks] == [2, 3]
    assert [task.sequence for task in child.tasks] == [0, 1]


@pytest.mark.asyncio
async def test_expire_plan_abandons_leased_task() -> None:
    queue = TaskQueue()
    plan_id = await queue.enqueue("s1", _descriptors(2))
    delivery = await queue.poll("studio")
    assert delivery is not None

    expired = await queue.expire_plan(plan_id)

    assert len(expired) == 2
    plan = queue.get_plan(plan_id)
    assert plan is not None and plan.status is PlanStatus.EXPIRED
    assert queue.active_lease_count == 0
    with pytest.raises(LeaseMismatchError):
        await queue.acknowledge(delivery.task.task_id, "studio", Result.success())
    assert await queue.expire_plan(plan_id) == []


@pytest.mark.asyncio
async def test_forget_session_drops_terminal_plans() -> None:
    queue = TaskQueue()
    await queue.enqueue("s1", _descriptors(1))
    await queue.expire_session("s1")

    assert await queue.forget_session("s1") == 1
    assert queue.plans_for("s1") == []


@pytest.mark.asyncio
async def test_finished_plans_beyond_history_are_dropped(clock) -> None:
    queue = TaskQueue(clock=clock, plan_history=2)
    first_task_ids: list[str] = []
    for _ in range(5):
        (task_id,) = await _enqueue(queue, 1)
        first_task_ids.append(task_id)
        delivery = await queue.poll("studio")
        assert delivery is not None and delivery.task.task_id == task_id
        await queue.acknowledge(task_id, "studio", Result.success())

    plans = queue.plans_for("s1")
    assert len(plans) == 2
    assert [plan.tasks[0].task_id for plan in plans] == first_task_ids[-2:]
    assert queue.get_task(first_task_ids[0]) is None
    with pytest.raises(TaskNotFoundError):
        await queue.acknowledge(first_task_ids[0], "studio", Result.success())


@pytest.mark.asyncio
async def test_history_keeps_parent_for_continuation(clock) -> None:
    queue = TaskQueue(clock=clock, plan_history=1)
    parent_ids = await _enqueue(queue, 2, feedback=True)
    for task_id in parent_ids:
        await queue.poll("studio")
        await queue.acknowledge(task_id, "studio", Result.success())

    parent_plan_id = queue.plans_for("s1")[0].plan_id
    child_id = await queue.enqueue("s1", _descriptors(1), parent_plan_id=parent_plan_id)

    child = queue.get_plan(child_id)
    assert child is not None
    assert child.round == 1
    assert child.tasks[0].step == 2


@pytest.mark.asyncio
async def test_poll_only_serves_active_plans(clock) -> None:
    queue = TaskQueue(clock=clock)
    (done_id,) = await _enqueue(queue, 1, session_id="s1")
    await queue.poll("studio")
    await queue.acknowledge(done_id, "studio", Result.success())
    (waiting_id,) = await _enqueue(queue, 1, session_id="s2")

    delivery = await queue.poll("studio")

    assert delivery is not None
    assert delivery.task.task_id == waiting_id


@pytest.mark.asyncio
async def test_explicit_zero_ttl_is_respected(clock) -> None:
    queue = TaskQueue(clock=clock, default_ttl_s=30)
    (task_id,) = await _enqueue(queue, 1)

    lease = await queue.lease(task_id, "studio", ttl_s=0)

    assert lease.expires_at == clock.now
    assert await queue.reclaim_expired() == 1
    task = queue.get_task(task_id)
    assert task is not None and task.state is TaskState.PENDING
