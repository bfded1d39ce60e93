from __future__ import annotations

import pytest

from studioflow.conversation import AssistantPlanTurn, ExecutionResultTurn, PlanError, UserPromptTurn
from studioflow.errors import SessionBusyError, SessionNotFoundError
from studioflow.gateway.protocol import PlanResponse
from studioflow.queue import TaskQueue
from studioflow.sessions import SessionManager, SessionStatus
from studioflow.types import Result, TaskDescriptor


def _plan(*commands: str, feedback: bool = False) -> PlanResponse:
    return PlanResponse(
        message="on it",
        tasks=[TaskDescriptor.run_code(command) for command in commands],
        feedback=feedback,
    )


@pytest.mark.asyncio
async def test_submit_creates_session_and_awaits_plan(clock) -> None:
    sessions = SessionManager(clock=clock)
    submission = await sessions.submit("s1", "make a part")

    assert submission.created
    session = sessions.require("s1")
    assert session.status is SessionStatus.AWAITING_PLAN
    assert sessions.is_current("s1", submission.token)
    (turn,) = sessions.transcript("s1")
    assert isinstance(turn, UserPromptTurn)
    assert turn.text == "make a part"


@pytest.mark.asyncio
async def test_busy_session_rejects_prompt(clock) -> None:
    sessions = SessionManager(clock=clock)
    queue = TaskQueue(clock=clock)
    submission = await sessions.submit("s1", "first")

    with pytest.raises(SessionBusyError):
        await sessions.submit("s1", "second")

    await sessions.apply_plan(
        "s1", submission.token, _plan("print(1)"), lambda: queue.enqueue("s1", _plan("print(1)").tasks)
    )
    assert sessions.require("s1").status is SessionStatus.EXECUTING_PLAN
    with pytest.raises(SessionBusyError) as excinfo:
        await sessions.submit("s1", "third")
    assert excinfo.value.status_code == 409
    assert len(sessions.transcript("s1")) == 2


@pytest.mark.asyncio
async def test_supersede_replaces_token_and_reports_plan(clock) -> None:
    sessions = SessionManager(clock=clock)
    queue = TaskQueue(clock=clock)
    first = await sessions.submit("s1", "first")
    plan_id = await sessions.apply_plan(
        "s1", first.token, _plan("print(1)"), lambda: queue.enqueue("s1", _plan("print(1)").tasks)
    )

    second = await sessions.submit("s1", "second", supersede=True)

    assert second.superseded_plan_id == plan_id
    assert not second.created
    assert not sessions.is_current("s1", first.token)
    assert sessions.is_current("s1", second.token)
    assert sessions.require("s1").current_plan_id is None


@pytest.mark.asyncio
async def test_stale_plan_is_discarded(clock) -> None:
    sessions = SessionManager(clock=clock)
    first = await sessions.submit("s1", "first")
    await sessions.submit("s1", "second", supersede=True)
    calls: list[str] = []

    async def enqueue() -> str:
        calls.append("called")
        return "plan"

    assert await sessions.apply_plan("s1", first.token, _plan("print(1)"), enqueue) is None
    assert calls == []
    assert sessions.require("s1").status is SessionStatus.AWAITING_PLAN


@pytest.mark.asyncio
async def test_plan_without_tasks_returns_to_idle(clock) -> None:
    sessions = SessionManager(clock=clock)
    submission = await sessions.submit("s1", "hello")

    async def enqueue() -> str:  # pragma: no cover - must not be called
        raise AssertionError("no tasks to enqueue")

    result = await sessions.apply_plan("s1", submission.token, PlanResponse(message="hi!"), enqueue)

    assert result is None
    session = sessions.require("s1")
    assert session.status is SessionStatus.IDLE
    turn = sessions.transcript("s1")[-1]
    assert isinstance(turn, AssistantPlanTurn)
    assert turn.message == "hi!"
    assert turn.tasks == ()


@pytest.mark.asyncio
async def test_plan_failed_records_error_turn(clock) -> None:
    sessions = SessionManager(clock=clock)
    submission = await sessions.submit("s1", "hello")

    applied = await sessions.plan_failed("s1", submission.token, PlanError(kind="Unauthorized", message="no key"))

    assert applied
    assert sessions.require("s1").status is SessionStatus.IDLE
    turn = sessions.transcript("s1")[-1]
    assert isinstance(turn, AssistantPlanTurn)
    assert turn.error == PlanError(kind="Unauthorized", message="no key")
    assert not await sessions.plan_failed("s1", submission.token, PlanError(kind="x", message="late"))


@pytest.mark.asyncio
async def test_record_result_only_for_current_plan(clock) -> None:
    sessions = SessionManager(clock=clock)
    queue = TaskQueue(clock=clock)
    submission = await sessions.submit("s1", "go")
    response = _plan("print(1)")
    plan_id = await sessions.apply_plan(
        "s1", submission.token, response, lambda: queue.enqueue("s1", response.tasks)
    )
    assert plan_id is not None

    delivery = await queue.poll("studio")
    assert delivery is not None
    ack = await queue.acknowledge(delivery.task.task_id, "studio", Result.success("done"))
    session = await sessions.record_result(ack)

    assert session is not None
    turn = sessions.transcript("s1")[-1]
    assert isinstance(turn, ExecutionResultTurn)
    assert turn.task_id == delivery.task.task_id
    assert turn.outcome.data == "done"

    assert await sessions.finish_plan("s1", plan_id)
    assert sessions.require("s1").status is SessionStatus.IDLE
    assert await sessions.record_result(ack) is None


@pytest.mark.asyncio
async def test_begin_continuation_counts_rounds(clock) -> None:
    sessions = SessionManager(clock=clock)
    queue = TaskQueue(clock=clock)
    submission = await sessions.submit("s1", "go")
    response = _plan("print(1)", feedback=True)
    plan_id = await sessions.apply_plan("s1", submission.token, response, lambda: queue.enqueue("s1", response.tasks))
    assert plan_id is not None

    continuation = await sessions.begin_continuation("s1", plan_id)

    assert continuation is not None
    assert continuation.round == 1
    assert continuation.parent_plan_id == plan_id
    assert sessions.require("s1").status is SessionStatus.AWAITING_PLAN
    assert sessions.is_current("s1", continuation.token)
    assert not sessions.is_current("s1", submission.token)
    assert await sessions.begin_continuation("s1", "other-plan") is None


@pytest.mark.asyncio
async def test_idle_sessions_are_evicted(clock) -> None:
    sessions = SessionManager(clock=clock, idle_timeout_s=60)
    await sessions.submit("old", "hi")
    clock.advance(45)
    await sessions.submit("fresh", "hi")
    clock.advance(30)

    evicted = await sessions.evict_idle()

    assert [session.session_id for session in evicted] == ["old"]
    assert "old" not in sessions
    assert "fresh" in sessions


@pytest.mark.asyncio
async def test_close_and_require(clock) -> None:
    sessions = SessionManager(clock=clock)
    submission = await sessions.submit("s1", "hi")

    closed = await sessions.close("s1")

    assert closed is not None
    assert not sessions.is_current("s1", submission.token)
    assert await sessions.close("s1") is None
    with pytest.raises(SessionNotFoundError):
        sessions.require("s1")
