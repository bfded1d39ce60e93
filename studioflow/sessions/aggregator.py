"""Folds execution results back into conversations and drives feedback rounds."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from contextlib import suppress
from typing import Any

from studioflow.conversation import PlanError
from studioflow.errors import ActivePlanError, GatewayError, GatewayErrorKind
from studioflow.gateway.protocol import LLMGateway
from studioflow.queue.models import Acknowledgement, PlanStatus
from studioflow.queue.task_queue import TaskQueue
from studioflow.telemetry import EventSink, NoOpEventSink, OrchestratorEvent

from .session import SessionManager

logger = logging.getLogger("studioflow.sessions.aggregator")

FEEDBACK_LIMIT_KIND = "FeedbackLimit"


class ResultAggregator:
    """Closes the loop between executor reports and the gateway.

    Gateway calls run as background tasks outside every lock; their results
    are applied only if the session still waits on the same request token.
    """

    def __init__(
        self,
        *,
        sessions: SessionManager,
        queue: TaskQueue,
        gateway: LLMGateway,
        max_feedback_rounds: int = 8,
        telemetry: EventSink | None = None,
    ) -> None:
        self._sessions = sessions
        self._queue = queue
        self._gateway = gateway
        self._max_feedback_rounds = max_feedback_rounds
        self._telemetry = telemetry or NoOpEventSink()
        self._inflight: dict[str, set[asyncio.Task[None]]] = {}

    def schedule_plan_request(
        self,
        session_id: str,
        token: str,
        *,
        parent_plan_id: str | None = None,
    ) -> asyncio.Task[None]:
        return self._spawn(session_id, self.request_plan(session_id, token, parent_plan_id=parent_plan_id))

    async def request_plan(self, session_id: str, token: str, *, parent_plan_id: str | None = None) -> None:
        """Ask the gateway for the next plan and hand it to the session."""

        if not self._sessions.is_current(session_id, token):
            return
        transcript = self._sessions.transcript(session_id)
        try:
            response = await self._gateway.request_plan(transcript)
        except GatewayError as exc:
            await self._gateway_failed(session_id, token, parent_plan_id, exc)
            return
        except Exception as exc:
            logger.exception("gateway_crashed", extra={"session_id": session_id})
            error = GatewayError(GatewayErrorKind.TRANSPORT, str(exc) or type(exc).__name__, raw=exc)
            await self._gateway_failed(session_id, token, parent_plan_id, error)
            return

        async def _enqueue() -> str:
            return await self._queue.enqueue(
                session_id,
                response.tasks,
                feedback=response.feedback,
                parent_plan_id=parent_plan_id,
            )

        try:
            plan_id = await self._sessions.apply_plan(session_id, token, response, _enqueue)
        except ActivePlanError as exc:
            await self._sessions.plan_failed(
                session_id, token, PlanError(kind="Conflict", message=exc.detail or exc.title)
            )
            return
        if plan_id is not None:
            await self._telemetry.emit(
                OrchestratorEvent(
                    event_type="plan_enqueued",
                    session_id=session_id,
                    plan_id=plan_id,
                    extra={"tasks": len(response.tasks), "feedback": response.feedback},
                )
            )

    async def _gateway_failed(
        self,
        session_id: str,
        token: str,
        parent_plan_id: str | None,
        exc: GatewayError,
    ) -> None:
        applied = await self._sessions.plan_failed(
            session_id, token, PlanError(kind=exc.kind.value, message=exc.message)
        )
        if applied:
            await self._telemetry.emit(
                OrchestratorEvent(
                    event_type="gateway_failed",
                    session_id=session_id,
                    plan_id=parent_plan_id,
                    extra={"kind": exc.kind.value, "error": exc.message},
                )
            )

    async def on_acknowledged(self, ack: Acknowledgement) -> None:
        """Record the result turn; once the plan drains, continue or go Idle."""

        session = await self._sessions.record_result(ack)
        if session is None:
            logger.info(
                "result_for_inactive_session",
                extra={"session_id": ack.task.session_id, "task_id": ack.task.task_id},
            )
            return
        if ack.plan.status is PlanStatus.ACTIVE:
            return

        plan = ack.plan
        if plan.feedback:
            continuation = await self._sessions.begin_continuation(plan.session_id, plan.plan_id)
            if continuation is None:
                return
            if continuation.round > self._max_feedback_rounds:
                await self._sessions.plan_failed(
                    continuation.session_id,
                    continuation.token,
                    PlanError(
                        kind=FEEDBACK_LIMIT_KIND,
                        message=f"stopped after {self._max_feedback_rounds} feedback rounds",
                    ),
                )
                return
            logger.info(
                "feedback_round",
                extra={"session_id": plan.session_id, "plan_id": plan.plan_id, "round": continuation.round},
            )
            self.schedule_plan_request(
                continuation.session_id,
                continuation.token,
                parent_plan_id=continuation.parent_plan_id,
            )
            return
        await self._sessions.finish_plan(plan.session_id, plan.plan_id)

    async def join(self, session_id: str | None = None) -> None:
        """Wait for in-flight gateway requests (of one session, or all)."""

        while True:
            if session_id is None:
                pending = {task for tasks in self._inflight.values() for task in tasks}
            else:
                pending = set(self._inflight.get(session_id, ()))
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        pending = [task for tasks in self._inflight.values() for task in tasks]
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError):
                await task

    def _spawn(self, session_id: str, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        bucket = self._inflight.setdefault(session_id, set())
        bucket.add(task)

        def _done(finished: asyncio.Task[None]) -> None:
            tasks = self._inflight.get(session_id)
            if tasks is not None:
                tasks.discard(finished)
                if not tasks:
                    self._inflight.pop(session_id, None)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    "plan_request_crashed",
                    extra={"session_id": session_id},
                    exc_info=finished.exception(),
                )

        task.add_done_callback(_done)
        return task


__all__ = ["FEEDBACK_LIMIT_KIND", "ResultAggregator"]
