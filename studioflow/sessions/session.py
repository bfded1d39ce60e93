"""Session registry and the per-session prompt/plan state machine.

``Idle --submit--> AwaitingPlan --plan received--> ExecutingPlan --drained--> Idle``
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta

from studioflow.conversation import (
    AssistantPlanTurn,
    ExecutionResultTurn,
    PlanError,
    UserPromptTurn,
)
from studioflow.errors import SessionBusyError, SessionNotFoundError
from studioflow.gateway.protocol import PlanResponse
from studioflow.queue.models import Acknowledgement, Clock, utc_now

from .models import Continuation, Session, SessionStatus, Submission, TranscriptSnapshot

logger = logging.getLogger("studioflow.sessions")

DEFAULT_IDLE_TIMEOUT_S = 1800.0

Enqueue = Callable[[], Awaitable[str]]


class SessionManager:
    """Owns every :class:`Session` by id.

    All transitions run under one ``asyncio.Lock``. When a transition also
    touches the task queue, the session lock is taken first.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        idle_timeout_s: float = DEFAULT_IDLE_TIMEOUT_S,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or utc_now
        self._idle_timeout_s = idle_timeout_s

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def transcript(self, session_id: str) -> TranscriptSnapshot:
        return self.require(session_id).transcript.snapshot()

    async def submit(self, session_id: str, text: str, *, supersede: bool = False) -> Submission:
        """Record a user prompt and move the session to AwaitingPlan.

        Raises:
            SessionBusyError: a plan is being requested or executed and
                ``supersede`` is false.
        """

        async with self._lock:
            now = self._clock()
            session = self._sessions.get(session_id)
            created = session is None
            if session is None:
                session = Session(session_id=session_id, created_at=now, last_activity=now)
                self._sessions[session_id] = session
                logger.info("session_created", extra={"session_id": session_id})

            superseded: str | None = None
            if session.status is not SessionStatus.IDLE:
                if not supersede:
                    raise SessionBusyError(session_id, session.status.value)
                superseded = session.current_plan_id
                logger.info(
                    "session_superseded",
                    extra={"session_id": session_id, "plan_id": superseded, "status": session.status.value},
                )

            token = uuid.uuid4().hex
            session.transcript.append(UserPromptTurn(text=text, created_at=now))
            session.request_token = token
            session.current_plan_id = None
            session.feedback_rounds = 0
            session.transition(SessionStatus.AWAITING_PLAN, now)
            return Submission(session_id=session_id, token=token, superseded_plan_id=superseded, created=created)

    def is_current(self, session_id: str, token: str) -> bool:
        session = self._sessions.get(session_id)
        return (
            session is not None
            and session.request_token == token
            and session.status is SessionStatus.AWAITING_PLAN
        )

    async def apply_plan(
        self,
        session_id: str,
        token: str,
        response: PlanResponse,
        enqueue: Enqueue,
    ) -> str | None:
        """Attach a gateway plan; returns the plan id, or ``None`` when discarded.

        ``enqueue`` is awaited inside the session lock so a concurrent close
        cannot strand a freshly queued plan.
        """

        async with self._lock:
            if not self.is_current(session_id, token):
                logger.info("plan_discarded", extra={"session_id": session_id, "tasks": len(response.tasks)})
                return None
            session = self._sessions[session_id]
            plan_id: str | None = None
            if response.tasks:
                plan_id = await enqueue()
            now = self._clock()
            session.transcript.append(
                AssistantPlanTurn(
                    plan_id=plan_id,
                    message=response.message,
                    tasks=tuple(response.tasks),
                    feedback=response.feedback,
                    created_at=now,
                )
            )
            if plan_id is None:
                session.current_plan_id = None
                session.request_token = None
                session.transition(SessionStatus.IDLE, now)
            else:
                session.current_plan_id = plan_id
                session.transition(SessionStatus.EXECUTING_PLAN, now)
            return plan_id

    async def plan_failed(self, session_id: str, token: str, error: PlanError) -> bool:
        """Record a terminal planning error and return the session to Idle."""

        async with self._lock:
            if not self.is_current(session_id, token):
                return False
            session = self._sessions[session_id]
            now = self._clock()
            session.transcript.append(AssistantPlanTurn(error=error, created_at=now))
            session.current_plan_id = None
            session.request_token = None
            session.transition(SessionStatus.IDLE, now)
            logger.warning(
                "plan_failed",
                extra={"session_id": session_id, "kind": error.kind, "error": error.message},
            )
            return True

    async def record_result(self, ack: Acknowledgement) -> Session | None:
        """Append the ExecutionResult turn for an acknowledged task."""

        async with self._lock:
            session = self._sessions.get(ack.task.session_id)
            if session is None or session.current_plan_id != ack.plan.plan_id:
                return None
            now = self._clock()
            outcome = ack.task.result
            if outcome is None:  # pragma: no cover - acknowledged tasks carry a result
                return None
            session.transcript.append(
                ExecutionResultTurn(
                    task_id=ack.task.task_id,
                    plan_id=ack.plan.plan_id,
                    step=ack.task.step,
                    kind=ack.task.kind,
                    outcome=outcome,
                    aborted_task_ids=ack.aborted.aborted_task_ids if ack.aborted else (),
                    created_at=now,
                )
            )
            session.touch(now)
            return session

    async def begin_continuation(self, session_id: str, plan_id: str) -> Continuation | None:
        """Move a drained feedback plan's session back to AwaitingPlan."""

        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.current_plan_id != plan_id:
                return None
            now = self._clock()
            token = uuid.uuid4().hex
            session.request_token = token
            session.feedback_rounds += 1
            session.transition(SessionStatus.AWAITING_PLAN, now)
            return Continuation(
                session_id=session_id,
                token=token,
                parent_plan_id=plan_id,
                round=session.feedback_rounds,
            )

    async def finish_plan(self, session_id: str, plan_id: str) -> bool:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.current_plan_id != plan_id:
                return False
            session.current_plan_id = None
            session.request_token = None
            session.transition(SessionStatus.IDLE, self._clock())
            logger.info("session_idle", extra={"session_id": session_id, "plan_id": plan_id})
            return True

    async def touch(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.touch(self._clock())

    async def close(self, session_id: str) -> Session | None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.request_token = None
            logger.info("session_closed", extra={"session_id": session_id})
        return session

    async def evict_idle(self) -> list[Session]:
        async with self._lock:
            cutoff = self._clock() - timedelta(seconds=self._idle_timeout_s)
            stale = [session for session in self._sessions.values() if session.last_activity < cutoff]
            for session in stale:
                self._sessions.pop(session.session_id, None)
                session.request_token = None
        for session in stale:
            logger.info(
                "session_evicted",
                extra={"session_id": session.session_id, "last_activity": session.last_activity.isoformat()},
            )
        return stale


__all__ = ["DEFAULT_IDLE_TIMEOUT_S", "SessionManager"]
