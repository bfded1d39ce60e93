"""Wires the task queue, session manager, aggregator and gateway together."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import StudioFlowConfig
from .errors import RequestValidationError, SessionNotFoundError
from .gateway.protocol import LLMGateway
from .gateway.retry import RetryingGateway, Sleep
from .queue.models import Acknowledgement, Clock, Delivery, Lease, utc_now
from .queue.task_queue import TaskQueue
from .sessions.aggregator import ResultAggregator
from .sessions.models import SessionView, Submission
from .sessions.session import SessionManager
from .telemetry import EventSink, NoOpEventSink, OrchestratorEvent
from .types import Result

logger = logging.getLogger("studioflow.orchestrator")


@dataclass(slots=True)
class SweepReport:
    reclaimed: int = 0
    evicted: list[str] = field(default_factory=list)


class Orchestrator:
    """Single-process orchestration core.

    Exposes the three protocol operations (``submit``, ``poll`` and
    ``report``) plus session lifecycle management. ``gateway`` is wrapped in
    a :class:`RetryingGateway` configured from ``config.retry`` unless it is
    one already.
    """

    def __init__(
        self,
        gateway: LLMGateway,
        *,
        config: StudioFlowConfig | None = None,
        clock: Clock | None = None,
        telemetry: EventSink | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.config = config or StudioFlowConfig()
        self._clock = clock or utc_now
        self._telemetry = telemetry or NoOpEventSink()
        if not isinstance(gateway, RetryingGateway):
            gateway = RetryingGateway(gateway, policy=self.config.retry, sleep=sleep)
        self.gateway = gateway
        self.queue = TaskQueue(
            clock=self._clock,
            default_ttl_s=self.config.lease_ttl_s,
            plan_history=self.config.plan_history,
        )
        self.sessions = SessionManager(clock=self._clock, idle_timeout_s=self.config.session_idle_timeout_s)
        self.aggregator = ResultAggregator(
            sessions=self.sessions,
            queue=self.queue,
            gateway=self.gateway,
            max_feedback_rounds=self.config.max_feedback_rounds,
            telemetry=self._telemetry,
        )

    async def submit(self, session_id: str, prompt: str, *, supersede: bool = False) -> Submission:
        """SUBMIT: accept ``prompt`` and start the plan request in the background.

        Raises:
            SessionBusyError: the session is planning or executing and
                ``supersede`` is false.
        """

        if not prompt.strip():
            raise RequestValidationError("prompt must not be empty")
        submission = await self.sessions.submit(session_id, prompt, supersede=supersede)
        if submission.superseded_plan_id is not None:
            await self.queue.expire_plan(submission.superseded_plan_id)
        self.aggregator.schedule_plan_request(session_id, submission.token)
        logger.info(
            "prompt_accepted",
            extra={"session_id": session_id, "new_session": submission.created, "chars": len(prompt)},
        )
        return submission

    async def poll(self, holder: str | None = None) -> Delivery | None:
        """POLL: return the holder's next task, or ``None`` when there is no work."""

        holder = holder or self.config.default_holder
        delivery = await self.queue.poll(holder)
        if delivery is None:
            return None
        await self.sessions.touch(delivery.task.session_id)
        if not delivery.renewed:
            await self._telemetry.emit(
                OrchestratorEvent(
                    event_type="task_leased",
                    session_id=delivery.task.session_id,
                    plan_id=delivery.task.plan_id,
                    task_id=delivery.task.task_id,
                    holder=holder,
                    extra={"step": delivery.task.step, "kind": delivery.task.kind.value},
                )
            )
        return delivery

    async def renew(self, task_id: str, holder: str | None = None) -> Lease:
        return await self.queue.renew(task_id, holder or self.config.default_holder)

    async def report(self, task_id: str, result: Result, holder: str | None = None) -> Acknowledgement:
        """REPORT: record ``result`` and fold it into the conversation.

        Raises:
            TaskNotFoundError: unknown task.
            LeaseExpiredError: the lease lapsed before the report arrived.
            LeaseMismatchError: the holder does not own the task.
        """

        holder = holder or self.config.default_holder
        ack = await self.queue.acknowledge(task_id, holder, result)
        await self._telemetry.emit(
            OrchestratorEvent(
                event_type="task_completed" if result.ok else "task_failed",
                session_id=ack.task.session_id,
                plan_id=ack.plan.plan_id,
                task_id=task_id,
                holder=holder,
                extra={"step": ack.task.step} if result.ok else {"step": ack.task.step, "reason": result.reason},
            )
        )
        if ack.aborted is not None:
            await self._telemetry.emit(
                OrchestratorEvent(
                    event_type="plan_aborted",
                    session_id=ack.aborted.session_id,
                    plan_id=ack.aborted.plan_id,
                    task_id=ack.aborted.failed_task_id,
                    extra={"aborted_task_ids": list(ack.aborted.aborted_task_ids)},
                )
            )
        await self.aggregator.on_acknowledged(ack)
        return ack

    async def close_session(self, session_id: str) -> list[str]:
        """Close a session, expiring its in-flight plan; returns the expired task ids."""

        session = await self.sessions.close(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        expired = await self.queue.expire_session(session_id)
        await self.queue.forget_session(session_id)
        await self._telemetry.emit(
            OrchestratorEvent(event_type="session_closed", session_id=session_id, extra={"expired": expired})
        )
        return expired

    async def sweep(self) -> SweepReport:
        """Reclaim lapsed leases and evict idle sessions."""

        report = SweepReport()
        report.reclaimed = await self.queue.reclaim_expired()
        if report.reclaimed:
            await self._telemetry.emit(
                OrchestratorEvent(event_type="lease_reclaimed", extra={"count": report.reclaimed})
            )
        for session in await self.sessions.evict_idle():
            expired = await self.queue.expire_session(session.session_id)
            await self.queue.forget_session(session.session_id)
            report.evicted.append(session.session_id)
            await self._telemetry.emit(
                OrchestratorEvent(
                    event_type="session_evicted",
                    session_id=session.session_id,
                    extra={"expired": expired},
                )
            )
        return report

    def session_snapshot(self, session_id: str) -> SessionView:
        session = self.sessions.require(session_id)
        return SessionView.from_session(session, self.queue.plans_for(session_id))

    async def join(self, session_id: str | None = None) -> None:
        """Wait until no gateway request is in flight."""

        await self.aggregator.join(session_id)

    async def aclose(self) -> None:
        await self.aggregator.aclose()


__all__ = ["Orchestrator", "SweepReport"]
