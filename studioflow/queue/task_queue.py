"""In-memory task queue with strict in-order delivery per plan."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence

from studioflow.errors import (
    ActivePlanError,
    LeaseExpiredError,
    LeaseMismatchError,
    TaskNotFoundError,
    TaskNotPendingError,
)
from studioflow.types import Result, TaskDescriptor

from .lease import LeaseManager
from .models import (
    Acknowledgement,
    Clock,
    Delivery,
    Lease,
    Plan,
    PlanAborted,
    PlanStatus,
    PlanView,
    Task,
    TaskState,
    TaskView,
    utc_now,
)

logger = logging.getLogger("studioflow.queue")

DEFAULT_LEASE_TTL_S = 30.0
DEFAULT_PLAN_HISTORY = 32


class TaskQueue:
    """Holds plans and their tasks; hands tasks to pollers under leases.

    Every state transition happens under one ``asyncio.Lock``. Lease expiry is
    checked lazily at the start of each locked operation and can also be
    forced with :meth:`reclaim_expired`.

    Only the newest ``plan_history`` finished plans of each session are
    kept for inspection; older ones are dropped with their tasks.
    """

    def __init__(
        self,
        *,
        leases: LeaseManager | None = None,
        clock: Clock | None = None,
        default_ttl_s: float = DEFAULT_LEASE_TTL_S,
        plan_history: int = DEFAULT_PLAN_HISTORY,
    ) -> None:
        self._leases = leases or LeaseManager()
        self._clock = clock or utc_now
        self._default_ttl_s = default_ttl_s
        self._tasks: dict[str, Task] = {}
        self._plans: dict[str, Plan] = {}
        self._active_plans: dict[str, str] = {}
        self._plan_history = plan_history
        self._finished: dict[str, list[str]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lock-free reads
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskView | None:
        task = self._tasks.get(task_id)
        return TaskView.from_task(task) if task is not None else None

    def get_plan(self, plan_id: str) -> PlanView | None:
        plan = self._plans.get(plan_id)
        return PlanView.from_plan(plan) if plan is not None else None

    def active_plan_id(self, session_id: str) -> str | None:
        return self._active_plans.get(session_id)

    def plans_for(self, session_id: str) -> list[PlanView]:
        return [PlanView.from_plan(plan) for plan in self._plans.values() if plan.session_id == session_id]

    @property
    def active_lease_count(self) -> int:
        return len(self._leases)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        session_id: str,
        descriptors: Sequence[TaskDescriptor],
        *,
        feedback: bool = False,
        parent_plan_id: str | None = None,
    ) -> str:
        """Append a plan of Pending tasks with sequence indices ``0..n-1``.

        Raises:
            ActivePlanError: the session already has a non-terminal plan.
        """

        async with self._lock:
            now = self._clock()
            self._reclaim_locked()
            current = self._active_plans.get(session_id)
            if current is not None:
                raise ActivePlanError(session_id, current)

            base_step = 0
            round_no = 0
            if parent_plan_id is not None:
                parent = self._plans.get(parent_plan_id)
                if parent is not None:
                    base_step = parent.base_step + len(parent.tasks)
                    round_no = parent.round + 1

            plan_id = uuid.uuid4().hex
            tasks = [
                Task(
                    task_id=uuid.uuid4().hex,
                    plan_id=plan_id,
                    session_id=session_id,
                    sequence=index,
                    step=base_step + index,
                    descriptor=descriptor,
                    created_at=now,
                    updated_at=now,
                )
                for index, descriptor in enumerate(descriptors)
            ]
            plan = Plan(
                plan_id=plan_id,
                session_id=session_id,
                tasks=tasks,
                feedback=feedback,
                round=round_no,
                base_step=base_step,
                parent_plan_id=parent_plan_id,
                created_at=now,
            )
            self._plans[plan_id] = plan
            for task in tasks:
                self._tasks[task.task_id] = task
            if tasks:
                self._active_plans[session_id] = plan_id
            else:
                self._close_plan_locked(plan, PlanStatus.COMPLETED)
        logger.info(
            "plan_enqueued",
            extra={"session_id": session_id, "plan_id": plan_id, "tasks": len(tasks), "round": round_no},
        )
        return plan_id

    async def next_deliverable(self, session_id: str) -> TaskView | None:
        async with self._lock:
            self._reclaim_locked()
            task = self._deliverable_for(session_id)
            return TaskView.from_task(task) if task is not None else None

    async def lease(self, task_id: str, holder: str, ttl_s: float | None = None) -> Lease:
        """Lease ``task_id`` for ``holder``.

        Raises:
            TaskNotFoundError: unknown task.
            QueueConflictError: another holder owns an unexpired lease.
            TaskNotPendingError: terminal task, or an earlier step is unfinished.
        """

        async with self._lock:
            self._reclaim_locked()
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.state is TaskState.LEASED:
                return self._grant_locked(task, holder, ttl_s)
            if task.state is not TaskState.PENDING:
                raise TaskNotPendingError(task_id, f"state is {task.state.value}")
            if self._deliverable_for(task.session_id) is not task:
                raise TaskNotPendingError(task_id, "an earlier step has not completed")
            return self._grant_locked(task, holder, ttl_s)

    async def poll(self, holder: str, ttl_s: float | None = None) -> Delivery | None:
        """Hand the next deliverable task to ``holder``, or ``None`` when there is no work.

        A holder that already owns an unexpired lease gets that task again with
        its expiry extended.
        """

        async with self._lock:
            now = self._clock()
            self._reclaim_locked()
            held = self._leases.held_by(holder, now)
            if held:
                task = self._tasks[held[0].task_id]
                lease = self._grant_locked(task, holder, ttl_s)
                return Delivery(task=TaskView.from_task(task), lease=lease, renewed=True)
            for plan_id in self._active_plans.values():
                task = self._plans[plan_id].next_deliverable()
                if task is None:
                    continue
                lease = self._grant_locked(task, holder, ttl_s)
                return Delivery(task=TaskView.from_task(task), lease=lease)
        return None

    async def renew(self, task_id: str, holder: str, ttl_s: float | None = None) -> Lease:
        async with self._lock:
            self._reclaim_locked()
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            self._raise_if_stale(task, holder)
            lease = self._leases.renew(task_id, holder, self._ttl(ttl_s), self._clock())
            task.lease = lease
            return lease

    async def acknowledge(self, task_id: str, holder: str, result: Result) -> Acknowledgement:
        """Record ``result`` for a leased task and release the lease.

        A failure expires every later step of the plan.

        Raises:
            TaskNotFoundError: unknown task.
            LeaseExpiredError: the holder's lease ran out before the report.
            LeaseMismatchError: the holder does not own the lease.
        """

        async with self._lock:
            now = self._clock()
            self._reclaim_locked()
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            self._raise_if_stale(task, holder)
            self._leases.validate(task_id, holder, now)
            self._leases.release(task_id)
            task.lease = None
            task.result = result
            task.transition(TaskState.COMPLETED if result.ok else TaskState.FAILED, now)

            plan = self._plans[task.plan_id]
            aborted: PlanAborted | None = None
            if not result.ok:
                aborted_ids = self._expire_tasks_locked(
                    [item for item in plan.tasks if item.sequence > task.sequence]
                )
                self._close_plan_locked(plan, PlanStatus.ABORTED)
                aborted = PlanAborted(
                    plan_id=plan.plan_id,
                    session_id=plan.session_id,
                    failed_task_id=task.task_id,
                    reason=result.reason or "task failed",
                    aborted_task_ids=tuple(aborted_ids),
                )
            elif plan.drained:
                self._close_plan_locked(plan, PlanStatus.COMPLETED)
            ack = Acknowledgement(
                task=TaskView.from_task(task),
                plan=PlanView.from_plan(plan),
                aborted=aborted,
            )
        logger.info(
            "task_acknowledged",
            extra={
                "task_id": task_id,
                "holder": holder,
                "state": ack.task.state.value,
                "plan_status": ack.plan.status.value,
            },
        )
        if aborted is not None:
            logger.warning(
                "plan_aborted",
                extra={
                    "plan_id": aborted.plan_id,
                    "failed_task_id": aborted.failed_task_id,
                    "aborted": list(aborted.aborted_task_ids),
                },
            )
        return ack

    async def reclaim_expired(self) -> int:
        """Return expired leases' tasks to Pending; safe to call repeatedly."""

        async with self._lock:
            return len(self._reclaim_locked())

    async def expire_plan(self, plan_id: str) -> list[str]:
        """Expire every non-terminal task of ``plan_id`` (leased ones included)."""

        async with self._lock:
            plan = self._plans.get(plan_id)
            if plan is None or plan.status is not PlanStatus.ACTIVE:
                return []
            expired = self._expire_tasks_locked(plan.tasks)
            self._close_plan_locked(plan, PlanStatus.EXPIRED)
        logger.info("plan_expired", extra={"plan_id": plan_id, "expired": expired})
        return expired

    async def expire_session(self, session_id: str) -> list[str]:
        plan_id = self._active_plans.get(session_id)
        if plan_id is None:
            return []
        return await self.expire_plan(plan_id)

    async def forget_session(self, session_id: str) -> int:
        """Drop terminal plans of ``session_id`` from memory."""

        async with self._lock:
            doomed = [
                plan
                for plan in self._plans.values()
                if plan.session_id == session_id and plan.status is not PlanStatus.ACTIVE
            ]
            for plan in doomed:
                self._drop_plan_locked(plan.plan_id)
            self._finished.pop(session_id, None)
            return len(doomed)

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _ttl(self, ttl_s: float | None) -> float:
        return self._default_ttl_s if ttl_s is None else ttl_s

    def _deliverable_for(self, session_id: str) -> Task | None:
        plan_id = self._active_plans.get(session_id)
        if plan_id is None:
            return None
        return self._plans[plan_id].next_deliverable()

    def _grant_locked(self, task: Task, holder: str, ttl_s: float | None) -> Lease:
        now = self._clock()
        renewal = task.state is TaskState.LEASED
        lease = self._leases.grant(task.task_id, holder, self._ttl(ttl_s), now)
        task.lease = lease
        task.last_holder = holder
        if not renewal:
            task.deliveries += 1
            task.transition(TaskState.LEASED, now)
            logger.info(
                "task_leased",
                extra={"task_id": task.task_id, "holder": holder, "expires_at": lease.expires_at.isoformat()},
            )
        return lease

    def _raise_if_stale(self, task: Task, holder: str) -> None:
        if task.state is TaskState.EXPIRED:
            raise LeaseMismatchError(task.task_id, holder, reason=f"Task '{task.task_id}' was abandoned.")
        if task.state.terminal:
            raise LeaseMismatchError(
                task.task_id, holder, reason=f"Task '{task.task_id}' already has a recorded result."
            )
        if task.state is TaskState.PENDING and task.last_holder == holder:
            raise LeaseExpiredError(task.task_id, holder)

    def _reclaim_locked(self) -> list[Lease]:
        now = self._clock()
        reclaimed: list[Lease] = []
        for lease in self._leases.expired(now):
            self._leases.release(lease.task_id)
            task = self._tasks.get(lease.task_id)
            if task is None or task.state is not TaskState.LEASED:
                continue
            task.lease = None
            task.transition(TaskState.PENDING, now)
            reclaimed.append(lease)
            logger.warning(
                "lease_reclaimed",
                extra={"task_id": lease.task_id, "holder": lease.holder, "expired_at": lease.expires_at.isoformat()},
            )
        return reclaimed

    def _expire_tasks_locked(self, tasks: Sequence[Task]) -> list[str]:
        now = self._clock()
        expired: list[str] = []
        for task in tasks:
            if task.state.terminal:
                continue
            self._leases.release(task.task_id)
            task.lease = None
            task.transition(TaskState.EXPIRED, now)
            expired.append(task.task_id)
        return expired

    def _close_plan_locked(self, plan: Plan, status: PlanStatus) -> None:
        plan.status = status
        if self._active_plans.get(plan.session_id) == plan.plan_id:
            self._active_plans.pop(plan.session_id, None)
        finished = self._finished.setdefault(plan.session_id, [])
        finished.append(plan.plan_id)
        while len(finished) > self._plan_history:
            self._drop_plan_locked(finished.pop(0))

    def _drop_plan_locked(self, plan_id: str) -> None:
        plan = self._plans.pop(plan_id, None)
        if plan is None:
            return
        for task in plan.tasks:
            self._leases.release(task.task_id)
            self._tasks.pop(task.task_id, None)


__all__ = ["DEFAULT_LEASE_TTL_S", "DEFAULT_PLAN_HISTORY", "TaskQueue"]
