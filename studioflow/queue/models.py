"""Task, lease and plan records held by the task queue."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel

from studioflow.types import Result, TaskDescriptor, TaskKind

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class TaskState(str, Enum):
    PENDING = "Pending"
    LEASED = "Leased"
    COMPLETED = "Completed"
    FAILED = "Failed"
    EXPIRED = "Expired"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_TASK_STATES


TERMINAL_TASK_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.EXPIRED})


class PlanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class Lease:
    task_id: str
    holder: str
    granted_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def extended(self, now: datetime, ttl_s: float) -> Lease:
        return Lease(
            task_id=self.task_id,
            holder=self.holder,
            granted_at=self.granted_at,
            expires_at=now + timedelta(seconds=ttl_s),
        )


@dataclass(slots=True)
class Task:
    task_id: str
    plan_id: str
    session_id: str
    sequence: int
    step: int
    descriptor: TaskDescriptor
    state: TaskState = TaskState.PENDING
    lease: Lease | None = None
    result: Result | None = None
    last_holder: str | None = None
    deliveries: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def kind(self) -> TaskKind:
        return self.descriptor.kind

    @property
    def payload(self) -> dict[str, Any]:
        return dict(self.descriptor.payload)

    def transition(self, state: TaskState, now: datetime) -> None:
        self.state = state
        self.updated_at = now


@dataclass(slots=True)
class Plan:
    plan_id: str
    session_id: str
    tasks: list[Task]
    feedback: bool = False
    round: int = 0
    base_step: int = 0
    parent_plan_id: str | None = None
    status: PlanStatus = PlanStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)

    @property
    def drained(self) -> bool:
        return all(task.state.terminal for task in self.tasks)

    def next_deliverable(self) -> Task | None:
        """Lowest-sequence task still pending, provided every earlier task completed."""

        if self.status is not PlanStatus.ACTIVE:
            return None
        for task in self.tasks:
            if task.state is TaskState.COMPLETED:
                continue
            if task.state is TaskState.PENDING:
                return task
            return None
        return None


@dataclass(frozen=True, slots=True)
class PlanAborted:
    """Emitted when a failed step cancels the rest of its plan."""

    plan_id: str
    session_id: str
    failed_task_id: str
    reason: str
    aborted_task_ids: tuple[str, ...]


class TaskView(BaseModel):
    task_id: str
    plan_id: str
    session_id: str
    sequence: int
    step: int
    kind: TaskKind
    payload: dict[str, Any]
    state: TaskState
    lease_holder: str | None = None
    lease_expires_at: datetime | None = None
    result: Result | None = None
    deliveries: int = 0
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> TaskView:
        return cls(
            task_id=task.task_id,
            plan_id=task.plan_id,
            session_id=task.session_id,
            sequence=task.sequence,
            step=task.step,
            kind=task.kind,
            payload=task.payload,
            state=task.state,
            lease_holder=task.lease.holder if task.lease else None,
            lease_expires_at=task.lease.expires_at if task.lease else None,
            result=task.result,
            deliveries=task.deliveries,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class PlanView(BaseModel):
    plan_id: str
    session_id: str
    status: PlanStatus
    feedback: bool
    round: int
    parent_plan_id: str | None = None
    tasks: list[TaskView]
    created_at: datetime

    @classmethod
    def from_plan(cls, plan: Plan) -> PlanView:
        return cls(
            plan_id=plan.plan_id,
            session_id=plan.session_id,
            status=plan.status,
            feedback=plan.feedback,
            round=plan.round,
            parent_plan_id=plan.parent_plan_id,
            tasks=[TaskView.from_task(task) for task in plan.tasks],
            created_at=plan.created_at,
        )


@dataclass(frozen=True, slots=True)
class Delivery:
    """A task handed to a polling executor together with its lease."""

    task: TaskView
    lease: Lease
    renewed: bool = False


@dataclass(frozen=True, slots=True)
class Acknowledgement:
    task: TaskView
    plan: PlanView
    aborted: PlanAborted | None = None

    @property
    def plan_drained(self) -> bool:
        return self.plan.status is not PlanStatus.ACTIVE


__all__ = [
    "Acknowledgement",
    "Clock",
    "Delivery",
    "Lease",
    "Plan",
    "PlanAborted",
    "PlanStatus",
    "PlanView",
    "TERMINAL_TASK_STATES",
    "Task",
    "TaskState",
    "TaskView",
    "utc_now",
]
