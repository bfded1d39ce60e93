"""Task queue and lease management for plan execution."""

from .lease import LeaseManager
from .models import (
    Acknowledgement,
    Delivery,
    Lease,
    Plan,
    PlanAborted,
    PlanStatus,
    PlanView,
    Task,
    TaskState,
    TaskView,
)
from .task_queue import DEFAULT_LEASE_TTL_S, TaskQueue

__all__ = [
    "Acknowledgement",
    "DEFAULT_LEASE_TTL_S",
    "Delivery",
    "Lease",
    "LeaseManager",
    "Plan",
    "PlanAborted",
    "PlanStatus",
    "PlanView",
    "Task",
    "TaskQueue",
    "TaskState",
    "TaskView",
]
