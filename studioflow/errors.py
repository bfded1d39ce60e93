from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

_TYPE_BASE = "https://studioflow.dev/errors/"


class ProblemDetails(BaseModel):
    type: str
    title: str
    status: int
    detail: str | None = None
    instance: str | None = None

    model_config = ConfigDict(extra="allow")


class StudioFlowError(Exception):
    """Base error; carries the HTTP status and a stable machine code."""

    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        title: str,
        detail: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail or title)
        self.status_code = status_code
        self.code = code
        self.title = title
        self.detail = detail
        self.extra = extra or {}

    def to_problem_details(self) -> ProblemDetails:
        payload: dict[str, Any] = {
            "type": _TYPE_BASE + self.code,
            "title": self.title,
            "status": self.status_code,
            "code": self.code,
        }
        if self.detail:
            payload["detail"] = self.detail
        if self.extra:
            payload.update(self.extra)
        return ProblemDetails.model_validate(payload)


class TaskNotFoundError(StudioFlowError):
    def __init__(self, task_id: str) -> None:
        super().__init__(
            status_code=404,
            code="not-found",
            title="Task not found",
            detail=f"Task '{task_id}' was not found.",
        )
        self.task_id = task_id


class QueueConflictError(StudioFlowError):
    """Raised when a second holder tries to lease an already leased task."""

    def __init__(self, task_id: str, holder: str) -> None:
        super().__init__(
            status_code=409,
            code="already-leased",
            title="Task already leased",
            detail=f"Task '{task_id}' is leased by another holder.",
            extra={"taskId": task_id},
        )
        self.task_id = task_id
        self.holder = holder


class TaskNotPendingError(StudioFlowError):
    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(
            status_code=409,
            code="not-pending",
            title="Task not pending",
            detail=f"Task '{task_id}' cannot be leased: {reason}.",
            extra={"taskId": task_id},
        )
        self.task_id = task_id
        self.reason = reason


class LeaseMismatchError(StudioFlowError):
    """Report from a holder that does not own the task's lease."""

    def __init__(
        self,
        task_id: str,
        holder: str,
        *,
        reason: str | None = None,
        code: str = "lease-mismatch",
        title: str = "Lease mismatch",
    ) -> None:
        super().__init__(
            status_code=409,
            code=code,
            title=title,
            detail=reason or f"Holder '{holder}' does not hold the lease for task '{task_id}'.",
            extra={"taskId": task_id},
        )
        self.task_id = task_id
        self.holder = holder


class LeaseExpiredError(LeaseMismatchError):
    def __init__(self, task_id: str, holder: str) -> None:
        super().__init__(
            task_id,
            holder,
            reason=f"Lease held by '{holder}' on task '{task_id}' has expired; discard the result.",
            code="lease-expired",
            title="Lease expired",
        )


class ActivePlanError(StudioFlowError):
    def __init__(self, session_id: str, plan_id: str) -> None:
        super().__init__(
            status_code=409,
            code="active-plan",
            title="Plan already active",
            detail=f"Session '{session_id}' already has active plan '{plan_id}'.",
        )
        self.session_id = session_id
        self.plan_id = plan_id


class SessionBusyError(StudioFlowError):
    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(
            status_code=409,
            code="busy",
            title="Session busy",
            detail=f"Session '{session_id}' is {status}; wait for the plan to drain.",
            extra={"sessionId": session_id, "sessionStatus": status},
        )
        self.session_id = session_id


class SessionNotFoundError(StudioFlowError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            status_code=404,
            code="session-not-found",
            title="Session not found",
            detail=f"Session '{session_id}' was not found.",
        )
        self.session_id = session_id


class GatewayErrorKind(str, Enum):
    RATE_LIMITED = "RateLimited"
    UNAUTHORIZED = "Unauthorized"
    TRANSPORT = "Transport"
    MALFORMED = "Malformed"

    @property
    def retryable(self) -> bool:
        return self in {GatewayErrorKind.RATE_LIMITED, GatewayErrorKind.TRANSPORT}


class GatewayError(StudioFlowError):
    """Upstream LLM failure."""

    def __init__(self, kind: GatewayErrorKind, message: str, *, raw: Exception | None = None) -> None:
        super().__init__(
            status_code=502,
            code="gateway-" + kind.value.lower(),
            title="Gateway error",
            detail=message,
            extra={"kind": kind.value},
        )
        self.kind = kind
        self.message = message
        self.raw = raw

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class ConfigError(StudioFlowError):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=500, code="config", title="Invalid configuration", detail=detail)


class RequestValidationError(StudioFlowError):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=422, code="invalid-request", title="Invalid request", detail=detail)


__all__ = [
    "ActivePlanError",
    "ConfigError",
    "GatewayError",
    "GatewayErrorKind",
    "LeaseExpiredError",
    "LeaseMismatchError",
    "ProblemDetails",
    "QueueConflictError",
    "RequestValidationError",
    "SessionBusyError",
    "SessionNotFoundError",
    "StudioFlowError",
    "TaskNotFoundError",
    "TaskNotPendingError",
]
