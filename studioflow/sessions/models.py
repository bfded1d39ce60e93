"""Session records owned by the session manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from studioflow.conversation import Transcript, Turn
from studioflow.queue.models import PlanView, utc_now


class SessionStatus(str, Enum):
    IDLE = "Idle"
    AWAITING_PLAN = "AwaitingPlan"
    EXECUTING_PLAN = "ExecutingPlan"


@dataclass(slots=True)
class Session:
    session_id: str
    transcript: Transcript = field(default_factory=Transcript)
    status: SessionStatus = SessionStatus.IDLE
    current_plan_id: str | None = None
    request_token: str | None = None
    feedback_rounds: int = 0
    created_at: datetime = field(default_factory=utc_now)
    last_activity: datetime = field(default_factory=utc_now)

    def touch(self, now: datetime) -> None:
        self.last_activity = now

    def transition(self, status: SessionStatus, now: datetime) -> None:
        self.status = status
        self.last_activity = now


@dataclass(frozen=True, slots=True)
class Submission:
    """Accepted prompt: the token that gateway results must match."""

    session_id: str
    token: str
    superseded_plan_id: str | None = None
    created: bool = False


@dataclass(frozen=True, slots=True)
class Continuation:
    session_id: str
    token: str
    parent_plan_id: str
    round: int


class SessionView(BaseModel):
    session_id: str
    status: SessionStatus
    current_plan_id: str | None = None
    feedback_rounds: int = 0
    created_at: datetime
    last_activity: datetime
    transcript: list[dict[str, Any]]
    plans: list[PlanView] = []

    @classmethod
    def from_session(cls, session: Session, plans: list[PlanView] | None = None) -> SessionView:
        return cls(
            session_id=session.session_id,
            status=session.status,
            current_plan_id=session.current_plan_id,
            feedback_rounds=session.feedback_rounds,
            created_at=session.created_at,
            last_activity=session.last_activity,
            transcript=session.transcript.to_payload(),
            plans=list(plans or []),
        )


TranscriptSnapshot = tuple[Turn, ...]


__all__ = [
    "Continuation",
    "Session",
    "SessionStatus",
    "SessionView",
    "Submission",
    "TranscriptSnapshot",
]
