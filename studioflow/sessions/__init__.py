"""Session registry, conversation state and the result feedback loop."""

from .aggregator import FEEDBACK_LIMIT_KIND, ResultAggregator
from .models import Continuation, Session, SessionStatus, SessionView, Submission
from .session import DEFAULT_IDLE_TIMEOUT_S, SessionManager

__all__ = [
    "Continuation",
    "DEFAULT_IDLE_TIMEOUT_S",
    "FEEDBACK_LIMIT_KIND",
    "ResultAggregator",
    "Session",
    "SessionManager",
    "SessionStatus",
    "SessionView",
    "Submission",
]
