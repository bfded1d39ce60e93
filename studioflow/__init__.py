"""Public package surface for studioflow."""

from __future__ import annotations

from .config import RetryPolicy, StudioFlowConfig, load_config
from .conversation import AssistantPlanTurn, ExecutionResultTurn, PlanError, Transcript, UserPromptTurn
from .errors import GatewayError, GatewayErrorKind, StudioFlowError
from .gateway import GeminiGateway, LLMGateway, PlanResponse, RetryingGateway
from .orchestrator import Orchestrator, SweepReport
from .queue import PlanStatus, TaskQueue, TaskState
from .sessions import SessionManager, SessionStatus
from .types import Result, TaskDescriptor, TaskKind

__all__ = [
    "__version__",
    "AssistantPlanTurn",
    "ExecutionResultTurn",
    "GatewayError",
    "GatewayErrorKind",
    "GeminiGateway",
    "LLMGateway",
    "Orchestrator",
    "PlanError",
    "PlanResponse",
    "PlanStatus",
    "Result",
    "RetryPolicy",
    "RetryingGateway",
    "SessionManager",
    "SessionStatus",
    "StudioFlowConfig",
    "StudioFlowError",
    "SweepReport",
    "TaskDescriptor",
    "TaskKind",
    "TaskQueue",
    "TaskState",
    "Transcript",
    "UserPromptTurn",
    "load_config",
]

__version__ = "0.1.0"
