"""Telemetry contract for orchestration lifecycle events.

A minimal schema that deployments can map onto their own logging, metrics or
tracing systems.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger("studioflow.telemetry")

EventType = Literal[
    "plan_enqueued",
    "task_leased",
    "task_completed",
    "task_failed",
    "plan_aborted",
    "lease_reclaimed",
    "session_closed",
    "session_evicted",
    "gateway_failed",
]


class OrchestratorEvent(BaseModel):
    event_type: EventType
    session_id: str | None = None
    plan_id: str | None = None
    task_id: str | None = None
    holder: str | None = None
    created_at_s: float = Field(default_factory=time.time)
    extra: dict[str, Any] = Field(default_factory=dict)


class EventSink(Protocol):
    async def emit(self, event: OrchestratorEvent) -> None: ...


class NoOpEventSink:
    async def emit(self, event: OrchestratorEvent) -> None:
        _ = event
        return None


class LoggingEventSink:
    """Writes every event to the ``studioflow.telemetry`` logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    async def emit(self, event: OrchestratorEvent) -> None:
        logger.log(self._level, event.event_type, extra=event.model_dump(exclude={"event_type"}))


__all__ = ["EventSink", "EventType", "LoggingEventSink", "NoOpEventSink", "OrchestratorEvent"]
