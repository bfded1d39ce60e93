"""Contract between the orchestration core and the LLM that plans tasks."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from pydantic import BaseModel, Field

from studioflow.conversation import Turn
from studioflow.types import TaskDescriptor


class PlanResponse(BaseModel):
    """Structured plan returned by a gateway.

    ``feedback`` asks the orchestrator to show the execution results to the
    gateway again once every task of this plan has finished.
    """

    message: str | None = None
    tasks: list[TaskDescriptor] = Field(default_factory=list)
    feedback: bool = False


class LLMGateway(Protocol):
    async def request_plan(self, transcript: Sequence[Turn]) -> PlanResponse:
        """Return the next plan for ``transcript``.

        Raises:
            GatewayError: on any upstream failure.
        """


__all__ = ["LLMGateway", "PlanResponse"]
