"""Conversation turns and the append-only transcript."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .types import Result, TaskDescriptor, TaskKind


def _utc_now() -> datetime:
    return datetime.now(UTC)


class PlanError(BaseModel):
    """Why no plan could be produced (gateway failure or feedback limit)."""

    kind: str
    message: str

    model_config = ConfigDict(frozen=True)


class UserPromptTurn(BaseModel):
    type: Literal["user_prompt"] = "user_prompt"
    text: str
    created_at: datetime = Field(default_factory=_utc_now)

    model_config = ConfigDict(frozen=True)


class AssistantPlanTurn(BaseModel):
    type: Literal["assistant_plan"] = "assistant_plan"
    plan_id: str | None = None
    message: str | None = None
    tasks: tuple[TaskDescriptor, ...] = ()
    feedback: bool = False
    error: PlanError | None = None
    created_at: datetime = Field(default_factory=_utc_now)

    model_config = ConfigDict(frozen=True)


class ExecutionResultTurn(BaseModel):
    type: Literal["execution_result"] = "execution_result"
    task_id: str
    plan_id: str
    step: int
    kind: TaskKind
    outcome: Result
    aborted_task_ids: tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=_utc_now)

    model_config = ConfigDict(frozen=True)


Turn = Annotated[
    UserPromptTurn | AssistantPlanTurn | ExecutionResultTurn,
    Field(discriminator="type"),
]

_TURNS_ADAPTER: TypeAdapter[list[Turn]] = TypeAdapter(list[Turn])


class Transcript:
    """Ordered, append-only sequence of turns."""

    __slots__ = ("_turns",)

    def __init__(self) -> None:
        self._turns: list[Turn] = []

    def append(self, turn: Turn) -> None:
        self._turns.append(turn)

    def snapshot(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def to_payload(self) -> list[dict[str, Any]]:
        return _TURNS_ADAPTER.dump_python(self._turns, mode="json")

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))

    def __len__(self) -> int:
        return len(self._turns)

    def __getitem__(self, index: int) -> Turn:
        return self._turns[index]


__all__ = [
    "AssistantPlanTurn",
    "ExecutionResultTurn",
    "PlanError",
    "Transcript",
    "Turn",
    "UserPromptTurn",
]
