"""Task kinds, payload variants and execution results."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TaskKind(str, Enum):
    """Actions the Studio plugin knows how to perform."""

    RUN_CODE = "RunCode"
    INSERT_MODEL = "InsertModel"


class RunCodePayload(BaseModel):
    """Luau source executed inside Studio."""

    command: str = Field(min_length=1)

    model_config = ConfigDict(extra="forbid")


class InsertModelPayload(BaseModel):
    """Marketplace search query; the first hit is inserted into the workspace."""

    query: str = Field(min_length=1)

    model_config = ConfigDict(extra="forbid")


PAYLOAD_MODELS: dict[TaskKind, type[BaseModel]] = {
    TaskKind.RUN_CODE: RunCodePayload,
    TaskKind.INSERT_MODEL: InsertModelPayload,
}


class TaskDescriptor(BaseModel):
    """One plan step as produced by the gateway: ``kind`` plus its payload."""

    kind: TaskKind
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_payload(self) -> TaskDescriptor:
        model = PAYLOAD_MODELS[self.kind]
        model.model_validate(self.payload)
        return self

    @classmethod
    def run_code(cls, command: str) -> TaskDescriptor:
        return cls(kind=TaskKind.RUN_CODE, payload={"command": command})

    @classmethod
    def insert_model(cls, query: str) -> TaskDescriptor:
        return cls(kind=TaskKind.INSERT_MODEL, payload={"query": query})

    def to_wire_args(self) -> dict[str, Any]:
        """Externally tagged form understood by the Studio plugin."""

        return {self.kind.value: dict(self.payload)}


class Result(BaseModel):
    """Outcome reported by an executor for one task."""

    status: Literal["success", "failure"]
    data: Any | None = None
    reason: str | None = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_reason(self) -> Result:
        if self.status == "failure" and not self.reason:
            raise ValueError("failure results require a reason")
        return self

    @classmethod
    def success(cls, data: Any | None = None) -> Result:
        return cls(status="success", data=data)

    @classmethod
    def failure(cls, reason: str) -> Result:
        return cls(status="failure", reason=reason)

    @property
    def ok(self) -> bool:
        return self.status == "success"


__all__ = [
    "InsertModelPayload",
    "PAYLOAD_MODELS",
    "Result",
    "RunCodePayload",
    "TaskDescriptor",
    "TaskKind",
]
