"""Turn raw model text into a :class:`PlanResponse`.

Accepted shapes, in order of preference:

1. A JSON object ``{"message": ..., "tasks": [{"kind": ..., "payload": {...}}], "feedback": ...}``,
   either bare or inside a fenced ``json`` block.
2. Fenced ``luau``/``lua`` code blocks, each becoming a ``RunCode`` task.
3. Plain text, which becomes a plan with no tasks.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import ValidationError

from studioflow.errors import GatewayError, GatewayErrorKind
from studioflow.types import TaskDescriptor

from .protocol import PlanResponse

_JSON_FENCE = re.compile(r"```json\s*\n(.*?)```", re.DOTALL | re.IGNORECASE)
_LUAU_FENCE = re.compile(r"```(?:luau|lua)[ \t]*\n(.*?)```", re.DOTALL | re.IGNORECASE)


def _json_candidate(text: str) -> str | None:
    match = _JSON_FENCE.search(text)
    if match:
        return match.group(1).strip()
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        return stripped
    return None


def _plan_from_mapping(data: Any) -> PlanResponse:
    if not isinstance(data, dict):
        raise GatewayError(GatewayErrorKind.MALFORMED, "plan JSON must be an object")
    try:
        return PlanResponse.model_validate(data)
    except ValidationError as exc:
        raise GatewayError(GatewayErrorKind.MALFORMED, f"invalid plan: {exc}", raw=exc) from exc


def extract_code_blocks(text: str) -> list[str]:
    return [block.strip() for block in _LUAU_FENCE.findall(text) if block.strip()]


def parse_plan_text(text: str) -> PlanResponse:
    """Parse model output; raises ``GatewayError(Malformed)`` for broken JSON plans."""

    candidate = _json_candidate(text)
    if candidate is not None:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as exc:
            raise GatewayError(GatewayErrorKind.MALFORMED, f"plan is not valid JSON: {exc}", raw=exc) from exc
        return _plan_from_mapping(data)

    blocks = extract_code_blocks(text)
    message = text.strip() or None
    if blocks:
        return PlanResponse(message=message, tasks=[TaskDescriptor.run_code(block) for block in blocks])
    return PlanResponse(message=message)


__all__ = ["extract_code_blocks", "parse_plan_text"]
