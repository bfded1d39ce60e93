"""Gemini gateway backed by the google-genai SDK.

Reference: https://ai.google.dev/gemini-api/docs
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from studioflow.conversation import AssistantPlanTurn, ExecutionResultTurn, Turn, UserPromptTurn
from studioflow.errors import GatewayError, GatewayErrorKind

from .parsing import parse_plan_text
from .protocol import PlanResponse

if TYPE_CHECKING:
    from google.genai import Client as GenaiClient
    from google.genai.types import Content

logger = logging.getLogger("studioflow.gateway.gemini")

DEFAULT_MODEL = "gemini-2.5-pro"

SYSTEM_INSTRUCTION = """\
You control Roblox Studio through a plugin that executes actions one at a time.
Reply with a single JSON object and nothing else:
{"message": "<short reply for the user>",
 "tasks": [{"kind": "RunCode", "payload": {"command": "<Luau source>"}},
           {"kind": "InsertModel", "payload": {"query": "<marketplace search>"}}],
 "feedback": false}
Tasks run in order; if one fails the rest are skipped.
Set "feedback" to true when you need to read the execution results before
deciding the next steps. Use an empty "tasks" list when no action is needed.
"""


def _describe_turn(turn: Turn) -> tuple[str, str]:
    if isinstance(turn, UserPromptTurn):
        return "user", turn.text
    if isinstance(turn, AssistantPlanTurn):
        if turn.error is not None:
            return "model", f"[planning failed: {turn.error.kind}] {turn.error.message}"
        body = {
            "message": turn.message,
            "tasks": [task.model_dump(mode="json") for task in turn.tasks],
            "feedback": turn.feedback,
        }
        return "model", json.dumps(body, ensure_ascii=False)
    if isinstance(turn, ExecutionResultTurn):
        outcome = turn.outcome
        if outcome.ok:
            detail = outcome.data if isinstance(outcome.data, str) else json.dumps(outcome.data, ensure_ascii=False)
            text = f"Step {turn.step} ({turn.kind.value}) succeeded. Output:\n{detail}"
        else:
            text = f"Step {turn.step} ({turn.kind.value}) failed: {outcome.reason}"
            if turn.aborted_task_ids:
                text += f"\n{len(turn.aborted_task_ids)} later step(s) were skipped."
        return "user", text
    raise TypeError(f"unsupported turn: {type(turn).__name__}")


def render_transcript(transcript: Sequence[Turn]) -> list[tuple[str, str]]:
    """Map turns to ``(role, text)`` pairs, merging consecutive turns of one role."""

    rendered: list[tuple[str, str]] = []
    for turn in transcript:
        role, text = _describe_turn(turn)
        if rendered and rendered[-1][0] == role:
            rendered[-1] = (role, rendered[-1][1] + "\n\n" + text)
        else:
            rendered.append((role, text))
    return rendered


def _response_text(response: Any) -> str:
    chunks: list[str] = []
    for candidate in getattr(response, "candidates", None) or []:
        parts = getattr(getattr(candidate, "content", None), "parts", None) or []
        for part in parts:
            text = getattr(part, "text", None)
            if text and not getattr(part, "thought", False):
                chunks.append(str(text))
    if chunks:
        return "".join(chunks)
    return str(getattr(response, "text", None) or "")


def map_gemini_error(exc: Exception) -> GatewayError:
    """Classify SDK exceptions into gateway error kinds."""

    code = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    if isinstance(code, int):
        if code in (401, 403):
            return GatewayError(GatewayErrorKind.UNAUTHORIZED, str(exc), raw=exc)
        if code == 429:
            return GatewayError(GatewayErrorKind.RATE_LIMITED, str(exc), raw=exc)
        if code == 400:
            return GatewayError(GatewayErrorKind.MALFORMED, str(exc), raw=exc)

    error_str = str(exc).lower()
    if "api key" in error_str or "unauthorized" in error_str or "permission" in error_str:
        return GatewayError(GatewayErrorKind.UNAUTHORIZED, str(exc), raw=exc)
    if "rate limit" in error_str or "quota" in error_str or "resource_exhausted" in error_str:
        return GatewayError(GatewayErrorKind.RATE_LIMITED, str(exc), raw=exc)
    return GatewayError(GatewayErrorKind.TRANSPORT, str(exc), raw=exc)


class GeminiGateway:
    """Requests plans from Gemini.

    Args:
        model: Model identifier, e.g. ``gemini-2.5-pro``.
        api_key: Falls back to ``GEMINI_API_KEY`` then ``GOOGLE_API_KEY``.
        timeout_s: Per-request timeout.
        client: Pre-built ``google.genai.Client`` (tests inject fakes here).
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        *,
        api_key: str | None = None,
        timeout_s: float = 60.0,
        temperature: float = 0.7,
        max_output_tokens: int = 2048,
        client: Any | None = None,
    ) -> None:
        self._model = model
        self._api_key = api_key or os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
        self._timeout_s = timeout_s
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._client: GenaiClient | Any | None = client

    @property
    def model(self) -> str:
        return self._model

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise GatewayError(GatewayErrorKind.UNAUTHORIZED, "GEMINI_API_KEY is not set")
        try:
            from google import genai
        except ImportError as exc:
            raise RuntimeError(
                "Google GenAI SDK not installed. Install with: pip install google-genai"
            ) from exc
        self._client = genai.Client(api_key=self._api_key)
        return self._client

    def _to_contents(self, transcript: Sequence[Turn]) -> list[Content]:
        from google.genai import types as genai_types

        return [
            genai_types.Content(role=role, parts=[genai_types.Part.from_text(text=text)])
            for role, text in render_transcript(transcript)
        ]

    def _build_config(self) -> Any:
        from google.genai import types as genai_types

        return genai_types.GenerateContentConfig(
            system_instruction=SYSTEM_INSTRUCTION,
            temperature=self._temperature,
            top_k=1,
            top_p=1,
            max_output_tokens=self._max_output_tokens,
            response_mime_type="application/json",
        )

    async def request_plan(self, transcript: Sequence[Turn]) -> PlanResponse:
        client = self._ensure_client()
        contents = self._to_contents(transcript)
        config = self._build_config()
        try:
            async with asyncio.timeout(self._timeout_s):
                response = await client.aio.models.generate_content(
                    model=self._model,
                    contents=contents,
                    config=config,
                )
        except TimeoutError as exc:
            raise GatewayError(
                GatewayErrorKind.TRANSPORT,
                f"request timed out after {self._timeout_s}s",
                raw=exc,
            ) from exc
        except GatewayError:
            raise
        except Exception as exc:
            raise map_gemini_error(exc) from exc

        text = _response_text(response)
        logger.debug("gemini_response", extra={"model": self._model, "chars": len(text)})
        if not text.strip():
            raise GatewayError(GatewayErrorKind.MALFORMED, "model returned an empty response")
        return parse_plan_text(text)


__all__ = ["DEFAULT_MODEL", "GeminiGateway", "SYSTEM_INSTRUCTION", "map_gemini_error", "render_transcript"]
