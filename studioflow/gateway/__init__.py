"""LLM gateway boundary: protocol, retry wrapper and the Gemini adapter."""

from .gemini import GeminiGateway
from .parsing import parse_plan_text
from .protocol import LLMGateway, PlanResponse
from .retry import RetryingGateway

__all__ = [
    "GeminiGateway",
    "LLMGateway",
    "PlanResponse",
    "RetryingGateway",
    "parse_plan_text",
]
