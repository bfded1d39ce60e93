from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from studioflow.config import RetryPolicy
from studioflow.conversation import Turn
from studioflow.errors import GatewayError, GatewayErrorKind

from .protocol import LLMGateway, PlanResponse

logger = logging.getLogger("studioflow.gateway")

Sleep = Callable[[float], Awaitable[None]]


class RetryingGateway:
    """Retries RateLimited/Transport failures with bounded exponential backoff."""

    def __init__(
        self,
        gateway: LLMGateway,
        *,
        policy: RetryPolicy | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._gateway = gateway
        self._policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def request_plan(self, transcript: Sequence[Turn]) -> PlanResponse:
        last_error: GatewayError | None = None
        for attempt in range(1, self._policy.max_attempts + 1):
            try:
                response = await self._gateway.request_plan(transcript)
            except GatewayError as exc:
                last_error = exc
                if not exc.retryable:
                    logger.warning(
                        "gateway_terminal_error",
                        extra={"attempt": attempt, "kind": exc.kind.value, "error": exc.message},
                    )
                    raise
                if attempt >= self._policy.max_attempts:
                    break
                backoff_s = self._policy.backoff_for(attempt)
                logger.warning(
                    "gateway_retry",
                    extra={
                        "attempt": attempt,
                        "kind": exc.kind.value,
                        "error": exc.message,
                        "backoff_s": backoff_s,
                    },
                )
                await self._sleep(backoff_s)
                continue
            logger.debug("gateway_success", extra={"attempt": attempt, "tasks": len(response.tasks)})
            return response

        logger.error(
            "gateway_retries_exhausted",
            extra={"max_attempts": self._policy.max_attempts, "last_error": str(last_error)},
        )
        if last_error is None:  # pragma: no cover - max_attempts >= 1
            raise GatewayError(GatewayErrorKind.TRANSPORT, "gateway was never called")
        raise last_error


__all__ = ["RetryingGateway", "Sleep"]
