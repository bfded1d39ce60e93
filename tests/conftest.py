import asyncio
import sys
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

# Ensure repository root is on sys.path for test imports.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from studioflow.conversation import Turn  # noqa: E402
from studioflow.gateway.protocol import PlanResponse  # noqa: E402
from studioflow.telemetry import OrchestratorEvent  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedGateway:
    """Returns queued responses (or raises queued errors) in order."""

    def __init__(self, *responses: PlanResponse | Exception) -> None:
        self.responses: list[PlanResponse | Exception] = list(responses)
        self.transcripts: list[tuple[Turn, ...]] = []
        self.release: asyncio.Event | None = None

    def push(self, response: PlanResponse | Exception) -> None:
        self.responses.append(response)

    async def request_plan(self, transcript: Sequence[Turn]) -> PlanResponse:
        self.transcripts.append(tuple(transcript))
        if self.release is not None:
            await self.release.wait()
        if not self.responses:
            return PlanResponse(message="nothing to do")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class BufferSink:
    def __init__(self) -> None:
        self.events: list[OrchestratorEvent] = []

    async def emit(self, event: OrchestratorEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.event_type for event in self.events]


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def sink() -> BufferSink:
    return BufferSink()


@pytest.fixture
def make_orchestrator(gateway: ScriptedGateway, clock: FakeClock, sink: BufferSink):
    from studioflow.config import StudioFlowConfig
    from studioflow.orchestrator import Orchestrator

    def _make(**settings):
        config = StudioFlowConfig(**settings)
        return Orchestrator(gateway, config=config, clock=clock, telemetry=sink, sleep=no_sleep)

    return _make
