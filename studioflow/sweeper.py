"""Background loop that bounds how long a vanished executor can hold a task."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .orchestrator import Orchestrator

logger = logging.getLogger("studioflow.sweeper")


class LeaseSweeper:
    def __init__(self, orchestrator: Orchestrator, interval_s: float) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._orchestrator = orchestrator
        self._interval_s = interval_s
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("sweeper_started", extra={"interval_s": self._interval_s})

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info("sweeper_stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                report = await self._orchestrator.sweep()
            except Exception:
                logger.exception("sweep_failed")
                continue
            if report.reclaimed or report.evicted:
                logger.info(
                    "sweep_completed",
                    extra={"reclaimed": report.reclaimed, "evicted": report.evicted},
                )


__all__ = ["LeaseSweeper"]
