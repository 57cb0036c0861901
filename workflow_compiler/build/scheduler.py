from __future__ import annotations

import asyncio
from typing import Optional

from shared.logger import get_logger
from workflow_compiler.build.coordinator import BuildCoordinator
from workflow_compiler.errors import BuildLeaseLost

logger = get_logger(__name__)


class BuildPollScheduler:
    """Background loop that claims pending builds and runs them one at a time."""

    def __init__(
        self,
        coordinator: BuildCoordinator,
        *,
        interval_seconds: float = 2,
        max_batch_size: int = 5,
    ) -> None:
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self.max_batch_size = max_batch_size
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    async def tick(self) -> int:
        """Claim and run up to `max_batch_size` builds. Returns how many ran."""
        processed = 0
        while processed < self.max_batch_size and not self._stop_event.is_set():
            record = await self.coordinator.claim_next()
            if record is None:
                break
            processed += 1
            try:
                await self.coordinator.run_build(record)
            except Exception:
                logger.exception(
                    "Build crashed",
                    extra={"workflow_id": record.workflow_id, "worker_id": self.coordinator.worker_id},
                )
                try:
                    await self.coordinator.fail(record, "Unhandled builder exception")
                except BuildLeaseLost:
                    logger.warning("Crashed build already taken over", extra={"workflow_id": record.workflow_id})
        return processed

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Build poll scheduler started", extra={"worker_id": self.coordinator.worker_id})

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        logger.info("Build poll scheduler stopped", extra={"worker_id": self.coordinator.worker_id})

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Build poll tick failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


__all__ = ["BuildPollScheduler"]
