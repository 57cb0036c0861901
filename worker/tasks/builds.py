from __future__ import annotations

from taskiq import Context, TaskiqDepends

from shared.config import config
from shared.logger import get_logger
from worker.broker import broker

logger = get_logger(__name__)


@broker.task
async def poll_builds_once(context: Context = TaskiqDepends()) -> int:
    """Run a single BuildPollScheduler tick. Useful for ad-hoc debugging."""
    from workflow_compiler.build.scheduler import BuildPollScheduler  # local import

    scheduler = BuildPollScheduler(context.state.coordinator, max_batch_size=config.build_poller_batch_size)
    logger.info("Running ad-hoc build poll tick")
    return await scheduler.tick()


__all__ = ["poll_builds_once"]
