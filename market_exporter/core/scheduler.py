"""
Scheduled background exports.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional
import redis.asyncio as aioredis

from market_exporter.core.feed.runner import StepRunner
from market_exporter.core.run_lock import TRIGGER_CRON

logger = logging.getLogger(__name__)

SCHEDULE_KEY = "market_exporter:schedule"

INTERVALS: Dict[str, int] = {
    "hourly": 3600,
    "twicedaily": 43200,
    "daily": 86400,
}
DISABLED = "disabled"


def validate_interval(interval: str) -> str:
    """
    Raises:
        ValueError: If the interval is unknown
    """
    if interval != DISABLED and interval not in INTERVALS:
        raise ValueError(
            f"Unknown interval {interval!r}, expected one of: {', '.join([DISABLED] + list(INTERVALS))}"
        )
    return interval


class ExportScheduler:
    """
    Runs ``runner.run_background("cron")`` every interval.

    Only one schedule exists at a time: changing the interval cancels the
    current loop before a new one is started. The selected interval is kept
    in Redis so it survives restarts.
    """

    def __init__(
        self,
        runner: StepRunner,
        redis_client: aioredis.Redis,
        default_interval: Callable[[], str] = lambda: DISABLED,
        key: str = SCHEDULE_KEY
    ):
        self.runner = runner
        self.redis = redis_client
        self.default_interval = default_interval
        self.key = key
        self.interval = DISABLED
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self, interval_seconds: int):
        logger.info(f"Starting export schedule (interval: {interval_seconds}s)")
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                url = await self.runner.run_background(TRIGGER_CRON)
                if url:
                    logger.info(f"Scheduled export committed: {url}")
            except asyncio.CancelledError:
                logger.info("Scheduled export cancelled")
                raise
            except Exception as e:
                logger.error(f"Scheduled export failed: {str(e)}", exc_info=True)

    async def _cancel(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def update_schedule(self, interval: str) -> str:
        """
        Replace the current schedule.

        Args:
            interval: 'disabled', 'hourly', 'twicedaily' or 'daily'

        Returns:
            The interval now in effect
        """
        validate_interval(interval)
        await self._cancel()
        await self.redis.set(self.key, interval)
        self.interval = interval
        if interval != DISABLED:
            self._task = asyncio.create_task(self._loop(INTERVALS[interval]))
        logger.info(f"Export schedule set to {interval}")
        return interval

    async def start(self):
        """Restore the persisted schedule on startup."""
        interval = await self.redis.get(self.key)
        if not interval:
            interval = self.default_interval()
        try:
            validate_interval(interval)
        except ValueError as e:
            logger.warning(f"Ignoring stored schedule: {e}")
            interval = DISABLED
        await self.update_schedule(interval)

    async def stop(self):
        await self._cancel()
