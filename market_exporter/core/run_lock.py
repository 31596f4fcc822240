"""
Process-wide run lock for export runs, stored in Redis.

One key holds the record of the run in flight. The record doubles as the
run's snapshot (catalog size, step count, config, start time) and progress
(byte offset of every accepted step), which is what makes retried steps
idempotent. When a run commits, its record moves to a second key for
``ttl_seconds`` so a repeated last step can be answered with the same URL.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import WatchError

logger = logging.getLogger(__name__)

LOCK_KEY = "market_exporter:run"

TRIGGER_MANUAL = "manual"
TRIGGER_CRON = "cron"
TRIGGER_UPDATE = "update"


@dataclass
class RunRecord:
    """State of the run holding the lock."""
    owner: str
    trigger: str
    acquired_at: float = 0.0
    heartbeat_at: float = 0.0
    held: bool = True

    # Snapshot taken at step 0
    total_items: int = 0
    page_size: int = 1
    total_steps: int = 1
    started_at: str = ''
    date_suffix: bool = False
    config: Dict[str, Any] = field(default_factory=dict)
    categories: List[Dict[str, Any]] = field(default_factory=list)

    # Progress: offsets[k] is the staged-file size before step k
    completed: int = -1
    offsets: List[int] = field(default_factory=lambda: [0])

    # Committed feed URL, set once the run has finished
    url: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> 'RunRecord':
        data = json.loads(raw)
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def is_stale(self, ttl_seconds: int, now: float) -> bool:
        return self.heartbeat_at + ttl_seconds < now

    def status_dict(self, ttl_seconds: int, now: float) -> Dict[str, Any]:
        return {
            'held': self.held,
            'owner': self.owner,
            'trigger': self.trigger,
            'acquired_at': self.acquired_at,
            'heartbeat_at': self.heartbeat_at,
            'completed': self.completed,
            'total_steps': self.total_steps,
            'stale': self.is_stale(ttl_seconds, now),
        }


class RunLock:
    """
    Redis-backed run lock with heartbeat and staleness.

    A record whose last heartbeat is older than ``ttl_seconds`` is stale and
    can be taken over by any trigger. The Redis key itself also expires after
    ``ttl_seconds`` without a heartbeat.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        ttl_seconds: int = 900,
        key: str = LOCK_KEY,
        clock: Callable[[], float] = time.time
    ):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key = key
        self.finished_key = f"{key}:finished"
        self.clock = clock

    async def get(self) -> Optional[RunRecord]:
        """Current record, or None if nobody holds the lock."""
        raw = await self.redis.get(self.key)
        return RunRecord.from_json(raw) if raw else None

    async def acquire(
        self,
        record: RunRecord,
        can_replace: Optional[Callable[[RunRecord], bool]] = None
    ) -> Tuple[bool, Optional[RunRecord]]:
        """
        Try to take the lock for ``record``.

        The lock is free when no record exists or the current one is stale.
        ``can_replace`` may additionally allow replacing a live record.

        Args:
            record: Record of the new run
            can_replace: Predicate on the current live record

        Returns:
            (acquired, previous record or None)
        """
        now = self.clock()
        record.acquired_at = now
        record.heartbeat_at = now
        record.held = True

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self.key)
                raw = await pipe.get(self.key)
                current = RunRecord.from_json(raw) if raw else None

                if current is not None:
                    if current.is_stale(self.ttl_seconds, now):
                        logger.warning(
                            f"Taking over stale run {current.owner} ({current.trigger}), "
                            f"last heartbeat {now - current.heartbeat_at:.0f}s ago"
                        )
                    elif not (can_replace and can_replace(current)):
                        await pipe.unwatch()
                        return False, current

                pipe.multi()
                pipe.set(self.key, record.to_json(), ex=self.ttl_seconds)
                await pipe.execute()
            except WatchError:
                logger.warning("Run lock changed while acquiring, giving up")
                return False, await self.get()

        logger.info(f"Run lock acquired by {record.owner} ({record.trigger})")
        return True, current

    async def save(self, record: RunRecord) -> bool:
        """
        Persist the record's progress and refresh the heartbeat.

        Returns:
            False if ``record.owner`` no longer holds the lock
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self.key)
                raw = await pipe.get(self.key)
                if not raw or RunRecord.from_json(raw).owner != record.owner:
                    await pipe.unwatch()
                    return False
                record.heartbeat_at = self.clock()
                pipe.multi()
                pipe.set(self.key, record.to_json(), ex=self.ttl_seconds)
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def release(self, owner: str) -> bool:
        """
        Release the lock if ``owner`` still holds it.

        Returns:
            True if the lock was released
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self.key)
                raw = await pipe.get(self.key)
                if not raw or RunRecord.from_json(raw).owner != owner:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(self.key)
                await pipe.execute()
            except WatchError:
                return False
        logger.info(f"Run lock released by {owner}")
        return True

    async def finish(self, record: RunRecord, url: Optional[str]) -> bool:
        """
        Release the lock of a committed run and keep its record as the last
        finished run.

        Returns:
            False if ``record.owner`` no longer holds the lock
        """
        record.held = False
        record.url = url
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self.key)
                raw = await pipe.get(self.key)
                if not raw or RunRecord.from_json(raw).owner != record.owner:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(self.key)
                pipe.set(self.finished_key, record.to_json(), ex=self.ttl_seconds)
                await pipe.execute()
            except WatchError:
                return False
        logger.info(f"Run lock released by {record.owner}, run finished")
        return True

    async def last_finished(self) -> Optional[RunRecord]:
        """Record of the most recently committed run, kept for ``ttl_seconds``."""
        raw = await self.redis.get(self.finished_key)
        return RunRecord.from_json(raw) if raw else None

    async def status(self) -> Dict[str, Any]:
        """Lock state for pollers."""
        record = await self.get()
        if record is None:
            return {'held': False}
        return record.status_dict(self.ttl_seconds, self.clock())
