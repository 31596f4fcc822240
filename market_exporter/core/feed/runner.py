"""
Step runner: drives an export run one bounded step at a time.

Step ``k`` fetches catalog items ``k * page_size .. (k + 1) * page_size - 1``
and appends their offers to the staged file. Step 0 additionally starts a
fresh staged file with the document header; the last step appends the footer
and commits. The bytes a step writes depend only on the step index and the
run snapshot kept in the run lock record, so a retried step rewrites exactly
the byte range it wrote before.
"""

import logging
import math
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from market_exporter.config import Settings, load_export_config
from market_exporter.core.errors import RunInProgressError, ValidationError
from market_exporter.core.run_lock import RunLock, RunRecord, TRIGGER_MANUAL
from market_exporter.core.storage import Storage, feed_filename
from .catalog import CatalogSource
from .models import CatalogCategory, ExportPlan, FeedConfig, StepResult
from .yml_writer import render_footer, render_header, render_offers

logger = logging.getLogger(__name__)


def steps_for(total_items: int, page_size: int) -> int:
    """ceil(total_items / page_size); 0 for an empty catalog."""
    return math.ceil(total_items / page_size) if total_items > 0 else 0


def step_percent(step: int, total_steps: int) -> int:
    """Share of steps done, rounded half up."""
    return int(math.floor(100 * (step + 1) / total_steps + 0.5))


class StepRunner:
    """Resumable export state machine shared by every trigger."""

    def __init__(
        self,
        catalog: CatalogSource,
        storage: Storage,
        lock: RunLock,
        settings: Settings,
        config_loader: Callable[[], Dict[str, Any]] = load_export_config,
        now: Callable[[], datetime] = datetime.now
    ):
        self.catalog = catalog
        self.storage = storage
        self.lock = lock
        self.settings = settings
        self.config_loader = config_loader
        self.now = now

    async def plan(self) -> ExportPlan:
        """Size the next run from the current catalog."""
        total_items = await self.catalog.count()
        page_size = self.settings.page_size
        return ExportPlan(
            total_items=total_items,
            page_size=page_size,
            total_steps=steps_for(total_items, page_size),
        )

    def filename_for(self, record: RunRecord) -> str:
        run_date = None
        if record.date_suffix:
            run_date = datetime.fromisoformat(record.started_at).date()
        return feed_filename(self.settings.feed_name, self.settings.feed_extension, run_date)

    async def _snapshot(self, trigger: str) -> RunRecord:
        """Take the run snapshot: config, catalog size, categories and start time."""
        config_data = self.config_loader()
        config = FeedConfig.from_dict(config_data)

        total_items = await self.catalog.count()
        categories = await self.catalog.categories()
        page_size = self.settings.page_size

        return RunRecord(
            owner=uuid.uuid4().hex,
            trigger=trigger,
            total_items=total_items,
            page_size=page_size,
            total_steps=max(1, steps_for(total_items, page_size)),
            started_at=self.now().replace(microsecond=0).isoformat(),
            date_suffix=config.file_date,
            config=config_data,
            categories=[c.to_dict() for c in categories],
        )

    async def _execute_step(self, record: RunRecord, step: int) -> StepResult:
        config = FeedConfig.from_dict(record.config)
        last = step == record.total_steps - 1
        offset = step * record.page_size

        logger.info(f"Run {record.owner}: step {step + 1}/{record.total_steps} (offset {offset})")

        # Fetch and render before touching the staged file, so a failing
        # source leaves the file as the previous step left it.
        chunks: List[str] = []
        if step == 0:
            categories = [CatalogCategory.from_dict(c) for c in record.categories]
            chunks.append(render_header(config, categories, datetime.fromisoformat(record.started_at)))
        if offset < record.total_items:
            records = await self.catalog.fetch_page(offset, record.page_size)
            logger.info(f"Run {record.owner}: fetched {len(records)} records")
            chunks.append(render_offers(records, config))
        if last:
            chunks.append(render_footer())
        data = ''.join(chunks).encode('utf-8')

        handle = self.storage.open(self.filename_for(record), fresh=(step == 0))
        end = self.storage.append(handle, data, offset=record.offsets[step])
        logger.info(f"Run {record.owner}: appended {len(data)} bytes to {handle.temp_name}")

        record.offsets = record.offsets[:step + 1] + [end]
        record.completed = step
        if not await self.lock.save(record):
            raise RunInProgressError(f"Run {record.owner} lost the run lock at step {step}")

        url = None
        if last:
            url = self.storage.commit(handle)
            logger.info(f"Run {record.owner}: committed {handle.name}")

        return StepResult(done=last, percent=step_percent(step, record.total_steps), url=url)

    async def run_step(self, step: int, total_steps: int) -> StepResult:
        """
        Run one step of a manual (polled) export.

        Args:
            step: 0-based step index
            total_steps: Caller's step count (from plan()); 0 is treated as 1

        Returns:
            StepResult; ``url`` is set on the last step only

        Raises:
            ValidationError: Bad step parameters, a step out of order, or a
                step count that does not match the run snapshot
            RunInProgressError: A background run holds the lock, or no manual
                run is active for a step > 0
            SourceFetchError: The catalog failed; the step can be retried
            FilesystemError: The staged file could not be written or committed
        """
        if step < 0 or total_steps < 0:
            raise ValidationError("step and steps must be non-negative integers")
        total_steps = max(1, total_steps)
        if step >= total_steps:
            raise ValidationError(f"step {step} is outside of 0..{total_steps - 1}")

        if step == 0:
            record = await self._start_manual(total_steps)
        else:
            record = await self.lock.get()
            if (
                record is None
                or record.trigger != TRIGGER_MANUAL
                or record.is_stale(self.lock.ttl_seconds, self.lock.clock())
            ):
                repeated = await self._repeated_last_step(step, total_steps)
                if repeated is not None:
                    return repeated
                raise RunInProgressError("No manual export run is active, restart from step 0")
            if record.total_steps != total_steps:
                raise ValidationError(
                    f"Run has {record.total_steps} steps, request says {total_steps}"
                )
            if step > record.completed + 1:
                raise ValidationError(
                    f"Step {step} is out of order, next expected step is {record.completed + 1}"
                )

        try:
            result = await self._execute_step(record, step)
        except Exception as e:
            logger.error(f"Run {record.owner}: step {step} failed: {e}", exc_info=True)
            raise

        if result.done:
            await self.lock.finish(record, result.url)
        return result

    async def _repeated_last_step(self, step: int, total_steps: int) -> Optional[StepResult]:
        """Answer a repeated last step of a manual run that has already committed."""
        if step != total_steps - 1:
            return None
        finished = await self.lock.last_finished()
        if finished is None or finished.trigger != TRIGGER_MANUAL or finished.total_steps != total_steps:
            return None
        logger.info(f"Run {finished.owner}: last step repeated after commit")
        return StepResult(done=True, percent=step_percent(step, total_steps), url=finished.url)

    async def _start_manual(self, total_steps: int) -> RunRecord:
        current = await self.lock.get()
        if (
            current is not None
            and current.trigger == TRIGGER_MANUAL
            and not current.is_stale(self.lock.ttl_seconds, self.lock.clock())
            and current.completed <= 0
            and current.total_steps == total_steps
        ):
            # Retried step 0: keep the snapshot so the header is rewritten identically
            logger.info(f"Run {current.owner}: step 0 retried")
            return current

        record = await self._snapshot(TRIGGER_MANUAL)
        if record.total_steps != total_steps:
            raise ValidationError(
                f"Catalog needs {record.total_steps} steps, request says {total_steps}"
            )

        acquired, previous = await self.lock.acquire(
            record, can_replace=lambda r: r.trigger == TRIGGER_MANUAL
        )
        if not acquired:
            raise RunInProgressError(f"A {previous.trigger} export run is in progress")
        if previous is not None:
            logger.warning(f"Manual run {record.owner} replaced run {previous.owner} ({previous.trigger})")
            previous_name = self.filename_for(previous)
            if previous_name != self.filename_for(record):
                self.storage.discard(self.storage.open(previous_name))
        return record

    async def acquire_background(self, trigger: str) -> Optional[RunRecord]:
        """
        Snapshot the catalog and take the lock for a background run.

        Returns:
            The acquired record, or None if another run is in flight
        """
        current = await self.lock.get()
        if current is not None and not current.is_stale(self.lock.ttl_seconds, self.lock.clock()):
            logger.warning(f"Skipping {trigger} run: run {current.owner} ({current.trigger}) in progress")
            return None

        record = await self._snapshot(trigger)
        acquired, previous = await self.lock.acquire(record)
        if not acquired:
            logger.warning(f"Skipping {trigger} run: run {previous.owner} ({previous.trigger}) in progress")
            return None
        return record

    async def run_acquired(self, record: RunRecord) -> Optional[str]:
        """Run every step of an acquired background run; the lock is always released."""
        try:
            result = None
            for step in range(record.total_steps):
                result = await self._execute_step(record, step)
            await self.lock.finish(record, result.url)
            logger.info(f"Run {record.owner} ({record.trigger}) finished: {result.url}")
            return result.url
        except Exception as e:
            logger.error(f"Run {record.owner} ({record.trigger}) failed: {e}", exc_info=True)
            raise
        finally:
            await self.lock.release(record.owner)

    async def run_background(self, trigger: str) -> Optional[str]:
        """
        Run a whole export in one invocation (scheduled or change-triggered).

        Returns:
            URL of the committed feed, or None if another run was in flight
        """
        record = await self.acquire_background(trigger)
        if record is None:
            return None
        return await self.run_acquired(record)

    async def abort(self) -> bool:
        """
        Abort the run holding the lock: drop its staged file, release the lock.

        Returns:
            False if no run was active
        """
        record = await self.lock.get()
        if record is None:
            return False
        self.storage.discard(self.storage.open(self.filename_for(record)))
        await self.lock.release(record.owner)
        logger.info(f"Run {record.owner} ({record.trigger}) aborted")
        return True

    async def status(self) -> Dict[str, Any]:
        return await self.lock.status()
