"""Tests for the step runner."""

from pathlib import Path
from xml.etree import ElementTree

import pytest

from market_exporter.core.errors import RunInProgressError, SourceFetchError, ValidationError
from market_exporter.core.feed.runner import StepRunner, step_percent, steps_for
from market_exporter.core.run_lock import TRIGGER_CRON, TRIGGER_MANUAL

from tests.conftest import base_export_config, write_export_config

FINAL = "ym-export.yml"
TEMP = "ym-export.yml.tmp"


def _folder(runner: StepRunner) -> Path:
    return runner.storage.folder


async def _run_all(runner: StepRunner, total_steps: int):
    return [await runner.run_step(step, total_steps) for step in range(total_steps)]


class TestPlan:
    """Tests for plan() and the step arithmetic."""

    async def test_plan(self, runner: StepRunner) -> None:
        plan = await runner.plan()

        assert (plan.total_items, plan.page_size, plan.total_steps) == (25, 10, 3)

    def test_steps_for(self) -> None:
        assert steps_for(0, 10) == 0
        assert steps_for(1, 10) == 1
        assert steps_for(20, 10) == 2
        assert steps_for(21, 10) == 3

    def test_step_percent(self) -> None:
        assert [step_percent(s, 3) for s in range(3)] == [33, 67, 100]

    def test_step_percent_rounds_half_up(self) -> None:
        assert step_percent(0, 8) == 13
        assert step_percent(2, 8) == 38


class TestManualRun:
    """Manual (polled) runs."""

    async def test_full_run(self, runner: StepRunner, catalog) -> None:
        results = await _run_all(runner, 3)

        assert [r.done for r in results] == [False, False, True]
        assert [r.percent for r in results] == [33, 67, 100]
        assert [r.url for r in results] == [None, None, f"http://test/api/v1/files/{FINAL}"]
        assert catalog.fetched == [(0, 10), (10, 10), (20, 10)]

        folder = _folder(runner)
        assert not (folder / TEMP).exists()
        root = ElementTree.fromstring((folder / FINAL).read_bytes())
        offers = root.findall("./shop/offers/offer")
        assert [o.get("id") for o in offers] == [str(i) for i in range(1, 26)]
        assert root.get("date") == "2024-05-17 10:30"
        assert await runner.lock.get() is None

    async def test_only_last_step_writes_footer_and_commits(self, runner: StepRunner) -> None:
        await runner.run_step(0, 3)
        await runner.run_step(1, 3)

        folder = _folder(runner)
        staged = (folder / TEMP).read_text(encoding="utf-8")
        assert staged.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        assert "</yml_catalog>" not in staged
        assert staged.count("<offer ") == 20
        assert not (folder / FINAL).exists()

    async def test_retried_step_is_idempotent(self, runner: StepRunner) -> None:
        await _run_all(runner, 3)
        expected = (_folder(runner) / FINAL).read_bytes()

        await runner.run_step(0, 3)
        await runner.run_step(1, 3)
        await runner.run_step(1, 3)
        await runner.run_step(2, 3)

        assert (_folder(runner) / FINAL).read_bytes() == expected

    async def test_retried_first_step_keeps_snapshot(self, runner: StepRunner) -> None:
        await _run_all(runner, 3)
        expected = (_folder(runner) / FINAL).read_bytes()

        await runner.run_step(0, 3)
        owner = (await runner.lock.get()).owner
        await runner.run_step(0, 3)
        assert (await runner.lock.get()).owner == owner
        await runner.run_step(1, 3)
        await runner.run_step(2, 3)

        assert (_folder(runner) / FINAL).read_bytes() == expected

    async def test_rerunning_an_earlier_step_rewinds_progress(self, runner: StepRunner) -> None:
        await runner.run_step(0, 3)
        await runner.run_step(1, 3)

        await runner.run_step(0, 3)
        record = await runner.lock.get()

        # Step 0 after later steps starts over
        assert record.completed == 0
        assert len(record.offsets) == 2
        with pytest.raises(ValidationError):
            await runner.run_step(2, 3)

    async def test_repeated_last_step_after_commit(self, runner: StepRunner) -> None:
        results = await _run_all(runner, 3)
        committed = (_folder(runner) / FINAL).read_bytes()

        repeated = await runner.run_step(2, 3)

        assert repeated == results[-1]
        assert (repeated.done, repeated.percent) == (True, 100)
        assert (_folder(runner) / FINAL).read_bytes() == committed
        assert await runner.lock.get() is None

    async def test_repeated_last_step_needs_matching_step_count(self, runner: StepRunner) -> None:
        await _run_all(runner, 3)

        with pytest.raises(RunInProgressError):
            await runner.run_step(3, 4)
        with pytest.raises(RunInProgressError):
            await runner.run_step(1, 3)

    async def test_finished_run_is_forgotten_after_ttl(self, runner: StepRunner, redis_client) -> None:
        await _run_all(runner, 3)
        await redis_client.delete(runner.lock.finished_key)

        with pytest.raises(RunInProgressError):
            await runner.run_step(2, 3)

    async def test_out_of_order_step(self, runner: StepRunner) -> None:
        await runner.run_step(0, 3)

        with pytest.raises(ValidationError):
            await runner.run_step(2, 3)

    async def test_step_without_active_run(self, runner: StepRunner) -> None:
        with pytest.raises(RunInProgressError):
            await runner.run_step(1, 3)

    @pytest.mark.parametrize("step,total_steps", [(-1, 3), (0, -1), (3, 3), (1, 0)])
    async def test_malformed_parameters(self, runner: StepRunner, step: int, total_steps: int) -> None:
        with pytest.raises(ValidationError):
            await runner.run_step(step, total_steps)

    async def test_step_count_must_match_catalog(self, runner: StepRunner) -> None:
        with pytest.raises(ValidationError):
            await runner.run_step(0, 4)
        assert await runner.lock.get() is None

    async def test_step_count_must_match_run(self, runner: StepRunner) -> None:
        await runner.run_step(0, 3)

        with pytest.raises(ValidationError):
            await runner.run_step(1, 5)

    async def test_empty_catalog(self, runner: StepRunner, catalog) -> None:
        catalog.records = []

        result = await runner.run_step(0, 0)

        assert (result.done, result.percent) == (True, 100)
        assert result.url.endswith(FINAL)
        assert catalog.fetched == []
        root = ElementTree.fromstring((_folder(runner) / FINAL).read_bytes())
        assert root.findall("./shop/offers/offer") == []

    async def test_date_suffixed_filename(self, runner: StepRunner, config_path) -> None:
        config = base_export_config()
        config["misc"]["file_date"] = True
        write_export_config(config_path, config)

        results = await _run_all(runner, 3)

        assert results[-1].url.endswith("ym-export-2024-05-17.yml")
        assert (_folder(runner) / "ym-export-2024-05-17.yml").exists()


class TestFailures:
    """Source failures and atomic visibility."""

    async def test_source_failure_leaves_staged_file_resumable(self, runner: StepRunner, catalog) -> None:
        await _run_all(runner, 3)
        expected = (_folder(runner) / FINAL).read_bytes()
        (_folder(runner) / FINAL).unlink()

        await runner.run_step(0, 3)
        staged = (_folder(runner) / TEMP).read_bytes()
        catalog.fail_offsets = {10}

        with pytest.raises(SourceFetchError):
            await runner.run_step(1, 3)

        assert (_folder(runner) / TEMP).read_bytes() == staged
        assert not (_folder(runner) / FINAL).exists()
        assert (await runner.lock.get()).completed == 0

        catalog.fail_offsets = set()
        await runner.run_step(1, 3)
        await runner.run_step(2, 3)
        assert (_folder(runner) / FINAL).read_bytes() == expected

    async def test_final_file_only_appears_complete(self, runner: StepRunner) -> None:
        await _run_all(runner, 3)
        committed = (_folder(runner) / FINAL).read_bytes()
        committed_size = len(committed)

        for step in range(3):
            await runner.run_step(step, 3)
            files = {f.name: f.size for f in runner.storage.list_files()}
            assert list(files) == [FINAL]
            assert files[FINAL] == committed_size

        assert (_folder(runner) / FINAL).read_bytes() == committed


class TestLocking:
    """Run lock discipline across triggers."""

    async def test_background_run(self, runner: StepRunner) -> None:
        url = await runner.run_background(TRIGGER_CRON)

        assert url.endswith(FINAL)
        assert (_folder(runner) / FINAL).exists()
        assert await runner.lock.get() is None

    async def test_background_run_is_noop_while_locked(self, runner: StepRunner, catalog) -> None:
        await runner.run_step(0, 3)
        staged = (_folder(runner) / TEMP).read_bytes()
        record_before = await runner.lock.get()
        fetched_before = list(catalog.fetched)

        assert await runner.run_background(TRIGGER_CRON) is None

        assert (_folder(runner) / TEMP).read_bytes() == staged
        assert await runner.lock.get() == record_before
        assert catalog.fetched == fetched_before

    async def test_manual_run_refused_while_background_runs(self, runner: StepRunner) -> None:
        record = await runner.acquire_background(TRIGGER_CRON)

        with pytest.raises(RunInProgressError):
            await runner.run_step(0, 3)

        assert (await runner.lock.get()).owner == record.owner

    async def test_stale_background_lock_is_taken_over(self, runner: StepRunner, clock) -> None:
        await runner.acquire_background(TRIGGER_CRON)
        clock.advance(runner.lock.ttl_seconds + 1)

        result = await runner.run_step(0, 3)

        assert result.percent == 33
        assert (await runner.lock.get()).trigger == TRIGGER_MANUAL

    async def test_background_failure_releases_lock(self, runner: StepRunner, catalog) -> None:
        catalog.fail_offsets = {20}

        with pytest.raises(SourceFetchError):
            await runner.run_background(TRIGGER_CRON)

        assert await runner.lock.get() is None
        assert not (_folder(runner) / FINAL).exists()

    async def test_abort(self, runner: StepRunner) -> None:
        await runner.run_step(0, 3)

        assert await runner.abort() is True

        assert not (_folder(runner) / TEMP).exists()
        assert await runner.lock.get() is None
        assert await runner.abort() is False

    async def test_status(self, runner: StepRunner) -> None:
        assert (await runner.status())["held"] is False

        await runner.run_step(0, 3)
        status = await runner.status()

        assert status["held"] is True
        assert status["trigger"] == TRIGGER_MANUAL
        assert status["completed"] == 0
        assert status["total_steps"] == 3
