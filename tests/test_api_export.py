"""Tests for the export endpoints."""

import json

from httpx import AsyncClient

from market_exporter.core.run_lock import TRIGGER_CRON


class TestAuth:
    """Admin key checks."""

    async def test_missing_admin_key(self, anonymous_client: AsyncClient) -> None:
        response = await anonymous_client.get("/api/v1/export/plan")

        assert response.status_code == 403
        assert response.headers["X-Error-Code"] == "permission-error"

    async def test_wrong_admin_key(self, anonymous_client: AsyncClient) -> None:
        response = await anonymous_client.get("/api/v1/export/plan", headers={"X-Admin-Key": "nope"})

        assert response.status_code == 403

    async def test_health_is_public(self, anonymous_client: AsyncClient) -> None:
        response = await anonymous_client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    async def test_redis_health(self, anonymous_client: AsyncClient) -> None:
        response = await anonymous_client.get("/api/v1/health/redis")

        assert response.json()["redis"] == "connected"


class TestSteps:
    """POST /export/step."""

    async def test_plan(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/export/plan")

        assert response.status_code == 200
        assert response.json() == {"total_items": 25, "page_size": 10, "steps": 3}

    async def test_full_run(self, client: AsyncClient) -> None:
        steps = (await client.get("/api/v1/export/plan")).json()["steps"]

        bodies = []
        for step in range(steps):
            response = await client.post("/api/v1/export/step", json={"step": step, "steps": steps})
            assert response.status_code == 200
            bodies.append(response.json())

        assert [b["percent"] for b in bodies] == [33, 67, 100]
        assert [b["done"] for b in bodies] == [False, False, True]
        assert bodies[-1]["url"] == "http://test/api/v1/files/ym-export.yml"

        download = await client.get("/api/v1/files/ym-export.yml")
        assert download.status_code == 200
        assert download.text.count("<offer ") == 25

    async def test_query_parameters_are_accepted(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/export/step", params={"step": "0", "steps": "3"})

        assert response.status_code == 200
        assert response.json()["percent"] == 33

    async def test_missing_parameters(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/export/step", json={"step": 0})

        assert response.status_code == 500
        assert response.headers["X-Error-Code"] == "generation-error"

    async def test_malformed_parameters(self, client: AsyncClient) -> None:
        for body in ({"step": "abc", "steps": 3}, {"step": True, "steps": 3}, {"step": 1.5, "steps": 3}):
            response = await client.post("/api/v1/export/step", json=body)
            assert response.status_code == 500
            assert response.headers["X-Error-Code"] == "generation-error"

    async def test_malformed_numeric_strings(self, client: AsyncClient) -> None:
        for value in ("--1", "\u00b2", "1-", "\u0661", " "):
            response = await client.post("/api/v1/export/step", json={"step": value, "steps": 3})
            assert response.status_code == 500
            assert response.headers["X-Error-Code"] == "generation-error"

    async def test_invalid_json_body(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/export/step", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 500
        assert response.headers["X-Error-Code"] == "generation-error"

    async def test_background_run_blocks_manual_run(self, client: AsyncClient, services) -> None:
        await services.runner.acquire_background(TRIGGER_CRON)

        response = await client.post("/api/v1/export/step", json={"step": 0, "steps": 3})

        assert response.status_code == 409
        assert response.headers["X-Error-Code"] == "run-in-progress"

    async def test_source_failure(self, client: AsyncClient, catalog) -> None:
        await client.post("/api/v1/export/step", json={"step": 0, "steps": 3})
        catalog.fail_offsets = {10}

        response = await client.post("/api/v1/export/step", json={"step": 1, "steps": 3})

        assert response.status_code == 502
        assert response.headers["X-Error-Code"] == "source-error"


class TestRunState:
    """GET /export/status and DELETE /export/run."""

    async def test_status_and_abort(self, client: AsyncClient) -> None:
        assert (await client.get("/api/v1/export/status")).json()["held"] is False

        await client.post("/api/v1/export/step", json={"step": 0, "steps": 3})
        status = (await client.get("/api/v1/export/status")).json()
        assert status["held"] is True
        assert status["trigger"] == "manual"
        assert status["completed"] == 0

        response = await client.delete("/api/v1/export/run")
        assert response.json() == {"aborted": True}
        assert (await client.get("/api/v1/export/status")).json()["held"] is False


class TestSchedule:
    """GET/PUT /export/schedule."""

    async def test_update_schedule(self, client: AsyncClient) -> None:
        response = await client.put("/api/v1/export/schedule", json={"interval": "daily"})

        assert response.status_code == 200
        assert response.json() == {"interval": "daily", "running": True}
        assert (await client.get("/api/v1/export/schedule")).json()["interval"] == "daily"

        response = await client.put("/api/v1/export/schedule", json={"interval": "disabled"})
        assert response.json() == {"interval": "disabled", "running": False}

    async def test_unknown_interval(self, client: AsyncClient) -> None:
        response = await client.put("/api/v1/export/schedule", json={"interval": "weekly"})

        assert response.status_code == 422


class TestExportConfig:
    """GET/PUT /export/config."""

    async def test_get_config_fills_defaults(self, client: AsyncClient) -> None:
        config = (await client.get("/api/v1/export/config")).json()["config"]

        assert config["shop"]["name"] == "Test Shop"
        assert config["offer"]["image_count"] == 5
        assert config["misc"]["old_price"] == "oldprice"

    async def test_unsupported_currency_is_rejected(self, client: AsyncClient, config_path) -> None:
        before = config_path.read_text(encoding="utf-8")

        response = await client.put(
            "/api/v1/export/config", json={"config": {"currency": "BYN", "shop": {"name": "Shop"}}}
        )

        assert response.status_code == 500
        assert response.headers["X-Error-Code"] == "config-error"
        assert config_path.read_text(encoding="utf-8") == before

    async def test_unusable_stored_config_fails_the_step(self, client: AsyncClient, config_path, services) -> None:
        config_path.write_text(json.dumps({"currency": "BYN", "shop": {"name": "Shop"}}), encoding="utf-8")

        response = await client.post("/api/v1/export/step", json={"step": 0, "steps": 3})

        assert response.status_code == 500
        assert response.headers["X-Error-Code"] == "config-error"
        assert await services.runner.lock.get() is None

    async def test_cron_change_reschedules(self, client: AsyncClient, services) -> None:
        response = await client.put(
            "/api/v1/export/config",
            json={"config": {"shop": {"name": "Test Shop"}, "misc": {"cron": "hourly"}}},
        )

        assert response.status_code == 200
        assert services.scheduler.interval == "hourly"
        assert services.scheduler.running
        saved = (await client.get("/api/v1/export/config")).json()["config"]
        assert saved["misc"]["cron"] == "hourly"
