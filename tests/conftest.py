"""Pytest fixtures for testing."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from market_exporter.config import Settings, load_export_config
from market_exporter.core.errors import SourceFetchError
from market_exporter.core.feed.catalog import CatalogSource
from market_exporter.core.feed.models import CatalogCategory, CatalogRecord
from market_exporter.core.feed.runner import StepRunner
from market_exporter.core.run_lock import RunLock
from market_exporter.core.storage import LocalStorage
from market_exporter.deps import build_services
from market_exporter.main import create_app

ADMIN_KEY = "test-admin-key"
RUN_STARTED_AT = datetime(2024, 5, 17, 10, 30)


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class InMemoryCatalog(CatalogSource):
    """Catalog source over a list of records; can be told to fail at given offsets."""

    def __init__(self, records: List[CatalogRecord], categories: Optional[List[CatalogCategory]] = None):
        self.records = records
        self._categories = categories or []
        self.fail_offsets: Set[int] = set()
        self.fetched: List[tuple] = []

    async def count(self) -> int:
        return len(self.records)

    async def fetch_page(self, offset: int, limit: int) -> List[CatalogRecord]:
        if offset in self.fail_offsets:
            raise SourceFetchError(f"Catalog unavailable at offset {offset}")
        self.fetched.append((offset, limit))
        return self.records[offset:offset + limit]

    async def categories(self) -> List[CatalogCategory]:
        return list(self._categories)


def make_record(i: int) -> CatalogRecord:
    return CatalogRecord(
        id=i,
        name=f"Product {i}",
        url=f"https://shop.example/product/{i}",
        price=100.0 + i,
        category_ids=[1],
        pictures=[f"https://shop.example/img/{i}.jpg"],
        description=f"<p>Description of product {i}</p>",
        stock_status="instock",
        stock_quantity=i,
        sku=f"SKU-{i}",
    )


def base_export_config() -> Dict[str, Any]:
    return {
        "currency": "RUB",
        "shop": {
            "name": "Test Shop",
            "company": "Test Company LLC",
            "url": "https://shop.example",
        },
        "misc": {"file_date": False, "update_on_change": False},
    }


def write_export_config(path: Path, data: Dict[str, Any]):
    path.write_text(json.dumps(data), encoding="utf-8")


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Mapping config file with a named shop."""
    path = tmp_path / "export_config.json"
    write_export_config(path, base_export_config())
    return path


@pytest.fixture
def settings(tmp_path: Path, config_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        export_config_path=str(config_path),
        page_size=10,
        lock_ttl_seconds=900,
        storage_backend="direct",
        output_dir=str(tmp_path / "out"),
        public_base_url="http://test/api/v1/files",
        admin_api_key=ADMIN_KEY,
        webhook_secret=None,
    )


@pytest_asyncio.fixture
async def redis_client():
    """Provide an in-memory Redis."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def categories() -> List[CatalogCategory]:
    return [
        CatalogCategory(id=1, name="Phones"),
        CatalogCategory(id=2, name="Cases", parent_id=1),
    ]


@pytest.fixture
def catalog(categories) -> InMemoryCatalog:
    """25 in-stock records, so a page size of 10 gives 3 steps."""
    return InMemoryCatalog([make_record(i) for i in range(1, 26)], categories)


@pytest.fixture
def storage(settings: Settings) -> LocalStorage:
    return LocalStorage(Path(settings.output_dir), settings.public_base_url)


@pytest.fixture
def lock(redis_client, clock) -> RunLock:
    return RunLock(redis_client, ttl_seconds=900, clock=clock)


@pytest.fixture
def runner(catalog, storage, lock, settings, config_path) -> StepRunner:
    return StepRunner(
        catalog,
        storage,
        lock,
        settings,
        config_loader=lambda: load_export_config(str(config_path)),
        now=lambda: RUN_STARTED_AT,
    )


@pytest_asyncio.fixture
async def services(settings, redis_client, catalog, storage, lock):
    services = build_services(settings, redis_client, catalog=catalog, storage=storage, lock=lock)
    yield services
    await services.scheduler.stop()


@pytest_asyncio.fixture
async def client(services):
    """Provide an async HTTP client authenticated as admin."""
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Admin-Key": ADMIN_KEY}
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def anonymous_client(services):
    """Provide an async HTTP client without credentials."""
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
