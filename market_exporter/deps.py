"""
Dependency injection for FastAPI.

The service graph (storage, catalog source, run lock, step runner, scheduler)
is built once at startup and kept on ``app.state.services``; routes receive
it through ``get_services``.
"""

from dataclasses import dataclass
from typing import Optional
import redis.asyncio as aioredis
from fastapi import Request

from market_exporter.config import Settings, get_settings, load_export_config
from market_exporter.core.feed.catalog import CatalogSource, WooCatalogSource
from market_exporter.core.feed.models import FeedConfig
from market_exporter.core.feed.runner import StepRunner
from market_exporter.core.run_lock import RunLock
from market_exporter.core.scheduler import ExportScheduler
from market_exporter.core.storage import Storage, build_storage
from market_exporter.core.woo_client import WooClient


_redis_client: Optional[aioredis.Redis] = None


async def get_redis() -> aioredis.Redis:
    """Get Redis client (singleton) with lazy connection."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        _redis_client = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=1.0,
            socket_timeout=3.0,
            retry_on_timeout=True,
            health_check_interval=30,
        )
    return _redis_client


async def close_redis():
    """Close Redis connection."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


@dataclass
class ExporterServices:
    """Everything the HTTP adapters and the scheduler need."""
    settings: Settings
    redis: aioredis.Redis
    storage: Storage
    catalog: CatalogSource
    lock: RunLock
    runner: StepRunner
    scheduler: ExportScheduler

    def load_config(self):
        return load_export_config(self.settings.export_config_path)


def build_catalog(settings: Settings) -> CatalogSource:
    """
    Raises:
        ValueError: If WooCommerce credentials are not configured
    """
    if not settings.woo_store_url:
        raise ValueError("WOO_STORE_URL is not configured")
    client = WooClient(
        store_url=settings.woo_store_url,
        consumer_key=settings.woo_consumer_key,
        consumer_secret=settings.woo_consumer_secret
    )
    return WooCatalogSource(client)


def build_services(
    settings: Settings,
    redis_client: aioredis.Redis,
    catalog: Optional[CatalogSource] = None,
    storage: Optional[Storage] = None,
    lock: Optional[RunLock] = None
) -> ExporterServices:
    """
    Wire the service graph.

    Args:
        settings: Application settings
        redis_client: Redis client for the run lock and the schedule
        catalog: Catalog source (defaults to the configured WooCommerce store)
        storage: Storage backend (defaults to STORAGE_BACKEND)
        lock: Run lock (defaults to a lock with LOCK_TTL_SECONDS)

    Returns:
        ExporterServices
    """
    catalog = catalog or build_catalog(settings)
    storage = storage or build_storage(settings)
    lock = lock or RunLock(redis_client, ttl_seconds=settings.lock_ttl_seconds)

    def config_loader():
        return load_export_config(settings.export_config_path)

    def configured_cron() -> str:
        return FeedConfig.from_dict(config_loader()).cron

    runner = StepRunner(catalog, storage, lock, settings, config_loader=config_loader)
    scheduler = ExportScheduler(runner, redis_client, default_interval=configured_cron)

    return ExporterServices(
        settings=settings,
        redis=redis_client,
        storage=storage,
        catalog=catalog,
        lock=lock,
        runner=runner,
        scheduler=scheduler,
    )


def get_services(request: Request) -> ExporterServices:
    """FastAPI dependency returning the service graph of the running app."""
    return request.app.state.services
