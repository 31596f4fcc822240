"""
Configuration management for the Market Exporter backend.
"""

import copy
import json
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic_settings import BaseSettings
from pydantic import Field

from market_exporter.core.errors import FeedConfigError


class Settings(BaseSettings):
    """Application settings."""

    redis_url: str = "redis://localhost:6379/0"
    log_level: str = "INFO"
    export_config_path: str = "./export_config.json"

    # Artifact naming and step sizing
    feed_name: str = "ym-export"
    feed_extension: str = "yml"
    page_size: int = Field(default=50, ge=1, le=100)
    lock_ttl_seconds: int = Field(default=900, ge=30)

    # Storage backend: "direct" (local filesystem) or "s3"
    storage_backend: str = "direct"
    output_dir: str = "./data/market-exporter"
    public_base_url: str = "http://localhost:8000/api/v1/files"
    s3_bucket: Optional[str] = None
    s3_prefix: str = "market-exporter"
    s3_endpoint_url: Optional[str] = None
    s3_region: str = "us-east-1"
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_public_base_url: Optional[str] = None

    # Catalog source
    woo_store_url: Optional[str] = None
    woo_consumer_key: Optional[str] = None
    woo_consumer_secret: Optional[str] = None

    # Access control
    admin_api_key: Optional[str] = None
    webhook_secret: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


_settings: Optional[Settings] = None


# Defaults of every element the mapping config can carry. Anything missing
# from export_config.json falls back to these values.
EXPORT_CONFIG_DEFAULTS: Dict[str, Any] = {
    "currency": "RUB",
    "shop": {
        "name": "",
        "company": "",
        "url": "",
        "platform": "WordPress",
        "version": "",
        "agency": "",
        "email": "",
    },
    "offer": {
        "model": "disabled",
        "vendor": "disabled",
        "typePrefix": "disabled",
        "vendorCode": "disabled",
        "backorders": True,
        "include_cat": [],
        "sales_notes": "",
        "warranty": "disabled",
        "origin": "disabled",
        "size": True,
        "params": [],
        "image_count": 5,
        "stock_quantity": True,
        "adult": False,
        "group_id": False,
        "vat": "disabled",
        "delivery": "disabled",
        "pickup": "disabled",
        "store": "disabled",
    },
    "delivery": {
        "delivery_options": False,
        "cost": "",
        "days": "",
        "order_before": "",
    },
    "misc": {
        "file_date": False,
        "cron": "disabled",
        "description": "default",
        "update_on_change": False,
        "single_param": False,
        "count": "count",
        "old_price": "oldprice",
    },
}


def merge_export_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill missing sections/elements of a mapping config with their defaults.

    Args:
        data: Partial mapping config.

    Returns:
        New dict with every section and element present.
    """
    merged = copy.deepcopy(EXPORT_CONFIG_DEFAULTS)
    for key, value in data.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def load_export_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the resolved feed mapping configuration from JSON.

    A missing file is not an error: the defaults are returned.

    Args:
        config_path: Optional path to config file. If None, uses EXPORT_CONFIG_PATH.

    Returns:
        Mapping config dict with defaults filled in.

    Raises:
        FeedConfigError: If the file is not a JSON object.
    """
    path = Path(config_path or get_settings().export_config_path)

    if not path.exists():
        return merge_export_defaults({})

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise FeedConfigError(f"Unable to read export config {path}: {e}") from e

    if not isinstance(data, dict):
        raise FeedConfigError("Export config must be a JSON object")

    return merge_export_defaults(data)


def save_export_config(config_data: Dict[str, Any], config_path: Optional[str] = None) -> None:
    """
    Save the feed mapping configuration to JSON.

    Args:
        config_data: Mapping config dict.
        config_path: Optional path to config file. If None, uses EXPORT_CONFIG_PATH.
    """
    if not isinstance(config_data, dict):
        raise FeedConfigError("Export config must be a JSON object")

    path = Path(config_path or get_settings().export_config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(config_data, f, indent=2, ensure_ascii=False)


def get_settings() -> Settings:
    """Get application settings."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
