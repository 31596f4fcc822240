"""
Read-only WooCommerce REST client for catalog export.

Requests are throttled to ``rate_limit_rps`` and retried with exponential
backoff on throttling (429), gateway/server errors and transport failures.
"""

import time
import random
import asyncio
import logging
from typing import Optional, Dict, List, Any
import httpx

logger = logging.getLogger(__name__)

API_PREFIX = "/wp-json/wc/v3"

# Store answers that are worth asking again
RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})

MAX_PER_PAGE = 100


class WooCommerceError(Exception):
    """Catalog request failed (HTTP error, transport error or bad payload)."""
    pass


class WooClient:
    """
    Async client for the product, variation and category endpoints.

    Authenticates with a consumer key/secret pair over HTTP basic auth.
    """

    def __init__(
        self,
        store_url: str,
        consumer_key: str,
        consumer_secret: str,
        rate_limit_rps: float = 5.0,
        timeout: float = 30.0,
        max_retries: int = 5,
        initial_delay: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            store_url: Store base URL (e.g., https://example.com)
            consumer_key: WooCommerce consumer key
            consumer_secret: WooCommerce consumer secret
            rate_limit_rps: Requests per second; 0 disables throttling
            timeout: Request timeout in seconds
            max_retries: Retries after the first attempt
            initial_delay: Delay before the first retry, doubled each time
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not store_url:
            raise ValueError("store_url is required")
        if not (consumer_key and consumer_secret):
            raise ValueError("Must provide consumer_key and consumer_secret")

        self.api_url = store_url.rstrip('/') + API_PREFIX
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self._min_interval = 1.0 / rate_limit_rps if rate_limit_rps > 0 else 0
        self._next_slot = 0.0

        self.client = httpx.AsyncClient(
            auth=httpx.BasicAuth(consumer_key, consumer_secret),
            timeout=timeout,
            follow_redirects=True,
            transport=transport
        )

    async def _throttle(self):
        now = time.monotonic()
        if now < self._next_slot:
            await asyncio.sleep(self._next_slot - now)
        self._next_slot = max(now, self._next_slot) + self._min_interval

    async def _backoff(self, attempt: int, path: str, reason: str):
        delay = min(self.initial_delay * 2 ** attempt, 60.0) + random.uniform(0, 0.4)
        logger.warning(f"{reason} on {path}, retry {attempt + 1}/{self.max_retries} in {delay:.1f}s")
        await asyncio.sleep(delay)

    async def _get(self, path: str, params: Dict[str, Any]) -> httpx.Response:
        """
        GET ``API_PREFIX + path`` with throttling and retries.

        Raises:
            WooCommerceError: On a non-retryable status, or when retries run out
        """
        url = self.api_url + path
        attempt = 0
        while True:
            await self._throttle()
            try:
                response = await self.client.get(url, params=params)
            except httpx.RequestError as e:
                # TimeoutException is a RequestError too
                if attempt >= self.max_retries:
                    raise WooCommerceError(f"{type(e).__name__} on {path} after {attempt} retries: {e}") from e
                await self._backoff(attempt, path, type(e).__name__)
                attempt += 1
                continue

            if response.is_success:
                return response
            if response.status_code not in RETRY_STATUSES:
                raise WooCommerceError(f"HTTP {response.status_code} on {path}: {response.text[:200]}")
            if attempt >= self.max_retries:
                raise WooCommerceError(
                    f"HTTP {response.status_code} on {path} after {attempt} retries: {response.text[:200]}"
                )
            await self._backoff(attempt, path, f"HTTP {response.status_code}")
            attempt += 1

    @staticmethod
    def _items(response: httpx.Response) -> List[Dict[str, Any]]:
        try:
            data = response.json()
        except ValueError as e:
            raise WooCommerceError(f"Invalid JSON from {response.request.url}: {e}") from e
        return data if isinstance(data, list) else []

    async def _get_all(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Walk ``page=1, 2, ...`` until a short page comes back."""
        collected: List[Dict[str, Any]] = []
        page = 1
        while True:
            items = self._items(await self._get(path, {**(params or {}), "per_page": MAX_PER_PAGE, "page": page}))
            collected.extend(items)
            if len(items) < MAX_PER_PAGE:
                return collected
            page += 1

    async def count_products(self, status: str = "publish") -> int:
        """Product count from the X-WP-Total header of a one-item page."""
        response = await self._get("/products", {"per_page": 1, "page": 1, "status": status})
        try:
            return int(response.headers.get("X-WP-Total", 0))
        except ValueError as e:
            raise WooCommerceError(f"Invalid X-WP-Total header: {e}") from e

    async def get_products_page(self, offset: int, per_page: int, status: str = "publish") -> List[Dict[str, Any]]:
        """
        Products ``offset .. offset + per_page - 1`` in ID order.

        Ordering by ID keeps windows stable while a run pages through the
        catalog.
        """
        params = {
            "offset": offset,
            "per_page": per_page,
            "status": status,
            "orderby": "id",
            "order": "asc",
        }
        return self._items(await self._get("/products", params))

    async def get_product_variations(self, product_id: int) -> List[Dict[str, Any]]:
        return await self._get_all(f"/products/{product_id}/variations", {"orderby": "id", "order": "asc"})

    async def get_all_categories(self) -> List[Dict[str, Any]]:
        return await self._get_all("/products/categories")

    async def close(self):
        await self.client.aclose()
