"""
Catalog sources: where the step runner gets its product records from.
"""

import html
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from market_exporter.core.errors import SourceFetchError
from market_exporter.core.woo_client import WooClient, WooCommerceError
from .models import CatalogCategory, CatalogRecord

logger = logging.getLogger(__name__)


class CatalogSource(ABC):
    """
    Paged, stably ordered access to the catalog.

    ``fetch_page(offset, limit)`` must return the same records for the same
    window as long as the catalog does not change, so a retried step renders
    the same bytes.
    """

    @abstractmethod
    async def count(self) -> int:
        """Number of catalog items the pages are cut from."""

    @abstractmethod
    async def fetch_page(self, offset: int, limit: int) -> List[CatalogRecord]:
        """Records of items ``offset .. offset + limit - 1``."""

    @abstractmethod
    async def categories(self) -> List[CatalogCategory]:
        """Full category tree."""

    async def close(self):
        pass


def _safe_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Convert value to float safely."""
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        s = value.strip().replace(',', '.')
        if not s:
            return default
        try:
            return float(s)
        except ValueError:
            return default
    return default


def _safe_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None and value != '' else None
    except (TypeError, ValueError):
        return None


def _text(value: Any) -> str:
    """WooCommerce returns names HTML-escaped ('Tom &amp; Jerry')."""
    return html.unescape(str(value or '')).strip()


def attribute_slug(attr: Dict[str, Any]) -> str:
    """Slug of a product attribute without the 'pa_' taxonomy prefix."""
    slug = attr.get('slug') or ''
    if not slug:
        slug = re.sub(r'[^a-z0-9_-]+', '-', str(attr.get('name', '')).lower()).strip('-')
    if slug.startswith('pa_'):
        slug = slug[3:]
    return slug


def _product_attributes(product: Dict[str, Any]) -> Tuple[Dict[str, List[str]], Dict[str, str]]:
    values: Dict[str, List[str]] = {}
    labels: Dict[str, str] = {}
    for attr in product.get('attributes') or []:
        if not isinstance(attr, dict):
            continue
        slug = attribute_slug(attr)
        if not slug:
            continue
        options = attr.get('options')
        if options is None and attr.get('option'):
            options = [attr['option']]
        values[slug] = [_text(o) for o in options or [] if o]
        labels[slug] = _text(attr.get('name')) or slug
    return values, labels


def _dimensions(data: Dict[str, Any]) -> Tuple[str, str, str]:
    dims = data.get('dimensions') or {}
    return (
        str(dims.get('length') or ''),
        str(dims.get('width') or ''),
        str(dims.get('height') or ''),
    )


def _prices(data: Dict[str, Any]) -> Tuple[float, Optional[float], Optional[float]]:
    regular_price = _safe_float(data.get('regular_price'))
    sale_price = _safe_float(data.get('sale_price'))
    if sale_price is not None and sale_price <= 0:
        sale_price = None
    price = _safe_float(data.get('price'))
    if price is None:
        price = sale_price if sale_price is not None else (regular_price or 0.0)
    return price, regular_price, sale_price


def product_to_record(product: Dict[str, Any]) -> CatalogRecord:
    """Normalize a simple product."""
    price, regular_price, sale_price = _prices(product)
    attributes, labels = _product_attributes(product)
    return CatalogRecord(
        id=int(product['id']),
        name=_text(product.get('name')),
        url=product.get('permalink') or '',
        price=price,
        regular_price=regular_price,
        sale_price=sale_price,
        category_ids=[int(c['id']) for c in product.get('categories') or [] if c.get('id')],
        pictures=[img.get('src') for img in product.get('images') or [] if img.get('src')],
        description=product.get('description') or '',
        short_description=product.get('short_description') or '',
        stock_status=product.get('stock_status') or 'instock',
        stock_quantity=_safe_int(product.get('stock_quantity')) if product.get('manage_stock') else None,
        sku=product.get('sku') or '',
        attributes=attributes,
        attribute_labels=labels,
        weight=str(product.get('weight') or ''),
        dimensions=_dimensions(product),
    )


def variation_to_record(parent: CatalogRecord, variation: Dict[str, Any]) -> CatalogRecord:
    """
    Normalize one variation of a variable product.

    Fields the variation leaves empty are inherited from the parent; the
    variation's own attribute options override the parent's option lists.
    """
    price, regular_price, sale_price = _prices(variation)

    attributes = dict(parent.attributes)
    labels = dict(parent.attribute_labels)
    options = []
    for attr in variation.get('attributes') or []:
        if not isinstance(attr, dict) or not attr.get('option'):
            continue
        slug = attribute_slug(attr)
        option = _text(attr['option'])
        attributes[slug] = [option]
        labels.setdefault(slug, _text(attr.get('name')) or slug)
        options.append(option)

    name = parent.name
    if options:
        name = f"{parent.name} - {' - '.join(options)}"

    pictures = list(parent.pictures)
    image = variation.get('image')
    if isinstance(image, dict) and image.get('src'):
        pictures = [image['src']] + [p for p in pictures if p != image['src']]

    dimensions = _dimensions(variation)
    if not any(dimensions):
        dimensions = parent.dimensions

    return CatalogRecord(
        id=int(variation['id']),
        name=name,
        url=variation.get('permalink') or parent.url,
        price=price,
        regular_price=regular_price,
        sale_price=sale_price,
        category_ids=list(parent.category_ids),
        pictures=pictures,
        description=variation.get('description') or parent.description,
        short_description=parent.short_description,
        stock_status=variation.get('stock_status') or parent.stock_status,
        stock_quantity=(
            _safe_int(variation.get('stock_quantity'))
            if variation.get('manage_stock') is True
            else parent.stock_quantity
        ),
        sku=variation.get('sku') or parent.sku,
        attributes=attributes,
        attribute_labels=labels,
        weight=str(variation.get('weight') or parent.weight),
        dimensions=dimensions,
        group_id=parent.id,
    )


class WooCatalogSource(CatalogSource):
    """Published WooCommerce products, ordered by ID, variations expanded."""

    def __init__(self, client: WooClient):
        self.client = client

    async def count(self) -> int:
        try:
            return await self.client.count_products()
        except WooCommerceError as e:
            raise SourceFetchError(f"Unable to count products: {e}") from e

    async def fetch_page(self, offset: int, limit: int) -> List[CatalogRecord]:
        try:
            products = await self.client.get_products_page(offset, limit)
            records = []
            for product in products:
                if not product.get('id'):
                    continue
                record = product_to_record(product)
                if product.get('type') == 'variable':
                    variations = await self.client.get_product_variations(record.id)
                    logger.debug(f"Product {record.id}: {len(variations)} variations")
                    records.extend(variation_to_record(record, v) for v in variations if v.get('id'))
                else:
                    records.append(record)
        except WooCommerceError as e:
            raise SourceFetchError(f"Unable to fetch products at offset {offset}: {e}") from e
        return records

    async def categories(self) -> List[CatalogCategory]:
        try:
            items = await self.client.get_all_categories()
        except WooCommerceError as e:
            raise SourceFetchError(f"Unable to fetch categories: {e}") from e
        return [
            CatalogCategory(
                id=int(item['id']),
                name=_text(item.get('name')),
                parent_id=int(item['parent']) if item.get('parent') else None,
            )
            for item in items
            if item.get('id')
        ]

    async def close(self):
        await self.client.close()
