"""
Feed data models.
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Tuple

from market_exporter.core.errors import FeedConfigError


SUPPORTED_CURRENCIES = ('RUB', 'UAH', 'KZT', 'USD', 'EUR')

DESCRIPTION_MODES = ('default', 'long', 'short')


def _option_values(items: Any) -> List[str]:
    """Multiselect values come either as plain values or as {'value', 'label'} dicts."""
    values = []
    for item in items or []:
        if isinstance(item, dict):
            item = item.get('value')
        if item is None or item == '':
            continue
        values.append(str(item))
    return values


@dataclass
class ShopInfo:
    """Shop-level elements of the feed header."""
    name: str
    company: str
    url: str = ''
    platform: str = ''
    version: str = ''
    agency: str = ''
    email: str = ''


@dataclass
class OfferOptions:
    """Per-offer mapping: which attribute feeds which element, and what to skip."""
    model: str = 'disabled'
    vendor: str = 'disabled'
    type_prefix: str = 'disabled'
    vendor_code: str = 'disabled'
    backorders: bool = True
    include_cat: List[int] = field(default_factory=list)  # empty = all categories
    sales_notes: str = ''
    warranty: str = 'disabled'
    origin: str = 'disabled'
    size: bool = True  # weight + dimensions
    params: List[str] = field(default_factory=list)
    image_count: int = 5
    stock_quantity: bool = True
    adult: bool = False
    group_id: bool = False
    vat: str = 'disabled'
    delivery: str = 'disabled'
    pickup: str = 'disabled'
    store: str = 'disabled'


@dataclass
class DeliveryOptions:
    """Shop-wide <delivery-options>."""
    enabled: bool = False
    cost: str = ''
    days: str = ''
    order_before: str = ''


@dataclass
class FeedConfig:
    """Resolved feed configuration consumed by the YML writer."""
    shop: ShopInfo
    offer: OfferOptions = field(default_factory=OfferOptions)
    delivery: DeliveryOptions = field(default_factory=DeliveryOptions)
    currency: str = 'RUB'

    # Misc
    description_mode: str = 'default'
    single_param: bool = False
    count_element: str = 'count'  # 'count' or 'stock_quantity'
    old_price_element: str = 'oldprice'  # 'oldprice', 'old_price' or 'disabled'
    file_date: bool = False
    update_on_change: bool = False
    cron: str = 'disabled'

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeedConfig':
        """
        Build a FeedConfig from the JSON mapping config.

        Args:
            data: Mapping config (see config.EXPORT_CONFIG_DEFAULTS for the layout)

        Returns:
            FeedConfig

        Raises:
            FeedConfigError: If the currency is unsupported or a value is unusable
        """
        shop = data.get('shop') or {}
        offer = data.get('offer') or {}
        delivery = data.get('delivery') or {}
        misc = data.get('misc') or {}

        currency = str(data.get('currency') or 'RUB').upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise FeedConfigError(
                f"Currency {currency} is not supported. Supported: {', '.join(SUPPORTED_CURRENCIES)}"
            )

        description_mode = misc.get('description', 'default')
        if description_mode not in DESCRIPTION_MODES:
            description_mode = 'default'

        try:
            image_count = int(offer.get('image_count', 5) or 0)
            include_cat = [int(v) for v in _option_values(offer.get('include_cat'))]
        except (TypeError, ValueError) as e:
            raise FeedConfigError(f"Invalid offer option: {e}") from e

        old_price = misc.get('old_price', 'oldprice')

        return cls(
            shop=ShopInfo(
                name=str(shop.get('name', '')),
                company=str(shop.get('company', '')),
                url=str(shop.get('url', '')),
                platform=str(shop.get('platform', '')),
                version=str(shop.get('version', '')),
                agency=str(shop.get('agency', '')),
                email=str(shop.get('email', '')),
            ),
            offer=OfferOptions(
                model=offer.get('model', 'disabled'),
                vendor=offer.get('vendor', 'disabled'),
                type_prefix=offer.get('typePrefix', 'disabled'),
                vendor_code=offer.get('vendorCode', 'disabled'),
                backorders=bool(offer.get('backorders', True)),
                include_cat=include_cat,
                sales_notes=str(offer.get('sales_notes', '') or ''),
                warranty=offer.get('warranty', 'disabled'),
                origin=offer.get('origin', 'disabled'),
                size=bool(offer.get('size', True)),
                params=_option_values(offer.get('params')),
                image_count=max(image_count, 0),
                stock_quantity=bool(offer.get('stock_quantity', True)),
                adult=bool(offer.get('adult', False)),
                group_id=bool(offer.get('group_id', False)),
                vat=offer.get('vat', 'disabled'),
                delivery=str(offer.get('delivery', 'disabled')),
                pickup=str(offer.get('pickup', 'disabled')),
                store=str(offer.get('store', 'disabled')),
            ),
            delivery=DeliveryOptions(
                enabled=bool(delivery.get('delivery_options', False)),
                cost=str(delivery.get('cost', '') or ''),
                days=str(delivery.get('days', '') or ''),
                order_before=str(delivery.get('order_before', '') or ''),
            ),
            currency=currency,
            description_mode=description_mode,
            single_param=bool(misc.get('single_param', False)),
            count_element=misc.get('count') or 'count',
            old_price_element=old_price or 'disabled',
            file_date=bool(misc.get('file_date', False)),
            update_on_change=bool(misc.get('update_on_change', False)),
            cron=misc.get('cron', 'disabled'),
        )


@dataclass
class CatalogCategory:
    """Product category as listed in the feed header."""
    id: int
    name: str
    parent_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'parent_id': self.parent_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CatalogCategory':
        return cls(id=int(data['id']), name=data.get('name', ''), parent_id=data.get('parent_id'))


@dataclass
class CatalogRecord:
    """Normalized catalog record: one simple product or one variation."""
    id: int
    name: str
    url: str = ''
    price: float = 0.0
    regular_price: Optional[float] = None
    sale_price: Optional[float] = None
    category_ids: List[int] = field(default_factory=list)
    pictures: List[str] = field(default_factory=list)
    description: str = ''
    short_description: str = ''
    stock_status: str = 'instock'  # 'instock', 'outofstock' or 'onbackorder'
    stock_quantity: Optional[int] = None
    sku: str = ''
    attributes: Dict[str, List[str]] = field(default_factory=dict)  # slug -> values
    attribute_labels: Dict[str, str] = field(default_factory=dict)  # slug -> label
    weight: str = ''
    dimensions: Tuple[str, str, str] = ('', '', '')  # length, width, height
    group_id: Optional[int] = None  # parent product ID for variations

    @property
    def on_sale(self) -> bool:
        return (
            self.sale_price is not None
            and self.regular_price is not None
            and 0 < self.sale_price < self.regular_price
        )


@dataclass
class ExportPlan:
    """Catalog snapshot sizing for one export run."""
    total_items: int
    page_size: int
    total_steps: int


@dataclass
class StepResult:
    """Progress returned to the caller after each step."""
    done: bool
    percent: int
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'done': self.done, 'percent': self.percent, 'url': self.url}
