"""
YML writer for Yandex Market feeds.

The document is rendered in three independent pieces (header, offers, footer)
so it can be appended to a staged file one step at a time. Rendering is pure:
the same records and config always produce the same bytes.

Elements are built with ElementTree, which escapes text and attributes.
Only the unclosed document opener and the footer are literal markup.
"""

import re
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from market_exporter.core.errors import FeedConfigError
from .models import CatalogCategory, CatalogRecord, FeedConfig


INDENT = '  '

SHOP_NAME_MAX_LENGTH = 20
SALES_NOTES_MAX_LENGTH = 50
DESCRIPTION_MAX_LENGTH = 3000

# Control characters XML 1.0 cannot carry at all; the serializer does not drop them
_ILLEGAL_XML_CHARS = re.compile('[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]')


def clean_text(value) -> str:
    """str() of a value with characters illegal in XML removed."""
    return _ILLEGAL_XML_CHARS.sub('', str(value))


def strip_html(description: str) -> str:
    """Strip HTML tags and shortcodes from description, returning plain text."""
    if not description:
        return ''
    description = re.sub(r'<[^>]+>', ' ', description)
    description = re.sub(r'\[/?[a-zA-Z_][^\]]*\]', '', description)
    description = re.sub(r'\s+', ' ', description).strip()
    return description


def _sub(
    parent: ET.Element,
    tag: str,
    text: Optional[object] = None,
    attributes: Optional[Dict[str, object]] = None
) -> ET.Element:
    """SubElement with stringified text; blank attributes are left out."""
    attrib = {
        name: clean_text(value)
        for name, value in (attributes or {}).items()
        if value is not None and value != ''
    }
    element = ET.SubElement(parent, tag, attrib)
    if text is not None:
        element.text = clean_text(text)
    return element


def _serialize(element: ET.Element, level: int) -> str:
    """One element on its own line(s), indented for nesting depth ``level``."""
    ET.indent(element, space=INDENT, level=level)
    return f'{INDENT * level}{ET.tostring(element, encoding="unicode")}\n'


def format_price(value: float) -> str:
    """100.0 -> '100', 99.9 -> '99.90'."""
    if float(value).is_integer():
        return str(int(value))
    return f'{value:.2f}'


def exported_categories(categories: Iterable[CatalogCategory], config: FeedConfig) -> List[CatalogCategory]:
    """Categories listed in the header: all of them, or only the included ones."""
    include = set(config.offer.include_cat)
    ordered = sorted(categories, key=lambda c: c.id)
    if not include:
        return ordered
    return [c for c in ordered if c.id in include]


def render_header(
    config: FeedConfig,
    categories: Iterable[CatalogCategory],
    generated_at: datetime
) -> str:
    """
    Render everything up to and including the opening <offers> tag.

    Args:
        config: Resolved feed configuration
        categories: Category tree of the catalog snapshot
        generated_at: Run start time, written to the yml_catalog date attribute

    Returns:
        Header markup

    Raises:
        FeedConfigError: If the shop name is missing
    """
    shop = config.shop
    name = shop.name.strip()
    company = shop.company.strip() or name
    if not name:
        raise FeedConfigError("Shop name is required")

    shop_elem = ET.Element('shop')
    _sub(shop_elem, 'name', name[:SHOP_NAME_MAX_LENGTH])
    _sub(shop_elem, 'company', company)

    # Optional shop elements are omitted when blank
    for tag in ('url', 'platform', 'version', 'agency', 'email'):
        value = getattr(shop, tag).strip()
        if value:
            _sub(shop_elem, tag, value)

    currencies = _sub(shop_elem, 'currencies')
    _sub(currencies, 'currency', attributes={'id': config.currency, 'rate': '1'})

    listed = exported_categories(categories, config)
    listed_ids = {c.id for c in listed}
    categories_elem = _sub(shop_elem, 'categories')
    for category in listed:
        attributes = {'id': category.id}
        # parentId must reference a category present in the feed
        if category.parent_id and category.parent_id in listed_ids:
            attributes['parentId'] = category.parent_id
        _sub(categories_elem, 'category', category.name, attributes)

    delivery = config.delivery
    if delivery.enabled and delivery.cost != '' and delivery.days != '':
        options = _sub(shop_elem, 'delivery-options')
        _sub(options, 'option', attributes={
            'cost': delivery.cost,
            'days': delivery.days,
            'order-before': delivery.order_before,
        })

    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>\n',
        f'<yml_catalog date="{generated_at.strftime("%Y-%m-%d %H:%M")}">\n',
        f'{INDENT}<shop>\n',
    ]
    parts.extend(_serialize(child, 2) for child in shop_elem)
    parts.append(f'{INDENT * 2}<offers>\n')
    return ''.join(parts)


def render_footer() -> str:
    """Close offers, shop and yml_catalog."""
    return f'{INDENT * 2}</offers>\n{INDENT}</shop>\n</yml_catalog>\n'


def is_exported(record: CatalogRecord, config: FeedConfig) -> bool:
    """
    Apply the configured inclusion filters to a record.

    Records are skipped when outside the included categories, on backorder
    while backorders are disabled, or without a positive price.
    """
    include = config.offer.include_cat
    if include and not set(record.category_ids) & set(include):
        return False
    if record.stock_status == 'onbackorder' and not config.offer.backorders:
        return False
    if not record.price or record.price <= 0:
        return False
    return True


def _attribute_value(record: CatalogRecord, source: str) -> Optional[str]:
    """Resolve a mapping like 'pa_brand' or 'sku' to the record's value."""
    if not source or source == 'disabled':
        return None
    if source == 'sku':
        return record.sku or None
    slug = source[3:] if source.startswith('pa_') else source
    values = record.attributes.get(slug)
    if values:
        return values[0]
    return None


def _description(record: CatalogRecord, mode: str) -> str:
    if mode == 'long':
        text = record.description
    elif mode == 'short':
        text = record.short_description
    else:
        text = record.description or record.short_description
    return strip_html(text)[:DESCRIPTION_MAX_LENGTH]


def _category_id(record: CatalogRecord, config: FeedConfig) -> Optional[int]:
    include = config.offer.include_cat
    for category_id in record.category_ids:
        if not include or category_id in include:
            return category_id
    return None


def render_offer(record: CatalogRecord, config: FeedConfig) -> str:
    """
    Render one <offer> element.

    Optional elements are omitted when the record has no value for them.
    """
    offer = config.offer
    attributes = {
        'id': record.id,
        'available': 'true' if record.stock_status == 'instock' else 'false',
    }
    if offer.group_id and record.group_id:
        attributes['group_id'] = record.group_id

    offer_elem = ET.Element('offer')
    for name, value in attributes.items():
        offer_elem.set(name, clean_text(value))

    if record.url:
        _sub(offer_elem, 'url', record.url)

    _sub(offer_elem, 'price', format_price(record.price))
    if record.on_sale and config.old_price_element in ('oldprice', 'old_price'):
        _sub(offer_elem, config.old_price_element, format_price(record.regular_price))
    _sub(offer_elem, 'currencyId', config.currency)

    category_id = _category_id(record, config)
    if category_id is not None:
        _sub(offer_elem, 'categoryId', category_id)

    for picture in [p for p in record.pictures if p][:offer.image_count]:
        _sub(offer_elem, 'picture', picture)

    for tag in ('delivery', 'pickup', 'store'):
        value = getattr(offer, tag)
        if value in ('true', 'false'):
            _sub(offer_elem, tag, value)

    _sub(offer_elem, 'name', record.name)

    for tag, source in (
        ('vendor', offer.vendor),
        ('model', offer.model),
        ('typePrefix', offer.type_prefix),
        ('vendorCode', offer.vendor_code),
    ):
        value = _attribute_value(record, source)
        if value:
            _sub(offer_elem, tag, value)

    description = _description(record, config.description_mode)
    if description:
        _sub(offer_elem, 'description', description)

    if offer.sales_notes.strip():
        _sub(offer_elem, 'sales_notes', offer.sales_notes.strip()[:SALES_NOTES_MAX_LENGTH])

    warranty = _attribute_value(record, offer.warranty)
    if warranty:
        _sub(offer_elem, 'manufacturer_warranty', warranty)
    origin = _attribute_value(record, offer.origin)
    if origin:
        _sub(offer_elem, 'country_of_origin', origin)

    if offer.adult:
        _sub(offer_elem, 'adult', 'true')

    if offer.size:
        if record.weight:
            _sub(offer_elem, 'weight', record.weight)
        if all(record.dimensions):
            _sub(offer_elem, 'dimensions', '/'.join(record.dimensions))

    for slug in offer.params:
        slug = slug[3:] if slug.startswith('pa_') else slug
        values = [v for v in record.attributes.get(slug, []) if v]
        if not values:
            continue
        label = record.attribute_labels.get(slug, slug)
        if config.single_param:
            for value in values:
                _sub(offer_elem, 'param', value, {'name': label})
        else:
            _sub(offer_elem, 'param', ', '.join(values), {'name': label})

    if offer.vat != 'disabled' and offer.vat:
        _sub(offer_elem, 'vat', offer.vat)

    if offer.stock_quantity and record.stock_quantity is not None:
        _sub(offer_elem, config.count_element, max(record.stock_quantity, 0))

    return _serialize(offer_elem, 3)


def render_offers(records: Iterable[CatalogRecord], config: FeedConfig) -> str:
    """Render the offers of one page; excluded records produce nothing."""
    return ''.join(render_offer(r, config) for r in records if is_exported(r, config))
