"""
Market Exporter backend: WooCommerce catalog to Yandex Market YML feed.
"""

__version__ = "2.1.0"
