"""
Feed export core module.
"""

from .models import CatalogRecord, CatalogCategory, FeedConfig, ExportPlan, StepResult
from .catalog import CatalogSource, WooCatalogSource
from .yml_writer import render_header, render_offers, render_footer
from .runner import StepRunner

__all__ = [
    'CatalogRecord',
    'CatalogCategory',
    'FeedConfig',
    'ExportPlan',
    'StepResult',
    'CatalogSource',
    'WooCatalogSource',
    'render_header',
    'render_offers',
    'render_footer',
    'StepRunner'
]
