"""
Catalog-change webhook: a product was created or updated in WooCommerce.
"""

import logging
from fastapi import APIRouter, BackgroundTasks, Depends, Request

from market_exporter.api.errors import http_error
from market_exporter.core.errors import ExportError, ExportPermissionError
from market_exporter.core.feed.models import FeedConfig
from market_exporter.core.feed.runner import StepRunner
from market_exporter.core.run_lock import RunRecord, TRIGGER_UPDATE
from market_exporter.core.security import verify_webhook_signature
from market_exporter.deps import ExporterServices, get_services
from market_exporter.schemas.export import WebhookResponse

router = APIRouter()

logger = logging.getLogger(__name__)


async def run_update_export(runner: StepRunner, record: RunRecord):
    """Background task: the runner logs failures and releases the lock."""
    try:
        await runner.run_acquired(record)
    except ExportError as e:
        logger.warning(f"Update-triggered export did not complete: {e.message}")


@router.post("/product-updated", response_model=WebhookResponse)
async def product_updated(
    request: Request,
    background_tasks: BackgroundTasks,
    services: ExporterServices = Depends(get_services)
):
    """
    Regenerate the feed after a catalog change.

    Skipped when ``misc.update_on_change`` is off or another run is in
    flight. When WEBHOOK_SECRET is set the X-WC-Webhook-Signature header must
    match the body.
    """
    body = await request.body()

    # WooCommerce pings a new webhook with a form body and no signature
    if body.startswith(b"webhook_id="):
        return WebhookResponse(scheduled=False, reason="ping")

    secret = services.settings.webhook_secret
    if secret and not verify_webhook_signature(body, request.headers.get("X-WC-Webhook-Signature"), secret):
        raise http_error(ExportPermissionError("Invalid webhook signature"))

    try:
        config = FeedConfig.from_dict(services.load_config())
        if not config.update_on_change:
            return WebhookResponse(scheduled=False, reason="disabled")

        record = await services.runner.acquire_background(TRIGGER_UPDATE)
    except ExportError as e:
        raise http_error(e)

    if record is None:
        return WebhookResponse(scheduled=False, reason="run in progress")

    background_tasks.add_task(run_update_export, services.runner, record)
    return WebhookResponse(scheduled=True)
