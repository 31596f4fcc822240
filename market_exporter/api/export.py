"""
Export run endpoints: manual stepping, run status, schedule and mapping config.
"""

import logging
import re
from typing import Any, Dict
from fastapi import APIRouter, Depends, Request

from market_exporter.api.errors import http_error
from market_exporter.config import merge_export_defaults, save_export_config
from market_exporter.core.auth import require_admin
from market_exporter.core.errors import ExportError, ValidationError
from market_exporter.core.feed.models import FeedConfig
from market_exporter.core.scheduler import validate_interval
from market_exporter.deps import ExporterServices, get_services
from market_exporter.schemas.export import (
    AbortResponse,
    ExportConfigResponse,
    ExportConfigUpdate,
    PlanResponse,
    RunStatusResponse,
    ScheduleResponse,
    ScheduleUpdate,
    StepResponse,
)

router = APIRouter(dependencies=[Depends(require_admin)])

logger = logging.getLogger(__name__)

_INT_RE = re.compile(r'\s*-?[0-9]+\s*')


def _int_param(params: Dict[str, Any], name: str) -> int:
    """Read a required integer parameter; numeric strings are accepted."""
    value = params.get(name)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and _INT_RE.fullmatch(value):
        return int(value)
    raise ValidationError(f"Missing or malformed parameter: {name}")


@router.get("/plan", response_model=PlanResponse)
async def get_plan(services: ExporterServices = Depends(get_services)):
    """Catalog size and step count to drive a manual run with."""
    try:
        plan = await services.runner.plan()
    except ExportError as e:
        raise http_error(e)
    return PlanResponse(total_items=plan.total_items, page_size=plan.page_size, steps=plan.total_steps)


@router.post("/step", response_model=StepResponse)
async def run_step(request: Request, services: ExporterServices = Depends(get_services)):
    """
    Run one step of a manual export.

    Parameters ``step`` and ``steps`` come from the JSON body or the query
    string. Missing or malformed values answer 500 with X-Error-Code
    ``generation-error``.
    """
    params: Dict[str, Any] = dict(request.query_params)
    body = await request.body()
    if body:
        try:
            data = await request.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            params.update(data)

    try:
        step = _int_param(params, "step")
        steps = _int_param(params, "steps")
        result = await services.runner.run_step(step, steps)
    except ExportError as e:
        raise http_error(e)

    return StepResponse(**result.to_dict())


@router.get("/status", response_model=RunStatusResponse)
async def get_status(services: ExporterServices = Depends(get_services)):
    return RunStatusResponse(**await services.runner.status())


@router.delete("/run", response_model=AbortResponse)
async def abort_run(services: ExporterServices = Depends(get_services)):
    """Abort the active run and drop its staged file."""
    try:
        aborted = await services.runner.abort()
    except ExportError as e:
        raise http_error(e)
    return AbortResponse(aborted=aborted)


@router.get("/schedule", response_model=ScheduleResponse)
async def get_schedule(services: ExporterServices = Depends(get_services)):
    scheduler = services.scheduler
    return ScheduleResponse(interval=scheduler.interval, running=scheduler.running)


@router.put("/schedule", response_model=ScheduleResponse)
async def update_schedule(payload: ScheduleUpdate, services: ExporterServices = Depends(get_services)):
    """Replace the scheduled export interval."""
    scheduler = services.scheduler
    await scheduler.update_schedule(payload.interval)
    return ScheduleResponse(interval=scheduler.interval, running=scheduler.running)


@router.get("/config", response_model=ExportConfigResponse)
async def get_export_config(services: ExporterServices = Depends(get_services)):
    try:
        config = services.load_config()
    except ExportError as e:
        raise http_error(e)
    return ExportConfigResponse(config=config)


@router.put("/config", response_model=ExportConfigResponse)
async def update_export_config(payload: ExportConfigUpdate, services: ExporterServices = Depends(get_services)):
    """
    Save the feed mapping configuration.

    The config is validated before it is written. A changed ``misc.cron``
    reschedules the background export.
    """
    config = merge_export_defaults(payload.config)
    try:
        feed_config = FeedConfig.from_dict(config)
        previous_cron = FeedConfig.from_dict(services.load_config()).cron
        validate_interval(feed_config.cron)
    except ExportError as e:
        raise http_error(e)
    except ValueError as e:
        raise http_error(ValidationError(str(e)))

    save_export_config(config, services.settings.export_config_path)
    logger.info("Export config saved")

    if feed_config.cron != previous_cron:
        await services.scheduler.update_schedule(feed_config.cron)

    return ExportConfigResponse(config=config)
