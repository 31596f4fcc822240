"""
Export run schemas.
"""

from pydantic import BaseModel
from typing import Any, Dict, Optional, Literal


ScheduleInterval = Literal["disabled", "hourly", "twicedaily", "daily"]


class PlanResponse(BaseModel):
    """Step plan for the next manual run."""
    total_items: int
    page_size: int
    steps: int


class StepResponse(BaseModel):
    """Progress after one step."""
    done: bool
    percent: int
    url: Optional[str] = None


class RunStatusResponse(BaseModel):
    """Run lock state."""
    held: bool
    owner: Optional[str] = None
    trigger: Optional[str] = None
    acquired_at: Optional[float] = None
    heartbeat_at: Optional[float] = None
    completed: Optional[int] = None
    total_steps: Optional[int] = None
    stale: bool = False


class AbortResponse(BaseModel):
    aborted: bool


class ScheduleUpdate(BaseModel):
    """Change the scheduled export interval."""
    interval: ScheduleInterval


class ScheduleResponse(BaseModel):
    interval: str
    running: bool


class ExportConfigResponse(BaseModel):
    """Resolved feed mapping configuration (sections shop, offer, delivery, misc)."""
    config: Dict[str, Any]


class ExportConfigUpdate(BaseModel):
    """Partial mapping configuration; missing elements keep their defaults."""
    config: Dict[str, Any]


class WebhookResponse(BaseModel):
    """Catalog-change webhook answer."""
    scheduled: bool
    reason: Optional[str] = None
