"""
Schemas shared by every router.
"""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Liveness check answer."""
    ok: bool = True
