"""
Translation of pipeline errors into HTTP errors.
"""

from fastapi import HTTPException

from market_exporter.core.errors import ExportError


def http_error(error: ExportError) -> HTTPException:
    """Map an ExportError to an HTTPException carrying its code in X-Error-Code."""
    return HTTPException(
        status_code=error.status_code,
        detail=error.message,
        headers={"X-Error-Code": error.code}
    )
