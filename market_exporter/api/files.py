"""
Committed feed file endpoints.
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse, RedirectResponse

from market_exporter.api.errors import http_error
from market_exporter.core.auth import require_admin
from market_exporter.core.errors import ExportError
from market_exporter.core.security import sanitize_filename
from market_exporter.core.storage import TEMP_SUFFIX, LocalStorage
from market_exporter.deps import ExporterServices, get_services
from market_exporter.schemas.files import (
    DeleteFilesRequest,
    DeleteFilesResponse,
    FileEntry,
    FileListResponse,
)

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("", response_model=FileListResponse, dependencies=[Depends(require_admin)])
async def list_files(services: ExporterServices = Depends(get_services)):
    """List committed feed files; in-progress files are not shown."""
    storage = services.storage
    try:
        files = storage.list_files()
    except ExportError as e:
        raise http_error(e)
    return FileListResponse(
        files=[FileEntry(name=f.name, size=f.size, date=f.date) for f in files],
        url=storage.public_base_url,
    )


@router.delete("", response_model=DeleteFilesResponse, dependencies=[Depends(require_admin)])
async def delete_files(payload: DeleteFilesRequest, services: ExporterServices = Depends(get_services)):
    """Delete committed files by name; unknown or unsafe names are skipped."""
    try:
        deleted = services.storage.delete_files(payload.files)
    except ExportError as e:
        raise http_error(e)
    logger.info(f"Deleted files: {deleted}")
    return DeleteFilesResponse(deleted=deleted)


@router.get("/{name}")
async def download_file(name: str, services: ExporterServices = Depends(get_services)):
    """
    Serve a committed feed.

    The aggregator fetches feeds from here, so no admin key is required.
    Object-store feeds are served by redirect.
    """
    safe_name = sanitize_filename(name)
    if not safe_name or safe_name != name or name.endswith(TEMP_SUFFIX):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    storage = services.storage
    if isinstance(storage, LocalStorage):
        path = storage.local_path(safe_name)
        if path is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
        return FileResponse(path, media_type="application/xml", filename=safe_name)

    if safe_name not in {f.name for f in storage.list_files()}:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return RedirectResponse(storage.url_for(safe_name), status_code=status.HTTP_307_TEMPORARY_REDIRECT)
