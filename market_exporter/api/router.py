"""
Main API router for v1.
"""

from fastapi import APIRouter
from market_exporter.api import export, files, hooks

router = APIRouter()

router.include_router(export.router, prefix="/export", tags=["export"])
router.include_router(files.router, prefix="/files", tags=["files"])
router.include_router(hooks.router, prefix="/hooks", tags=["hooks"])
