"""
File management schemas.
"""

from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class FileEntry(BaseModel):
    """Committed feed file."""
    name: str
    size: int
    date: datetime


class FileListResponse(BaseModel):
    files: List[FileEntry]
    url: Optional[str] = None  # base URL the files are published under


class DeleteFilesRequest(BaseModel):
    files: List[str] = Field(..., min_length=1)


class DeleteFilesResponse(BaseModel):
    deleted: List[str]
