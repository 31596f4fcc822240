"""
Staged output storage for feed files.

A feed is written to ``<name>.tmp`` step by step and only becomes visible as
``<name>`` through commit. Two backends share the contract: direct access to a
local folder, and a credentialed S3-compatible object store.
"""

import fcntl
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from market_exporter.config import Settings
from market_exporter.core.errors import FilesystemError
from market_exporter.core.security import sanitize_filename

logger = logging.getLogger(__name__)

TEMP_SUFFIX = '.tmp'


def feed_filename(feed_name: str, extension: str, run_date: Optional[date] = None) -> str:
    """
    Build the committed artifact name.

    Args:
        feed_name: Base name, e.g. 'ym-export'
        extension: File extension without dot
        run_date: Date to embed, or None for an undated name

    Returns:
        '<feed_name>-YYYY-MM-DD.<ext>' or '<feed_name>.<ext>'
    """
    if run_date:
        return f"{feed_name}-{run_date.strftime('%Y-%m-%d')}.{extension}"
    return f"{feed_name}.{extension}"


@dataclass
class StagedFile:
    """Handle of an in-progress artifact."""
    name: str

    @property
    def temp_name(self) -> str:
        return self.name + TEMP_SUFFIX


@dataclass
class FileInfo:
    """Committed file as shown by list_files()."""
    name: str
    size: int
    date: datetime

    def to_dict(self):
        return {'name': self.name, 'size': self.size, 'date': self.date.isoformat()}


class Storage(ABC):
    """Owner of every filesystem side effect of an export."""

    public_base_url: Optional[str] = None

    @abstractmethod
    def open(self, name: str, fresh: bool = False) -> StagedFile:
        """Get a handle for ``name``; a fresh open drops any previous staged file first."""

    @abstractmethod
    def append(self, handle: StagedFile, data: bytes, offset: Optional[int] = None) -> int:
        """
        Append ``data`` to the staged file.

        When ``offset`` is given the staged file is first cut back to that
        length, so re-appending a step's bytes at its recorded offset is
        idempotent.

        Returns:
            New size of the staged file
        """

    @abstractmethod
    def commit(self, handle: StagedFile) -> str:
        """Atomically publish the staged file under its final name; returns the URL."""

    @abstractmethod
    def discard(self, handle: StagedFile) -> None:
        """Remove the staged file if present."""

    @abstractmethod
    def list_files(self) -> List[FileInfo]:
        """List committed files (staged files are hidden)."""

    @abstractmethod
    def delete_files(self, names: Iterable[str]) -> List[str]:
        """Delete committed files by name; returns the names actually deleted."""

    @abstractmethod
    def url_for(self, name: str) -> str:
        """Public URL of a committed file."""

    @staticmethod
    def _manageable_names(names: Iterable[str]) -> List[str]:
        cleaned = []
        for raw in names:
            name = sanitize_filename(raw)
            if not name or name.endswith(TEMP_SUFFIX):
                logger.warning(f"Refusing to manage file name {raw!r}")
                continue
            cleaned.append(name)
        return cleaned


class LocalStorage(Storage):
    """Direct filesystem backend."""

    def __init__(self, folder: Path, public_base_url: str):
        self.folder = Path(folder)
        self.public_base_url = public_base_url.rstrip('/')

    def _ensure_dir(self):
        try:
            self.folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Error creating directory {self.folder}: {e}") from e

    def _path(self, name: str) -> Path:
        return self.folder / name

    def open(self, name: str, fresh: bool = False) -> StagedFile:
        self._ensure_dir()
        handle = StagedFile(name=name)
        temp_path = self._path(handle.temp_name)
        if fresh:
            try:
                if temp_path.exists():
                    temp_path.unlink()
                    logger.info(f"Removed stale staged file {handle.temp_name}")
                temp_path.touch()
            except OSError as e:
                raise FilesystemError(f"Error creating staged file {handle.temp_name}: {e}") from e
        return handle

    def append(self, handle: StagedFile, data: bytes, offset: Optional[int] = None) -> int:
        temp_path = self._path(handle.temp_name)
        try:
            fd = os.open(temp_path, os.O_RDWR | os.O_CREAT, 0o644)
            with os.fdopen(fd, 'r+b') as f:
                # Advisory exclusive lock against any other writer of the same staged file
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    end = f.seek(0, os.SEEK_END)
                    if offset is None:
                        offset = end
                    if offset > end:
                        raise FilesystemError(
                            f"Staged file {handle.temp_name} has {end} bytes, expected at least {offset}"
                        )
                    f.truncate(offset)
                    f.seek(offset)
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise FilesystemError(f"Error writing staged file {handle.temp_name}: {e}") from e
        return offset + len(data)

    def commit(self, handle: StagedFile) -> str:
        temp_path = self._path(handle.temp_name)
        if not temp_path.exists():
            raise FilesystemError(f"Staged file {handle.temp_name} does not exist")
        try:
            os.replace(temp_path, self._path(handle.name))
        except OSError as e:
            raise FilesystemError(f"Error renaming {handle.temp_name} to {handle.name}: {e}") from e
        return self.url_for(handle.name)

    def discard(self, handle: StagedFile) -> None:
        try:
            self._path(handle.temp_name).unlink(missing_ok=True)
        except OSError as e:
            raise FilesystemError(f"Error removing staged file {handle.temp_name}: {e}") from e

    def list_files(self) -> List[FileInfo]:
        self._ensure_dir()
        files = []
        for entry in sorted(self.folder.iterdir()):
            if not entry.is_file() or entry.name.endswith(TEMP_SUFFIX):
                continue
            stat = entry.stat()
            files.append(FileInfo(
                name=entry.name,
                size=stat.st_size,
                date=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            ))
        return files

    def delete_files(self, names: Iterable[str]) -> List[str]:
        deleted = []
        for name in self._manageable_names(names):
            path = self._path(name)
            if not path.is_file():
                continue
            try:
                path.unlink()
            except OSError as e:
                raise FilesystemError(f"Error removing {name}: {e}") from e
            deleted.append(name)
        return deleted

    def url_for(self, name: str) -> str:
        return f"{self.public_base_url}/{name}"

    def local_path(self, name: str) -> Optional[Path]:
        """Path of a committed file for download, or None."""
        name = sanitize_filename(name)
        if not name or name.endswith(TEMP_SUFFIX):
            return None
        path = self._path(name)
        return path if path.is_file() else None


def create_s3_client(
    access_key_id: Optional[str],
    secret_access_key: Optional[str],
    region: str,
    endpoint_url: Optional[str] = None
) -> Any:
    """
    Create a boto3 S3 client for an S3-compatible store.

    Args:
        access_key_id: Access key
        secret_access_key: Secret key
        region: Region name
        endpoint_url: Custom endpoint (MinIO, R2, ...) or None for AWS

    Returns:
        Configured boto3 S3 client
    """
    config = Config(
        request_checksum_calculation="when_required",
        response_checksum_validation="when_required",
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        region_name=region,
        config=config,
    )


def _is_missing(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in ("NoSuchKey", "404", "NotFound")


class S3Storage(Storage):
    """
    Credentialed object-store backend.

    Objects cannot be appended to, so the staged object is rewritten with the
    new bytes on every append. Commit is a server-side copy to the final key
    followed by removal of the staged key; readers see either the previous
    final object or the complete new one.
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        prefix: str = '',
        public_base_url: Optional[str] = None,
        url_expires: int = 3600
    ):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix.strip('/')
        self.public_base_url = public_base_url.rstrip('/') if public_base_url else None
        self.url_expires = url_expires

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def _read(self, key: str) -> Optional[bytes]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_missing(e):
                return None
            raise
        return response["Body"].read()

    def open(self, name: str, fresh: bool = False) -> StagedFile:
        handle = StagedFile(name=name)
        if fresh:
            try:
                self.client.delete_object(Bucket=self.bucket, Key=self._key(handle.temp_name))
                self.client.put_object(Bucket=self.bucket, Key=self._key(handle.temp_name), Body=b'')
            except (ClientError, BotoCoreError) as e:
                raise FilesystemError(f"Error creating staged object {handle.temp_name}: {e}") from e
        return handle

    def append(self, handle: StagedFile, data: bytes, offset: Optional[int] = None) -> int:
        key = self._key(handle.temp_name)
        try:
            existing = self._read(key) or b''
            if offset is None:
                offset = len(existing)
            if offset > len(existing):
                raise FilesystemError(
                    f"Staged object {handle.temp_name} has {len(existing)} bytes, expected at least {offset}"
                )
            body = existing[:offset] + data
            self.client.put_object(Bucket=self.bucket, Key=key, Body=body)
        except (ClientError, BotoCoreError) as e:
            raise FilesystemError(f"Error writing staged object {handle.temp_name}: {e}") from e
        return len(body)

    def commit(self, handle: StagedFile) -> str:
        temp_key = self._key(handle.temp_name)
        try:
            self.client.copy_object(
                Bucket=self.bucket,
                Key=self._key(handle.name),
                CopySource={"Bucket": self.bucket, "Key": temp_key},
            )
            self.client.delete_object(Bucket=self.bucket, Key=temp_key)
        except ClientError as e:
            if _is_missing(e):
                raise FilesystemError(f"Staged object {handle.temp_name} does not exist") from e
            raise FilesystemError(f"Error publishing {handle.name}: {e}") from e
        except BotoCoreError as e:
            raise FilesystemError(f"Error publishing {handle.name}: {e}") from e
        return self.url_for(handle.name)

    def discard(self, handle: StagedFile) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key(handle.temp_name))
        except (ClientError, BotoCoreError) as e:
            raise FilesystemError(f"Error removing staged object {handle.temp_name}: {e}") from e

    def list_files(self) -> List[FileInfo]:
        list_prefix = f"{self.prefix}/" if self.prefix else ''
        files = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=list_prefix):
                for obj in page.get("Contents", []):
                    name = obj["Key"][len(list_prefix):]
                    if not name or '/' in name or name.endswith(TEMP_SUFFIX):
                        continue
                    files.append(FileInfo(name=name, size=obj["Size"], date=obj["LastModified"]))
        except (ClientError, BotoCoreError) as e:
            raise FilesystemError(f"Error listing files: {e}") from e
        return sorted(files, key=lambda f: f.name)

    def delete_files(self, names: Iterable[str]) -> List[str]:
        deleted = []
        for name in self._manageable_names(names):
            key = self._key(name)
            try:
                self.client.head_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if _is_missing(e):
                    continue
                raise FilesystemError(f"Error removing {name}: {e}") from e
            try:
                self.client.delete_object(Bucket=self.bucket, Key=key)
            except (ClientError, BotoCoreError) as e:
                raise FilesystemError(f"Error removing {name}: {e}") from e
            deleted.append(name)
        return deleted

    def url_for(self, name: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{name}"
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": self._key(name)},
            ExpiresIn=self.url_expires,
        )


def build_storage(settings: Settings) -> Storage:
    """
    Pick the storage backend configured by STORAGE_BACKEND.

    Raises:
        ValueError: If the backend is unknown or misconfigured
    """
    backend = settings.storage_backend.lower()
    if backend == "direct":
        return LocalStorage(Path(settings.output_dir), settings.public_base_url)
    if backend == "s3":
        if not settings.s3_bucket:
            raise ValueError("S3_BUCKET is required for the s3 storage backend")
        client = create_s3_client(
            settings.s3_access_key_id,
            settings.s3_secret_access_key,
            settings.s3_region,
            settings.s3_endpoint_url,
        )
        return S3Storage(
            client,
            settings.s3_bucket,
            prefix=settings.s3_prefix,
            public_base_url=settings.s3_public_base_url,
        )
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
