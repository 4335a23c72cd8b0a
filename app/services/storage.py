"""Blob storage for export artifacts (local filesystem backend)."""

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path

import structlog

from app.config import settings
from app.core.exceptions import NotFoundError, UpstreamError, ValidationError

logger = structlog.get_logger()


@dataclass
class StoredBlob:
    key: str
    size: int
    content_type: str
    url: str


class LocalBlobStorage:
    """Stores blobs as files under a root directory, one file per key.

    Keys are slash-separated (``{owner_id}/{request_id}``); the content type
    is kept in a ``.meta`` sidecar.
    """

    def __init__(self, root_dir: str | None = None):
        self._root = Path(root_dir or settings.promptforge_storage_dir).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def init_directories(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise ValidationError(f"Invalid storage key '{key}'.")
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise ValidationError(f"Invalid storage key '{key}'.")
        return path

    def _write(self, path: Path, data: bytes, content_type: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(data)
        tmp_path.rename(path)
        path.with_suffix(".meta").write_text(json.dumps({"content_type": content_type}))

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StoredBlob:
        """Write a blob atomically. Raises UpstreamError on I/O failure."""
        path = self._path_for(key)
        try:
            await asyncio.to_thread(self._write, path, data, content_type)
        except OSError as e:
            logger.error("blob_write_failed", key=key, error=str(e))
            raise UpstreamError(f"Failed to write blob '{key}': {e}") from e

        logger.info("blob_written", key=key, size=len(data))
        return StoredBlob(key=key, size=len(data), content_type=content_type, url=path.as_uri())

    def _read(self, path: Path) -> tuple[bytes, str]:
        data = path.read_bytes()
        content_type = "application/octet-stream"
        meta_path = path.with_suffix(".meta")
        if meta_path.exists():
            content_type = json.loads(meta_path.read_text()).get("content_type", content_type)
        return data, content_type

    def _remove(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        path.with_suffix(".meta").unlink(missing_ok=True)
        return True

    async def get(self, key: str) -> tuple[bytes, str]:
        """Return (data, content_type)."""
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(self._read, path)
        except FileNotFoundError as e:
            raise NotFoundError(f"Blob '{key}' not found.") from e
        except OSError as e:
            raise UpstreamError(f"Failed to read blob '{key}': {e}") from e

    async def delete(self, key: str) -> bool:
        """Delete a blob. Returns False if it did not exist."""
        path = self._path_for(key)
        removed = await asyncio.to_thread(self._remove, path)
        if removed:
            logger.info("blob_deleted", key=key)
        return removed
