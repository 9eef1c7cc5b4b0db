"""Filesystem-backed object storage used for local runs."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from urllib.parse import urlparse

from src.errors import DownloadFailure

LOG = logging.getLogger(__name__)


def key_from_url(file_url: str) -> str:
    """Return the object key for a stored URL (``https://host/key`` or bare key)."""
    parsed = urlparse(file_url)
    if parsed.scheme in {"http", "https", "s3", "r2", "file"}:
        return parsed.path.lstrip("/")
    return file_url.lstrip("/")


class LocalObjectStorage:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _path_for(self, key: str) -> Path:
        candidate = (self.root / key_from_url(key)).resolve()
        if self.root not in candidate.parents and candidate != self.root:
            raise DownloadFailure(f"Object key escapes storage root: {key}")
        return candidate

    async def download(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise DownloadFailure(f"Failed to download {key}: {exc}") from exc
        LOG.debug("object_downloaded", extra={"key": key, "bytes": len(data)})
        return data

    async def upload(self, key: str, data: bytes) -> str:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        return key_from_url(key)


__all__ = ["LocalObjectStorage", "key_from_url"]
