"""Blob storage for large and binary workspace files."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from backend.exceptions import InvalidPathError

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[0-9a-f]{32}-[A-Za-z0-9._-]{1,128}$")
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class StoredBlob:
    """Location of an uploaded blob."""

    url: str
    key: str


@runtime_checkable
class BlobStore(Protocol):
    """Content upload/delete backend returning stable URLs."""

    async def upload(self, data: bytes, filename: str, content_type: str) -> StoredBlob:
        """Store ``data`` and return its URL and deletion key."""
        ...

    async def delete(self, keys: Iterable[str]) -> None:
        """Delete blobs by key. Best-effort: failures are logged, never raised."""
        ...


def _sanitize_filename(filename: str) -> str:
    base = filename.rsplit("/", 1)[-1]
    cleaned = _UNSAFE_NAME_CHARS.sub("_", base).strip("._")
    return cleaned[:128] or "blob"


def validate_blob_key(key: str) -> str:
    """Return ``key`` unchanged if it is a well-formed blob key."""
    if not _KEY_PATTERN.match(key):
        raise InvalidPathError(f"Invalid blob key: {key}")
    return key


class LocalBlobStore:
    """Blob store backed by a local directory, served at ``/api/blobs/<key>``."""

    def __init__(self, root: Path, public_base_url: str) -> None:
        self.root = root
        self.public_base_url = public_base_url.rstrip("/")

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/api/blobs/{key}"

    def path_for(self, key: str) -> Path:
        """Resolve the on-disk location of a blob key."""
        return self.root / validate_blob_key(key)

    async def upload(self, data: bytes, filename: str, content_type: str) -> StoredBlob:
        key = f"{uuid.uuid4().hex}-{_sanitize_filename(filename)}"
        target = self.path_for(key)

        def _write() -> None:
            self.root.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug("Stored blob %s (%d bytes, %s)", key, len(data), content_type)
        return StoredBlob(url=self.url_for(key), key=key)

    async def delete(self, keys: Iterable[str]) -> None:
        for key in keys:
            try:
                target = self.path_for(key)
                await asyncio.to_thread(target.unlink, missing_ok=True)
            except (OSError, InvalidPathError) as exc:
                logger.warning("Failed to delete blob %s (continuing anyway): %s", key, exc)
