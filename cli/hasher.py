"""Content addressing: path-independent digests of file bytes."""

from __future__ import annotations

import hashlib

HASH_PREFIX = "sha256-"


def hash_bytes(data: bytes) -> str:
    """Return the content hash of ``data``, e.g. ``"sha256-2cf24d..."``."""
    return HASH_PREFIX + hashlib.sha256(data).hexdigest()


def hash_text(text: str) -> str:
    """Hash text by its UTF-8 encoding, so text and bytes of a file agree."""
    return hash_bytes(text.encode("utf-8"))
