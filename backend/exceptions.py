"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients.
  The global handler logs the full message at ERROR and returns a generic
  "Internal server error" (500) to the client.
- Domain errors below carry a message that is safe to forward. Each one is
  mapped to an HTTP status by a global handler in ``backend/main.py``.
- Per-file failures during a sync pass are never raised; they are collected
  into the ``errors`` list of the sync response.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``backend/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class ProjectNotFoundError(Exception):
    """The project does not exist (404)."""


class ProjectAccessError(Exception):
    """The project exists but belongs to another user (403)."""


class ManifestConflictError(Exception):
    """The stored manifest changed since the client last read it (409)."""


class FileTooLargeError(Exception):
    """An uploaded file exceeds the configured size ceiling (413)."""

    def __init__(self, path: str, size: int) -> None:
        super().__init__(f"{path}: File too large ({size} bytes)")
        self.path = path
        self.size = size


class InvalidPathError(ValueError):
    """A client-supplied project path or blob key is malformed (400)."""
