"""Exception hierarchy for the workspace sync and restore engine.

Per-file failures never raise out of a sync pass; they are aggregated into
``SyncOutcome.errors``. The exceptions below are pass-level: they abort the
operation and surface to the caller (or, for scheduled syncs, to a
``sync-error`` event).
"""

from __future__ import annotations


class BackupError(Exception):
    """Base class for all engine errors."""


class RemoteUnavailableError(BackupError):
    """The backup service could not be reached or failed with a 5xx status."""


class RemoteRequestError(BackupError):
    """The backup service rejected a request (4xx other than auth/404/409)."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"Request rejected ({status_code}): {detail}")
        self.status_code = status_code
        self.detail = detail


class AuthorizationError(BackupError):
    """The caller is not authenticated (401) or not allowed (403)."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code

    @property
    def unauthenticated(self) -> bool:
        return self.status_code == 401


class ProjectNotFoundError(BackupError):
    """The project has no backup on the service (404)."""


class ManifestConflictError(BackupError):
    """Another sync committed the manifest since this pass read it (409)."""


class RestoreConflictError(BackupError):
    """Restore was asked to write into a non-empty filesystem."""
