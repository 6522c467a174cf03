"""Materialize a project's backup into a fresh, empty filesystem."""

from __future__ import annotations

import logging
import posixpath
from typing import TYPE_CHECKING

from cli.exceptions import (
    AuthorizationError,
    BackupError,
    ProjectNotFoundError,
    RestoreConflictError,
)
from cli.hasher import hash_bytes

if TYPE_CHECKING:
    from collections.abc import Iterable

    from cli.backup_client import BackupRemote, RestoreEntry
    from cli.filesystem import EphemeralFilesystem

logger = logging.getLogger(__name__)


def derive_folders(paths: Iterable[str]) -> list[str]:
    """Every proper ancestor directory of ``paths``, parents before children."""
    folders: set[str] = set()
    for path in paths:
        parent = posixpath.dirname(path)
        while parent not in ("/", ""):
            folders.add(parent)
            parent = posixpath.dirname(parent)
    return sorted(folders, key=lambda f: (f.count("/"), f))


class RestoreEngine:
    def __init__(self, remote: BackupRemote) -> None:
        self.remote = remote

    async def restore(self, project_id: str, target: EphemeralFilesystem) -> bool:
        """Restore the backup of ``project_id`` into ``target``.

        Returns False when there is nothing to restore: no backup, an empty
        one, a caller whose identity is not established yet (401), or an
        unreachable service. A 403 is raised so the caller can
        re-authenticate. Individual folders and files that fail are logged
        and skipped.
        """
        if not await target.is_empty():
            raise RestoreConflictError("Restore target is not empty")

        try:
            snapshot = await self.remote.fetch_restore(project_id)
        except ProjectNotFoundError:
            logger.info("No backup for project %s", project_id)
            return False
        except AuthorizationError as exc:
            if not exc.unauthenticated:
                raise
            logger.info("Not authenticated, skipping restore of project %s", project_id)
            return False
        except BackupError as exc:
            logger.warning("Restore of project %s unavailable: %s", project_id, exc)
            return False

        if not snapshot.files:
            logger.info("Backup of project %s is empty", project_id)
            return False

        folders = set(snapshot.folders) | set(derive_folders(f.path for f in snapshot.files))
        for folder in sorted(folders, key=lambda f: (f.count("/"), f)):
            try:
                await target.mkdir(folder, parents=True)
            except (OSError, ValueError) as exc:
                logger.warning("Cannot create folder %s: %s", folder, exc)

        restored = 0
        for entry in snapshot.files:
            if await self._restore_file(target, entry):
                restored += 1
        logger.info(
            "Restored %d of %d files for project %s", restored, len(snapshot.files), project_id
        )
        return True

    async def _restore_file(self, target: EphemeralFilesystem, entry: RestoreEntry) -> bool:
        try:
            if entry.content is not None:
                await target.write_file(entry.path, entry.content)
            elif entry.url:
                data = await self.remote.fetch_blob(entry.url)
                if hash_bytes(data) != entry.hash:
                    logger.warning("Hash mismatch for restored blob %s", entry.path)
                await target.write_file(entry.path, data)
            else:
                logger.warning("Backup entry %s has neither content nor URL", entry.path)
                return False
        except (BackupError, OSError, ValueError) as exc:
            logger.warning("Cannot restore %s: %s", entry.path, exc)
            return False
        return True
