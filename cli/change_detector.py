"""Diff the walked tree against the remote manifest."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cli.exceptions import AuthorizationError, BackupError, ProjectNotFoundError
from cli.hasher import hash_bytes, hash_text

if TYPE_CHECKING:
    from cli.backup_client import BackupRemote
    from cli.filesystem import EphemeralFilesystem
    from cli.walker import FileRecord

logger = logging.getLogger(__name__)


@dataclass
class ChangeSet:
    """Result of one detection pass.

    ``local_hashes`` is the post-sync manifest the pass converges to.
    ``manifest_available`` is False when the remote manifest could not be
    read and every local file was assumed changed.
    """

    changed: list[FileRecord] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    local_hashes: dict[str, str] = field(default_factory=dict)
    previous_manifest: dict[str, str] = field(default_factory=dict)
    manifest_available: bool = True
    last_sync_at: str | None = None

    @property
    def has_changes(self) -> bool:
        return bool(self.changed or self.deleted)


class ChangeDetector:
    def __init__(self, remote: BackupRemote, filesystem: EphemeralFilesystem) -> None:
        self.remote = remote
        self.filesystem = filesystem

    async def _hash_record(self, record: FileRecord) -> str | None:
        if record.content is not None:
            return hash_text(record.content)
        try:
            return hash_bytes(await self.filesystem.read_bytes(record.path))
        except OSError as exc:
            logger.warning("Cannot hash %s: %s", record.path, exc)
            return None

    async def detect(self, project_id: str, records: list[FileRecord]) -> ChangeSet:
        """Compute the changed and deleted sets for ``records``.

        Authorization and missing-project errors propagate. Any other remote
        failure while reading the manifest falls back to "everything
        changed, nothing deleted".
        """
        files = [r for r in records if r.is_file]
        try:
            snapshot = await self.remote.fetch_manifest(project_id)
        except (AuthorizationError, ProjectNotFoundError):
            raise
        except BackupError as exc:
            logger.warning(
                "Manifest unavailable for project %s, treating all files as changed: %s",
                project_id,
                exc,
            )
            local_hashes: dict[str, str] = {}
            for record in files:
                digest = await self._hash_record(record)
                if digest is not None:
                    local_hashes[record.path] = digest
            return ChangeSet(
                changed=files,
                deleted=[],
                local_hashes=local_hashes,
                manifest_available=False,
            )

        previous = snapshot.entries
        changes = ChangeSet(
            previous_manifest=dict(previous), last_sync_at=snapshot.last_sync_at
        )
        for record in files:
            digest = await self._hash_record(record)
            if digest is None:
                # Unreadable: keep whatever the remote already holds.
                if record.path in previous:
                    changes.local_hashes[record.path] = previous[record.path]
                continue
            changes.local_hashes[record.path] = digest
            if previous.get(record.path) != digest:
                changes.changed.append(record)

        present = {r.path for r in files}
        changes.deleted = sorted(path for path in previous if path not in present)
        logger.debug(
            "Project %s: %d changed, %d deleted of %d files",
            project_id,
            len(changes.changed),
            len(changes.deleted),
            len(files),
        )
        return changes
