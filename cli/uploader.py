"""Dual-route uploader: text store for small text, blob store for the rest."""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from cli.backup_client import PendingTextFile
from cli.exceptions import (
    AuthorizationError,
    BackupError,
    ProjectNotFoundError,
    RemoteRequestError,
)
from cli.hasher import hash_bytes, hash_text

if TYPE_CHECKING:
    from cli.backup_client import BackupRemote, SyncBatchResult
    from cli.change_detector import ChangeSet
    from cli.config import EngineConfig
    from cli.filesystem import EphemeralFilesystem
    from cli.walker import FileRecord

logger = logging.getLogger(__name__)

# Errors that abort the whole pass instead of a single file.
_FATAL = (AuthorizationError, ProjectNotFoundError)


@dataclass
class SyncOutcome:
    """Report of one sync pass."""

    synced: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    last_sync_at: str | None = None
    deleted_count: int = 0


def guess_mime_type(path: str) -> str | None:
    mime_type, _ = mimetypes.guess_type(path)
    return mime_type


class DualRouteUploader:
    def __init__(
        self, remote: BackupRemote, filesystem: EphemeralFilesystem, config: EngineConfig
    ) -> None:
        self.remote = remote
        self.filesystem = filesystem
        self.config = config

    def _routes_to_blob(self, record: FileRecord) -> bool:
        return record.content is None or record.size > self.config.text_size_limit

    async def upload(self, project_id: str, changes: ChangeSet) -> SyncOutcome:
        """Upload ``changes``, apply deletions once, then commit the manifest.

        Per-file failures end up in ``outcome.errors`` and their manifest
        entries revert to the previously committed hash. The final manifest
        commit always runs after every batch has been attempted.
        """
        outcome = SyncOutcome()
        failed: set[str] = set()
        uploaded_hashes: dict[str, str] = {}
        text_files: list[PendingTextFile] = []
        blob_files: list[FileRecord] = []

        for record in changes.changed:
            if record.size > self.config.max_asset_size:
                outcome.errors.append(f"{record.path}: File too large ({record.size} bytes)")
                failed.add(record.path)
            elif self._routes_to_blob(record):
                blob_files.append(record)
            else:
                assert record.content is not None
                text_files.append(
                    PendingTextFile(
                        path=record.path,
                        content=record.content,
                        hash=hash_text(record.content),
                        size=record.size,
                        mime_type=guess_mime_type(record.path),
                    )
                )

        deletions_failed = await self._send_text_batches(
            project_id, text_files, list(changes.deleted), outcome, failed
        )
        if not deletions_failed:
            outcome.deleted_count = len(changes.deleted)

        for record in blob_files:
            digest = await self._send_blob(project_id, record, outcome, failed)
            if digest is not None:
                uploaded_hashes[record.path] = digest

        manifest = self._next_manifest(changes, failed, uploaded_hashes, deletions_failed)
        commit_kwargs: dict[str, Any] = {"manifest": manifest}
        if changes.manifest_available:
            commit_kwargs["expected_last_sync_at"] = changes.last_sync_at
        result = await self.remote.sync_batch(project_id, [], [], **commit_kwargs)
        outcome.last_sync_at = result.last_sync_at
        outcome.errors.extend(result.errors)

        logger.info(
            "Sync pass for project %s: %d synced, %d skipped, %d deleted, %d errors",
            project_id,
            outcome.synced,
            outcome.skipped,
            outcome.deleted_count,
            len(outcome.errors),
        )
        return outcome

    async def _send_text_batches(
        self,
        project_id: str,
        files: list[PendingTextFile],
        deleted: list[str],
        outcome: SyncOutcome,
        failed: set[str],
    ) -> bool:
        """Send text files in bounded batches; return True if deletions failed."""
        size = max(1, self.config.batch_size)
        batches = [files[i : i + size] for i in range(0, len(files), size)]
        if not batches and deleted:
            batches = [[]]

        deletions_failed = False
        for index, batch in enumerate(batches):
            batch_deleted = deleted if index == 0 else []
            try:
                result = await self.remote.sync_batch(project_id, batch, batch_deleted)
            except _FATAL:
                raise
            except RemoteRequestError as exc:
                if len(batch) <= 1:
                    self._fail_batch(batch, exc, outcome, failed)
                    deletions_failed = deletions_failed or bool(batch_deleted)
                    continue
                # Rejected as a whole: retry one file at a time so one bad
                # file cannot take the rest of the batch with it.
                logger.warning("Batch rejected (%s), retrying files one by one", exc)
                for position, single in enumerate(batch):
                    retry_deleted = batch_deleted if position == 0 else []
                    if await self._send_single(project_id, single, retry_deleted, outcome, failed):
                        deletions_failed = deletions_failed or bool(retry_deleted)
                continue
            except BackupError as exc:
                self._fail_batch(batch, exc, outcome, failed)
                deletions_failed = deletions_failed or bool(batch_deleted)
                continue
            self._record_result(batch, result, outcome, failed)
            if batch_deleted and any(e.startswith("Failed to delete") for e in result.errors):
                deletions_failed = True
        return deletions_failed

    async def _send_single(
        self,
        project_id: str,
        file: PendingTextFile,
        deleted: list[str],
        outcome: SyncOutcome,
        failed: set[str],
    ) -> bool:
        """Send one file; return True if the attached deletions failed."""
        try:
            result = await self.remote.sync_batch(project_id, [file], deleted)
        except _FATAL:
            raise
        except BackupError as exc:
            self._fail_batch([file], exc, outcome, failed)
            return bool(deleted)
        self._record_result([file], result, outcome, failed)
        return bool(deleted) and any(e.startswith("Failed to delete") for e in result.errors)

    @staticmethod
    def _record_result(
        batch: list[PendingTextFile],
        result: SyncBatchResult,
        outcome: SyncOutcome,
        failed: set[str],
    ) -> None:
        outcome.synced += result.synced
        outcome.skipped += result.skipped
        outcome.errors.extend(result.errors)
        for file in batch:
            if any(error.startswith(f"{file.path}: ") for error in result.errors):
                failed.add(file.path)

    @staticmethod
    def _fail_batch(
        batch: list[PendingTextFile],
        exc: Exception,
        outcome: SyncOutcome,
        failed: set[str],
    ) -> None:
        logger.warning("Sync batch of %d files failed: %s", len(batch), exc)
        for file in batch:
            outcome.errors.append(f"{file.path}: {exc}")
            failed.add(file.path)

    async def _send_blob(
        self,
        project_id: str,
        record: FileRecord,
        outcome: SyncOutcome,
        failed: set[str],
    ) -> str | None:
        """Upload one file through the blob route; return the hash actually sent."""
        try:
            data = await self.filesystem.read_bytes(record.path)
            if len(data) > self.config.max_asset_size:
                outcome.errors.append(f"{record.path}: File too large ({len(data)} bytes)")
                failed.add(record.path)
                return None
            digest = hash_bytes(data)
            result = await self.remote.upload_asset(
                project_id, record.path, digest, data, guess_mime_type(record.path)
            )
        except _FATAL:
            raise
        except (BackupError, OSError) as exc:
            logger.warning("Asset upload failed for %s: %s", record.path, exc)
            outcome.errors.append(f"{record.path}: {exc}")
            failed.add(record.path)
            return None
        if result.cached:
            outcome.skipped += 1
        else:
            outcome.synced += 1
        return digest

    @staticmethod
    def _next_manifest(
        changes: ChangeSet,
        failed: set[str],
        uploaded_hashes: dict[str, str],
        deletions_failed: bool,
    ) -> dict[str, str]:
        previous = changes.previous_manifest
        manifest = dict(changes.local_hashes)
        manifest.update(uploaded_hashes)
        for path in failed:
            if path in previous:
                manifest[path] = previous[path]
            else:
                manifest.pop(path, None)
        if deletions_failed:
            # Keep deleted paths so the next pass reports them again.
            for path in changes.deleted:
                if path in previous:
                    manifest[path] = previous[path]
        return dict(sorted(manifest.items()))
