"""Backup service: text/asset stores, manifest commits, and restore payloads."""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from backend.exceptions import FileTooLargeError, InvalidPathError, ManifestConflictError
from backend.models.backup import ProjectAsset, ProjectFile, ProjectSyncManifest
from backend.services.datetime_service import format_iso, now_utc, same_instant

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.services.blob_store import BlobStore

logger = logging.getLogger(__name__)

DEFAULT_TEXT_MIME_TYPE = "text/plain"
DEFAULT_BINARY_MIME_TYPE = "application/octet-stream"


@dataclass
class IncomingFile:
    """A text file submitted by a sync batch."""

    path: str
    content: str
    hash: str
    size: int
    mime_type: str | None = None


@dataclass
class ManifestState:
    """The stored manifest, or the empty default when none exists yet."""

    manifest: dict[str, str] = field(default_factory=dict)
    last_sync_at: str | None = None
    total_files: int = 0
    total_size: int = 0


@dataclass
class SyncResult:
    """Outcome of one sync request."""

    synced: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    last_sync_at: str | None = None


@dataclass
class AssetResult:
    """Outcome of one asset upload."""

    url: str
    key: str
    path: str
    cached: bool


@dataclass
class RestoreFile:
    """One file of a restore payload: inline text or a blob reference."""

    path: str
    hash: str
    kind: Literal["file", "asset"]
    content: str | None = None
    url: str | None = None


@dataclass
class RestorePayload:
    """Everything a client needs to rebuild a project's tree."""

    files: list[RestoreFile]
    folders: list[str]
    manifest: dict[str, str]


def normalize_project_path(path: str) -> str:
    """Validate a workspace path and return its canonical absolute form.

    Paths are absolute POSIX paths rooted at the project ("/src/app.js").
    Traversal segments, NUL bytes and the bare root are rejected.
    """
    if not path or "\x00" in path or "\\" in path:
        raise InvalidPathError(f"Invalid file path: {path!r}")
    if not path.startswith("/"):
        path = "/" + path
    segments = [s for s in path.split("/") if s not in ("", ".")]
    if not segments or ".." in segments:
        raise InvalidPathError(f"Invalid file path: {path!r}")
    return "/" + "/".join(segments)


def derive_folders(paths: Iterable[str]) -> list[str]:
    """Return every proper directory prefix of ``paths``, sorted."""
    folders: set[str] = set()
    for path in paths:
        parent = posixpath.dirname(path)
        while parent not in ("", "/"):
            folders.add(parent)
            parent = posixpath.dirname(parent)
    return sorted(folders)


async def _get_manifest_row(session: AsyncSession, project_id: str) -> ProjectSyncManifest | None:
    stmt = select(ProjectSyncManifest).where(ProjectSyncManifest.project_id == project_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def _load_text_rows(session: AsyncSession, project_id: str) -> dict[str, ProjectFile]:
    result = await session.execute(select(ProjectFile).where(ProjectFile.project_id == project_id))
    return {row.path: row for row in result.scalars().all()}


async def _load_asset_rows(session: AsyncSession, project_id: str) -> dict[str, ProjectAsset]:
    result = await session.execute(
        select(ProjectAsset).where(ProjectAsset.project_id == project_id)
    )
    return {row.path: row for row in result.scalars().all()}


async def get_manifest(session: AsyncSession, project_id: str) -> ManifestState:
    """Load a project's manifest, or the empty default if it has never synced."""
    row = await _get_manifest_row(session, project_id)
    if row is None:
        return ManifestState()
    return ManifestState(
        manifest=dict(row.file_manifest),
        last_sync_at=row.last_sync_at,
        total_files=row.total_files,
        total_size=row.total_size,
    )


async def check_manifest_precondition(
    session: AsyncSession, project_id: str, expected_last_sync_at: str | None
) -> None:
    """Refuse a manifest commit if another sync committed since the client read it."""
    row = await _get_manifest_row(session, project_id)
    current = row.last_sync_at if row is not None else None
    if not same_instant(current, expected_last_sync_at):
        raise ManifestConflictError(
            f"Manifest changed since {expected_last_sync_at or 'never'} (now {current})"
        )


async def commit_manifest(
    session: AsyncSession,
    project_id: str,
    entries: dict[str, str],
    *,
    failed_paths: Iterable[str] = (),
    keep_stored: bool = False,
) -> str:
    """Replace the project's manifest wholesale and return the new last_sync_at.

    Paths in ``failed_paths`` keep their previously committed hash, or are
    dropped if they had none, so the manifest never claims content that the
    stores do not hold.

    With ``keep_stored``, previously committed paths missing from ``entries``
    stay in the manifest while the stores still hold them. A client that
    could not read the manifest cannot tell those paths were deleted; keeping
    them lets its next regular pass report and remove them.
    """
    row = await _get_manifest_row(session, project_id)
    previous: dict[str, str] = dict(row.file_manifest) if row is not None else {}
    final = {normalize_project_path(path): hash_ for path, hash_ in entries.items()}
    for path in failed_paths:
        if path in previous:
            final[path] = previous[path]
        else:
            final.pop(path, None)

    sizes: dict[str, int] = {}
    text_rows = await session.execute(
        select(ProjectFile.path, ProjectFile.size).where(ProjectFile.project_id == project_id)
    )
    sizes.update({path: size for path, size in text_rows.all()})
    asset_rows = await session.execute(
        select(ProjectAsset.path, ProjectAsset.size).where(ProjectAsset.project_id == project_id)
    )
    sizes.update({path: size for path, size in asset_rows.all()})
    if keep_stored:
        for path, hash_ in previous.items():
            if path not in final and path in sizes:
                final[path] = hash_
    total_size = sum(sizes.get(path, 0) for path in final)

    now = format_iso(now_utc())
    if row is None:
        row = ProjectSyncManifest(project_id=project_id, created_at=now)
        session.add(row)
    row.file_manifest = final
    row.total_files = len(final)
    row.total_size = total_size
    row.last_sync_at = now
    await session.commit()
    return now


async def _upsert_text_file(
    session: AsyncSession,
    project_id: str,
    path: str,
    incoming: IncomingFile,
    size: int,
    existing: ProjectFile | None,
) -> ProjectFile:
    now = format_iso(now_utc())
    mime_type = incoming.mime_type or DEFAULT_TEXT_MIME_TYPE
    if existing is None:
        existing = ProjectFile(project_id=project_id, path=path, created_at=now)
        session.add(existing)
    existing.content = incoming.content
    existing.hash = incoming.hash
    existing.size = size
    existing.mime_type = mime_type
    existing.updated_at = now
    return existing


async def apply_sync(
    session: AsyncSession,
    blob_store: BlobStore,
    project_id: str,
    files: list[IncomingFile],
    deleted_paths: list[str],
    *,
    text_size_limit: int,
    manifest: dict[str, str] | None = None,
    keep_stored: bool = False,
) -> SyncResult:
    """Upsert text files, apply deletions, and optionally commit the manifest.

    Each file is handled independently: a failure is appended to
    ``errors`` as ``"<path>: <message>"`` and processing continues.
    ``keep_stored`` is forwarded to ``commit_manifest``.
    """
    result = SyncResult()
    failed: set[str] = set()
    stale_blob_keys: list[str] = []

    text_rows = await _load_text_rows(session, project_id)
    asset_rows = await _load_asset_rows(session, project_id)

    for incoming in files:
        try:
            path = normalize_project_path(incoming.path)
        except InvalidPathError as exc:
            result.errors.append(f"{incoming.path}: {exc}")
            continue

        existing = text_rows.get(path)
        if existing is not None and existing.hash == incoming.hash:
            result.skipped += 1
            continue

        size = max(incoming.size, len(incoming.content.encode("utf-8")))
        if size > text_size_limit:
            result.errors.append(f"{path}: File too large ({size} bytes)")
            failed.add(path)
            continue

        try:
            row = await _upsert_text_file(session, project_id, path, incoming, size, existing)
            stale_asset = asset_rows.get(path)
            if stale_asset is not None:
                await session.delete(stale_asset)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("Sync: failed to store %s for project %s: %s", path, project_id, exc)
            result.errors.append(f"{path}: {exc}")
            failed.add(path)
            # Rollback expires every loaded row; reload before touching them again.
            text_rows = await _load_text_rows(session, project_id)
            asset_rows = await _load_asset_rows(session, project_id)
            continue

        text_rows[path] = row
        stale = asset_rows.pop(path, None)
        if stale is not None:
            stale_blob_keys.append(stale.blob_key)
        result.synced += 1

    if deleted_paths:
        try:
            valid = {normalize_project_path(p) for p in deleted_paths if p}
        except InvalidPathError as exc:
            logger.warning("Sync: rejected deletion list for project %s: %s", project_id, exc)
            result.errors.append(f"Failed to delete {len(deleted_paths)} files: {exc}")
            valid = set()
        if valid:
            try:
                removed_keys = [row.blob_key for p, row in asset_rows.items() if p in valid]
                await session.execute(
                    delete(ProjectFile).where(
                        ProjectFile.project_id == project_id, ProjectFile.path.in_(valid)
                    )
                )
                await session.execute(
                    delete(ProjectAsset).where(
                        ProjectAsset.project_id == project_id, ProjectAsset.path.in_(valid)
                    )
                )
                await session.commit()
                stale_blob_keys.extend(removed_keys)
                logger.info("Sync: deleted %d paths from project %s", len(valid), project_id)
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("Sync: failed to delete files for project %s: %s", project_id, exc)
                result.errors.append(f"Failed to delete {len(deleted_paths)} files")

    if stale_blob_keys:
        await blob_store.delete(stale_blob_keys)

    if manifest is not None:
        try:
            result.last_sync_at = await commit_manifest(
                session, project_id, manifest, failed_paths=failed, keep_stored=keep_stored
            )
        except (SQLAlchemyError, InvalidPathError) as exc:
            await session.rollback()
            logger.error("Sync: failed to update manifest for project %s: %s", project_id, exc)
            result.errors.append("Failed to update manifest")
    if result.last_sync_at is None:
        result.last_sync_at = (await get_manifest(session, project_id)).last_sync_at

    logger.info(
        "Sync for project %s: synced=%d, skipped=%d, errors=%d",
        project_id,
        result.synced,
        result.skipped,
        len(result.errors),
    )
    return result


async def store_asset(
    session: AsyncSession,
    blob_store: BlobStore,
    project_id: str,
    path: str,
    hash_: str,
    data: bytes,
    content_type: str | None,
    *,
    max_size: int,
) -> AssetResult:
    """Store a large or binary file in the blob store and upsert its asset row.

    Returns the existing URL with ``cached=True`` when the stored asset at
    this path already has the same hash.
    """
    path = normalize_project_path(path)
    if len(data) > max_size:
        raise FileTooLargeError(path, len(data))

    stmt = select(ProjectAsset).where(
        ProjectAsset.project_id == project_id, ProjectAsset.path == path
    )
    existing = (await session.execute(stmt)).scalar_one_or_none()
    if existing is not None and existing.hash == hash_:
        return AssetResult(url=existing.blob_url, key=existing.blob_key, path=path, cached=True)

    if existing is not None:
        await blob_store.delete([existing.blob_key])

    mime_type = content_type or DEFAULT_BINARY_MIME_TYPE
    stored = await blob_store.upload(data, posixpath.basename(path), mime_type)
    now = format_iso(now_utc())
    try:
        if existing is None:
            existing = ProjectAsset(project_id=project_id, path=path, created_at=now)
            session.add(existing)
        existing.blob_url = stored.url
        existing.blob_key = stored.key
        existing.hash = hash_
        existing.size = len(data)
        existing.mime_type = mime_type
        existing.updated_at = now
        await session.execute(
            delete(ProjectFile).where(ProjectFile.project_id == project_id, ProjectFile.path == path)
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        await blob_store.delete([stored.key])
        raise

    logger.info("Stored asset %s for project %s (%d bytes)", path, project_id, len(data))
    return AssetResult(url=stored.url, key=stored.key, path=path, cached=False)


async def build_restore(session: AsyncSession, project_id: str) -> RestorePayload:
    """Collect every stored file of a project plus its folder structure and manifest."""
    text_rows = await _load_text_rows(session, project_id)
    asset_rows = await _load_asset_rows(session, project_id)

    files = [
        RestoreFile(path=row.path, hash=row.hash, kind="file", content=row.content)
        for row in text_rows.values()
    ]
    files.extend(
        RestoreFile(path=row.path, hash=row.hash, kind="asset", url=row.blob_url)
        for path, row in asset_rows.items()
        if path not in text_rows
    )
    files.sort(key=lambda f: f.path)

    state = await get_manifest(session, project_id)
    return RestorePayload(
        files=files,
        folders=derive_folders(f.path for f in files),
        manifest=state.manifest,
    )
