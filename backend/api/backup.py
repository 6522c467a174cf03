"""Backup API endpoints: manifest read, sync write, asset upload, restore read."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_blob_store, get_session, get_settings, require_owned_project
from backend.config import Settings
from backend.exceptions import FileTooLargeError
from backend.models.project import Project
from backend.schemas.backup import (
    AssetResponse,
    ManifestResponse,
    RestoreFileItem,
    RestoreResponse,
    SyncRequest,
    SyncResponse,
)
from backend.services.backup_service import (
    IncomingFile,
    apply_sync,
    build_restore,
    check_manifest_precondition,
    get_manifest,
    store_asset,
)
from backend.services.blob_store import BlobStore, LocalBlobStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects/{project_id}/backup", tags=["backup"])
blobs_router = APIRouter(prefix="/api/blobs", tags=["backup"])


@router.get("/manifest", response_model=ManifestResponse)
async def backup_manifest(
    project: Annotated[Project, Depends(require_owned_project)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> ManifestResponse:
    """Return the project's manifest, or the empty default if it never synced."""
    state = await get_manifest(session, project.id)
    return ManifestResponse(
        manifest=state.manifest,
        last_sync_at=state.last_sync_at,
        total_files=state.total_files,
        total_size=state.total_size,
    )


@router.post("/sync", response_model=SyncResponse)
async def backup_sync(
    body: SyncRequest,
    project: Annotated[Project, Depends(require_owned_project)],
    session: Annotated[AsyncSession, Depends(get_session)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SyncResponse:
    """Upsert text files, apply deletions and optionally commit the manifest."""
    logger.info(
        "Sync request for project %s: %d files, %d deleted",
        project.id,
        len(body.files),
        len(body.deleted_paths),
    )
    conditional = "expected_last_sync_at" in body.model_fields_set
    if body.manifest is not None and conditional:
        await check_manifest_precondition(session, project.id, body.expected_last_sync_at)

    result = await apply_sync(
        session,
        blob_store,
        project.id,
        [
            IncomingFile(
                path=f.path, content=f.content, hash=f.hash, size=f.size, mime_type=f.mime_type
            )
            for f in body.files
        ],
        body.deleted_paths,
        text_size_limit=settings.text_size_limit,
        manifest=body.manifest,
        # Without a precondition the client never saw the stored manifest.
        keep_stored=not conditional,
    )
    return SyncResponse(
        synced=result.synced,
        skipped=result.skipped,
        errors=result.errors,
        last_sync_at=result.last_sync_at,
    )


@router.post("/assets", response_model=AssetResponse)
async def backup_asset(
    project: Annotated[Project, Depends(require_owned_project)],
    session: Annotated[AsyncSession, Depends(get_session)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
    settings: Annotated[Settings, Depends(get_settings)],
    file: Annotated[UploadFile, File()],
    path: Annotated[str, Form(min_length=1, max_length=4096)],
    hash: Annotated[str, Form(min_length=1, max_length=256)],
) -> AssetResponse:
    """Store a large or binary file in the blob store."""
    data = await file.read(settings.max_asset_size + 1)
    if len(data) > settings.max_asset_size:
        raise FileTooLargeError(path, file.size or len(data))

    result = await store_asset(
        session,
        blob_store,
        project.id,
        path,
        hash,
        data,
        file.content_type,
        max_size=settings.max_asset_size,
    )
    return AssetResponse(url=result.url, key=result.key, path=result.path, cached=result.cached)


@router.get("/restore", response_model=RestoreResponse)
async def backup_restore(
    project: Annotated[Project, Depends(require_owned_project)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> RestoreResponse:
    """Return every stored file, the derived folder list and the manifest."""
    payload = await build_restore(session, project.id)
    return RestoreResponse(
        files=[
            RestoreFileItem(path=f.path, hash=f.hash, kind=f.kind, content=f.content, url=f.url)
            for f in payload.files
        ],
        folders=payload.folders,
        manifest=payload.manifest,
    )


@blobs_router.get("/{key}")
async def download_blob(
    key: str,
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
) -> FileResponse:
    """Serve a stored blob by its key."""
    if not isinstance(blob_store, LocalBlobStore):
        raise HTTPException(status_code=404, detail="Blob not found")
    full_path = blob_store.path_for(key)
    if not full_path.is_file():
        raise HTTPException(status_code=404, detail="Blob not found")
    return FileResponse(full_path)
