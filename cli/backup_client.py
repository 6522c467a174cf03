"""Async HTTP client for the backup service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from cli.exceptions import (
    AuthorizationError,
    ManifestConflictError,
    ProjectNotFoundError,
    RemoteRequestError,
    RemoteUnavailableError,
)

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


@dataclass(frozen=True)
class ManifestSnapshot:
    """The remote manifest as read at the start of a pass."""

    entries: dict[str, str] = field(default_factory=dict)
    last_sync_at: str | None = None
    total_files: int = 0
    total_size: int = 0


@dataclass(frozen=True)
class PendingTextFile:
    """A file on its way to the text store."""

    path: str
    content: str
    hash: str
    size: int
    mime_type: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "content": self.content,
            "hash": self.hash,
            "size": self.size,
            "mimeType": self.mime_type,
        }


@dataclass(frozen=True)
class SyncBatchResult:
    synced: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    last_sync_at: str | None = None


@dataclass(frozen=True)
class AssetUploadResult:
    url: str
    key: str
    path: str
    cached: bool


@dataclass(frozen=True)
class RestoreEntry:
    path: str
    hash: str
    kind: str
    content: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class RestoreSnapshot:
    files: list[RestoreEntry] = field(default_factory=list)
    folders: list[str] = field(default_factory=list)
    manifest: dict[str, str] = field(default_factory=dict)


class BackupRemote(Protocol):
    """What the sync and restore engines need from the backup service."""

    async def fetch_manifest(self, project_id: str) -> ManifestSnapshot: ...

    async def sync_batch(
        self,
        project_id: str,
        files: list[PendingTextFile],
        deleted: list[str],
        *,
        manifest: dict[str, str] | None = None,
        expected_last_sync_at: str | None = UNSET,
    ) -> SyncBatchResult: ...

    async def upload_asset(
        self,
        project_id: str,
        path: str,
        content_hash: str,
        data: bytes,
        mime_type: str | None = None,
    ) -> AssetUploadResult: ...

    async def fetch_restore(self, project_id: str) -> RestoreSnapshot: ...

    async def fetch_blob(self, url: str) -> bytes: ...


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)


def raise_for_status(response: httpx.Response) -> None:
    """Translate an HTTP error status into the client exception hierarchy."""
    status = response.status_code
    if status < 400:
        return
    detail = _error_detail(response)
    if status >= 500:
        raise RemoteUnavailableError(f"Backup service error ({status}): {detail}")
    if status in (401, 403):
        raise AuthorizationError(status, detail)
    if status == 404:
        raise ProjectNotFoundError(detail)
    if status == 409:
        raise ManifestConflictError(detail)
    raise RemoteRequestError(status, detail)


class RemoteBackupClient:
    """Client for the backup service API."""

    def __init__(
        self,
        server_url: str,
        token: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=self.server_url, headers=headers, timeout=timeout
        )
        if client is not None:
            client.headers.update(headers)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> RemoteBackupClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise RemoteUnavailableError(f"Cannot reach backup service: {exc}") from exc
        logger.debug("%s %s -> %d", method, url, response.status_code)
        raise_for_status(response)
        return response

    def _backup_url(self, project_id: str, suffix: str) -> str:
        return f"/api/projects/{project_id}/backup/{suffix}"

    async def login(self, username: str, password: str) -> str:
        """Login and return an access token; the token is used for later calls."""
        resp = await self._request(
            "POST", "/api/auth/login", json={"username": username, "password": password}
        )
        token: str = resp.json()["access_token"]
        self.client.headers["Authorization"] = f"Bearer {token}"
        return token

    async def create_project(self, name: str) -> dict[str, Any]:
        resp = await self._request("POST", "/api/projects", json={"name": name})
        result: dict[str, Any] = resp.json()
        return result

    async def list_projects(self) -> list[dict[str, Any]]:
        resp = await self._request("GET", "/api/projects")
        result: list[dict[str, Any]] = resp.json()
        return result

    async def fetch_manifest(self, project_id: str) -> ManifestSnapshot:
        resp = await self._request("GET", self._backup_url(project_id, "manifest"))
        data = resp.json()
        return ManifestSnapshot(
            entries=dict(data.get("manifest") or {}),
            last_sync_at=data.get("lastSyncAt"),
            total_files=data.get("totalFiles", 0),
            total_size=data.get("totalSize", 0),
        )

    async def sync_batch(
        self,
        project_id: str,
        files: list[PendingTextFile],
        deleted: list[str],
        *,
        manifest: dict[str, str] | None = None,
        expected_last_sync_at: str | None = UNSET,
    ) -> SyncBatchResult:
        """Send one sync request.

        ``expected_last_sync_at`` is only sent when given; ``None`` then
        means "the project had no manifest when this pass started".
        """
        body: dict[str, Any] = {
            "files": [f.to_wire() for f in files],
            "deletedPaths": list(deleted),
        }
        if manifest is not None:
            body["manifest"] = manifest
            if expected_last_sync_at is not UNSET:
                body["expectedLastSyncAt"] = expected_last_sync_at
        resp = await self._request("POST", self._backup_url(project_id, "sync"), json=body)
        data = resp.json()
        return SyncBatchResult(
            synced=data.get("synced", 0),
            skipped=data.get("skipped", 0),
            errors=list(data.get("errors") or []),
            last_sync_at=data.get("lastSyncAt"),
        )

    async def upload_asset(
        self,
        project_id: str,
        path: str,
        content_hash: str,
        data: bytes,
        mime_type: str | None = None,
    ) -> AssetUploadResult:
        filename = path.rsplit("/", 1)[-1] or "file"
        resp = await self._request(
            "POST",
            self._backup_url(project_id, "assets"),
            data={"path": path, "hash": content_hash},
            files={"file": (filename, data, mime_type or "application/octet-stream")},
        )
        body = resp.json()
        return AssetUploadResult(
            url=body["url"], key=body["key"], path=body["path"], cached=body["cached"]
        )

    async def fetch_restore(self, project_id: str) -> RestoreSnapshot:
        resp = await self._request("GET", self._backup_url(project_id, "restore"))
        data = resp.json()
        return RestoreSnapshot(
            files=[
                RestoreEntry(
                    path=item["path"],
                    hash=item["hash"],
                    kind=item["kind"],
                    content=item.get("content"),
                    url=item.get("url"),
                )
                for item in data.get("files", [])
            ],
            folders=list(data.get("folders", [])),
            manifest=dict(data.get("manifest") or {}),
        )

    async def fetch_blob(self, url: str) -> bytes:
        """Download blob bytes. The bearer token is only sent to the backup service itself."""
        target = urlparse(url)
        own = urlparse(str(self.client.base_url))
        request = self.client.build_request("GET", url)
        if target.netloc and target.netloc != own.netloc:
            request.headers.pop("Authorization", None)
        try:
            response = await self.client.send(request)
        except httpx.TransportError as exc:
            raise RemoteUnavailableError(f"Cannot fetch blob: {exc}") from exc
        if response.status_code >= 400:
            raise RemoteRequestError(response.status_code, f"Blob fetch failed: {url}")
        return response.content
