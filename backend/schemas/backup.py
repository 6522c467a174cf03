"""Backup API schemas. JSON field names are camelCase on the wire."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ManifestResponse(_WireModel):
    """Remote manifest read; the empty default when the project never synced."""

    manifest: dict[str, str] = Field(default_factory=dict)
    last_sync_at: str | None = None
    total_files: int = 0
    total_size: int = 0


class SyncFile(_WireModel):
    """A text file in a sync batch."""

    path: str = Field(min_length=1, max_length=4096)
    content: str
    hash: str = Field(min_length=1, max_length=256)
    size: int = Field(ge=0)
    mime_type: str | None = None


class SyncRequest(_WireModel):
    """Sync write: upsert ``files``, delete ``deleted_paths``, optionally commit ``manifest``.

    Sending ``expectedLastSyncAt`` (even as ``null``) makes the manifest
    commit conditional on the stored ``lastSyncAt`` still matching.
    """

    files: list[SyncFile] = Field(default_factory=list)
    deleted_paths: list[str] = Field(default_factory=list)
    manifest: dict[str, str] | None = None
    expected_last_sync_at: str | None = None


class SyncResponse(_WireModel):
    """Result of one sync write."""

    synced: int
    skipped: int
    errors: list[str] = Field(default_factory=list)
    last_sync_at: str | None = None


class AssetResponse(_WireModel):
    """Result of an asset upload."""

    url: str
    key: str
    path: str
    cached: bool


class RestoreFileItem(_WireModel):
    """A file to materialize: inline ``content`` or a blob ``url``."""

    path: str
    hash: str
    kind: Literal["file", "asset"]
    content: str | None = None
    url: str | None = None


class RestoreResponse(_WireModel):
    """Remote restore read."""

    files: list[RestoreFileItem] = Field(default_factory=list)
    folders: list[str] = Field(default_factory=list)
    manifest: dict[str, str] = Field(default_factory=dict)
