"""Local tree walker: flatten the ephemeral filesystem into file records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from cli.config import DEFAULT_EXCLUDED_DIRS
from cli.filesystem import join_path

if TYPE_CHECKING:
    from collections.abc import Collection

    from cli.filesystem import EphemeralFilesystem

logger = logging.getLogger(__name__)


class FileKind(StrEnum):
    FILE = "file"
    FOLDER = "folder"


@dataclass(frozen=True)
class FileRecord:
    """One node of the working tree at the time of the walk.

    ``content`` is None for folders and for files that are not valid UTF-8;
    those are hashed from raw bytes and uploaded through the blob route.
    """

    path: str
    kind: FileKind
    content: str | None = None
    size: int = 0

    @property
    def is_file(self) -> bool:
        return self.kind is FileKind.FILE


def is_excluded(path: str, excluded_dirs: Collection[str] = DEFAULT_EXCLUDED_DIRS) -> bool:
    """True if ``path`` is, or lies below, an excluded directory."""
    return any(segment in excluded_dirs for segment in path.split("/") if segment)


async def walk(
    fs: EphemeralFilesystem,
    root: str = "/",
    excluded_dirs: Collection[str] = DEFAULT_EXCLUDED_DIRS,
) -> list[FileRecord]:
    """Recursively enumerate ``root``, sorted by path.

    Excluded directories are never entered. A directory that cannot be
    listed is logged and skipped; the rest of the tree is still walked.
    """
    records: list[FileRecord] = []
    pending = [root]
    while pending:
        directory = pending.pop()
        try:
            entries = await fs.list_dir(directory)
        except OSError as exc:
            logger.warning("Cannot list %s: %s", directory, exc)
            continue
        for entry in entries:
            path = join_path(directory, entry.name)
            if entry.is_dir:
                if entry.name in excluded_dirs:
                    continue
                records.append(FileRecord(path=path, kind=FileKind.FOLDER))
                pending.append(path)
            else:
                records.append(await _read_record(fs, path))
    records.sort(key=lambda r: r.path)
    return records


async def _read_record(fs: EphemeralFilesystem, path: str) -> FileRecord:
    try:
        content = await fs.read_text(path)
    except ValueError:  # UnicodeDecodeError: binary content
        content = None
    except OSError as exc:
        logger.warning("Cannot read %s: %s", path, exc)
        content = None
    if content is not None:
        return FileRecord(
            path=path, kind=FileKind.FILE, content=content, size=len(content.encode("utf-8"))
        )
    try:
        size = await fs.file_size(path)
    except OSError as exc:
        logger.warning("Cannot stat %s: %s", path, exc)
        size = 0
    return FileRecord(path=path, kind=FileKind.FILE, content=None, size=size)
