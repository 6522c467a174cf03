"""Ephemeral filesystem providers.

Paths are absolute POSIX strings rooted at the project ("/", "/src/app.js").
``MemoryFilesystem`` is a session-lifetime tree that disappears with the
process; ``LocalDirectoryFilesystem`` exposes a scratch directory on disk
and can watch it recursively with watchdog.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

if TYPE_CHECKING:
    from collections.abc import Collection

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str], None]


@dataclass(frozen=True)
class DirEntry:
    """One child of a directory listing."""

    name: str
    is_dir: bool


@runtime_checkable
class EphemeralFilesystem(Protocol):
    """The session's working tree as seen by the sync and restore engine."""

    async def list_dir(self, path: str) -> list[DirEntry]:
        """List the children of a directory."""
        ...

    async def read_text(self, path: str) -> str:
        """Read a file as UTF-8. Raises UnicodeDecodeError for binary content."""
        ...

    async def read_bytes(self, path: str) -> bytes:
        """Read a file's raw bytes."""
        ...

    async def file_size(self, path: str) -> int:
        """Size of a file in bytes."""
        ...

    async def write_file(self, path: str, data: str | bytes) -> None:
        """Create or overwrite a file. The parent directory must exist."""
        ...

    async def mkdir(self, path: str, parents: bool = True) -> None:
        """Create a directory (and, with ``parents``, its ancestors)."""
        ...

    async def is_empty(self) -> bool:
        """True if the root has no children."""
        ...


def join_path(parent: str, name: str) -> str:
    return f"/{name}" if parent == "/" else f"{parent}/{name}"


def normalize_path(path: str) -> str:
    """Canonical absolute form of a workspace path; rejects traversal."""
    segments = [s for s in path.split("/") if s not in ("", ".")]
    if ".." in segments:
        raise ValueError(f"Path escapes the workspace: {path!r}")
    return "/" + "/".join(segments)


class MemoryFilesystem:
    """In-memory working tree that lives only as long as the session."""

    def __init__(self, files: dict[str, str | bytes] | None = None) -> None:
        self._files: dict[str, bytes] = {}
        self._dirs: set[str] = {"/"}
        self._listeners: list[ChangeCallback] = []
        for path, data in (files or {}).items():
            path = normalize_path(path)
            self._add_parents(path)
            self._files[path] = data.encode("utf-8") if isinstance(data, str) else data

    def add_listener(self, callback: ChangeCallback) -> None:
        """Call ``callback(path)`` after every mutation."""
        self._listeners.append(callback)

    def _notify(self, path: str) -> None:
        for callback in self._listeners:
            try:
                callback(path)
            except Exception as exc:
                logger.warning("Error in filesystem change callback: %s", exc)

    def _add_parents(self, path: str) -> None:
        parent = posixpath.dirname(path)
        while parent not in self._dirs:
            self._dirs.add(parent)
            parent = posixpath.dirname(parent)

    def _require_file(self, path: str) -> bytes:
        path = normalize_path(path)
        if path not in self._files:
            raise FileNotFoundError(path)
        return self._files[path]

    async def list_dir(self, path: str) -> list[DirEntry]:
        path = normalize_path(path)
        if path not in self._dirs:
            raise FileNotFoundError(path)
        entries = [
            DirEntry(name=posixpath.basename(d), is_dir=True)
            for d in self._dirs
            if d != "/" and posixpath.dirname(d) == path
        ]
        entries.extend(
            DirEntry(name=posixpath.basename(f), is_dir=False)
            for f in self._files
            if posixpath.dirname(f) == path
        )
        return sorted(entries, key=lambda e: e.name)

    async def read_text(self, path: str) -> str:
        return self._require_file(path).decode("utf-8")

    async def read_bytes(self, path: str) -> bytes:
        return self._require_file(path)

    async def file_size(self, path: str) -> int:
        return len(self._require_file(path))

    async def write_file(self, path: str, data: str | bytes) -> None:
        path = normalize_path(path)
        if posixpath.dirname(path) not in self._dirs:
            raise FileNotFoundError(f"Parent directory does not exist: {path}")
        if path in self._dirs:
            raise IsADirectoryError(path)
        self._files[path] = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        self._notify(path)

    async def mkdir(self, path: str, parents: bool = True) -> None:
        path = normalize_path(path)
        if path in self._files:
            raise FileExistsError(path)
        if not parents and posixpath.dirname(path) not in self._dirs:
            raise FileNotFoundError(path)
        self._add_parents(path)
        self._dirs.add(path)
        self._notify(path)

    async def remove(self, path: str) -> None:
        """Delete a file, or a directory and everything below it."""
        path = normalize_path(path)
        if path in self._files:
            del self._files[path]
        elif path in self._dirs and path != "/":
            prefix = path + "/"
            self._files = {p: d for p, d in self._files.items() if not p.startswith(prefix)}
            self._dirs = {d for d in self._dirs if d != path and not d.startswith(prefix)}
        else:
            raise FileNotFoundError(path)
        self._notify(path)

    async def is_empty(self) -> bool:
        return not self._files and self._dirs == {"/"}


class _ForwardingHandler(FileSystemEventHandler):
    """Forward watchdog events to the asyncio loop as workspace paths."""

    def __init__(
        self,
        filesystem: LocalDirectoryFilesystem,
        callback: ChangeCallback,
        loop: asyncio.AbstractEventLoop,
        excluded_dirs: Collection[str],
    ) -> None:
        self._filesystem = filesystem
        self._callback = callback
        self._loop = loop
        self._excluded_dirs = excluded_dirs

    def _forward(self, src: str | bytes) -> None:
        path = self._filesystem.to_workspace_path(src)
        if path is None:
            return
        if any(segment in self._excluded_dirs for segment in path.split("/")):
            return
        self._loop.call_soon_threadsafe(self._callback, path)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed_no_write"):
            return
        self._forward(event.src_path)
        dest = getattr(event, "dest_path", "")
        if dest:
            self._forward(dest)


class LocalDirectoryFilesystem:
    """A scratch directory on local disk exposed as an ephemeral workspace."""

    def __init__(self, root: Path, hidden_names: Collection[str] = ()) -> None:
        self.root = root.resolve()
        self.hidden_names = frozenset(hidden_names)
        self._observer: Observer | None = None

    def resolve(self, path: str) -> Path:
        """Map a workspace path onto the root directory, refusing traversal."""
        relative = normalize_path(path).lstrip("/")
        full = (self.root / relative).resolve() if relative else self.root
        if not full.is_relative_to(self.root):
            raise ValueError(f"Path escapes the workspace: {path!r}")
        return full

    def to_workspace_path(self, local: str | bytes) -> str | None:
        """Inverse of ``resolve``; None for paths outside the root."""
        if isinstance(local, bytes):
            local = local.decode("utf-8", errors="surrogateescape")
        try:
            relative = Path(local).resolve().relative_to(self.root)
        except ValueError:
            return None
        return "/" + relative.as_posix() if relative.parts else "/"

    async def list_dir(self, path: str) -> list[DirEntry]:
        def _list() -> list[DirEntry]:
            return sorted(
                (
                    DirEntry(name=p.name, is_dir=p.is_dir())
                    for p in self.resolve(path).iterdir()
                    if p.name not in self.hidden_names
                ),
                key=lambda e: e.name,
            )

        return await asyncio.to_thread(_list)

    async def read_text(self, path: str) -> str:
        # Decode bytes directly: read_text would translate newlines and change the hash.
        data = await asyncio.to_thread(self.resolve(path).read_bytes)
        return data.decode("utf-8")

    async def read_bytes(self, path: str) -> bytes:
        return await asyncio.to_thread(self.resolve(path).read_bytes)

    async def file_size(self, path: str) -> int:
        stat = await asyncio.to_thread(self.resolve(path).stat)
        return stat.st_size

    async def write_file(self, path: str, data: str | bytes) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        await asyncio.to_thread(self.resolve(path).write_bytes, data)

    async def mkdir(self, path: str, parents: bool = True) -> None:
        await asyncio.to_thread(self.resolve(path).mkdir, parents=parents, exist_ok=True)

    async def is_empty(self) -> bool:
        return not await self.list_dir("/")

    def watch(
        self,
        callback: ChangeCallback,
        *,
        excluded_dirs: Collection[str] = (),
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Start a recursive watchdog observer calling ``callback(path)`` on the loop."""
        if self._observer is not None:
            raise RuntimeError("Already watching")
        handler = _ForwardingHandler(
            self, callback, loop or asyncio.get_running_loop(), excluded_dirs
        )
        observer = Observer()
        observer.schedule(handler, str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("Watching %s for changes", self.root)

    def stop_watching(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
