"""Sync and restore through the HTTP client against the real application."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from cli.backup_client import ManifestSnapshot, RemoteBackupClient
from cli.config import EngineConfig
from cli.engine import BackupEngine
from cli.exceptions import ManifestConflictError, ProjectNotFoundError, RemoteUnavailableError
from cli.filesystem import MemoryFilesystem
from cli.hasher import hash_text
from cli.restore import RestoreEngine
from tests.conftest import ADMIN_PASSWORD, ADMIN_USERNAME

if TYPE_CHECKING:
    from httpx import AsyncClient

PNG = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\xff"
SOURCE: dict[str, str | bytes] = {
    "/a.txt": "hello",
    "/b/c.js": "x()",
    "/b/img/logo.png": PNG,
}
CONFIG = EngineConfig(batch_size=2)


@pytest.fixture
async def remote(client: AsyncClient) -> RemoteBackupClient:
    backup = RemoteBackupClient("http://test", client=client)
    await backup.login(ADMIN_USERNAME, ADMIN_PASSWORD)
    return backup


async def _contents(fs: MemoryFilesystem, paths: list[str]) -> dict[str, bytes]:
    return {path: await fs.read_bytes(path) for path in paths}


class TestRoundTrip:
    async def test_sync_then_restore(self, remote: RemoteBackupClient, project_id: str) -> None:
        source = MemoryFilesystem(SOURCE)
        outcome = await BackupEngine(remote, source, CONFIG).run_pass(project_id)
        assert outcome.errors == []
        assert outcome.synced == 3

        target = MemoryFilesystem()
        assert await RestoreEngine(remote).restore(project_id, target) is True
        assert await _contents(target, list(SOURCE)) == await _contents(source, list(SOURCE))

    async def test_second_pass_leaves_manifest_untouched(
        self, remote: RemoteBackupClient, project_id: str
    ) -> None:
        engine = BackupEngine(remote, MemoryFilesystem(SOURCE), CONFIG)
        await engine.run_pass(project_id)
        before = await remote.fetch_manifest(project_id)

        outcome = await engine.run_pass(project_id)
        after = await remote.fetch_manifest(project_id)
        assert outcome.synced == 0
        assert after == before
        assert set(after.entries) == set(SOURCE)

    async def test_deleted_file_gone_after_restore(
        self, remote: RemoteBackupClient, project_id: str
    ) -> None:
        source = MemoryFilesystem(SOURCE)
        engine = BackupEngine(remote, source, CONFIG)
        await engine.run_pass(project_id)
        await source.remove("/b/img/logo.png")
        await source.remove("/a.txt")

        outcome = await engine.run_pass(project_id)
        assert outcome.deleted_count == 2
        manifest = await remote.fetch_manifest(project_id)
        assert manifest.entries == {"/b/c.js": hash_text("x()")}

        snapshot = await remote.fetch_restore(project_id)
        assert [f.path for f in snapshot.files] == ["/b/c.js"]

    async def test_deletion_during_manifest_outage_not_restored(
        self, remote: RemoteBackupClient, project_id: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        source = MemoryFilesystem({"/keep.txt": "keep", "/gone.txt": "gone", "/gone.png": PNG})
        engine = BackupEngine(remote, source, CONFIG)
        await engine.run_pass(project_id)
        await source.remove("/gone.txt")
        await source.remove("/gone.png")

        async def unavailable(project_id: str) -> ManifestSnapshot:
            raise RemoteUnavailableError("manifest down")

        with monkeypatch.context() as patched:
            patched.setattr(remote, "fetch_manifest", unavailable)
            outage = await engine.run_pass(project_id)
        assert outage.deleted_count == 0
        manifest = await remote.fetch_manifest(project_id)
        assert set(manifest.entries) == {"/keep.txt", "/gone.txt", "/gone.png"}

        recovered = await engine.run_pass(project_id)
        assert recovered.deleted_count == 2
        manifest = await remote.fetch_manifest(project_id)
        assert manifest.entries == {"/keep.txt": hash_text("keep")}
        snapshot = await remote.fetch_restore(project_id)
        assert [f.path for f in snapshot.files] == ["/keep.txt"]

        target = MemoryFilesystem()
        assert await RestoreEngine(remote).restore(project_id, target) is True
        assert [e.name for e in await target.list_dir("/")] == ["keep.txt"]

    async def test_large_text_travels_as_blob(
        self, remote: RemoteBackupClient, project_id: str
    ) -> None:
        content = "a" * (2 * 1024 * 1024)
        source = MemoryFilesystem({"/big.txt": content})
        outcome = await BackupEngine(remote, source, CONFIG).run_pass(project_id)
        assert outcome.errors == []
        assert outcome.synced == 1

        snapshot = await remote.fetch_restore(project_id)
        assert snapshot.files[0].kind == "asset"
        assert snapshot.manifest == {"/big.txt": hash_text(content)}

        target = MemoryFilesystem()
        await RestoreEngine(remote).restore(project_id, target)
        assert await target.read_text("/big.txt") == content

    async def test_concurrent_commit_rejected(
        self, remote: RemoteBackupClient, project_id: str
    ) -> None:
        slow = BackupEngine(remote, MemoryFilesystem({"/a.txt": "from slow"}), CONFIG)
        changes = await slow.pending_changes(project_id)

        fast = BackupEngine(remote, MemoryFilesystem({"/b.txt": "from fast"}), CONFIG)
        await fast.run_pass(project_id)

        with pytest.raises(ManifestConflictError):
            await slow.uploader.upload(project_id, changes)
        manifest = await remote.fetch_manifest(project_id)
        assert manifest.entries == {"/b.txt": hash_text("from fast")}

    async def test_unknown_project(self, remote: RemoteBackupClient) -> None:
        with pytest.raises(ProjectNotFoundError):
            await remote.fetch_manifest("no-such-project")
        assert await RestoreEngine(remote).restore("no-such-project", MemoryFilesystem()) is False
