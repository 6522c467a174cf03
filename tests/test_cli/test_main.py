"""Tests for the workspace-backup command line."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractContextManager, asynccontextmanager
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from cli.config import CONFIG_FILE, load_config, save_config
from cli.exceptions import AuthorizationError
from cli.hasher import hash_text
from cli.main import build_parser, main
from tests.test_cli.fakes import FakeRemote

if TYPE_CHECKING:
    from pathlib import Path

SERVER = "http://localhost:8000"


def _run(*argv: str) -> None:
    with patch("sys.argv", ["workspace-backup", *argv]):
        main()


def _serve(remote: FakeRemote) -> AbstractContextManager[object]:
    @asynccontextmanager
    async def factory(*args: object, **kwargs: object) -> AsyncIterator[FakeRemote]:
        yield remote

    return patch("cli.main.RemoteBackupClient", factory)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "ws"
    root.mkdir()
    save_config(root, {"server": SERVER, "project": "p1"})
    return root


class TestParser:
    def test_global_options(self) -> None:
        args = build_parser().parse_args(["--dir", "/tmp/x", "-p", "p1", "sync"])
        assert args.dir == "/tmp/x"
        assert args.project == "p1"
        assert args.command == "sync"

    def test_projects_create(self) -> None:
        args = build_parser().parse_args(["projects", "--create", "demo"])
        assert args.create == "demo"


class TestInit:
    def test_writes_config(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        _run("--dir", str(tmp_path), "--server", "https://backup.example.com/", "-p", "p9", "init")
        assert load_config(tmp_path) == {"server": "https://backup.example.com", "project": "p9"}
        assert CONFIG_FILE in capsys.readouterr().out

    def test_requires_server(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _run("--dir", str(tmp_path), "init")
        assert exc_info.value.code == 1
        assert "--server required" in capsys.readouterr().out

    def test_rejects_insecure_remote(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit):
            _run("--dir", str(tmp_path), "--server", "http://example.com", "init")
        assert "HTTPS is required" in capsys.readouterr().out


class TestCommands:
    def test_missing_server(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit):
            _run("--dir", str(tmp_path), "sync")
        assert "No server configured" in capsys.readouterr().out

    def test_sync_backs_up_workspace(
        self, workspace: Path, remote: FakeRemote, capsys: pytest.CaptureFixture[str]
    ) -> None:
        (workspace / "a.txt").write_text("hello")
        (workspace / "node_modules").mkdir()
        (workspace / "node_modules" / "dep.js").write_text("dep()")
        with _serve(remote):
            _run("--dir", str(workspace), "sync")
        assert remote.manifest == {"/a.txt": hash_text("hello")}
        assert "Sync complete. 1 synced" in capsys.readouterr().out

    def test_status_lists_changes(
        self, workspace: Path, remote: FakeRemote, capsys: pytest.CaptureFixture[str]
    ) -> None:
        (workspace / "a.txt").write_text("hello")
        remote.manifest = {"/gone.txt": "sha256-g"}
        with _serve(remote):
            _run("--dir", str(workspace), "status")
        out = capsys.readouterr().out
        assert "Changed: 1" in out
        assert "+ /a.txt" in out
        assert "- /gone.txt" in out
        assert remote.sync_calls == []

    def test_restore_into_new_directory(
        self, tmp_path: Path, remote: FakeRemote, capsys: pytest.CaptureFixture[str]
    ) -> None:
        remote.texts = {"/src/app.js": "app()"}
        remote.text_hashes = {"/src/app.js": hash_text("app()")}
        target = tmp_path / "restored"
        with _serve(remote):
            _run("--dir", str(target), "--server", SERVER, "-p", "p1", "restore")
        assert (target / "src" / "app.js").read_text() == "app()"
        assert "Restore complete." in capsys.readouterr().out

    def test_restore_refuses_non_empty(
        self, workspace: Path, remote: FakeRemote, capsys: pytest.CaptureFixture[str]
    ) -> None:
        (workspace / "keep.txt").write_text("x")
        with _serve(remote), pytest.raises(SystemExit):
            _run("--dir", str(workspace), "restore")
        assert "is not empty" in capsys.readouterr().out

    def test_backup_error_reported(
        self, workspace: Path, remote: FakeRemote, capsys: pytest.CaptureFixture[str]
    ) -> None:
        (workspace / "a.txt").write_text("hello")
        remote.manifest_error = AuthorizationError(401, "Not authenticated")
        with _serve(remote), pytest.raises(SystemExit):
            _run("--dir", str(workspace), "sync")
        assert "Error: Not authenticated" in capsys.readouterr().out
