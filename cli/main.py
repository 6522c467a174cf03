"""workspace-backup: back up and restore a working directory."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path
from typing import NoReturn

from cli.backup_client import RemoteBackupClient
from cli.config import CONFIG_FILE, EngineConfig, load_config, save_config, validate_server_url
from cli.engine import BackupEngine
from cli.exceptions import BackupError, RestoreConflictError
from cli.filesystem import LocalDirectoryFilesystem
from cli.restore import RestoreEngine
from cli.scheduler import SyncEvent, SyncEventType, SyncScheduler


def _fail(message: str) -> NoReturn:
    print(f"Error: {message}")
    sys.exit(1)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workspace-backup",
        description="Back up a working directory to a backup server and restore it later",
    )
    parser.add_argument("--dir", "-d", default=".", help="Workspace directory (default: current)")
    parser.add_argument("--server", "-s", help="Server URL")
    parser.add_argument("--project", "-p", help="Project ID")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--username", "-u", help="Username for authentication")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init", help="Save server and project for this directory")
    subparsers.add_parser("login", help="Log in and store an access token")
    projects = subparsers.add_parser("projects", help="List projects, or create one")
    projects.add_argument("--create", metavar="NAME", help="Create a project with this name")
    subparsers.add_parser("status", help="Show changes not yet backed up")
    subparsers.add_parser("sync", help="Run one sync pass")
    subparsers.add_parser("watch", help="Sync on every change until interrupted")
    subparsers.add_parser("restore", help="Restore the backup into an empty directory")
    return parser


def _init(args: argparse.Namespace, workspace: Path) -> None:
    if not args.server:
        _fail("--server required for init")
    try:
        server_url = validate_server_url(args.server, args.allow_insecure_http)
    except ValueError as exc:
        _fail(str(exc))
    config = load_config(workspace)
    config["server"] = server_url
    if args.project:
        config["project"] = args.project
    if args.username:
        config["username"] = args.username
    save_config(workspace, config)
    print(f"Initialized backup config in {workspace / CONFIG_FILE}")


def _server_url(args: argparse.Namespace, config: dict[str, str]) -> str:
    configured = args.server or config.get("server")
    if not configured:
        _fail("No server configured. Run 'workspace-backup init --server <url>' first.")
    try:
        return validate_server_url(configured, args.allow_insecure_http)
    except ValueError as exc:
        _fail(str(exc))


def _project_id(args: argparse.Namespace, config: dict[str, str]) -> str:
    project_id = args.project or config.get("project")
    if not project_id:
        _fail("No project configured. Pass --project or run 'workspace-backup init'.")
    return project_id


async def _login(args: argparse.Namespace, workspace: Path, config: dict[str, str]) -> None:
    username = args.username or config.get("username") or input("Username: ")
    password = getpass.getpass("Password: ")
    async with RemoteBackupClient(_server_url(args, config)) as client:
        token = await client.login(username, password)
    config["username"] = username
    config["token"] = token
    save_config(workspace, config)
    print("Logged in.")


async def _projects(client: RemoteBackupClient, create: str | None) -> None:
    if create:
        project = await client.create_project(create)
        print(f"Created project {project['id']} ({project['name']})")
        return
    for project in await client.list_projects():
        print(f"  {project['id']}  {project['name']}")


async def _status(engine: BackupEngine, project_id: str) -> None:
    changes = await engine.pending_changes(project_id)
    print("Backup Status:")
    if not changes.manifest_available:
        print("  (manifest unavailable, every file is treated as changed)")
    print(f"  Changed: {len(changes.changed)}")
    print(f"  Deleted: {len(changes.deleted)}")
    for record in changes.changed:
        print(f"    + {record.path}")
    for path in changes.deleted:
        print(f"    - {path}")


async def _sync(engine: BackupEngine, project_id: str) -> None:
    outcome = await engine.run_pass(project_id)
    for error in outcome.errors:
        print(f"  Error: {error}")
    print(
        f"Sync complete. {outcome.synced} synced, {outcome.skipped} skipped, "
        f"{outcome.deleted_count} deleted, {len(outcome.errors)} error(s)."
    )


def _print_event(event: SyncEvent) -> None:
    if event.type is SyncEventType.STARTED:
        print("Syncing...")
    elif event.type is SyncEventType.COMPLETE and event.outcome is not None:
        print(
            f"Synced: {event.outcome.synced} uploaded, "
            f"{len(event.outcome.errors)} error(s)"
        )
    elif event.type is SyncEventType.ERROR:
        print(f"Sync failed: {event.error}")


async def _watch(
    engine: BackupEngine, filesystem: LocalDirectoryFilesystem, project_id: str
) -> None:
    scheduler = SyncScheduler(engine.config.debounce_seconds)
    scheduler.register(project_id, lambda: engine.run_pass(project_id))
    scheduler.subscribe(_print_event)
    filesystem.watch(
        lambda path: scheduler.notify_change(project_id, path),
        excluded_dirs=engine.config.excluded_dirs,
    )
    print(f"Watching {filesystem.root} (Ctrl-C to stop)")
    try:
        await scheduler.flush(project_id)
        await asyncio.Event().wait()
    finally:
        filesystem.stop_watching()
        await scheduler.close()


async def _restore(client: RemoteBackupClient, workspace: Path, project_id: str) -> None:
    workspace.mkdir(parents=True, exist_ok=True)
    filesystem = LocalDirectoryFilesystem(workspace, hidden_names={CONFIG_FILE})
    try:
        restored = await RestoreEngine(client).restore(project_id, filesystem)
    except RestoreConflictError:
        _fail(f"{workspace} is not empty; restore only into an empty directory")
    print("Restore complete." if restored else "Nothing to restore.")


async def _run(args: argparse.Namespace, parser: argparse.ArgumentParser) -> None:
    workspace = Path(args.dir).resolve()
    config = load_config(workspace) if workspace.is_dir() else {}

    if args.command == "login":
        await _login(args, workspace, config)
        return

    server_url = _server_url(args, config)
    async with RemoteBackupClient(server_url, config.get("token")) as client:
        if args.command == "projects":
            await _projects(client, args.create)
            return
        project_id = _project_id(args, config)
        if args.command == "restore":
            await _restore(client, workspace, project_id)
            return

        filesystem = LocalDirectoryFilesystem(workspace, hidden_names={CONFIG_FILE})
        engine = BackupEngine(client, filesystem, EngineConfig.from_env())
        if args.command == "status":
            await _status(engine, project_id)
        elif args.command == "sync":
            await _sync(engine, project_id)
        elif args.command == "watch":
            await _watch(engine, filesystem, project_id)
        else:
            parser.print_help()


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    _configure_logging(args.verbose)
    if args.command is None:
        parser.print_help()
        return
    if args.command == "init":
        _init(args, Path(args.dir).resolve())
        return
    try:
        asyncio.run(_run(args, parser))
    except KeyboardInterrupt:
        print("Stopped.")
    except BackupError as exc:
        _fail(str(exc))


if __name__ == "__main__":
    main()
