"""Engine tuning and persisted CLI connection settings."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlparse

if TYPE_CHECKING:
    from pathlib import Path

CONFIG_FILE = ".workspace-backup.json"
TEXT_SIZE_LIMIT = 1024 * 1024
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}

DEFAULT_EXCLUDED_DIRS = frozenset({"node_modules", ".git", "dist", "build", ".next", ".cache"})


@dataclass(frozen=True)
class EngineConfig:
    """Tuning for the sync scheduler, walker and uploader."""

    debounce_seconds: float = 5.0
    batch_size: int = 10
    text_size_limit: int = TEXT_SIZE_LIMIT
    max_asset_size: int = 32 * 1024 * 1024
    excluded_dirs: frozenset[str] = DEFAULT_EXCLUDED_DIRS

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Create config from environment variables, falling back to defaults."""
        defaults = cls()
        extra_dirs = os.environ.get("WORKSPACE_BACKUP_EXCLUDE", "")
        return cls(
            debounce_seconds=float(
                os.environ.get("WORKSPACE_BACKUP_DEBOUNCE", defaults.debounce_seconds)
            ),
            batch_size=int(os.environ.get("WORKSPACE_BACKUP_BATCH_SIZE", defaults.batch_size)),
            max_asset_size=int(
                os.environ.get("WORKSPACE_BACKUP_MAX_ASSET_SIZE", defaults.max_asset_size)
            ),
            excluded_dirs=defaults.excluded_dirs
            | {d.strip() for d in extra_dirs.split(",") if d.strip()},
        )


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def load_config(dir_path: Path) -> dict[str, str]:
    """Load connection config from the workspace directory."""
    config_path = dir_path / CONFIG_FILE
    if not config_path.exists():
        return {}
    config: dict[str, str] = json.loads(config_path.read_text())
    return config


def save_config(dir_path: Path, config: dict[str, str]) -> None:
    """Save connection config to the workspace directory."""
    config_path = dir_path / CONFIG_FILE
    config_path.write_text(json.dumps(config, indent=2))
