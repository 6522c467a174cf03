"""Tests for engine tuning and the persisted connection config."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from cli.config import (
    CONFIG_FILE,
    DEFAULT_EXCLUDED_DIRS,
    TEXT_SIZE_LIMIT,
    EngineConfig,
    load_config,
    save_config,
    validate_server_url,
)

if TYPE_CHECKING:
    from pathlib import Path


class TestValidateServerUrl:
    def test_rejects_insecure_http_for_remote_hosts(self) -> None:
        with pytest.raises(ValueError, match="HTTPS is required"):
            validate_server_url("http://example.com")

    def test_allows_https_for_remote_hosts(self) -> None:
        assert validate_server_url("https://example.com/") == "https://example.com"

    def test_allows_http_for_localhost(self) -> None:
        assert validate_server_url("http://localhost:8000") == "http://localhost:8000"

    def test_allows_insecure_http_when_flag_enabled(self) -> None:
        assert (
            validate_server_url("http://example.com:8000", allow_insecure_http=True)
            == "http://example.com:8000"
        )

    @pytest.mark.parametrize("url", ["example.com", "ftp://example.com", "https://"])
    def test_rejects_malformed(self, url: str) -> None:
        with pytest.raises(ValueError, match="scheme and host"):
            validate_server_url(url)


class TestEngineConfig:
    def test_defaults(self) -> None:
        config = EngineConfig()
        assert config.debounce_seconds == 5.0
        assert config.batch_size == 10
        assert config.text_size_limit == TEXT_SIZE_LIMIT == 1024 * 1024
        assert config.excluded_dirs == DEFAULT_EXCLUDED_DIRS
        assert {"node_modules", ".git", "dist", "build", ".next", ".cache"} <= DEFAULT_EXCLUDED_DIRS

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WORKSPACE_BACKUP_DEBOUNCE", "0.5")
        monkeypatch.setenv("WORKSPACE_BACKUP_BATCH_SIZE", "3")
        monkeypatch.setenv("WORKSPACE_BACKUP_MAX_ASSET_SIZE", "1000")
        monkeypatch.setenv("WORKSPACE_BACKUP_EXCLUDE", "vendor, .venv ,")
        config = EngineConfig.from_env()
        assert config.debounce_seconds == 0.5
        assert config.batch_size == 3
        assert config.max_asset_size == 1000
        assert config.excluded_dirs == DEFAULT_EXCLUDED_DIRS | {"vendor", ".venv"}

    def test_from_env_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in (
            "WORKSPACE_BACKUP_DEBOUNCE",
            "WORKSPACE_BACKUP_BATCH_SIZE",
            "WORKSPACE_BACKUP_MAX_ASSET_SIZE",
            "WORKSPACE_BACKUP_EXCLUDE",
        ):
            monkeypatch.delenv(name, raising=False)
        assert EngineConfig.from_env() == EngineConfig()


class TestConfigFile:
    def test_missing_config_is_empty(self, tmp_path: Path) -> None:
        assert load_config(tmp_path) == {}

    def test_round_trip(self, tmp_path: Path) -> None:
        save_config(tmp_path, {"server": "https://example.com", "project": "p1"})
        assert (tmp_path / CONFIG_FILE).exists()
        assert load_config(tmp_path) == {"server": "https://example.com", "project": "p1"}
