"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

TEXT_SIZE_LIMIT = 1024 * 1024


class Settings(BaseSettings):
    """Workspace backup service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    secret_key: str = "change-me-in-production"
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/backup.db"

    # Blob storage
    blob_dir: Path = Path("./data/blobs")
    public_base_url: str = "http://localhost:8000"

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    # CORS
    cors_origins: list[str] = Field(default_factory=list)
    trusted_hosts: list[str] = Field(default_factory=list)

    # Auth
    access_token_expire_minutes: int = Field(default=60, ge=1)

    # Admin bootstrap
    admin_username: str = "admin"
    admin_password: str = "admin"

    # Backup limits
    text_size_limit: int = Field(default=TEXT_SIZE_LIMIT, ge=1)
    max_asset_size: int = Field(default=32 * 1024 * 1024, ge=1)

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.secret_key == "change-me-in-production" or len(self.secret_key) < 32:
            violations.append(
                "SECRET_KEY must be overridden with a high-entropy value (>=32 chars)"
            )
        if self.admin_password == "admin" or len(self.admin_password) < 12:
            violations.append("ADMIN_PASSWORD must be overridden with a strong value (>=12 chars)")
        if not self.trusted_hosts:
            violations.append("TRUSTED_HOSTS must be configured in production")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
