"""Application configuration loaded from environment variables."""

from __future__ import annotations

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Photo catalogue sync settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/photosync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    # CORS
    cors_origins: list[str] = Field(default_factory=list)

    # Default storage backend; requests may override it per call.
    storage_provider: str = "local"
    storage_config: dict[str, Any] = Field(default_factory=dict)

    # Plan quotas (None disables the check)
    monthly_asset_process_limit: int | None = Field(default=None, ge=0)
    library_item_limit: int | None = Field(default=None, ge=0)
    max_upload_size_mb: int | None = Field(default=20, ge=1)
    max_sync_object_size_mb: int | None = Field(default=50, ge=1)

    # Hard cap on a whole multipart upload request
    max_upload_request_mb: int = Field(default=512, ge=1)

    def default_storage_config(self) -> dict[str, Any]:
        """Return the configured storage options with the provider tag applied."""
        config = dict(self.storage_config)
        config["provider"] = self.storage_provider
        return config

    def validate_runtime_security(self) -> None:
        """Validate settings that would otherwise fail on the first request."""
        from backend.storage.registry import list_providers

        if self.storage_provider not in list_providers():
            msg = (
                f"Unknown storage provider: {self.storage_provider!r}. "
                f"Available: {list_providers()}"
            )
            raise ValueError(msg)

        if self.debug:
            return

        violations: list[str] = []
        if self.storage_provider == "local" and not self.storage_config.get("base_path"):
            violations.append("STORAGE_CONFIG must set base_path for the local provider")
        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid production configuration: {joined}")
