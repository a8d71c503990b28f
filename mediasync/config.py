"""Application configuration loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_ADMIN_TOKEN = "change-me-in-production"


class Settings(BaseSettings):
    """Media sync service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/mediasync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    # CORS
    cors_origins: list[str] = Field(default_factory=list)
    trusted_hosts: list[str] = Field(default_factory=list)

    # Admin namespace
    admin_api_token: str = _DEFAULT_ADMIN_TOKEN

    # Asset store (Cloudinary Admin API)
    cloudinary_cloud_name: str = ""
    cloudinary_api_key: str = ""
    cloudinary_api_secret: str = ""
    cloudinary_api_base_url: str = "https://api.cloudinary.com/v1_1"
    store_timeout_seconds: float = Field(default=15.0, gt=0, le=60)
    store_page_size: int = Field(default=500, ge=1, le=500)

    # Reconciliation
    sync_batch_size: int = Field(default=100, ge=1, le=1000)

    # Cleanup queue
    cleanup_batch_size: int = Field(default=10, ge=1, le=500)
    cleanup_max_attempts: int = Field(default=5, ge=1)
    cleanup_backoff_base_seconds: float = Field(default=30.0, gt=0)
    cleanup_backoff_cap_seconds: float = Field(default=1800.0, gt=0)

    # Scheduler
    scheduler_auto_start: bool = False
    sync_interval_minutes: float = Field(default=60.0, gt=0)
    cleanup_interval_minutes: float = Field(default=5.0, gt=0)
    run_lock_backend: Literal["memory", "database"] = "memory"
    run_lock_ttl_seconds: int = Field(default=3600, ge=1)

    # Webhooks
    webhook_require_signature: bool = True
    webhook_max_age_seconds: int = Field(default=7200, ge=1)

    # Retention
    operation_retention_days: int = Field(default=30, ge=1)
    snapshot_retention: int = Field(default=500, ge=1)

    @property
    def store_configured(self) -> bool:
        return bool(
            self.cloudinary_cloud_name and self.cloudinary_api_key and self.cloudinary_api_secret
        )

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.admin_api_token == _DEFAULT_ADMIN_TOKEN or len(self.admin_api_token) < 32:
            violations.append(
                "ADMIN_API_TOKEN must be overridden with a high-entropy value (>=32 chars)"
            )
        if not self.store_configured:
            violations.append(
                "CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET must be set"
            )
        if not self.trusted_hosts:
            violations.append("TRUSTED_HOSTS must be configured in production")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
