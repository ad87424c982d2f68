"""Photo catalogue and sync run models."""

from __future__ import annotations

from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.models.base import Base

CURRENT_PHOTO_MANIFEST_VERSION = "v7"

# Provider tag for rows that intentionally have no backing storage object.
DATABASE_ONLY_PROVIDER = "database-only"

UNIQUE_CONSTRAINT_STORAGE_KEY = "uq_photo_asset_tenant_storage_key"
UNIQUE_CONSTRAINT_PHOTO_ID = "uq_photo_asset_tenant_photo_id"

SYNC_STATUSES = ("pending", "synced", "conflict")


class PhotoAsset(Base):
    """Catalogue row describing one photo asset of a tenant."""

    __tablename__ = "photo_assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    photo_id: Mapped[str] = mapped_column(Text, nullable=False)
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    storage_provider: Mapped[str] = mapped_column(String, nullable=False)
    size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    etag: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_modified: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    manifest_version: Mapped[str] = mapped_column(
        String, nullable=False, default=CURRENT_PHOTO_MANIFEST_VERSION
    )
    manifest: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    sync_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    conflict_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    conflict_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    synced_at: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "storage_key", name=UNIQUE_CONSTRAINT_STORAGE_KEY),
        UniqueConstraint("tenant_id", "photo_id", name=UNIQUE_CONSTRAINT_PHOTO_ID),
        CheckConstraint(
            "sync_status IN (" + ", ".join(f"'{status}'" for status in SYNC_STATUSES) + ")",
            name="ck_photo_asset_sync_status",
        ),
        Index("idx_photo_assets_tenant_status", "tenant_id", "sync_status"),
    )


class PhotoSyncRun(Base):
    """Append-only audit row written once per reconciliation run."""

    __tablename__ = "photo_sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    summary: Mapped[dict[str, int]] = mapped_column(JSON, nullable=False)
    actions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[str] = mapped_column(Text, nullable=False)
    completed_at: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("idx_photo_sync_runs_tenant", "tenant_id", "completed_at"),)
