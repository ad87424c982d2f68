"""Sync-related schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from backend.services.sync_progress import ResolutionStrategy


class SyncRunRequest(BaseModel):
    """Request to start a reconciliation run."""

    dry_run: bool = False
    storage_config: dict[str, Any] | None = Field(
        default=None,
        description="Storage configuration overriding the server default for this run",
    )


class SnapshotResponse(BaseModel):
    """Metadata snapshot of an object or of a row's last-known state."""

    size: int | None = None
    etag: str | None = None
    last_modified: str | None = None
    metadata_hash: str | None = None


class ConflictPayloadResponse(BaseModel):
    type: str
    storage_snapshot: SnapshotResponse | None = None
    record_snapshot: SnapshotResponse | None = None
    incoming_storage_key: str | None = None


class SyncActionResponse(BaseModel):
    """One processed item, as emitted in progress events and resolution responses."""

    type: str
    storage_key: str
    photo_id: str | None = None
    applied: bool
    reason: str | None = None
    conflict_id: int | None = None
    conflict_payload: ConflictPayloadResponse | None = None
    snapshots: dict[str, SnapshotResponse] = Field(default_factory=dict)
    manifest_before: dict[str, Any] | None = None
    manifest_after: dict[str, Any] | None = None
    resolution: str | None = None


class SyncSummaryResponse(BaseModel):
    storage_objects: int = 0
    database_records: int = 0
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: int = 0
    skipped: int = 0
    errors: int = 0


class SyncRunRecordResponse(BaseModel):
    id: int
    dry_run: bool
    summary: SyncSummaryResponse
    actions_count: int
    started_at: str
    completed_at: str


class SyncStatusResponse(BaseModel):
    """Most recent run for the tenant, if any."""

    last_run: SyncRunRecordResponse | None = None


class ConflictResponse(BaseModel):
    """A catalogue row currently in conflict."""

    id: int
    storage_key: str
    photo_id: str
    reason: str | None = None
    payload: ConflictPayloadResponse | None = None
    manifest_version: str
    manifest: dict[str, Any]
    storage_provider: str
    synced_at: str
    updated_at: str


class ResolveConflictRequest(BaseModel):
    """Request to resolve one conflict."""

    strategy: ResolutionStrategy
    dry_run: bool = False
    storage_config: dict[str, Any] | None = None
