"""Photo asset schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class PhotoAssetResponse(BaseModel):
    """A catalogue row with its public URL."""

    id: int
    photo_id: str
    storage_key: str
    storage_provider: str
    manifest: dict[str, Any]
    size: int | None = None
    sync_status: str
    public_url: str | None = None
    synced_at: str
    created_at: str
    updated_at: str


class PhotoAssetSummaryResponse(BaseModel):
    total: int
    synced: int
    conflicts: int
    pending: int


class DeleteAssetsRequest(BaseModel):
    """Request to delete catalogue rows, optionally with their stored objects."""

    ids: list[int] = Field(min_length=1, max_length=1000)
    delete_from_storage: bool = False


class DeleteAssetsResponse(BaseModel):
    deleted: int
