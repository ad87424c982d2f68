"""Sync API endpoints: reconciliation runs, status and conflict resolution."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import (
    StorageFactory,
    get_manifest_builder,
    get_quota,
    get_session,
    get_settings,
    get_storage_factory,
    get_tenant_id,
)
from backend.api.streaming import ndjson_response
from backend.config import Settings
from backend.schemas.sync import (
    ConflictResponse,
    ResolveConflictRequest,
    SyncActionResponse,
    SyncRunRecordResponse,
    SyncRunRequest,
    SyncStatusResponse,
)
from backend.services import catalogue_service
from backend.services.data_sync_service import DataSyncService
from backend.services.manifest_builder import ManifestBuilder
from backend.services.quota_service import PlanQuota

if TYPE_CHECKING:
    from backend.services.catalogue_service import CatalogueRecord
    from backend.services.sync_progress import ProgressEmitter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _conflict_response(record: CatalogueRecord) -> ConflictResponse:
    payload = record.conflict_payload
    return ConflictResponse.model_validate(
        {
            "id": record.id,
            "storage_key": record.storage_key,
            "photo_id": record.photo_id,
            "reason": record.conflict_reason,
            "payload": payload.to_dict() if payload is not None else None,
            "manifest_version": record.manifest_version,
            "manifest": record.manifest,
            "storage_provider": record.storage_provider,
            "synced_at": record.synced_at,
            "updated_at": record.updated_at,
        }
    )


@router.post("/run")
async def run_sync(
    body: SyncRunRequest,
    request: Request,
    tenant_id: Annotated[str, Depends(get_tenant_id)],
    settings: Annotated[Settings, Depends(get_settings)],
    storage_factory: Annotated[StorageFactory, Depends(get_storage_factory)],
    manifest_builder: Annotated[ManifestBuilder, Depends(get_manifest_builder)],
    quota: Annotated[PlanQuota, Depends(get_quota)],
) -> StreamingResponse:
    """Reconcile storage against the catalogue, streaming progress as NDJSON.

    An invalid storage configuration is rejected before the stream starts.
    """
    storage_config = body.storage_config or settings.default_storage_config()
    storage = storage_factory(storage_config)
    session_factory = request.app.state.session_factory
    logger.info(
        "Starting sync run for tenant %s (dry_run=%s, provider=%s)",
        tenant_id,
        body.dry_run,
        storage.provider_name,
    )

    async def produce(emit: ProgressEmitter) -> None:
        async with session_factory() as session:
            service = DataSyncService(session, tenant_id, storage, manifest_builder, quota)
            await service.run_sync(dry_run=body.dry_run, on_progress=emit)

    return ndjson_response(produce)


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    session: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: Annotated[str, Depends(get_tenant_id)],
) -> SyncStatusResponse:
    """Return the tenant's most recent sync run."""
    run = await catalogue_service.get_last_sync_run(session, tenant_id)
    if run is None:
        return SyncStatusResponse(last_run=None)
    return SyncStatusResponse(
        last_run=SyncRunRecordResponse.model_validate(
            {
                "id": run.id,
                "dry_run": run.dry_run,
                "summary": run.summary,
                "actions_count": run.actions_count,
                "started_at": run.started_at,
                "completed_at": run.completed_at,
            }
        )
    )


@router.get("/conflicts", response_model=list[ConflictResponse])
async def list_conflicts(
    session: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: Annotated[str, Depends(get_tenant_id)],
) -> list[ConflictResponse]:
    """List the tenant's rows currently in conflict, oldest row first."""
    records = await catalogue_service.list_conflicts(session, tenant_id)
    return [_conflict_response(record) for record in records]


@router.post("/conflicts/{record_id}/resolve", response_model=SyncActionResponse)
async def resolve_conflict(
    record_id: int,
    body: ResolveConflictRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: Annotated[str, Depends(get_tenant_id)],
    settings: Annotated[Settings, Depends(get_settings)],
    storage_factory: Annotated[StorageFactory, Depends(get_storage_factory)],
    manifest_builder: Annotated[ManifestBuilder, Depends(get_manifest_builder)],
    quota: Annotated[PlanQuota, Depends(get_quota)],
) -> SyncActionResponse:
    """Resolve one conflict in favour of storage or of the database."""
    storage = storage_factory(body.storage_config or settings.default_storage_config())
    service = DataSyncService(session, tenant_id, storage, manifest_builder, quota)
    action = await service.resolve_conflict(record_id, body.strategy, dry_run=body.dry_run)
    return SyncActionResponse.model_validate(action.to_dict())
