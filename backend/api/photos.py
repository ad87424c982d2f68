"""Photo asset endpoints: listing, summary, upload and deletion."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
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
from backend.exceptions import ObjectTooLargeError
from backend.schemas.photo import (
    DeleteAssetsRequest,
    DeleteAssetsResponse,
    PhotoAssetResponse,
    PhotoAssetSummaryResponse,
)
from backend.services.manifest_builder import ManifestBuilder
from backend.services.quota_service import PlanQuota
from backend.services.upload_service import AssetListItem, PhotoUploadService, UploadAssetInput

if TYPE_CHECKING:
    from backend.services.sync_progress import ProgressEmitter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/photos", tags=["photos"])

_READ_CHUNK_SIZE = 1024 * 1024


def _asset_response(item: AssetListItem) -> PhotoAssetResponse:
    record = item.record
    return PhotoAssetResponse(
        id=record.id,
        photo_id=record.photo_id,
        storage_key=record.storage_key,
        storage_provider=record.storage_provider,
        manifest=record.manifest,
        size=record.size,
        sync_status=record.sync_status,
        public_url=item.public_url,
        synced_at=record.synced_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _service(
    session: AsyncSession,
    tenant_id: str,
    settings: Settings,
    storage_factory: StorageFactory,
    manifest_builder: ManifestBuilder,
    quota: PlanQuota,
) -> PhotoUploadService:
    storage_config = settings.default_storage_config()
    return PhotoUploadService(
        session,
        tenant_id,
        storage_factory(storage_config),
        manifest_builder,
        quota,
        storage_config,
    )


async def _read_uploads(
    files: list[UploadFile], directory: str | None, max_request_bytes: int
) -> list[UploadAssetInput]:
    """Read every part into memory, enforcing the whole-request size cap."""
    inputs: list[UploadAssetInput] = []
    total = 0
    for upload in files:
        chunks: list[bytes] = []
        while True:
            chunk = await upload.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            total += len(chunk)
            if total > max_request_bytes:
                msg = f"Upload request exceeds {max_request_bytes // (1024 * 1024)} MB"
                raise ObjectTooLargeError(msg)
            chunks.append(chunk)
        inputs.append(
            UploadAssetInput(
                filename=upload.filename or "upload",
                data=b"".join(chunks),
                content_type=upload.content_type,
                directory=directory,
            )
        )
    return inputs


@router.get("", response_model=list[PhotoAssetResponse])
async def list_photos(
    session: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: Annotated[str, Depends(get_tenant_id)],
    settings: Annotated[Settings, Depends(get_settings)],
    storage_factory: Annotated[StorageFactory, Depends(get_storage_factory)],
    manifest_builder: Annotated[ManifestBuilder, Depends(get_manifest_builder)],
    quota: Annotated[PlanQuota, Depends(get_quota)],
) -> list[PhotoAssetResponse]:
    """List the tenant's catalogue rows with public URLs."""
    service = _service(session, tenant_id, settings, storage_factory, manifest_builder, quota)
    return [_asset_response(item) for item in await service.list_assets()]


@router.get("/summary", response_model=PhotoAssetSummaryResponse)
async def photo_summary(
    session: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: Annotated[str, Depends(get_tenant_id)],
    settings: Annotated[Settings, Depends(get_settings)],
    storage_factory: Annotated[StorageFactory, Depends(get_storage_factory)],
    manifest_builder: Annotated[ManifestBuilder, Depends(get_manifest_builder)],
    quota: Annotated[PlanQuota, Depends(get_quota)],
) -> PhotoAssetSummaryResponse:
    service = _service(session, tenant_id, settings, storage_factory, manifest_builder, quota)
    return PhotoAssetSummaryResponse(**await service.get_summary())


@router.post("/upload")
async def upload_photos(
    request: Request,
    files: Annotated[list[UploadFile], File()],
    tenant_id: Annotated[str, Depends(get_tenant_id)],
    settings: Annotated[Settings, Depends(get_settings)],
    storage_factory: Annotated[StorageFactory, Depends(get_storage_factory)],
    manifest_builder: Annotated[ManifestBuilder, Depends(get_manifest_builder)],
    quota: Annotated[PlanQuota, Depends(get_quota)],
    directory: Annotated[str | None, Form()] = None,
) -> StreamingResponse:
    """Upload stills and Live Photo videos, streaming progress as NDJSON.

    A client disconnect aborts the upload between items; rows already
    written are kept.
    """
    inputs = await _read_uploads(files, directory, settings.max_upload_request_mb * 1024 * 1024)
    storage_config = settings.default_storage_config()
    storage = storage_factory(storage_config)
    session_factory = request.app.state.session_factory
    abort_event = asyncio.Event()
    logger.info("Upload of %d files for tenant %s", len(inputs), tenant_id)

    async def produce(emit: ProgressEmitter) -> None:
        async with session_factory() as session:
            service = PhotoUploadService(
                session, tenant_id, storage, manifest_builder, quota, storage_config
            )
            await service.upload_assets(inputs, progress=emit, abort_event=abort_event)

    return ndjson_response(produce, abort_event=abort_event)


@router.delete("", response_model=DeleteAssetsResponse)
async def delete_photos(
    body: DeleteAssetsRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    tenant_id: Annotated[str, Depends(get_tenant_id)],
    settings: Annotated[Settings, Depends(get_settings)],
    storage_factory: Annotated[StorageFactory, Depends(get_storage_factory)],
    manifest_builder: Annotated[ManifestBuilder, Depends(get_manifest_builder)],
    quota: Annotated[PlanQuota, Depends(get_quota)],
) -> DeleteAssetsResponse:
    """Delete catalogue rows, optionally removing their stored objects too."""
    service = _service(session, tenant_id, settings, storage_factory, manifest_builder, quota)
    deleted = await service.delete_assets(body.ids, delete_from_storage=body.delete_from_storage)
    return DeleteAssetsResponse(deleted=deleted)
