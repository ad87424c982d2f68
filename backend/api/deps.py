"""Shared API dependencies: settings, DB session, tenant, storage, quotas."""

from __future__ import annotations

import re
from collections.abc import AsyncGenerator, Callable
from typing import Annotated, Any

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import Settings
from backend.services.manifest_builder import DigestManifestBuilder, ManifestBuilder
from backend.services.quota_service import PlanQuota
from backend.storage.manager import StorageManager

StorageFactory = Callable[[dict[str, Any]], StorageManager]

_TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def get_tenant_id(
    x_tenant_id: Annotated[str | None, Header(alias="X-Tenant-Id")] = None,
) -> str:
    """Tenant scope for the request. Raises 400 when the header is missing or malformed."""
    if x_tenant_id is None or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing X-Tenant-Id header",
        )
    tenant_id = x_tenant_id.strip()
    if not _TENANT_ID_PATTERN.match(tenant_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Tenant-Id header",
        )
    return tenant_id


def get_storage_factory(request: Request) -> StorageFactory:
    """Get the storage factory from app state; tests replace it with an in-memory one."""
    factory: StorageFactory | None = getattr(request.app.state, "storage_factory", None)
    return factory if factory is not None else StorageManager.from_config


def get_manifest_builder(request: Request) -> ManifestBuilder:
    """Get the manifest builder from app state, defaulting to the digest builder."""
    builder: ManifestBuilder | None = getattr(request.app.state, "manifest_builder", None)
    return builder if builder is not None else DigestManifestBuilder()


def get_quota(settings: Annotated[Settings, Depends(get_settings)]) -> PlanQuota:
    return PlanQuota.from_settings(settings)
