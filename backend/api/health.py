"""Health check endpoint."""

from __future__ import annotations

import logging
from importlib.metadata import PackageNotFoundError, version
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_session, get_settings
from backend.config import Settings
from backend.storage.registry import list_providers

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _app_version() -> str:
    try:
        return version("photo-sync")
    except PackageNotFoundError:
        return "0.1.0"


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    storage_provider: str
    storage_providers: list[str]


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> HealthResponse:
    """Health check endpoint for monitoring and load balancers."""
    db_status = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Health check database query failed", exc_info=True)
        db_status = "error"

    return HealthResponse(
        status="ok" if db_status == "ok" else "degraded",
        version=_app_version(),
        database=db_status,
        storage_provider=settings.storage_provider,
        storage_providers=list_providers(),
    )
