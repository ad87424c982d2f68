"""Plan quotas: library size, monthly processing allowance, object sizes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from backend.exceptions import ObjectTooLargeError, QuotaExceededError
from backend.services.catalogue_service import count_created_since
from backend.services.datetime_service import month_start, now_utc

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.config import Settings
    from backend.services.upload_service import UploadAssetInput
    from backend.storage.base import StorageObject

logger = logging.getLogger(__name__)

_BYTES_PER_MB = 1024 * 1024


def mb_to_bytes(value: int | None) -> int | None:
    return value * _BYTES_PER_MB if value is not None else None


def format_mb(size: int) -> float:
    return round(size / _BYTES_PER_MB, 2)


@dataclass(frozen=True)
class PlanQuota:
    """Limits applied to one tenant. A None limit disables its check."""

    monthly_asset_process_limit: int | None = None
    library_item_limit: int | None = None
    max_upload_size_mb: int | None = None
    max_sync_object_size_mb: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> PlanQuota:
        return cls(
            monthly_asset_process_limit=settings.monthly_asset_process_limit,
            library_item_limit=settings.library_item_limit,
            max_upload_size_mb=settings.max_upload_size_mb,
            max_sync_object_size_mb=settings.max_sync_object_size_mb,
        )

    def ensure_library_capacity(self, *, current: int, incoming: int) -> None:
        """Reject a batch that would push the library past its item limit."""
        limit = self.library_item_limit
        if limit is None or incoming <= 0:
            return
        if current + incoming > limit:
            msg = (
                f"Library holds {current} photos; adding {incoming} would exceed "
                f"the limit of {limit}"
            )
            raise QuotaExceededError(msg)

    async def ensure_processing_allowance(
        self, session: AsyncSession, tenant_id: str, incoming: int
    ) -> None:
        """Reject new assets beyond this calendar month's processing allowance."""
        limit = self.monthly_asset_process_limit
        if incoming <= 0 or limit is None:
            return
        used = await count_created_since(session, tenant_id, month_start(now_utc()))
        if used + incoming > limit:
            remaining = max(limit - used, 0)
            logger.info(
                "Processing allowance exhausted for tenant %s: used %d, requested %d, limit %d",
                tenant_id,
                used,
                incoming,
                limit,
            )
            msg = (
                f"Monthly processing allowance exceeded: {remaining} remaining, "
                f"{incoming} requested"
            )
            raise QuotaExceededError(msg)

    def ensure_object_size(self, obj: StorageObject) -> None:
        """Reject a storage object larger than the per-object sync limit."""
        max_bytes = mb_to_bytes(self.max_sync_object_size_mb)
        if max_bytes is None or obj.size is None or obj.size <= max_bytes:
            return
        msg = (
            f"Storage object {obj.key} ({format_mb(obj.size)} MB) exceeds the "
            f"sync size limit of {self.max_sync_object_size_mb} MB"
        )
        raise ObjectTooLargeError(msg)

    def enforce_upload_size_limit(self, inputs: Sequence[UploadAssetInput]) -> None:
        """Reject the batch if any single file exceeds the upload size limit."""
        max_bytes = mb_to_bytes(self.max_upload_size_mb)
        if max_bytes is None:
            return
        for item in inputs:
            size = len(item.data)
            if size <= max_bytes:
                continue
            msg = (
                f"File {item.filename} ({format_mb(size)} MB) exceeds the upload "
                f"size limit of {self.max_upload_size_mb} MB"
            )
            raise ObjectTooLargeError(msg)
