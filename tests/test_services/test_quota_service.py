"""Tests for plan quota enforcement."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from backend.exceptions import ObjectTooLargeError, QuotaExceededError
from backend.services import catalogue_service
from backend.services.catalogue_service import AssetWrite
from backend.services.quota_service import PlanQuota, format_mb, mb_to_bytes
from backend.services.snapshot_service import storage_snapshot
from backend.services.upload_service import UploadAssetInput
from backend.storage.base import StorageObject

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

MB = 1024 * 1024


async def _insert(session: AsyncSession, tenant_id: str, key: str) -> None:
    obj = StorageObject(key=key, size=1)
    await catalogue_service.insert_asset(
        session,
        tenant_id,
        AssetWrite(
            photo_id=key,
            storage_key=key,
            storage_provider="memory",
            snapshot=storage_snapshot(obj),
            manifest_item={"id": key},
        ),
    )


class TestConversions:
    def test_mb_to_bytes(self) -> None:
        assert mb_to_bytes(2) == 2 * MB
        assert mb_to_bytes(None) is None

    def test_format_mb_rounds(self) -> None:
        assert format_mb(MB + MB // 2) == 1.5


class TestLibraryCapacity:
    def test_unlimited_by_default(self) -> None:
        PlanQuota().ensure_library_capacity(current=10**6, incoming=10**6)

    def test_exactly_at_limit_is_allowed(self) -> None:
        PlanQuota(library_item_limit=5).ensure_library_capacity(current=3, incoming=2)

    def test_over_limit_is_rejected(self) -> None:
        with pytest.raises(QuotaExceededError, match="limit of 5"):
            PlanQuota(library_item_limit=5).ensure_library_capacity(current=4, incoming=2)

    def test_nothing_incoming_never_fails(self) -> None:
        PlanQuota(library_item_limit=1).ensure_library_capacity(current=9, incoming=0)


class TestProcessingAllowance:
    async def test_counts_this_months_rows(self, db_session: AsyncSession) -> None:
        await _insert(db_session, "tenant-a", "a.jpg")
        await _insert(db_session, "tenant-a", "b.jpg")
        quota = PlanQuota(monthly_asset_process_limit=3)

        await quota.ensure_processing_allowance(db_session, "tenant-a", 1)
        with pytest.raises(QuotaExceededError, match="1 remaining, 2 requested"):
            await quota.ensure_processing_allowance(db_session, "tenant-a", 2)

    async def test_other_tenants_do_not_count(self, db_session: AsyncSession) -> None:
        await _insert(db_session, "tenant-b", "a.jpg")
        quota = PlanQuota(monthly_asset_process_limit=1)
        await quota.ensure_processing_allowance(db_session, "tenant-a", 1)


class TestObjectSize:
    def test_unknown_size_passes(self) -> None:
        PlanQuota(max_sync_object_size_mb=1).ensure_object_size(StorageObject(key="a.jpg"))

    def test_over_limit_names_the_object(self) -> None:
        quota = PlanQuota(max_sync_object_size_mb=1)
        with pytest.raises(ObjectTooLargeError, match="big.jpg"):
            quota.ensure_object_size(StorageObject(key="big.jpg", size=MB + 1))

    def test_upload_limit_checks_every_file(self) -> None:
        quota = PlanQuota(max_upload_size_mb=1)
        inputs = [
            UploadAssetInput(filename="small.jpg", data=b"x"),
            UploadAssetInput(filename="huge.jpg", data=b"x" * (MB + 1)),
        ]
        with pytest.raises(ObjectTooLargeError, match="huge.jpg"):
            quota.enforce_upload_size_limit(inputs)
