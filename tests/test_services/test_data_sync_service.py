"""Tests for reconciliation runs."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.exceptions import ObjectTooLargeError, QuotaExceededError
from backend.services import catalogue_service
from backend.services.catalogue_service import AssetWrite, ConflictType, Inserted, SyncStatus
from backend.services.data_sync_service import (
    REASON_DIGEST_MATCHED,
    REASON_MANIFEST_FAILED,
    REASON_METADATA_MISMATCH,
    REASON_ORPHAN,
    REASON_PHOTO_ID_EXISTS,
    REASON_PREVIEW_IMPORT,
    REASON_STATUS_RECONCILED,
    REASON_STORAGE_KEY_EXISTS,
    DataSyncService,
)
from backend.services.manifest_builder import DigestManifestBuilder, compute_digest
from backend.services.quota_service import PlanQuota
from backend.services.snapshot_service import storage_snapshot
from backend.services.sync_progress import ActionType, EventType, ProgressEvent
from tests.conftest import FailingManifestBuilder

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from backend.services.manifest_builder import ManifestItem
    from backend.storage.base import StorageObject
    from backend.storage.manager import StorageManager
    from tests.conftest import InMemoryStorageProvider

TENANT = "tenant-a"


def _service(
    session: AsyncSession,
    storage: StorageManager,
    builder: Any,
    quota: PlanQuota | None = None,
    tenant_id: str = TENANT,
) -> DataSyncService:
    return DataSyncService(session, tenant_id, storage, builder, quota or PlanQuota())


class TestImport:
    async def test_imports_new_objects(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("2025/a.jpg", b"alpha")
        memory_provider.put("2025/b.png", b"beta")
        memory_provider.put("notes.txt", b"not an image")

        result = await _service(db_session, storage, builder).run_sync()

        assert result.summary.storage_objects == 2
        assert result.summary.inserted == 2
        assert [action.type for action in result.actions] == [ActionType.INSERT] * 2
        records = await catalogue_service.load_records(db_session, TENANT)
        assert {record.storage_key for record in records} == {"2025/a.jpg", "2025/b.png"}
        first = next(record for record in records if record.storage_key == "2025/a.jpg")
        assert first.photo_id == "a"
        assert first.sync_status == SyncStatus.SYNCED
        assert first.storage_provider == "memory"
        assert first.manifest["version"] == "v7"
        assert first.manifest["data"]["digest"] == compute_digest(b"alpha")
        assert first.manifest["data"]["original_url"] == "https://cdn.test/2025/a.jpg"

    async def test_second_run_on_clean_state_is_a_no_op(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"alpha")
        memory_provider.put("b.jpg", b"beta")
        service = _service(db_session, storage, builder)
        await service.run_sync()

        second = await service.run_sync()

        assert second.actions == []
        assert second.summary.to_dict() == {
            "storage_objects": 2,
            "database_records": 2,
            "inserted": 0,
            "updated": 0,
            "deleted": 0,
            "conflicts": 0,
            "skipped": 0,
            "errors": 0,
        }

    async def test_dry_run_writes_nothing_but_the_run_row(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"alpha")

        result = await _service(db_session, storage, builder).run_sync(dry_run=True)

        assert result.summary.inserted == 1
        action = result.actions[0]
        assert action.applied is False
        assert action.reason == REASON_PREVIEW_IMPORT
        assert action.photo_id is None
        assert builder.processed == []
        assert await catalogue_service.count_records(db_session, TENANT) == 0
        last_run = await catalogue_service.get_last_sync_run(db_session, TENANT)
        assert last_run is not None
        assert last_run.dry_run is True
        assert last_run.summary["inserted"] == 1

    async def test_manifest_failure_counts_an_error_and_continues(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
    ) -> None:
        memory_provider.put("bad.jpg", b"corrupt")
        memory_provider.put("empty.jpg", b"nothing")
        memory_provider.put("good.jpg", b"fine")
        builder = FailingManifestBuilder({"bad.jpg"}, empty_keys={"empty.jpg"})

        result = await _service(db_session, storage, builder).run_sync()

        assert result.summary.errors == 2
        assert result.summary.inserted == 1
        errors = [action for action in result.actions if action.type == ActionType.ERROR]
        assert {action.storage_key for action in errors} == {"bad.jpg", "empty.jpg"}
        assert all(action.reason == REASON_MANIFEST_FAILED for action in errors)
        records = await catalogue_service.load_records(db_session, TENANT)
        assert [record.storage_key for record in records] == ["good.jpg"]

    async def test_duplicate_photo_id_flags_the_existing_row(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a/IMG_1.jpg", b"first")
        memory_provider.put("b/IMG_1.jpg", b"second")

        result = await _service(db_session, storage, builder).run_sync()

        assert result.summary.inserted == 1
        assert result.summary.conflicts == 1
        conflict = result.actions[1]
        assert conflict.type == ActionType.CONFLICT
        assert conflict.reason == REASON_PHOTO_ID_EXISTS
        assert conflict.storage_key == "b/IMG_1.jpg"
        records = await catalogue_service.load_records(db_session, TENANT)
        assert len(records) == 1
        row = records[0]
        assert row.storage_key == "a/IMG_1.jpg"
        assert row.sync_status == SyncStatus.CONFLICT
        assert row.conflict_payload is not None
        assert row.conflict_payload.type == ConflictType.PHOTO_ID_CONFLICT
        assert row.conflict_payload.incoming_storage_key == "b/IMG_1.jpg"
        assert conflict.conflict_id == row.id

    async def test_photo_id_conflict_survives_a_repeat_run(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a/IMG_1.jpg", b"first")
        memory_provider.put("b/IMG_1.jpg", b"second")
        service = _service(db_session, storage, builder)
        await service.run_sync()

        second = await service.run_sync()

        assert [(action.type, action.storage_key) for action in second.actions] == [
            (ActionType.CONFLICT, "b/IMG_1.jpg")
        ]
        assert second.summary.updated == 0
        conflicts = await catalogue_service.list_conflicts(db_session, TENANT)
        assert [record.storage_key for record in conflicts] == ["a/IMG_1.jpg"]

    async def test_photo_id_conflict_heals_once_the_duplicate_is_gone(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a/IMG_1.jpg", b"first")
        memory_provider.put("b/IMG_1.jpg", b"second")
        service = _service(db_session, storage, builder)
        await service.run_sync()
        del memory_provider.objects["b/IMG_1.jpg"]

        result = await service.run_sync()

        assert [action.reason for action in result.actions] == [REASON_STATUS_RECONCILED]
        assert await catalogue_service.list_conflicts(db_session, TENANT) == []

    async def test_live_photo_video_is_attached(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("IMG_7.HEIC", b"still")
        memory_provider.put("img_7.mov", b"motion")

        await _service(db_session, storage, builder).run_sync()

        record = await catalogue_service.find_by_storage_key(db_session, TENANT, "IMG_7.HEIC")
        assert record is not None
        manifest = record.manifest["data"]
        assert manifest["is_live_photo"] is True
        assert manifest["live_photo_video_key"] == "img_7.mov"

    async def test_runs_are_scoped_to_the_tenant(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"alpha")
        await _service(db_session, storage, builder, tenant_id="tenant-b").run_sync()

        result = await _service(db_session, storage, builder).run_sync()

        assert result.summary.database_records == 0
        assert result.summary.inserted == 1
        assert await catalogue_service.count_records(db_session, "tenant-b") == 1


class _RacingBuilder:
    """Builder that lets another writer claim the key or photo id mid-run."""

    def __init__(self, engine: AsyncEngine, *, photo_id: str, storage_key: str) -> None:
        self.factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        self.photo_id = photo_id
        self.storage_key = storage_key
        self.delegate = DigestManifestBuilder()

    async def process(
        self,
        obj: StorageObject,
        storage: StorageManager,
        *,
        live_photo_map: dict[str, StorageObject] | None = None,
        existing: dict[str, Any] | None = None,
    ) -> ManifestItem | None:
        async with self.factory() as other:
            outcome = await catalogue_service.insert_asset(
                other,
                TENANT,
                AssetWrite(
                    photo_id=self.photo_id,
                    storage_key=self.storage_key,
                    storage_provider="memory",
                    snapshot=storage_snapshot(obj),
                    manifest_item={"id": self.photo_id},
                ),
            )
            assert isinstance(outcome, Inserted)
        return await self.delegate.process(obj, storage, live_photo_map=live_photo_map)


class TestConcurrentWriters:
    async def test_storage_key_claimed_mid_run_becomes_a_conflict(
        self,
        db_engine: AsyncEngine,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
    ) -> None:
        memory_provider.put("race.jpg", b"data")
        builder = _RacingBuilder(db_engine, photo_id="other-id", storage_key="race.jpg")

        result = await _service(db_session, storage, builder).run_sync()

        assert result.summary.inserted == 0
        assert result.summary.conflicts == 1
        action = result.actions[0]
        assert action.reason == REASON_STORAGE_KEY_EXISTS
        record = await catalogue_service.find_by_storage_key(db_session, TENANT, "race.jpg")
        assert record is not None
        assert record.photo_id == "other-id"
        assert record.sync_status == SyncStatus.CONFLICT
        assert record.conflict_payload is not None
        assert record.conflict_payload.type == ConflictType.METADATA_MISMATCH
        assert action.conflict_id == record.id

    async def test_photo_id_claimed_mid_run_becomes_a_conflict(
        self,
        db_engine: AsyncEngine,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
    ) -> None:
        memory_provider.put("race.jpg", b"data")
        builder = _RacingBuilder(db_engine, photo_id="race", storage_key="elsewhere.jpg")

        result = await _service(db_session, storage, builder).run_sync()

        assert result.summary.conflicts == 1
        assert result.actions[0].reason == REASON_PHOTO_ID_EXISTS
        owner = await catalogue_service.find_by_photo_id(db_session, TENANT, "race")
        assert owner is not None
        assert owner.storage_key == "elsewhere.jpg"
        assert owner.conflict_payload is not None
        assert owner.conflict_payload.incoming_storage_key == "race.jpg"


class TestDrift:
    async def test_orphan_is_flagged_then_healed_when_restored(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"alpha")
        service = _service(db_session, storage, builder)
        await service.run_sync()

        del memory_provider.objects["a.jpg"]
        orphaned = await service.run_sync()

        assert orphaned.summary.conflicts == 1
        assert orphaned.actions[0].reason == REASON_ORPHAN
        record = await catalogue_service.find_by_storage_key(db_session, TENANT, "a.jpg")
        assert record is not None
        assert record.sync_status == SyncStatus.CONFLICT
        assert record.conflict_payload is not None
        assert record.conflict_payload.type == ConflictType.MISSING_IN_STORAGE

        memory_provider.put("a.jpg", b"alpha")
        healed = await service.run_sync()

        assert healed.summary.updated == 1
        assert healed.actions[0].reason == REASON_STATUS_RECONCILED
        record = await catalogue_service.find_by_storage_key(db_session, TENANT, "a.jpg")
        assert record is not None
        assert record.sync_status == SyncStatus.SYNCED
        assert record.conflict_payload is None

    async def test_touched_but_identical_object_is_refreshed(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"alpha")
        service = _service(db_session, storage, builder)
        await service.run_sync()

        touched = datetime(2025, 7, 1, tzinfo=UTC)
        memory_provider.put("a.jpg", b"alpha", last_modified=touched)
        result = await service.run_sync()

        assert result.summary.updated == 1
        assert result.summary.conflicts == 0
        assert result.actions[0].reason == REASON_DIGEST_MATCHED
        record = await catalogue_service.find_by_storage_key(db_session, TENANT, "a.jpg")
        assert record is not None
        assert record.sync_status == SyncStatus.SYNCED
        assert record.last_modified == "2025-07-01T00:00:00.000Z"

    async def test_changed_content_is_a_metadata_conflict(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"alpha")
        service = _service(db_session, storage, builder)
        await service.run_sync()

        memory_provider.put("a.jpg", b"rewritten")
        result = await service.run_sync()

        assert result.summary.conflicts == 1
        action = result.actions[0]
        assert action.reason == REASON_METADATA_MISMATCH
        assert action.snapshot_before is not None
        assert action.snapshot_after is not None
        assert action.snapshot_before.size == 5
        assert action.snapshot_after.size == 9
        record = await catalogue_service.find_by_storage_key(db_session, TENANT, "a.jpg")
        assert record is not None
        assert record.sync_status == SyncStatus.CONFLICT
        assert record.size == 5

    async def test_unreadable_object_falls_back_to_a_conflict(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"alpha")
        service = _service(db_session, storage, builder)
        await service.run_sync()

        memory_provider.put("a.jpg", b"alpha", last_modified=datetime(2025, 8, 1, tzinfo=UTC))
        memory_provider.failing_keys.add("a.jpg")
        result = await service.run_sync()

        assert result.summary.conflicts == 1
        assert result.actions[0].reason == REASON_METADATA_MISMATCH


class TestLimits:
    async def test_library_limit_aborts_before_any_stage(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"alpha")
        memory_provider.put("b.jpg", b"beta")
        events: list[ProgressEvent] = []

        async def collect(event: ProgressEvent) -> None:
            events.append(event)

        service = _service(db_session, storage, builder, PlanQuota(library_item_limit=1))
        with pytest.raises(QuotaExceededError):
            await service.run_sync(on_progress=collect)

        assert events == []
        assert await catalogue_service.count_records(db_session, TENANT) == 0
        assert await catalogue_service.get_last_sync_run(db_session, TENANT) is None

    async def test_monthly_allowance_is_not_checked_for_dry_runs(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"alpha")
        memory_provider.put("b.jpg", b"beta")
        service = _service(
            db_session, storage, builder, PlanQuota(monthly_asset_process_limit=1)
        )

        preview = await service.run_sync(dry_run=True)
        assert preview.summary.inserted == 2

        with pytest.raises(QuotaExceededError, match="1 remaining, 2 requested"):
            await service.run_sync()

    async def test_oversized_object_aborts_before_any_import(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"small")
        memory_provider.put("b.jpg", b"x" * (2 * 1024 * 1024))
        memory_provider.put("c.jpg", b"small too")
        service = _service(db_session, storage, builder, PlanQuota(max_sync_object_size_mb=1))

        with pytest.raises(ObjectTooLargeError, match="b.jpg"):
            await service.run_sync()
        with pytest.raises(ObjectTooLargeError, match="b.jpg"):
            await service.run_sync(dry_run=True)

        assert await catalogue_service.count_records(db_session, TENANT) == 0
        assert await catalogue_service.get_last_sync_run(db_session, TENANT) is None


class TestProgressEvents:
    async def test_event_sequence_follows_the_stages(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"alpha")
        events: list[ProgressEvent] = []

        async def collect(event: ProgressEvent) -> None:
            events.append(event)

        result = await _service(db_session, storage, builder).run_sync(
            dry_run=True, on_progress=collect
        )

        kinds = [event.type for event in events]
        assert kinds[0] == EventType.START
        assert kinds[-1] == EventType.COMPLETE
        stage_events = [
            (event.payload["stage"], event.payload["status"])
            for event in events
            if event.type == EventType.STAGE
        ]
        assert stage_events == [
            ("missing-in-db", "start"),
            ("missing-in-db", "complete"),
            ("orphan-in-db", "start"),
            ("orphan-in-db", "complete"),
            ("metadata-conflicts", "start"),
            ("metadata-conflicts", "complete"),
            ("status-reconciliation", "start"),
            ("status-reconciliation", "complete"),
        ]
        start = events[0].payload
        assert start["totals"]["missing-in-db"] == 1
        assert start["options"] == {"dry_run": True}
        action_event = next(event for event in events if event.type == EventType.ACTION)
        assert action_event.payload["index"] == 1
        assert action_event.payload["total"] == 1
        assert events[-1].payload["actions"] == [action.to_dict() for action in result.actions]

    async def test_event_summaries_are_snapshots(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        memory_provider.put("a.jpg", b"alpha")
        memory_provider.put("b.jpg", b"beta")
        events: list[ProgressEvent] = []

        async def collect(event: ProgressEvent) -> None:
            events.append(event)

        await _service(db_session, storage, builder).run_sync(on_progress=collect)

        inserted_per_action = [
            event.payload["summary"]["inserted"]
            for event in events
            if event.type == EventType.ACTION
        ]
        assert inserted_per_action == [1, 2]


class TestStatusQueries:
    async def test_status_and_conflicts_follow_runs(
        self,
        db_session: AsyncSession,
        storage: StorageManager,
        memory_provider: InMemoryStorageProvider,
        builder: FailingManifestBuilder,
    ) -> None:
        service = _service(db_session, storage, builder)
        assert await service.get_status() is None

        memory_provider.put("a.jpg", b"alpha")
        await service.run_sync()
        memory_provider.objects.clear()
        await service.run_sync(dry_run=True)
        assert await service.list_conflicts() == []

        await service.run_sync()

        status = await service.get_status()
        assert status is not None
        assert status.dry_run is False
        assert status.summary["conflicts"] == 1
        assert [record.storage_key for record in await service.list_conflicts()] == ["a.jpg"]
