"""Reconciliation runs and manual conflict resolution.

A run plans once from a full storage listing and the tenant's rows, then
works through four stages in fixed order. Items are processed one at a
time and every catalogue write commits on its own, so an interrupted run
leaves consistent rows behind and the next run simply recomputes the diff.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from backend.exceptions import ManifestGenerationError, NotFoundError, StateConflictError
from backend.services import catalogue_service
from backend.services.catalogue_service import (
    AssetWrite,
    ConflictDetected,
    ConflictKind,
    ConflictPayload,
    ConflictType,
    SyncStatus,
)
from backend.services.datetime_service import now_iso
from backend.services.manifest_builder import compute_digest
from backend.services.snapshot_service import record_snapshot, storage_snapshot
from backend.services.sync_progress import (
    STAGE_ORDER,
    ActionType,
    LogLevel,
    ProgressReporter,
    ResolutionStrategy,
    StageStatus,
    SyncAction,
    SyncStage,
    SyncSummary,
)
from backend.services.sync_service import compute_sync_plan
from backend.storage.base import StorageOperationError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.services.catalogue_service import CatalogueRecord, SyncRunRecord
    from backend.services.manifest_builder import ManifestBuilder, ManifestItem
    from backend.services.quota_service import PlanQuota
    from backend.services.snapshot_service import SyncObjectSnapshot
    from backend.services.sync_progress import ProgressEmitter
    from backend.services.sync_service import ConflictCandidate, SyncPlan
    from backend.storage.base import StorageObject
    from backend.storage.manager import StorageManager

logger = logging.getLogger(__name__)

REASON_PREVIEW_IMPORT = "Preview - new storage object would be imported."
REASON_MANIFEST_FAILED = "Failed to generate manifest for new storage object."
REASON_PHOTO_ID_EXISTS = "Photo ID already exists for this tenant."
REASON_PHOTO_ID_UNLOADABLE = "Photo ID conflict detected but existing record could not be loaded."
REASON_STORAGE_KEY_EXISTS = "Storage key already exists for this tenant."
REASON_STORAGE_KEY_UNLOADABLE = (
    "Storage key conflict detected but existing record could not be loaded."
)
REASON_ORPHAN = "Storage object missing in provider."
REASON_METADATA_MISMATCH = "Storage metadata differs from database manifest."
REASON_DIGEST_MATCHED = "Storage metadata refreshed (content digest matched)"
REASON_STATUS_RECONCILED = "Marked as synced to reflect matching metadata."


async def flag_photo_id_collision(
    session: AsyncSession,
    tenant_id: str,
    obj: StorageObject,
    snapshot: SyncObjectSnapshot,
    photo_id: str,
    manifest: dict[str, Any],
) -> SyncAction:
    """Flag the row that already owns photo_id; the incoming object gets no row.

    Shared by sync runs and uploads. When the owning row cannot be loaded
    the returned action is unapplied and nothing is written.
    """
    existing = await catalogue_service.find_by_photo_id(session, tenant_id, photo_id)
    if existing is None:
        logger.error(
            "Photo id %s collided for %s but no owning row was found; skipping",
            photo_id,
            obj.key,
        )
        return SyncAction(
            type=ActionType.CONFLICT,
            storage_key=obj.key,
            photo_id=photo_id,
            applied=False,
            reason=REASON_PHOTO_ID_UNLOADABLE,
            snapshot_after=snapshot,
            manifest_after=manifest,
        )

    before = record_snapshot(existing)
    payload = ConflictPayload(
        type=ConflictType.PHOTO_ID_CONFLICT,
        storage_snapshot=snapshot,
        record_snapshot=before,
        incoming_storage_key=obj.key,
    )
    await catalogue_service.mark_conflict(
        session, tenant_id, existing.id, payload, REASON_PHOTO_ID_EXISTS
    )
    return SyncAction(
        type=ActionType.CONFLICT,
        storage_key=obj.key,
        photo_id=photo_id,
        applied=True,
        reason=REASON_PHOTO_ID_EXISTS,
        conflict_id=existing.id,
        conflict_payload=payload,
        snapshot_before=before,
        snapshot_after=snapshot,
        manifest_before=existing.manifest_data,
        manifest_after=manifest,
    )


@dataclass
class SyncResult:
    summary: SyncSummary
    actions: list[SyncAction] = field(default_factory=list)
    run: SyncRunRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "actions": [action.to_dict() for action in self.actions],
        }


@dataclass
class _RunState:
    """Mutable bookkeeping shared by the stages of one run."""

    plan: SyncPlan
    summary: SyncSummary
    reporter: ProgressReporter
    dry_run: bool
    actions: list[SyncAction] = field(default_factory=list)
    live_photo_map: dict[str, StorageObject] | None = None

    async def record(
        self, stage: SyncStage, index: int, total: int, action: SyncAction
    ) -> None:
        self.actions.append(action)
        await self.reporter.action(
            stage, index=index, total=total, action=action, summary=self.summary
        )


class DataSyncService:
    """Reconciles one tenant's catalogue against one storage backend."""

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        storage: StorageManager,
        manifest_builder: ManifestBuilder,
        quota: PlanQuota,
    ) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.storage = storage
        self.manifest_builder = manifest_builder
        self.quota = quota

    # -- runs ----------------------------------------------------------------

    async def run_sync(
        self, *, dry_run: bool = False, on_progress: ProgressEmitter | None = None
    ) -> SyncResult:
        """Run the four stages and append one sync-run audit row.

        Quota violations, including an oversized object waiting to be
        imported, are raised before any stage starts.
        """
        started_at = now_iso()
        reporter = ProgressReporter(on_progress)

        storage_objects = await self.storage.list_images()
        records = await catalogue_service.load_records(self.session, self.tenant_id)
        plan = compute_sync_plan(storage_objects, records)

        self.quota.ensure_library_capacity(
            current=len(plan.records), incoming=len(plan.missing_in_db)
        )
        if not dry_run:
            await self.quota.ensure_processing_allowance(
                self.session, self.tenant_id, len(plan.missing_in_db)
            )
        for obj in plan.missing_in_db:
            self.quota.ensure_object_size(obj)

        summary = SyncSummary(
            storage_objects=len(plan.storage_objects),
            database_records=len(plan.records),
        )
        state = _RunState(plan=plan, summary=summary, reporter=reporter, dry_run=dry_run)
        totals = plan.totals()
        logger.info(
            "Sync run for tenant %s (dry_run=%s) via %s: %s",
            self.tenant_id,
            dry_run,
            self.storage.provider_name,
            totals,
        )
        await reporter.start(summary, totals, dry_run=dry_run)

        handlers = {
            SyncStage.MISSING_IN_DB: self._import_missing,
            SyncStage.ORPHAN_IN_DB: self._flag_orphans,
            SyncStage.METADATA_CONFLICTS: self._resolve_metadata_conflicts,
            SyncStage.STATUS_RECONCILIATION: self._reconcile_status,
        }
        for stage in STAGE_ORDER:
            handler = handlers[stage]
            total = totals[stage.value]
            await reporter.stage(
                stage, StageStatus.START, processed=0, total=total, summary=summary
            )
            processed = await handler(state)
            await reporter.stage(
                stage, StageStatus.COMPLETE, processed=processed, total=total, summary=summary
            )

        result = SyncResult(summary=summary, actions=state.actions)
        await reporter.complete(summary, state.actions)

        result.run = await catalogue_service.record_sync_run(
            self.session,
            self.tenant_id,
            dry_run=dry_run,
            summary=summary.to_dict(),
            actions_count=len(state.actions),
            started_at=started_at,
            completed_at=now_iso(),
        )
        logger.info("Sync run for tenant %s finished: %s", self.tenant_id, summary.to_dict())
        return result

    async def _ensure_live_photo_map(self, state: _RunState) -> dict[str, StorageObject]:
        if state.live_photo_map is None:
            all_objects = await self.storage.list_all_files()
            state.live_photo_map = await self.storage.detect_live_photos(all_objects)
        return state.live_photo_map

    async def _process_object(
        self,
        obj: StorageObject,
        reporter: ProgressReporter,
        *,
        stage: SyncStage | None = None,
        live_photo_map: dict[str, StorageObject] | None = None,
        existing: dict[str, Any] | None = None,
    ) -> ManifestItem | None:
        """Run the manifest builder, converting any failure into None."""
        await reporter.log(
            LogLevel.INFO,
            "Generating manifest",
            stage=stage,
            storage_key=obj.key,
            details={
                "has_existing_manifest": existing is not None,
                "has_live_photo_map": live_photo_map is not None,
            },
        )
        try:
            item = await self.manifest_builder.process(
                obj, self.storage, live_photo_map=live_photo_map, existing=existing
            )
        except Exception as exc:
            logger.error("Failed to process storage object %s: %s", obj.key, exc, exc_info=True)
            await reporter.log(
                LogLevel.ERROR,
                "Manifest generation failed",
                stage=stage,
                storage_key=obj.key,
                details={"error": str(exc)},
            )
            return None

        if item is None:
            await reporter.log(
                LogLevel.WARN,
                "Manifest generation returned no photo",
                stage=stage,
                storage_key=obj.key,
            )
        else:
            await reporter.log(
                LogLevel.SUCCESS,
                "Manifest generated",
                stage=stage,
                storage_key=obj.key,
                details={"photo_id": item.id},
            )
        return item

    # -- stages --------------------------------------------------------------

    async def _import_missing(self, state: _RunState) -> int:
        stage = SyncStage.MISSING_IN_DB
        total = len(state.plan.missing_in_db)
        processed = 0
        for obj in state.plan.missing_in_db:
            processed += 1
            snapshot = storage_snapshot(obj)

            if state.dry_run:
                state.summary.inserted += 1
                await state.record(
                    stage,
                    processed,
                    total,
                    SyncAction(
                        type=ActionType.INSERT,
                        storage_key=obj.key,
                        photo_id=None,
                        applied=False,
                        reason=REASON_PREVIEW_IMPORT,
                        snapshot_after=snapshot,
                    ),
                )
                continue

            live_photo_map = await self._ensure_live_photo_map(state)
            item = await self._process_object(
                obj, state.reporter, stage=stage, live_photo_map=live_photo_map
            )
            if item is None:
                state.summary.errors += 1
                await state.record(
                    stage,
                    processed,
                    total,
                    SyncAction(
                        type=ActionType.ERROR,
                        storage_key=obj.key,
                        photo_id=None,
                        applied=False,
                        reason=REASON_MANIFEST_FAILED,
                        snapshot_after=snapshot,
                    ),
                )
                continue

            manifest = item.to_manifest_data()
            outcome = await catalogue_service.insert_asset(
                self.session,
                self.tenant_id,
                AssetWrite(
                    photo_id=item.id,
                    storage_key=obj.key,
                    storage_provider=self.storage.provider_name,
                    snapshot=snapshot,
                    manifest_item=manifest,
                ),
            )
            if isinstance(outcome, ConflictDetected):
                if outcome.kind == ConflictKind.PHOTO_ID:
                    action = await flag_photo_id_collision(
                        self.session, self.tenant_id, obj, snapshot, item.id, manifest
                    )
                else:
                    action = await self._storage_key_collision(obj, snapshot, item.id, manifest)
                if action.applied:
                    state.summary.conflicts += 1
                else:
                    state.summary.skipped += 1
                await state.record(stage, processed, total, action)
                continue

            state.summary.inserted += 1
            await state.record(
                stage,
                processed,
                total,
                SyncAction(
                    type=ActionType.INSERT,
                    storage_key=obj.key,
                    photo_id=item.id,
                    applied=True,
                    snapshot_after=snapshot,
                    manifest_after=manifest,
                ),
            )
        return processed

    async def _storage_key_collision(
        self,
        obj: StorageObject,
        snapshot: SyncObjectSnapshot,
        photo_id: str,
        manifest: dict[str, Any],
    ) -> SyncAction:
        """Flag a row for this key that appeared after the run was planned."""
        existing = await catalogue_service.find_by_storage_key(
            self.session, self.tenant_id, obj.key
        )
        if existing is None:
            logger.error("Storage key %s collided but no owning row was found; skipping", obj.key)
            return SyncAction(
                type=ActionType.CONFLICT,
                storage_key=obj.key,
                photo_id=photo_id,
                applied=False,
                reason=REASON_STORAGE_KEY_UNLOADABLE,
                snapshot_after=snapshot,
                manifest_after=manifest,
            )

        before = record_snapshot(existing)
        payload = ConflictPayload(
            type=ConflictType.METADATA_MISMATCH,
            storage_snapshot=snapshot,
            record_snapshot=before,
        )
        await catalogue_service.mark_conflict(
            self.session, self.tenant_id, existing.id, payload, REASON_STORAGE_KEY_EXISTS
        )
        return SyncAction(
            type=ActionType.CONFLICT,
            storage_key=obj.key,
            photo_id=photo_id,
            applied=True,
            reason=REASON_STORAGE_KEY_EXISTS,
            conflict_id=existing.id,
            conflict_payload=payload,
            snapshot_before=before,
            snapshot_after=snapshot,
            manifest_before=existing.manifest_data,
            manifest_after=manifest,
        )

    async def _flag_orphans(self, state: _RunState) -> int:
        stage = SyncStage.ORPHAN_IN_DB
        total = len(state.plan.orphan_in_db)
        processed = 0
        for record in state.plan.orphan_in_db:
            processed += 1
            before = record_snapshot(record)
            payload = ConflictPayload(type=ConflictType.MISSING_IN_STORAGE, record_snapshot=before)
            state.summary.conflicts += 1
            if not state.dry_run:
                await catalogue_service.mark_conflict(
                    self.session, self.tenant_id, record.id, payload, REASON_ORPHAN
                )
            await state.record(
                stage,
                processed,
                total,
                SyncAction(
                    type=ActionType.CONFLICT,
                    storage_key=record.storage_key,
                    photo_id=record.photo_id,
                    applied=not state.dry_run,
                    reason=REASON_ORPHAN,
                    conflict_id=record.id,
                    conflict_payload=payload,
                    snapshot_before=before,
                    manifest_before=record.manifest_data,
                ),
            )
        return processed

    async def _resolve_metadata_conflicts(self, state: _RunState) -> int:
        stage = SyncStage.METADATA_CONFLICTS
        total = len(state.plan.metadata_conflicts)
        processed = 0
        for candidate in state.plan.metadata_conflicts:
            processed += 1
            record = candidate.record

            if await self._digest_matches(candidate):
                if not state.dry_run:
                    await catalogue_service.mark_synced(
                        self.session, self.tenant_id, record.id, candidate.storage_snapshot
                    )
                state.summary.updated += 1
                await state.record(
                    stage,
                    processed,
                    total,
                    SyncAction(
                        type=ActionType.UPDATE,
                        storage_key=candidate.storage_object.key,
                        photo_id=record.photo_id,
                        applied=not state.dry_run,
                        reason=REASON_DIGEST_MATCHED,
                        snapshot_before=candidate.record_snapshot,
                        snapshot_after=candidate.storage_snapshot,
                        manifest_before=record.manifest_data,
                        manifest_after=record.manifest_data,
                    ),
                )
                continue

            payload = ConflictPayload(
                type=ConflictType.METADATA_MISMATCH,
                storage_snapshot=candidate.storage_snapshot,
                record_snapshot=candidate.record_snapshot,
            )
            state.summary.conflicts += 1
            if not state.dry_run:
                await catalogue_service.mark_conflict(
                    self.session, self.tenant_id, record.id, payload, REASON_METADATA_MISMATCH
                )
            await state.record(
                stage,
                processed,
                total,
                SyncAction(
                    type=ActionType.CONFLICT,
                    storage_key=candidate.storage_object.key,
                    photo_id=record.photo_id,
                    applied=not state.dry_run,
                    reason=REASON_METADATA_MISMATCH,
                    conflict_id=record.id,
                    conflict_payload=payload,
                    snapshot_before=candidate.record_snapshot,
                    snapshot_after=candidate.storage_snapshot,
                    manifest_before=record.manifest_data,
                ),
            )
        return processed

    async def _digest_matches(self, candidate: ConflictCandidate) -> bool:
        """Whether the object's bytes still hash to the digest in the row's manifest."""
        manifest = candidate.record.manifest_data or {}
        digest = manifest.get("digest")
        if not digest:
            return False
        try:
            data = await self.storage.get_file(candidate.storage_object.key)
        except StorageOperationError as exc:
            logger.warning(
                "Failed to download %s for digest comparison: %s",
                candidate.storage_object.key,
                exc,
            )
            return False
        if data is None:
            return False
        return compute_digest(data) == digest

    async def _reconcile_status(self, state: _RunState) -> int:
        stage = SyncStage.STATUS_RECONCILIATION
        total = len(state.plan.status_reconciliation)
        processed = 0
        for entry in state.plan.status_reconciliation:
            processed += 1
            record = entry.record
            state.summary.updated += 1
            if not state.dry_run:
                await catalogue_service.mark_synced(
                    self.session, self.tenant_id, record.id, entry.storage_snapshot
                )
            await state.record(
                stage,
                processed,
                total,
                SyncAction(
                    type=ActionType.UPDATE,
                    storage_key=record.storage_key,
                    photo_id=record.photo_id,
                    applied=not state.dry_run,
                    reason=REASON_STATUS_RECONCILED,
                    snapshot_before=record_snapshot(record),
                    snapshot_after=entry.storage_snapshot,
                    manifest_before=record.manifest_data,
                    manifest_after=record.manifest_data,
                ),
            )
        return processed

    # -- status --------------------------------------------------------------

    async def get_status(self) -> SyncRunRecord | None:
        """Return the most recent sync run, if any."""
        return await catalogue_service.get_last_sync_run(self.session, self.tenant_id)

    async def list_conflicts(self) -> list[CatalogueRecord]:
        return await catalogue_service.list_conflicts(self.session, self.tenant_id)

    # -- manual resolution ---------------------------------------------------

    async def resolve_conflict(
        self,
        record_id: int,
        strategy: ResolutionStrategy,
        *,
        dry_run: bool = False,
    ) -> SyncAction:
        """Resolve a conflicted row in favour of storage or of the database.

        Raises NotFoundError for an unknown id and StateConflictError when
        the row is not in conflict or its payload lacks what the strategy
        needs. Storage and builder failures propagate to the caller.
        """
        record = await catalogue_service.get_record(self.session, self.tenant_id, record_id)
        if record is None:
            msg = "Conflict record not found."
            raise NotFoundError(msg)
        if record.sync_status != SyncStatus.CONFLICT:
            msg = "Target record is not in conflict state."
            raise StateConflictError(msg)
        payload = record.conflict_payload
        if payload is None:
            msg = "Missing conflict payload on record."
            raise StateConflictError(msg)

        logger.info(
            "Resolving conflict %d (%s) for tenant %s with %s (dry_run=%s)",
            record.id,
            payload.type,
            self.tenant_id,
            strategy,
            dry_run,
        )
        if strategy == ResolutionStrategy.PREFER_STORAGE:
            return await self._resolve_by_storage(record, payload, dry_run=dry_run)
        return await self._resolve_by_database(record, payload, dry_run=dry_run)

    async def _find_listed_image(self, storage_key: str) -> StorageObject | None:
        for obj in await self.storage.list_images():
            if obj.key == storage_key:
                return obj
        return None

    async def _resolve_by_storage(
        self, record: CatalogueRecord, payload: ConflictPayload, *, dry_run: bool
    ) -> SyncAction:
        before = record_snapshot(record)

        if payload.type == ConflictType.MISSING_IN_STORAGE:
            if not dry_run:
                await catalogue_service.delete_record(self.session, self.tenant_id, record.id)
            return SyncAction(
                type=ActionType.DELETE,
                storage_key=record.storage_key,
                photo_id=record.photo_id,
                applied=not dry_run,
                resolution=ResolutionStrategy.PREFER_STORAGE,
                reason=(
                    "Preview - would remove database record to match storage."
                    if dry_run
                    else "Removed database record to align with storage."
                ),
                snapshot_before=before,
                manifest_before=record.manifest_data,
            )

        if payload.type == ConflictType.PHOTO_ID_CONFLICT:
            return await self._adopt_incoming_object(record, payload, dry_run=dry_run)

        obj = await self._find_listed_image(record.storage_key)
        if obj is None:
            msg = "Storage object no longer exists; rerun data sync before resolving."
            raise ManifestGenerationError(msg)
        item = await self._process_object(
            obj, ProgressReporter(), existing=record.manifest_data
        )
        if item is None:
            msg = "Failed to reprocess storage object."
            raise ManifestGenerationError(msg)

        after = storage_snapshot(obj)
        manifest = item.to_manifest_data()
        if not dry_run:
            await catalogue_service.replace_from_storage(
                self.session,
                self.tenant_id,
                record.id,
                AssetWrite(
                    photo_id=item.id,
                    storage_key=record.storage_key,
                    storage_provider=self.storage.provider_name,
                    snapshot=after,
                    manifest_item=manifest,
                ),
            )
        return SyncAction(
            type=ActionType.UPDATE,
            storage_key=record.storage_key,
            photo_id=item.id,
            applied=not dry_run,
            resolution=ResolutionStrategy.PREFER_STORAGE,
            reason="Updated record using latest storage metadata.",
            snapshot_before=before,
            snapshot_after=after,
            manifest_before=record.manifest_data,
            manifest_after=manifest,
        )

    async def _adopt_incoming_object(
        self, record: CatalogueRecord, payload: ConflictPayload, *, dry_run: bool
    ) -> SyncAction:
        """Point a photo-id conflicted row at the object that collided with it.

        If that object has disappeared meanwhile, the row is re-flagged as
        missing-in-storage instead, so the operator can settle it like any
        other orphan.
        """
        target_key = payload.incoming_storage_key
        if not target_key:
            msg = (
                "Conflict payload missing incoming storage key. "
                "Rerun data sync before resolving."
            )
            raise StateConflictError(msg)

        before = record_snapshot(record)
        obj = await self._find_listed_image(target_key)
        if obj is None:
            reflagged = ConflictPayload(
                type=ConflictType.MISSING_IN_STORAGE,
                record_snapshot=before,
                incoming_storage_key=target_key,
            )
            reason = "Incoming storage object no longer exists; flagged as missing in storage."
            if not dry_run:
                await catalogue_service.mark_conflict(
                    self.session, self.tenant_id, record.id, reflagged, reason
                )
            logger.info(
                "Incoming object %s for conflict %d is gone; re-flagged as missing-in-storage",
                target_key,
                record.id,
            )
            return SyncAction(
                type=ActionType.CONFLICT,
                storage_key=target_key,
                photo_id=record.photo_id,
                applied=not dry_run,
                resolution=ResolutionStrategy.PREFER_STORAGE,
                reason=reason,
                conflict_id=record.id,
                conflict_payload=reflagged,
                snapshot_before=before,
                manifest_before=record.manifest_data,
            )

        item = await self._process_object(
            obj, ProgressReporter(), existing=record.manifest_data
        )
        if item is None:
            msg = "Failed to reprocess incoming storage object."
            raise ManifestGenerationError(msg)

        after = storage_snapshot(obj)
        manifest = item.to_manifest_data()
        if not dry_run:
            await catalogue_service.replace_from_storage(
                self.session,
                self.tenant_id,
                record.id,
                AssetWrite(
                    photo_id=item.id,
                    storage_key=target_key,
                    storage_provider=self.storage.provider_name,
                    snapshot=after,
                    manifest_item=manifest,
                ),
            )
        return SyncAction(
            type=ActionType.UPDATE,
            storage_key=target_key,
            photo_id=item.id,
            applied=not dry_run,
            resolution=ResolutionStrategy.PREFER_STORAGE,
            reason="Updated record using incoming storage object after photo ID conflict.",
            snapshot_before=before,
            snapshot_after=after,
            manifest_before=record.manifest_data,
            manifest_after=manifest,
        )

    async def _resolve_by_database(
        self, record: CatalogueRecord, payload: ConflictPayload, *, dry_run: bool
    ) -> SyncAction:
        before = record_snapshot(record)
        manifest = record.manifest_data

        if payload.type == ConflictType.MISSING_IN_STORAGE:
            if not dry_run:
                await catalogue_service.mark_database_only(self.session, self.tenant_id, record.id)
            return SyncAction(
                type=ActionType.UPDATE,
                storage_key=record.storage_key,
                photo_id=record.photo_id,
                applied=not dry_run,
                resolution=ResolutionStrategy.PREFER_DATABASE,
                reason=(
                    "Preview - would retain database record despite missing storage."
                    if dry_run
                    else "Marked record as database-only after missing storage reconciliation."
                ),
                snapshot_before=before,
                manifest_before=manifest,
                manifest_after=manifest,
            )

        snapshot = payload.storage_snapshot
        if snapshot is None:
            msg = "Missing storage snapshot to resolve metadata mismatch."
            raise StateConflictError(msg)

        if payload.type == ConflictType.PHOTO_ID_CONFLICT:
            if not dry_run:
                await catalogue_service.clear_conflict(self.session, self.tenant_id, record.id)
            return SyncAction(
                type=ActionType.UPDATE,
                storage_key=record.storage_key,
                photo_id=record.photo_id,
                applied=not dry_run,
                resolution=ResolutionStrategy.PREFER_DATABASE,
                reason=(
                    "Preview - would keep existing database record despite duplicate photo ID."
                    if dry_run
                    else "Kept existing database record despite duplicate photo ID."
                ),
                snapshot_before=before,
                snapshot_after=snapshot,
                manifest_before=manifest,
                manifest_after=manifest,
            )

        if not dry_run:
            await catalogue_service.mark_synced(self.session, self.tenant_id, record.id, snapshot)
        return SyncAction(
            type=ActionType.UPDATE,
            storage_key=record.storage_key,
            photo_id=record.photo_id,
            applied=not dry_run,
            resolution=ResolutionStrategy.PREFER_DATABASE,
            reason="Marked conflict as resolved in favor of database manifest.",
            snapshot_before=before,
            snapshot_after=snapshot,
            manifest_before=manifest,
            manifest_after=manifest,
        )
