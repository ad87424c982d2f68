"""Sync planning: one full diff between a storage listing and the catalogue."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from backend.services.catalogue_service import ConflictType, SyncStatus
from backend.services.snapshot_service import record_snapshot, storage_snapshot
from backend.services.sync_progress import SyncStage

if TYPE_CHECKING:
    from backend.services.catalogue_service import CatalogueRecord
    from backend.services.snapshot_service import SyncObjectSnapshot
    from backend.storage.base import StorageObject

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictCandidate:
    """A key present on both sides whose snapshots disagree."""

    record: CatalogueRecord
    storage_object: StorageObject
    storage_snapshot: SyncObjectSnapshot
    record_snapshot: SyncObjectSnapshot


@dataclass(frozen=True)
class StatusReconciliationEntry:
    """A key whose snapshots agree but whose row is not marked synced."""

    record: CatalogueRecord
    storage_snapshot: SyncObjectSnapshot


@dataclass
class SyncPlan:
    """The four disjoint partitions a run works through."""

    storage_objects: list[StorageObject] = field(default_factory=list)
    records: list[CatalogueRecord] = field(default_factory=list)
    missing_in_db: list[StorageObject] = field(default_factory=list)
    orphan_in_db: list[CatalogueRecord] = field(default_factory=list)
    metadata_conflicts: list[ConflictCandidate] = field(default_factory=list)
    status_reconciliation: list[StatusReconciliationEntry] = field(default_factory=list)

    def totals(self) -> dict[str, int]:
        """Item count per stage, keyed by stage name."""
        return {
            SyncStage.MISSING_IN_DB.value: len(self.missing_in_db),
            SyncStage.ORPHAN_IN_DB.value: len(self.orphan_in_db),
            SyncStage.METADATA_CONFLICTS.value: len(self.metadata_conflicts),
            SyncStage.STATUS_RECONCILIATION.value: len(self.status_reconciliation),
        }

    def partition_keys(self) -> dict[str, set[str]]:
        """Storage keys in each partition."""
        return {
            SyncStage.MISSING_IN_DB.value: {obj.key for obj in self.missing_in_db},
            SyncStage.ORPHAN_IN_DB.value: {record.storage_key for record in self.orphan_in_db},
            SyncStage.METADATA_CONFLICTS.value: {
                candidate.record.storage_key for candidate in self.metadata_conflicts
            },
            SyncStage.STATUS_RECONCILIATION.value: {
                entry.record.storage_key for entry in self.status_reconciliation
            },
        }


def _duplicate_still_listed(
    record: CatalogueRecord, storage_by_key: dict[str, StorageObject]
) -> bool:
    """Whether a photo-id conflict's incoming object is still in storage."""
    payload = record.conflict_payload
    return (
        payload is not None
        and payload.type == ConflictType.PHOTO_ID_CONFLICT
        and payload.incoming_storage_key in storage_by_key
    )


def compute_sync_plan(
    storage_objects: list[StorageObject],
    records: list[CatalogueRecord],
) -> SyncPlan:
    """Partition a listing and a tenant's rows by exact storage key.

    - missing_in_db: objects without a row.
    - orphan_in_db: rows (other than database-only ones) without an object.
    - metadata_conflicts: both sides present, metadata hashes differ.
    - status_reconciliation: hashes agree but the row is not synced. A
      photo-id conflict stays out while its duplicate object is still
      listed, since the import stage flags it again.

    Keys are compared verbatim. If a listing repeats a key, the last entry
    wins, matching how the catalogue can hold only one row per key.
    """
    plan = SyncPlan(storage_objects=list(storage_objects), records=list(records))

    storage_by_key: dict[str, StorageObject] = {obj.key: obj for obj in storage_objects}
    record_by_key: dict[str, CatalogueRecord] = {record.storage_key: record for record in records}

    plan.missing_in_db = [obj for obj in storage_by_key.values() if obj.key not in record_by_key]
    plan.orphan_in_db = [
        record
        for record in record_by_key.values()
        if not record.is_database_only and record.storage_key not in storage_by_key
    ]

    for storage_key, record in record_by_key.items():
        obj = storage_by_key.get(storage_key)
        if obj is None:
            continue
        current = storage_snapshot(obj)
        recorded = record_snapshot(record)
        if current.metadata_hash != recorded.metadata_hash:
            plan.metadata_conflicts.append(
                ConflictCandidate(
                    record=record,
                    storage_object=obj,
                    storage_snapshot=current,
                    record_snapshot=recorded,
                )
            )
        elif record.sync_status != SyncStatus.SYNCED and not _duplicate_still_listed(
            record, storage_by_key
        ):
            plan.status_reconciliation.append(
                StatusReconciliationEntry(record=record, storage_snapshot=current)
            )

    logger.debug(
        "Sync plan: %d objects, %d records, totals %s",
        len(plan.storage_objects),
        len(plan.records),
        plan.totals(),
    )
    return plan
