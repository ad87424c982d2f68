"""Catalogue reads and writes: the only code that mutates photo_assets rows.

Rows are converted into frozen ``CatalogueRecord`` values as soon as they
are loaded, and every write is a Core statement followed by its own commit.
No transaction spans more than one item, so a failed write never takes
earlier progress with it.
"""

from __future__ import annotations

import copy
import logging
import posixpath
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from backend.exceptions import InternalServerError
from backend.models.photo import (
    CURRENT_PHOTO_MANIFEST_VERSION,
    DATABASE_ONLY_PROVIDER,
    UNIQUE_CONSTRAINT_PHOTO_ID,
    UNIQUE_CONSTRAINT_STORAGE_KEY,
    PhotoAsset,
    PhotoSyncRun,
)
from backend.services.datetime_service import format_timestamp, now_iso
from backend.services.snapshot_service import SyncObjectSnapshot

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class SyncStatus(StrEnum):
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"


class ConflictType(StrEnum):
    MISSING_IN_STORAGE = "missing-in-storage"
    METADATA_MISMATCH = "metadata-mismatch"
    PHOTO_ID_CONFLICT = "photo-id-conflict"


class ConflictKind(StrEnum):
    """Which unique constraint a write collided with."""

    PHOTO_ID = "photo-id"
    STORAGE_KEY = "storage-key"


@dataclass(frozen=True)
class ConflictPayload:
    """Typed conflict state stored on a row. Replaced wholesale, never patched."""

    type: ConflictType
    storage_snapshot: SyncObjectSnapshot | None = None
    record_snapshot: SyncObjectSnapshot | None = None
    incoming_storage_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": str(self.type),
            "storage_snapshot": self.storage_snapshot.to_dict() if self.storage_snapshot else None,
            "record_snapshot": self.record_snapshot.to_dict() if self.record_snapshot else None,
            "incoming_storage_key": self.incoming_storage_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ConflictPayload | None:
        if not data:
            return None
        return cls(
            type=ConflictType(data["type"]),
            storage_snapshot=SyncObjectSnapshot.from_dict(data.get("storage_snapshot")),
            record_snapshot=SyncObjectSnapshot.from_dict(data.get("record_snapshot")),
            incoming_storage_key=data.get("incoming_storage_key"),
        )


@dataclass(frozen=True)
class CatalogueRecord:
    """Immutable view of one photo_assets row."""

    id: int
    tenant_id: str
    photo_id: str
    storage_key: str
    storage_provider: str
    size: int | None
    etag: str | None
    last_modified: str | None
    metadata_hash: str | None
    manifest_version: str
    manifest: dict[str, Any]
    sync_status: str
    conflict_reason: str | None
    conflict_payload: ConflictPayload | None
    synced_at: str
    created_at: str
    updated_at: str

    @property
    def manifest_data(self) -> dict[str, Any] | None:
        """The manifest item, deep-copied so callers can never alias row state."""
        data = self.manifest.get("data")
        return copy.deepcopy(data) if data is not None else None

    @property
    def is_database_only(self) -> bool:
        return self.storage_provider == DATABASE_ONLY_PROVIDER

    @classmethod
    def from_row(cls, row: PhotoAsset) -> CatalogueRecord:
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            photo_id=row.photo_id,
            storage_key=row.storage_key,
            storage_provider=row.storage_provider,
            size=row.size,
            etag=row.etag,
            last_modified=row.last_modified,
            metadata_hash=row.metadata_hash,
            manifest_version=row.manifest_version,
            manifest=copy.deepcopy(row.manifest or {}),
            sync_status=row.sync_status,
            conflict_reason=row.conflict_reason,
            conflict_payload=ConflictPayload.from_dict(row.conflict_payload),
            synced_at=row.synced_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


@dataclass(frozen=True)
class AssetWrite:
    """Everything needed to create (or overwrite) a row from a processed object."""

    photo_id: str
    storage_key: str
    storage_provider: str
    snapshot: SyncObjectSnapshot
    manifest_item: dict[str, Any]


@dataclass(frozen=True)
class Inserted:
    record: CatalogueRecord


@dataclass(frozen=True)
class ConflictDetected:
    kind: ConflictKind
    detail: str


InsertOutcome = Inserted | ConflictDetected


@dataclass(frozen=True)
class SyncRunRecord:
    id: int
    dry_run: bool
    summary: dict[str, int]
    actions_count: int
    started_at: str
    completed_at: str


def build_manifest_payload(item: dict[str, Any]) -> dict[str, Any]:
    """Wrap a manifest item in the versioned envelope stored on rows."""
    return {"version": CURRENT_PHOTO_MANIFEST_VERSION, "data": copy.deepcopy(item)}


def normalize_base_name(storage_key: str) -> str:
    """Lowercased final path segment without its extension."""
    filename = posixpath.basename(storage_key)
    return posixpath.splitext(filename)[0].strip().lower()


def classify_integrity_error(exc: IntegrityError) -> ConflictKind | None:
    """Map a unique violation on photo_assets to the constraint it hit.

    PostgreSQL reports the constraint name; SQLite reports the column list
    (``UNIQUE constraint failed: photo_assets.tenant_id, photo_assets.photo_id``).
    """
    orig = exc.orig
    constraint = getattr(orig, "constraint_name", None) or getattr(
        getattr(orig, "diag", None), "constraint_name", None
    )
    message = f"{constraint or ''} {orig}"
    if UNIQUE_CONSTRAINT_PHOTO_ID in message or "photo_assets.photo_id" in message:
        return ConflictKind.PHOTO_ID
    if UNIQUE_CONSTRAINT_STORAGE_KEY in message or "photo_assets.storage_key" in message:
        return ConflictKind.STORAGE_KEY
    return None


# -- reads -------------------------------------------------------------------


def _select_assets() -> Any:
    # Writes go through Core statements, so identity-mapped rows must be
    # refreshed from every read.
    return select(PhotoAsset).execution_options(populate_existing=True)


async def load_records(session: AsyncSession, tenant_id: str) -> list[CatalogueRecord]:
    """Load every row of a tenant, ordered by id."""
    stmt = _select_assets().where(PhotoAsset.tenant_id == tenant_id).order_by(PhotoAsset.id)
    result = await session.scalars(stmt)
    return [CatalogueRecord.from_row(row) for row in result.all()]


async def get_record(
    session: AsyncSession, tenant_id: str, record_id: int
) -> CatalogueRecord | None:
    stmt = _select_assets().where(
        PhotoAsset.tenant_id == tenant_id, PhotoAsset.id == record_id
    )
    row = (await session.scalars(stmt)).first()
    return CatalogueRecord.from_row(row) if row is not None else None


async def find_by_photo_id(
    session: AsyncSession, tenant_id: str, photo_id: str
) -> CatalogueRecord | None:
    stmt = _select_assets().where(
        PhotoAsset.tenant_id == tenant_id, PhotoAsset.photo_id == photo_id
    )
    row = (await session.scalars(stmt)).first()
    return CatalogueRecord.from_row(row) if row is not None else None


async def find_by_storage_key(
    session: AsyncSession, tenant_id: str, storage_key: str
) -> CatalogueRecord | None:
    stmt = _select_assets().where(
        PhotoAsset.tenant_id == tenant_id, PhotoAsset.storage_key == storage_key
    )
    row = (await session.scalars(stmt)).first()
    return CatalogueRecord.from_row(row) if row is not None else None


async def find_by_storage_keys(
    session: AsyncSession, tenant_id: str, storage_keys: Iterable[str]
) -> list[CatalogueRecord]:
    keys = list(dict.fromkeys(storage_keys))
    if not keys:
        return []
    stmt = (
        _select_assets()
        .where(PhotoAsset.tenant_id == tenant_id, PhotoAsset.storage_key.in_(keys))
        .order_by(PhotoAsset.id)
    )
    result = await session.scalars(stmt)
    return [CatalogueRecord.from_row(row) for row in result.all()]


async def find_by_base_name(
    session: AsyncSession, tenant_id: str, base_name: str
) -> CatalogueRecord | None:
    """Find a row whose key's final segment, without extension, equals base_name.

    The LIKE prefilter narrows candidates; the exact comparison is done here
    so that ``img_1`` never matches ``img_10.jpg``.
    """
    pattern = f"%{base_name}.%"
    stmt = (
        _select_assets()
        .where(
            PhotoAsset.tenant_id == tenant_id,
            func.lower(PhotoAsset.storage_key).like(pattern),
        )
        .order_by(PhotoAsset.id)
    )
    for row in (await session.scalars(stmt)).all():
        if normalize_base_name(row.storage_key) == base_name:
            return CatalogueRecord.from_row(row)
    return None


async def list_photo_ids(session: AsyncSession, tenant_id: str) -> set[str]:
    stmt = select(PhotoAsset.photo_id).where(PhotoAsset.tenant_id == tenant_id)
    return set((await session.scalars(stmt)).all())


async def count_records(session: AsyncSession, tenant_id: str) -> int:
    stmt = select(func.count()).select_from(PhotoAsset).where(PhotoAsset.tenant_id == tenant_id)
    return int((await session.execute(stmt)).scalar_one())


async def count_created_since(session: AsyncSession, tenant_id: str, since: datetime) -> int:
    """Count rows created at or after since.

    Timestamps are stored in one canonical UTC format, so string comparison
    orders them correctly.
    """
    stmt = (
        select(func.count())
        .select_from(PhotoAsset)
        .where(PhotoAsset.tenant_id == tenant_id, PhotoAsset.created_at >= format_timestamp(since))
    )
    return int((await session.execute(stmt)).scalar_one())


async def count_by_status(session: AsyncSession, tenant_id: str) -> dict[str, int]:
    stmt = (
        select(PhotoAsset.sync_status, func.count())
        .where(PhotoAsset.tenant_id == tenant_id)
        .group_by(PhotoAsset.sync_status)
    )
    return {status: int(count) for status, count in (await session.execute(stmt)).all()}


async def list_conflicts(session: AsyncSession, tenant_id: str) -> list[CatalogueRecord]:
    stmt = (
        _select_assets()
        .where(
            PhotoAsset.tenant_id == tenant_id,
            PhotoAsset.sync_status == SyncStatus.CONFLICT,
        )
        .order_by(PhotoAsset.id)
    )
    result = await session.scalars(stmt)
    return [CatalogueRecord.from_row(row) for row in result.all()]


# -- writes ------------------------------------------------------------------


def _upsert_statement(session: AsyncSession, values: dict[str, Any]) -> Any:
    """Build an insert that overwrites the row owning (tenant_id, storage_key)."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(PhotoAsset).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(PhotoAsset).values(**values)
    else:
        msg = f"Upsert is not supported for dialect {dialect!r}"
        raise NotImplementedError(msg)
    overwrite = {
        column: getattr(stmt.excluded, column)
        for column in values
        if column not in ("tenant_id", "storage_key", "created_at")
    }
    return stmt.on_conflict_do_update(
        index_elements=[PhotoAsset.tenant_id, PhotoAsset.storage_key],
        set_=overwrite,
    )


async def insert_asset(
    session: AsyncSession,
    tenant_id: str,
    asset: AssetWrite,
    *,
    overwrite_existing_key: bool = False,
) -> InsertOutcome:
    """Create a synced row for a processed storage object.

    Unique violations are returned as ``ConflictDetected`` instead of being
    raised: they are the signal that a concurrent writer got there first.
    With ``overwrite_existing_key`` a row already owning the storage key is
    overwritten in place, so only a photo id collision can be reported.
    """
    now = now_iso()
    snapshot = asset.snapshot
    values: dict[str, Any] = {
        "tenant_id": tenant_id,
        "photo_id": asset.photo_id,
        "storage_key": asset.storage_key,
        "storage_provider": asset.storage_provider,
        "size": snapshot.size,
        "etag": snapshot.etag,
        "last_modified": snapshot.last_modified,
        "metadata_hash": snapshot.metadata_hash,
        "manifest_version": CURRENT_PHOTO_MANIFEST_VERSION,
        "manifest": build_manifest_payload(asset.manifest_item),
        "sync_status": SyncStatus.SYNCED.value,
        "conflict_reason": None,
        "conflict_payload": None,
        "synced_at": now,
        "created_at": now,
        "updated_at": now,
    }
    stmt = (
        _upsert_statement(session, values)
        if overwrite_existing_key
        else insert(PhotoAsset).values(**values)
    )
    try:
        await session.execute(stmt)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        kind = classify_integrity_error(exc)
        if kind is None:
            raise
        logger.info(
            "Unique %s collision for tenant %s key %s", kind, tenant_id, asset.storage_key
        )
        return ConflictDetected(kind=kind, detail=str(exc.orig))

    record = await find_by_storage_key(session, tenant_id, asset.storage_key)
    if record is None:
        msg = f"Row for {asset.storage_key} vanished right after insert"
        raise InternalServerError(msg)
    return Inserted(record=record)


async def _update_record(
    session: AsyncSession, tenant_id: str, record_id: int, values: dict[str, Any]
) -> None:
    stmt = (
        update(PhotoAsset)
        .where(PhotoAsset.tenant_id == tenant_id, PhotoAsset.id == record_id)
        .values(**values)
    )
    await session.execute(stmt)
    await session.commit()


def _snapshot_values(snapshot: SyncObjectSnapshot) -> dict[str, Any]:
    return {
        "size": snapshot.size,
        "etag": snapshot.etag,
        "last_modified": snapshot.last_modified,
        "metadata_hash": snapshot.metadata_hash,
    }


async def mark_conflict(
    session: AsyncSession,
    tenant_id: str,
    record_id: int,
    payload: ConflictPayload,
    reason: str,
) -> None:
    """Put a row into conflict state with a freshly built payload."""
    now = now_iso()
    await _update_record(
        session,
        tenant_id,
        record_id,
        {
            "sync_status": SyncStatus.CONFLICT.value,
            "conflict_reason": reason,
            "conflict_payload": payload.to_dict(),
            "synced_at": now,
            "updated_at": now,
        },
    )


async def mark_synced(
    session: AsyncSession,
    tenant_id: str,
    record_id: int,
    snapshot: SyncObjectSnapshot | None = None,
) -> None:
    """Clear conflict state, optionally refreshing the stored snapshot."""
    now = now_iso()
    values: dict[str, Any] = {
        "sync_status": SyncStatus.SYNCED.value,
        "conflict_reason": None,
        "conflict_payload": None,
        "synced_at": now,
        "updated_at": now,
    }
    if snapshot is not None:
        values.update(_snapshot_values(snapshot))
    await _update_record(session, tenant_id, record_id, values)


async def replace_from_storage(
    session: AsyncSession,
    tenant_id: str,
    record_id: int,
    asset: AssetWrite,
) -> None:
    """Overwrite a row's identity, snapshot and manifest with a reprocessed object."""
    now = now_iso()
    values: dict[str, Any] = {
        "photo_id": asset.photo_id,
        "storage_key": asset.storage_key,
        "storage_provider": asset.storage_provider,
        "manifest_version": CURRENT_PHOTO_MANIFEST_VERSION,
        "manifest": build_manifest_payload(asset.manifest_item),
        "sync_status": SyncStatus.SYNCED.value,
        "conflict_reason": None,
        "conflict_payload": None,
        "synced_at": now,
        "updated_at": now,
    }
    values.update(_snapshot_values(asset.snapshot))
    await _update_record(session, tenant_id, record_id, values)


async def mark_database_only(session: AsyncSession, tenant_id: str, record_id: int) -> None:
    """Keep a row whose object is gone, exempting it from orphan detection."""
    now = now_iso()
    await _update_record(
        session,
        tenant_id,
        record_id,
        {
            "storage_provider": DATABASE_ONLY_PROVIDER,
            "sync_status": SyncStatus.SYNCED.value,
            "conflict_reason": None,
            "conflict_payload": None,
            "synced_at": now,
            "updated_at": now,
        },
    )


async def clear_conflict(session: AsyncSession, tenant_id: str, record_id: int) -> None:
    await mark_synced(session, tenant_id, record_id)


async def delete_record(session: AsyncSession, tenant_id: str, record_id: int) -> None:
    await session.execute(
        delete(PhotoAsset).where(PhotoAsset.tenant_id == tenant_id, PhotoAsset.id == record_id)
    )
    await session.commit()


async def delete_records(session: AsyncSession, tenant_id: str, record_ids: Iterable[int]) -> int:
    ids = list(record_ids)
    if not ids:
        return 0
    result = await session.execute(
        delete(PhotoAsset).where(PhotoAsset.tenant_id == tenant_id, PhotoAsset.id.in_(ids))
    )
    await session.commit()
    return int(result.rowcount or 0)


async def get_records(
    session: AsyncSession, tenant_id: str, record_ids: Iterable[int]
) -> list[CatalogueRecord]:
    ids = list(record_ids)
    if not ids:
        return []
    stmt = (
        _select_assets()
        .where(PhotoAsset.tenant_id == tenant_id, PhotoAsset.id.in_(ids))
        .order_by(PhotoAsset.id)
    )
    result = await session.scalars(stmt)
    return [CatalogueRecord.from_row(row) for row in result.all()]


# -- sync runs ---------------------------------------------------------------


async def record_sync_run(
    session: AsyncSession,
    tenant_id: str,
    *,
    dry_run: bool,
    summary: dict[str, int],
    actions_count: int,
    started_at: str,
    completed_at: str,
) -> SyncRunRecord:
    """Append the audit row for a finished run."""
    run = PhotoSyncRun(
        tenant_id=tenant_id,
        dry_run=dry_run,
        summary=dict(summary),
        actions_count=actions_count,
        started_at=started_at,
        completed_at=completed_at,
        created_at=now_iso(),
    )
    session.add(run)
    await session.flush()
    record = SyncRunRecord(
        id=run.id,
        dry_run=run.dry_run,
        summary=dict(run.summary),
        actions_count=run.actions_count,
        started_at=run.started_at,
        completed_at=run.completed_at,
    )
    await session.commit()
    return record


async def get_last_sync_run(session: AsyncSession, tenant_id: str) -> SyncRunRecord | None:
    stmt = (
        select(PhotoSyncRun)
        .where(PhotoSyncRun.tenant_id == tenant_id)
        .order_by(PhotoSyncRun.completed_at.desc(), PhotoSyncRun.id.desc())
        .limit(1)
    )
    run = (await session.scalars(stmt)).first()
    if run is None:
        return None
    return SyncRunRecord(
        id=run.id,
        dry_run=run.dry_run,
        summary=dict(run.summary),
        actions_count=run.actions_count,
        started_at=run.started_at,
        completed_at=run.completed_at,
    )
