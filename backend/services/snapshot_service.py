"""Metadata snapshots: cheap drift detection without downloading content."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from backend.services.datetime_service import to_timestamp

if TYPE_CHECKING:
    from backend.services.catalogue_service import CatalogueRecord
    from backend.storage.base import StorageObject

_EMPTY_HASH = "::::"


def compute_metadata_hash(
    size: int | None,
    etag: str | None,
    last_modified: str | None,
) -> str | None:
    """Fingerprint a ``(size, etag, last_modified)`` triple.

    The fingerprint is ``etag::size::last_modified`` with absent parts left
    empty. Returns None when all three parts are absent.
    """
    normalized_size = str(size) if size is not None else ""
    normalized_etag = etag or ""
    normalized_last_modified = last_modified or ""
    digest_value = f"{normalized_etag}::{normalized_size}::{normalized_last_modified}"
    return None if digest_value == _EMPTY_HASH else digest_value


@dataclass(frozen=True)
class SyncObjectSnapshot:
    """State of one object (or the catalogue's memory of it) at a point in time."""

    size: int | None
    etag: str | None
    last_modified: str | None
    metadata_hash: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SyncObjectSnapshot | None:
        if not data:
            return None
        return cls(
            size=data.get("size"),
            etag=data.get("etag"),
            last_modified=data.get("last_modified"),
            metadata_hash=data.get("metadata_hash"),
        )


def storage_snapshot(obj: StorageObject) -> SyncObjectSnapshot:
    """Snapshot a storage listing entry."""
    last_modified = to_timestamp(obj.last_modified)
    return SyncObjectSnapshot(
        size=obj.size,
        etag=obj.etag,
        last_modified=last_modified,
        metadata_hash=compute_metadata_hash(obj.size, obj.etag, last_modified),
    )


def record_snapshot(record: CatalogueRecord) -> SyncObjectSnapshot:
    """Snapshot what the catalogue last recorded for a row.

    Rows written before hashes were stored get their hash recomputed.
    """
    metadata_hash = record.metadata_hash
    if metadata_hash is None:
        metadata_hash = compute_metadata_hash(record.size, record.etag, record.last_modified)
    return SyncObjectSnapshot(
        size=record.size,
        etag=record.etag,
        last_modified=record.last_modified,
        metadata_hash=metadata_hash,
    )
