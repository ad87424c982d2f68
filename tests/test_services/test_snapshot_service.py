"""Tests for metadata snapshots and their fingerprints."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from backend.services.snapshot_service import (
    SyncObjectSnapshot,
    compute_metadata_hash,
    storage_snapshot,
)
from backend.storage.base import StorageObject

PROPERTY_SETTINGS = settings(
    max_examples=250,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

_SIZE = st.one_of(st.none(), st.integers(min_value=0, max_value=10**12))
_ETAG = st.one_of(st.none(), st.text(alphabet="0123456789abcdef", min_size=1, max_size=32))
_TIMESTAMP = st.one_of(
    st.none(),
    st.datetimes(
        min_value=datetime(2000, 1, 1),
        max_value=datetime(2100, 1, 1),
        timezones=st.just(UTC),
    ).map(lambda dt: dt.strftime("%Y-%m-%dT%H:%M:%S.000Z")),
)


class TestComputeMetadataHash:
    def test_joins_parts_in_etag_size_timestamp_order(self) -> None:
        assert (
            compute_metadata_hash(42, "abc", "2025-06-01T12:00:00.000Z")
            == "abc::42::2025-06-01T12:00:00.000Z"
        )

    def test_all_absent_returns_none(self) -> None:
        assert compute_metadata_hash(None, None, None) is None

    def test_empty_etag_counts_as_absent(self) -> None:
        assert compute_metadata_hash(None, "", None) is None

    def test_zero_size_is_present(self) -> None:
        assert compute_metadata_hash(0, None, None) == "::0::"

    @PROPERTY_SETTINGS
    @given(size=_SIZE, etag=_ETAG, last_modified=_TIMESTAMP)
    def test_deterministic(
        self, size: int | None, etag: str | None, last_modified: str | None
    ) -> None:
        assert compute_metadata_hash(size, etag, last_modified) == compute_metadata_hash(
            size, etag, last_modified
        )

    @PROPERTY_SETTINGS
    @given(
        first=st.tuples(_SIZE, _ETAG, _TIMESTAMP),
        second=st.tuples(_SIZE, _ETAG, _TIMESTAMP),
    )
    def test_distinct_triples_never_collide(
        self,
        first: tuple[int | None, str | None, str | None],
        second: tuple[int | None, str | None, str | None],
    ) -> None:
        first_hash = compute_metadata_hash(*first)
        second_hash = compute_metadata_hash(*second)
        if first != second and first_hash is not None:
            assert first_hash != second_hash


class TestStorageSnapshot:
    def test_normalizes_timestamp_to_utc_milliseconds(self) -> None:
        offset = timezone(timedelta(hours=2))
        obj = StorageObject(
            key="a.jpg",
            size=10,
            last_modified=datetime(2025, 6, 1, 14, 0, 0, 123456, tzinfo=offset),
            etag="e1",
        )
        snapshot = storage_snapshot(obj)
        assert snapshot.last_modified == "2025-06-01T12:00:00.123Z"
        assert snapshot.metadata_hash == "e1::10::2025-06-01T12:00:00.123Z"

    def test_equivalent_instants_hash_equal(self) -> None:
        utc = StorageObject(key="a.jpg", size=1, last_modified=datetime(2025, 1, 1, tzinfo=UTC))
        shifted = StorageObject(
            key="a.jpg",
            size=1,
            last_modified=datetime(2025, 1, 1, 5, tzinfo=timezone(timedelta(hours=5))),
        )
        assert storage_snapshot(utc).metadata_hash == storage_snapshot(shifted).metadata_hash

    def test_object_without_metadata_has_no_hash(self) -> None:
        snapshot = storage_snapshot(StorageObject(key="a.jpg"))
        assert snapshot.metadata_hash is None
        assert snapshot.size is None


class TestSnapshotSerialization:
    def test_from_dict_of_empty_is_none(self) -> None:
        assert SyncObjectSnapshot.from_dict(None) is None
        assert SyncObjectSnapshot.from_dict({}) is None

    def test_from_dict_tolerates_missing_fields(self) -> None:
        snapshot = SyncObjectSnapshot.from_dict({"size": 3})
        assert snapshot == SyncObjectSnapshot(
            size=3, etag=None, last_modified=None, metadata_hash=None
        )
