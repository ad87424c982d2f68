"""Manifest builder: turns a storage object into a catalogue manifest item."""

from __future__ import annotations

import hashlib
import logging
import posixpath
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from backend.services.datetime_service import to_timestamp

if TYPE_CHECKING:
    from backend.storage.base import StorageObject
    from backend.storage.manager import StorageManager

logger = logging.getLogger(__name__)


class ManifestItem(BaseModel):
    """Structured description of one processed photo.

    Builders may attach extra fields (EXIF, tone analysis, ...); they are
    kept verbatim in the stored manifest.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    title: str
    digest: str | None = None
    storage_key: str
    original_url: str
    thumbnail_url: str | None = None
    width: int | None = None
    height: int | None = None
    size: int | None = None
    last_modified: str | None = None
    is_live_photo: bool = False
    live_photo_video_url: str | None = None
    live_photo_video_key: str | None = None

    def to_manifest_data(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


@runtime_checkable
class ManifestBuilder(Protocol):
    """Protocol for turning storage objects into manifest items."""

    async def process(
        self,
        obj: StorageObject,
        storage: StorageManager,
        *,
        live_photo_map: dict[str, StorageObject] | None = None,
        existing: dict[str, Any] | None = None,
    ) -> ManifestItem | None:
        """Build the manifest for obj. Returns None when nothing can be built."""
        ...


def compute_digest(data: bytes) -> str:
    """SHA-256 hex digest of an object's bytes."""
    return hashlib.sha256(data).hexdigest()


def photo_id_for_key(storage_key: str) -> str:
    """Photo id derived from a key: the final path segment without extension."""
    return posixpath.splitext(posixpath.basename(storage_key))[0]


class DigestManifestBuilder:
    """Content-addressed manifests without any pixel work.

    Downloads the object once, records its SHA-256 digest and derives the
    photo id from the key. A paired video from the live-photo map is
    attached by key and public URL. When an existing manifest is passed and
    its digest still matches, fields the caller may have curated (title,
    dimensions) are carried over.
    """

    async def process(
        self,
        obj: StorageObject,
        storage: StorageManager,
        *,
        live_photo_map: dict[str, StorageObject] | None = None,
        existing: dict[str, Any] | None = None,
    ) -> ManifestItem | None:
        data = await storage.get_file(obj.key)
        if data is None:
            logger.warning("Object %s vanished before it could be processed", obj.key)
            return None

        digest = compute_digest(data)
        photo_id = photo_id_for_key(obj.key)
        url = storage.generate_public_url(obj.key)
        video = (live_photo_map or {}).get(obj.key)

        item: dict[str, Any] = {
            "id": photo_id,
            "title": photo_id,
            "digest": digest,
            "storage_key": obj.key,
            "original_url": url,
            "thumbnail_url": url,
            "size": obj.size if obj.size is not None else len(data),
            "last_modified": to_timestamp(obj.last_modified),
            "is_live_photo": video is not None,
            "live_photo_video_key": video.key if video is not None else None,
            "live_photo_video_url": (
                storage.generate_public_url(video.key) if video is not None else None
            ),
        }
        if existing and existing.get("digest") == digest:
            for carried in ("title", "width", "height"):
                if existing.get(carried) is not None:
                    item[carried] = existing[carried]
        return ManifestItem(**item)
