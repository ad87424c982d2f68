"""Base protocol and data classes for storage backends."""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime

IMAGE_EXTENSIONS = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".webp",
        ".bmp",
        ".tif",
        ".tiff",
        ".heic",
        ".heif",
        ".hif",
        ".avif",
    }
)
VIDEO_EXTENSIONS = frozenset({".mov", ".mp4"})


class StorageOperationError(Exception):
    """Raised when a storage backend call fails."""


@dataclass(frozen=True)
class StorageObject:
    """One entry of a backend listing."""

    key: str
    size: int | None = None
    last_modified: datetime | None = None
    etag: str | None = None


@dataclass(frozen=True)
class StorageUploadOptions:
    """Per-upload options passed through to the backend."""

    content_type: str | None = None


@dataclass(frozen=True)
class ScanProgress:
    """Progress of a long listing, reported after each page."""

    scanned: int
    total: int | None = None


@runtime_checkable
class StorageProvider(Protocol):
    """Uniform operations over one storage backend."""

    name: str

    async def list_images(self) -> list[StorageObject]:
        """List objects whose extension marks them as still images."""
        ...

    async def list_all_files(
        self, progress: Callable[[ScanProgress], None] | None = None
    ) -> list[StorageObject]:
        """List every object, reporting progress after each page."""
        ...

    async def get_file(self, key: str) -> bytes | None:
        """Download an object. Returns None when it does not exist."""
        ...

    async def upload_file(
        self, key: str, data: bytes, options: StorageUploadOptions | None = None
    ) -> StorageObject:
        """Upload bytes under key, replacing any existing object."""
        ...

    async def delete_file(self, key: str) -> None:
        """Delete an object. Deleting a missing object is not an error."""
        ...

    def generate_public_url(self, key: str) -> str:
        """Return the URL clients use to fetch the object."""
        ...

    def detect_live_photos(self, objects: list[StorageObject]) -> dict[str, StorageObject]:
        """Map still image keys to their companion video objects."""
        ...


@runtime_checkable
class SupportsNativeMove(Protocol):
    """Backends that can move an object without a download round trip."""

    async def move_file(
        self,
        source_key: str,
        target_key: str,
        options: StorageUploadOptions | None = None,
    ) -> StorageObject: ...


def key_extension(key: str) -> str:
    """Return the lowercased extension of a key's final path segment."""
    return posixpath.splitext(posixpath.basename(key))[1].lower()


def is_image_key(key: str) -> bool:
    return key_extension(key) in IMAGE_EXTENSIONS


def is_video_key(key: str) -> bool:
    return key_extension(key) in VIDEO_EXTENSIONS


def _pairing_key(key: str) -> tuple[str, str]:
    directory, filename = posixpath.split(key)
    stem = posixpath.splitext(filename)[0]
    return directory, stem.lower()


def detect_live_photo_pairs(objects: Iterable[StorageObject]) -> dict[str, StorageObject]:
    """Pair stills with videos sharing their directory and base name.

    Base names compare case-insensitively, so ``IMG_01.HEIC`` pairs with
    ``img_01.mov``. When several videos match, the first listed wins.
    """
    object_list = list(objects)
    videos: dict[tuple[str, str], StorageObject] = {}
    for obj in object_list:
        if is_video_key(obj.key):
            videos.setdefault(_pairing_key(obj.key), obj)

    pairs: dict[str, StorageObject] = {}
    for obj in object_list:
        if not is_image_key(obj.key):
            continue
        video = videos.get(_pairing_key(obj.key))
        if video is not None:
            pairs[obj.key] = video
    return pairs


def compile_exclude_pattern(pattern: str | None) -> re.Pattern[str] | None:
    """Compile a configured exclude regex, rejecting invalid ones as validation errors."""
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        msg = f"Invalid exclude_regex {pattern!r}: {exc}"
        raise ValueError(msg) from exc


def filter_listing(
    objects: Iterable[StorageObject],
    exclude: re.Pattern[str] | None = None,
    max_file_limit: int | None = None,
) -> list[StorageObject]:
    """Drop excluded keys and cap the listing length."""
    result = [obj for obj in objects if exclude is None or not exclude.search(obj.key)]
    if max_file_limit is not None and max_file_limit > 0:
        result = result[:max_file_limit]
    return result
