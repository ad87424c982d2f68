"""Storage backend for a directory on the local filesystem."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from backend.storage.base import (
    ScanProgress,
    StorageObject,
    StorageOperationError,
    StorageUploadOptions,
    compile_exclude_pattern,
    detect_live_photo_pairs,
    filter_listing,
    is_image_key,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_PROGRESS_EVERY = 500


class LocalStorageProvider:
    """Objects are files below ``base_path``; keys are POSIX relative paths.

    Config keys: ``base_path`` (required), ``base_url``, ``dist_path`` (a
    second directory that mirrors uploads for static serving),
    ``exclude_regex``, ``max_file_limit``.
    """

    name: str = "local"

    def __init__(self, config: dict[str, Any]) -> None:
        base_path = config.get("base_path")
        if not base_path:
            msg = "Local storage requires base_path"
            raise ValueError(msg)
        self.base_path = Path(base_path).resolve()
        self.base_url: str | None = config.get("base_url") or None
        dist_path = config.get("dist_path")
        self.dist_path = Path(dist_path).resolve() if dist_path else None
        self.exclude = compile_exclude_pattern(config.get("exclude_regex"))
        self.max_file_limit: int | None = config.get("max_file_limit")

    def _resolve(self, root: Path, key: str) -> Path:
        """Resolve key within root, rejecting traversal outside it."""
        candidate = (root / key.lstrip("/")).resolve()
        if not candidate.is_relative_to(root):
            msg = f"Storage key escapes the storage root: {key!r}"
            raise StorageOperationError(msg)
        return candidate

    def _stat_object(self, key: str, path: Path) -> StorageObject:
        stat = path.stat()
        return StorageObject(
            key=key,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            etag=None,
        )

    def _scan(self, progress: Callable[[ScanProgress], None] | None) -> list[StorageObject]:
        if not self.base_path.is_dir():
            msg = f"Local storage path is not a directory: {self.base_path}"
            raise StorageOperationError(msg)

        objects: list[StorageObject] = []
        for root, dirs, files in os.walk(self.base_path):
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            for filename in sorted(files):
                if filename.startswith("."):
                    continue
                full = Path(root) / filename
                key = full.relative_to(self.base_path).as_posix()
                objects.append(self._stat_object(key, full))
                if progress is not None and len(objects) % _PROGRESS_EVERY == 0:
                    progress(ScanProgress(scanned=len(objects)))
        if progress is not None:
            progress(ScanProgress(scanned=len(objects), total=len(objects)))
        return objects

    async def list_all_files(
        self, progress: Callable[[ScanProgress], None] | None = None
    ) -> list[StorageObject]:
        try:
            objects = await asyncio.to_thread(self._scan, progress)
        except OSError as exc:
            msg = f"Failed to list {self.base_path}: {exc}"
            raise StorageOperationError(msg) from exc
        return filter_listing(objects, self.exclude, self.max_file_limit)

    async def list_images(self) -> list[StorageObject]:
        objects = await self.list_all_files()
        return [obj for obj in objects if is_image_key(obj.key)]

    async def get_file(self, key: str) -> bytes | None:
        path = self._resolve(self.base_path, key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as exc:
            msg = f"Failed to read {key}: {exc}"
            raise StorageOperationError(msg) from exc

    def _write(self, key: str, data: bytes) -> StorageObject:
        path = self._resolve(self.base_path, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        if self.dist_path is not None:
            mirror = self._resolve(self.dist_path, key)
            mirror.parent.mkdir(parents=True, exist_ok=True)
            mirror.write_bytes(data)
        return self._stat_object(key, path)

    async def upload_file(
        self, key: str, data: bytes, options: StorageUploadOptions | None = None
    ) -> StorageObject:
        try:
            return await asyncio.to_thread(self._write, key, data)
        except OSError as exc:
            msg = f"Failed to write {key}: {exc}"
            raise StorageOperationError(msg) from exc

    def _remove(self, key: str) -> None:
        for root in (self.base_path, self.dist_path):
            if root is None:
                continue
            self._resolve(root, key).unlink(missing_ok=True)

    async def delete_file(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._remove, key)
        except OSError as exc:
            msg = f"Failed to delete {key}: {exc}"
            raise StorageOperationError(msg) from exc

    def _move(self, source_key: str, target_key: str) -> StorageObject:
        source = self._resolve(self.base_path, source_key)
        target = self._resolve(self.base_path, target_key)
        if not source.exists():
            msg = f"Move failed: source {source_key} does not exist"
            raise StorageOperationError(msg)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(source, target)
        if self.dist_path is not None:
            mirror_source = self._resolve(self.dist_path, source_key)
            if mirror_source.exists():
                mirror_target = self._resolve(self.dist_path, target_key)
                mirror_target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(mirror_source, mirror_target)
        return self._stat_object(target_key, target)

    async def move_file(
        self,
        source_key: str,
        target_key: str,
        options: StorageUploadOptions | None = None,
    ) -> StorageObject:
        try:
            return await asyncio.to_thread(self._move, source_key, target_key)
        except OSError as exc:
            msg = f"Failed to move {source_key} to {target_key}: {exc}"
            raise StorageOperationError(msg) from exc

    def generate_public_url(self, key: str) -> str:
        if self.base_url:
            return f"{self.base_url.rstrip('/')}/{quote(key.lstrip('/'))}"
        return self._resolve(self.base_path, key).as_uri()

    def detect_live_photos(self, objects: list[StorageObject]) -> dict[str, StorageObject]:
        return detect_live_photo_pairs(objects)
