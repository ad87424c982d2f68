"""Storage manager: the single handle stage logic talks to during a run."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from backend.services.datetime_service import now_utc
from backend.storage.base import (
    StorageObject,
    StorageOperationError,
    SupportsNativeMove,
    compile_exclude_pattern,
)
from backend.storage.registry import create_provider

if TYPE_CHECKING:
    from collections.abc import Callable

    from backend.storage.base import ScanProgress, StorageProvider, StorageUploadOptions

logger = logging.getLogger(__name__)


class StorageManager:
    """Wraps one provider, applying exclude filters and a portable move."""

    def __init__(self, provider: StorageProvider) -> None:
        self.provider = provider
        self._exclude_filters: list[Callable[[str], bool]] = []

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> StorageManager:
        """Create a manager for the provider named in config.

        ``exclude_regex`` is applied by the manager as well, so listings
        passed in from outside still honour it.
        """
        manager = cls(create_provider(config))
        pattern = compile_exclude_pattern(config.get("exclude_regex"))
        if pattern is not None:
            manager.add_exclude_filter(lambda key: pattern.search(key) is not None)
        return manager

    @property
    def provider_name(self) -> str:
        return self.provider.name

    def add_exclude_filter(self, predicate: Callable[[str], bool]) -> None:
        self._exclude_filters.append(predicate)

    def add_exclude_prefix(self, prefix: str) -> None:
        normalized = prefix.replace("\\", "/").lstrip("/")
        if not normalized:
            return
        effective = normalized if normalized.endswith("/") else f"{normalized}/"
        self.add_exclude_filter(lambda key: key.startswith(effective))

    def _apply_excludes(self, objects: list[StorageObject]) -> list[StorageObject]:
        if not self._exclude_filters:
            return objects
        return [
            obj
            for obj in objects
            if not any(predicate(obj.key) for predicate in self._exclude_filters)
        ]

    async def list_images(self) -> list[StorageObject]:
        return self._apply_excludes(await self.provider.list_images())

    async def list_all_files(
        self, progress: Callable[[ScanProgress], None] | None = None
    ) -> list[StorageObject]:
        return self._apply_excludes(await self.provider.list_all_files(progress))

    async def get_file(self, key: str) -> bytes | None:
        return await self.provider.get_file(key)

    async def upload_file(
        self, key: str, data: bytes, options: StorageUploadOptions | None = None
    ) -> StorageObject:
        return await self.provider.upload_file(key, data, options)

    async def delete_file(self, key: str) -> None:
        await self.provider.delete_file(key)

    def generate_public_url(self, key: str) -> str:
        return self.provider.generate_public_url(key)

    async def detect_live_photos(
        self, objects: list[StorageObject] | None = None
    ) -> dict[str, StorageObject]:
        """Pair stills with companion videos, listing everything when objects is None."""
        source = objects if objects is not None else await self.provider.list_all_files()
        return self.provider.detect_live_photos(self._apply_excludes(source))

    async def move_file(
        self,
        source_key: str,
        target_key: str,
        options: StorageUploadOptions | None = None,
    ) -> StorageObject:
        """Move an object, falling back to download, upload and delete.

        When the source delete fails after the upload, the uploaded copy is
        removed again and the original error propagates.
        """
        if not source_key or not target_key:
            msg = "move_file requires both source_key and target_key"
            raise ValueError(msg)

        if source_key == target_key:
            data = await self.provider.get_file(source_key)
            if data is None:
                msg = f"Move failed: source {source_key} does not exist"
                raise StorageOperationError(msg)
            return StorageObject(key=target_key, size=len(data), last_modified=now_utc())

        if isinstance(self.provider, SupportsNativeMove):
            return await self.provider.move_file(source_key, target_key, options)

        data = await self.provider.get_file(source_key)
        if data is None:
            msg = f"Move failed: source {source_key} does not exist"
            raise StorageOperationError(msg)
        uploaded = await self.provider.upload_file(target_key, data, options)
        try:
            await self.provider.delete_file(source_key)
        except StorageOperationError:
            try:
                await self.provider.delete_file(target_key)
            except StorageOperationError:
                logger.warning(
                    "Rollback of %s failed after move from %s",
                    target_key,
                    source_key,
                    exc_info=True,
                )
            raise
        return uploaded
