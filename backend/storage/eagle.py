"""Read-only storage backend over an Eagle photo library directory."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
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

_RULE_TYPES = ("tag", "folder")


@dataclass(frozen=True)
class EagleRule:
    """Include or exclude items carrying a tag or filed in a folder."""

    type: str
    name: str

    @classmethod
    def parse(cls, raw: dict[str, Any]) -> EagleRule:
        rule_type = raw.get("type")
        name = raw.get("name")
        if rule_type not in _RULE_TYPES or not name:
            msg = f"Invalid Eagle rule {raw!r}: type must be one of {_RULE_TYPES} with a name"
            raise ValueError(msg)
        return cls(type=rule_type, name=str(name))


@dataclass(frozen=True)
class _EagleItem:
    key: str
    path: Path
    tags: frozenset[str]
    folders: frozenset[str]
    size: int | None
    modified: datetime | None


def _folder_names(folders: list[dict[str, Any]], names: dict[str, str]) -> dict[str, str]:
    for folder in folders:
        names[folder["id"]] = folder.get("name", "")
        _folder_names(folder.get("children", []), names)
    return names


class EagleStorageProvider:
    """Items are read from ``<library>/images/<id>.info/``; keys are library-relative paths.

    Config keys: ``library_path`` (required), ``base_url``, ``include`` and
    ``exclude`` rule lists, ``exclude_regex``, ``max_file_limit``.
    """

    name: str = "eagle"

    def __init__(self, config: dict[str, Any]) -> None:
        library_path = config.get("library_path")
        if not library_path:
            msg = "Eagle storage requires library_path"
            raise ValueError(msg)
        self.library_path = Path(library_path).resolve()
        self.base_url: str | None = config.get("base_url") or None
        self.include = [EagleRule.parse(rule) for rule in config.get("include") or []]
        self.exclude_rules = [EagleRule.parse(rule) for rule in config.get("exclude") or []]
        self.exclude = compile_exclude_pattern(config.get("exclude_regex"))
        self.max_file_limit: int | None = config.get("max_file_limit")

    def _matches(self, item: _EagleItem, rule: EagleRule) -> bool:
        if rule.type == "tag":
            return rule.name in item.tags
        return rule.name in item.folders

    def _selected(self, item: _EagleItem) -> bool:
        if self.include and not any(self._matches(item, rule) for rule in self.include):
            return False
        return not any(self._matches(item, rule) for rule in self.exclude_rules)

    def _read_items(self) -> list[_EagleItem]:
        images_dir = self.library_path / "images"
        if not images_dir.is_dir():
            msg = f"Not an Eagle library (missing images/): {self.library_path}"
            raise StorageOperationError(msg)

        library_meta_path = self.library_path / "metadata.json"
        folder_names: dict[str, str] = {}
        if library_meta_path.exists():
            library_meta = json.loads(library_meta_path.read_text(encoding="utf-8"))
            folder_names = _folder_names(library_meta.get("folders", []), {})

        items: list[_EagleItem] = []
        for info_dir in sorted(images_dir.glob("*.info")):
            meta_path = info_dir / "metadata.json"
            if not meta_path.exists():
                continue
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            if meta.get("isDeleted"):
                continue
            filename = f"{meta.get('name', info_dir.stem)}.{meta.get('ext', '')}"
            path = info_dir / filename
            if not path.exists():
                logger.warning("Eagle item %s has no original file %s", info_dir.name, filename)
                continue
            modified_ms = meta.get("modificationTime") or meta.get("mtime")
            items.append(
                _EagleItem(
                    key=path.relative_to(self.library_path).as_posix(),
                    path=path,
                    tags=frozenset(meta.get("tags", [])),
                    folders=frozenset(
                        folder_names.get(folder_id, folder_id)
                        for folder_id in meta.get("folders", [])
                    ),
                    size=meta.get("size"),
                    modified=(
                        datetime.fromtimestamp(int(modified_ms) / 1000, tz=UTC)
                        if modified_ms
                        else None
                    ),
                )
            )
        return items

    async def list_all_files(
        self, progress: Callable[[ScanProgress], None] | None = None
    ) -> list[StorageObject]:
        try:
            items = await asyncio.to_thread(self._read_items)
        except (OSError, json.JSONDecodeError) as exc:
            msg = f"Failed to read Eagle library {self.library_path}: {exc}"
            raise StorageOperationError(msg) from exc
        objects = [
            StorageObject(key=item.key, size=item.size, last_modified=item.modified)
            for item in items
            if self._selected(item)
        ]
        if progress is not None:
            progress(ScanProgress(scanned=len(objects), total=len(objects)))
        return filter_listing(objects, self.exclude, self.max_file_limit)

    async def list_images(self) -> list[StorageObject]:
        objects = await self.list_all_files()
        return [obj for obj in objects if is_image_key(obj.key)]

    async def get_file(self, key: str) -> bytes | None:
        path = (self.library_path / key).resolve()
        if not path.is_relative_to(self.library_path):
            msg = f"Storage key escapes the library: {key!r}"
            raise StorageOperationError(msg)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as exc:
            msg = f"Failed to read {key}: {exc}"
            raise StorageOperationError(msg) from exc

    async def upload_file(
        self, key: str, data: bytes, options: StorageUploadOptions | None = None
    ) -> StorageObject:
        msg = "Eagle libraries are read-only"
        raise StorageOperationError(msg)

    async def delete_file(self, key: str) -> None:
        msg = "Eagle libraries are read-only"
        raise StorageOperationError(msg)

    def generate_public_url(self, key: str) -> str:
        if self.base_url:
            return f"{self.base_url.rstrip('/')}/{quote(key)}"
        return (self.library_path / key).as_uri()

    def detect_live_photos(self, objects: list[StorageObject]) -> dict[str, StorageObject]:
        return detect_live_photo_pairs(objects)
