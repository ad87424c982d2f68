"""Storage backend for Backblaze B2 using the native B2 HTTP API."""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

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

B2_AUTHORIZE_URL = "https://api.backblazeb2.com/b2api/v2/b2_authorize_account"
_LIST_PAGE_SIZE = 1000
_DEFAULT_AUTHORIZATION_TTL_MS = 23 * 60 * 60 * 1000
_DEFAULT_UPLOAD_URL_TTL_MS = 60 * 60 * 1000


@dataclass
class _Authorization:
    token: str
    api_url: str
    download_url: str
    expires_at: float


@dataclass
class _UploadTarget:
    upload_url: str
    token: str
    expires_at: float


def _file_to_object(entry: dict[str, Any]) -> StorageObject:
    timestamp = entry.get("uploadTimestamp")
    last_modified = (
        datetime.fromtimestamp(int(timestamp) / 1000, tz=UTC) if timestamp is not None else None
    )
    sha1 = entry.get("contentSha1")
    if not sha1 or sha1 == "none":
        sha1 = entry.get("fileId")
    return StorageObject(
        key=entry["fileName"],
        size=entry.get("contentLength"),
        last_modified=last_modified,
        etag=sha1,
    )


class B2StorageProvider:
    """Objects live in one B2 bucket; keys are file names including ``prefix``.

    Config keys: ``application_key_id``, ``application_key``, ``bucket_id``,
    ``bucket_name`` (all required), ``prefix``, ``custom_domain``,
    ``exclude_regex``, ``max_file_limit``, ``authorization_ttl_ms``,
    ``upload_url_ttl_ms``.
    """

    name: str = "b2"

    def __init__(
        self, config: dict[str, Any], transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        missing = [
            field
            for field in ("application_key_id", "application_key", "bucket_id", "bucket_name")
            if not config.get(field)
        ]
        if missing:
            msg = f"B2 storage requires {', '.join(missing)}"
            raise ValueError(msg)
        self.application_key_id: str = config["application_key_id"]
        self.application_key: str = config["application_key"]
        self.bucket_id: str = config["bucket_id"]
        self.bucket_name: str = config["bucket_name"]
        self.prefix: str = (config.get("prefix") or "").lstrip("/")
        self.custom_domain: str | None = config.get("custom_domain") or None
        self.exclude = compile_exclude_pattern(config.get("exclude_regex"))
        self.max_file_limit: int | None = config.get("max_file_limit")
        self.authorization_ttl = (
            config.get("authorization_ttl_ms") or _DEFAULT_AUTHORIZATION_TTL_MS
        ) / 1000
        ttl_ms = config.get("upload_url_ttl_ms") or _DEFAULT_UPLOAD_URL_TTL_MS
        self.upload_url_ttl = ttl_ms / 1000
        self._transport = transport
        self._authorization: _Authorization | None = None
        self._upload_target: _UploadTarget | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=60.0)

    async def _authorize(self, force: bool = False) -> _Authorization:
        now = time.monotonic()
        if not force and self._authorization is not None and self._authorization.expires_at > now:
            return self._authorization

        async with self._client() as client:
            resp = await client.get(
                B2_AUTHORIZE_URL, auth=(self.application_key_id, self.application_key)
            )
        if resp.status_code != 200:
            msg = f"B2 authorization failed: {resp.status_code} {resp.text}"
            raise StorageOperationError(msg)
        data = resp.json()
        self._authorization = _Authorization(
            token=data["authorizationToken"],
            api_url=data["apiUrl"],
            download_url=data["downloadUrl"],
            expires_at=now + self.authorization_ttl,
        )
        self._upload_target = None
        return self._authorization

    async def _api(self, operation: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Call a JSON API operation, re-authorizing once on an expired token."""
        for attempt in range(2):
            auth = await self._authorize(force=attempt > 0)
            try:
                async with self._client() as client:
                    resp = await client.post(
                        f"{auth.api_url}/b2api/v2/{operation}",
                        json=payload,
                        headers={"Authorization": auth.token},
                    )
            except httpx.HTTPError as exc:
                msg = f"B2 {operation} failed: {exc}"
                raise StorageOperationError(msg) from exc
            if resp.status_code == 401 and attempt == 0:
                logger.info("B2 token rejected for %s, re-authorizing", operation)
                continue
            if resp.status_code != 200:
                msg = f"B2 {operation} failed: {resp.status_code} {resp.text}"
                raise StorageOperationError(msg)
            result: dict[str, Any] = resp.json()
            return result
        msg = f"B2 {operation} failed after re-authorization"
        raise StorageOperationError(msg)

    async def list_all_files(
        self, progress: Callable[[ScanProgress], None] | None = None
    ) -> list[StorageObject]:
        objects: list[StorageObject] = []
        start_file_name: str | None = None
        while True:
            payload: dict[str, Any] = {
                "bucketId": self.bucket_id,
                "maxFileCount": _LIST_PAGE_SIZE,
            }
            if self.prefix:
                payload["prefix"] = self.prefix
            if start_file_name is not None:
                payload["startFileName"] = start_file_name
            data = await self._api("b2_list_file_names", payload)
            for entry in data.get("files", []):
                if entry.get("action", "upload") != "upload":
                    continue
                objects.append(_file_to_object(entry))
            if progress is not None:
                progress(ScanProgress(scanned=len(objects)))
            start_file_name = data.get("nextFileName")
            if start_file_name is None:
                break
        return filter_listing(objects, self.exclude, self.max_file_limit)

    async def list_images(self) -> list[StorageObject]:
        objects = await self.list_all_files()
        return [obj for obj in objects if is_image_key(obj.key)]

    async def get_file(self, key: str) -> bytes | None:
        for attempt in range(2):
            auth = await self._authorize(force=attempt > 0)
            try:
                async with self._client() as client:
                    resp = await client.get(
                        f"{auth.download_url}/file/{self.bucket_name}/{quote(key)}",
                        headers={"Authorization": auth.token},
                    )
            except httpx.HTTPError as exc:
                msg = f"Failed to download {key}: {exc}"
                raise StorageOperationError(msg) from exc
            if resp.status_code == 401 and attempt == 0:
                continue
            if resp.status_code == 404:
                return None
            if resp.status_code != 200:
                msg = f"Failed to download {key}: {resp.status_code}"
                raise StorageOperationError(msg)
            return resp.content
        msg = f"Failed to download {key}: authorization rejected"
        raise StorageOperationError(msg)

    async def _get_upload_target(self) -> _UploadTarget:
        now = time.monotonic()
        if self._upload_target is not None and self._upload_target.expires_at > now:
            return self._upload_target
        data = await self._api("b2_get_upload_url", {"bucketId": self.bucket_id})
        self._upload_target = _UploadTarget(
            upload_url=data["uploadUrl"],
            token=data["authorizationToken"],
            expires_at=now + self.upload_url_ttl,
        )
        return self._upload_target

    async def upload_file(
        self, key: str, data: bytes, options: StorageUploadOptions | None = None
    ) -> StorageObject:
        content_type = (options.content_type if options else None) or "b2/x-auto"
        sha1 = hashlib.sha1(data).hexdigest()  # noqa: S324 - B2 integrity header
        for attempt in range(2):
            target = await self._get_upload_target()
            try:
                async with self._client() as client:
                    resp = await client.post(
                        target.upload_url,
                        content=data,
                        headers={
                            "Authorization": target.token,
                            "X-Bz-File-Name": quote(key),
                            "Content-Type": content_type,
                            "X-Bz-Content-Sha1": sha1,
                        },
                    )
            except httpx.HTTPError as exc:
                msg = f"Failed to upload {key}: {exc}"
                raise StorageOperationError(msg) from exc
            if resp.status_code in (401, 503) and attempt == 0:
                # Upload URLs can expire or become busy; fetch a fresh one.
                self._upload_target = None
                continue
            if resp.status_code != 200:
                msg = f"Failed to upload {key}: {resp.status_code} {resp.text}"
                raise StorageOperationError(msg)
            return _file_to_object(resp.json())
        msg = f"Failed to upload {key}: no usable upload URL"
        raise StorageOperationError(msg)

    async def _file_versions(self, key: str) -> list[dict[str, Any]]:
        data = await self._api(
            "b2_list_file_versions",
            {
                "bucketId": self.bucket_id,
                "startFileName": key,
                "prefix": key,
                "maxFileCount": 100,
            },
        )
        return [entry for entry in data.get("files", []) if entry.get("fileName") == key]

    async def delete_file(self, key: str) -> None:
        for entry in await self._file_versions(key):
            await self._api(
                "b2_delete_file_version",
                {"fileName": key, "fileId": entry["fileId"]},
            )

    async def move_file(
        self,
        source_key: str,
        target_key: str,
        options: StorageUploadOptions | None = None,
    ) -> StorageObject:
        versions = [
            v for v in await self._file_versions(source_key) if v.get("action") == "upload"
        ]
        if not versions:
            msg = f"Move failed: source {source_key} does not exist"
            raise StorageOperationError(msg)
        copied = await self._api(
            "b2_copy_file",
            {"sourceFileId": versions[0]["fileId"], "fileName": target_key},
        )
        await self.delete_file(source_key)
        return _file_to_object(copied)

    def generate_public_url(self, key: str) -> str:
        encoded = quote(key)
        if self.custom_domain:
            return f"{self.custom_domain.rstrip('/')}/{encoded}"
        if self._authorization is not None:
            return f"{self._authorization.download_url}/file/{self.bucket_name}/{encoded}"
        return f"https://f000.backblazeb2.com/file/{self.bucket_name}/{encoded}"

    def detect_live_photos(self, objects: list[StorageObject]) -> dict[str, StorageObject]:
        return detect_live_photo_pairs(objects)
