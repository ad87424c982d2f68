"""Storage backend for S3 and S3-compatible object stores (MinIO, R2, B2's S3 endpoint)."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

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

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


def _normalize_etag(raw: str | None) -> str | None:
    if not raw:
        return None
    return raw.strip('"')


class S3StorageProvider:
    """Objects live in one bucket; keys are full object keys including ``prefix``.

    Config keys: ``bucket`` (required), ``region``, ``endpoint``,
    ``access_key_id``, ``secret_access_key``, ``prefix``, ``custom_domain``,
    ``exclude_regex``, ``max_file_limit``.
    """

    name: str = "s3"

    def __init__(self, config: dict[str, Any], client: Any = None) -> None:
        bucket = config.get("bucket")
        if not bucket:
            msg = "S3 storage requires bucket"
            raise ValueError(msg)
        self.bucket: str = bucket
        self.region: str = config.get("region") or "us-east-1"
        self.endpoint: str | None = config.get("endpoint") or None
        self.prefix: str = (config.get("prefix") or "").lstrip("/")
        self.custom_domain: str | None = config.get("custom_domain") or None
        self.exclude = compile_exclude_pattern(config.get("exclude_regex"))
        self.max_file_limit: int | None = config.get("max_file_limit")

        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=self.endpoint,
                aws_access_key_id=config.get("access_key_id"),
                aws_secret_access_key=config.get("secret_access_key"),
                region_name=self.region,
                config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
            )
        self._client = client

    def _to_object(self, entry: dict[str, Any]) -> StorageObject:
        last_modified = entry.get("LastModified")
        if isinstance(last_modified, datetime) and last_modified.tzinfo is None:
            last_modified = last_modified.replace(tzinfo=UTC)
        return StorageObject(
            key=entry["Key"],
            size=entry.get("Size"),
            last_modified=last_modified,
            etag=_normalize_etag(entry.get("ETag")),
        )

    def _list_sync(self, progress: Callable[[ScanProgress], None] | None) -> list[StorageObject]:
        paginator = self._client.get_paginator("list_objects_v2")
        params: dict[str, Any] = {"Bucket": self.bucket}
        if self.prefix:
            params["Prefix"] = self.prefix

        objects: list[StorageObject] = []
        for page in paginator.paginate(**params):
            for entry in page.get("Contents", []):
                if entry["Key"].endswith("/"):
                    continue
                objects.append(self._to_object(entry))
            if progress is not None:
                progress(ScanProgress(scanned=len(objects)))
            if self.max_file_limit and len(objects) >= self.max_file_limit and not self.exclude:
                break
        return objects

    async def list_all_files(
        self, progress: Callable[[ScanProgress], None] | None = None
    ) -> list[StorageObject]:
        try:
            objects = await asyncio.to_thread(self._list_sync, progress)
        except (BotoCoreError, ClientError) as exc:
            msg = f"Failed to list bucket {self.bucket}: {exc}"
            raise StorageOperationError(msg) from exc
        return filter_listing(objects, self.exclude, self.max_file_limit)

    async def list_images(self) -> list[StorageObject]:
        objects = await self.list_all_files()
        return [obj for obj in objects if is_image_key(obj.key)]

    def _get_sync(self, key: str) -> bytes | None:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _NOT_FOUND_CODES:
                return None
            raise
        body = response["Body"]
        try:
            data: bytes = body.read()
        finally:
            body.close()
        return data

    async def get_file(self, key: str) -> bytes | None:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except (BotoCoreError, ClientError) as exc:
            msg = f"Failed to download {key}: {exc}"
            raise StorageOperationError(msg) from exc

    def _put_sync(self, key: str, data: bytes, content_type: str | None) -> StorageObject:
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        response = self._client.put_object(**params)
        return StorageObject(
            key=key,
            size=len(data),
            last_modified=datetime.now(UTC),
            etag=_normalize_etag(response.get("ETag")),
        )

    async def upload_file(
        self, key: str, data: bytes, options: StorageUploadOptions | None = None
    ) -> StorageObject:
        content_type = options.content_type if options else None
        try:
            return await asyncio.to_thread(self._put_sync, key, data, content_type)
        except (BotoCoreError, ClientError) as exc:
            msg = f"Failed to upload {key}: {exc}"
            raise StorageOperationError(msg) from exc

    async def delete_file(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            msg = f"Failed to delete {key}: {exc}"
            raise StorageOperationError(msg) from exc

    def _move_sync(self, source_key: str, target_key: str) -> StorageObject:
        self._client.copy_object(
            Bucket=self.bucket,
            Key=target_key,
            CopySource={"Bucket": self.bucket, "Key": source_key},
        )
        head = self._client.head_object(Bucket=self.bucket, Key=target_key)
        self._client.delete_object(Bucket=self.bucket, Key=source_key)
        return StorageObject(
            key=target_key,
            size=head.get("ContentLength"),
            last_modified=head.get("LastModified"),
            etag=_normalize_etag(head.get("ETag")),
        )

    async def move_file(
        self,
        source_key: str,
        target_key: str,
        options: StorageUploadOptions | None = None,
    ) -> StorageObject:
        try:
            return await asyncio.to_thread(self._move_sync, source_key, target_key)
        except (BotoCoreError, ClientError) as exc:
            msg = f"Failed to move {source_key} to {target_key}: {exc}"
            raise StorageOperationError(msg) from exc

    def generate_public_url(self, key: str) -> str:
        encoded = quote(key)
        if self.custom_domain:
            return f"{self.custom_domain.rstrip('/')}/{encoded}"
        if self.endpoint:
            return f"{self.endpoint.rstrip('/')}/{self.bucket}/{encoded}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{encoded}"

    def detect_live_photos(self, objects: list[StorageObject]) -> dict[str, StorageObject]:
        return detect_live_photo_pairs(objects)
