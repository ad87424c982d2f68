"""Storage backend for a GitHub repository via the REST API."""

from __future__ import annotations

import base64
import logging
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

GITHUB_API_URL = "https://api.github.com"


class GitHubStorageProvider:
    """Objects are blobs on one branch; keys are repository paths including ``path``.

    The tree listing carries no modification times, so blob SHAs act as
    etags and ``last_modified`` stays empty. Moves fall back to
    download, upload and delete in the storage manager.

    Config keys: ``owner``, ``repo`` (required), ``branch``, ``token``,
    ``path``, ``use_raw_url``, ``exclude_regex``, ``max_file_limit``.
    """

    name: str = "github"

    def __init__(
        self, config: dict[str, Any], transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        if not config.get("owner") or not config.get("repo"):
            msg = "GitHub storage requires owner and repo"
            raise ValueError(msg)
        self.owner: str = config["owner"]
        self.repo: str = config["repo"]
        self.branch: str = config.get("branch") or "main"
        self.token: str | None = config.get("token") or None
        self.path: str = (config.get("path") or "").strip("/")
        self.use_raw_url: bool = config.get("use_raw_url", True)
        self.exclude = compile_exclude_pattern(config.get("exclude_regex"))
        self.max_file_limit: int | None = config.get("max_file_limit")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return httpx.AsyncClient(
            base_url=GITHUB_API_URL,
            headers=headers,
            transport=self._transport,
            timeout=60.0,
        )

    def _contents_url(self, key: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/contents/{quote(key.lstrip('/'))}"

    async def list_all_files(
        self, progress: Callable[[ScanProgress], None] | None = None
    ) -> list[StorageObject]:
        try:
            async with self._client() as client:
                resp = await client.get(
                    f"/repos/{self.owner}/{self.repo}/git/trees/{quote(self.branch)}",
                    params={"recursive": "1"},
                )
        except httpx.HTTPError as exc:
            msg = f"Failed to list {self.owner}/{self.repo}: {exc}"
            raise StorageOperationError(msg) from exc
        if resp.status_code == 404:
            return []
        if resp.status_code != 200:
            msg = f"Failed to list {self.owner}/{self.repo}: {resp.status_code}"
            raise StorageOperationError(msg)

        data = resp.json()
        if data.get("truncated"):
            logger.warning(
                "GitHub tree listing for %s/%s was truncated", self.owner, self.repo
            )
        prefix = f"{self.path}/" if self.path else ""
        objects = [
            StorageObject(key=entry["path"], size=entry.get("size"), etag=entry.get("sha"))
            for entry in data.get("tree", [])
            if entry.get("type") == "blob" and entry["path"].startswith(prefix)
        ]
        if progress is not None:
            progress(ScanProgress(scanned=len(objects), total=len(objects)))
        return filter_listing(objects, self.exclude, self.max_file_limit)

    async def list_images(self) -> list[StorageObject]:
        objects = await self.list_all_files()
        return [obj for obj in objects if is_image_key(obj.key)]

    async def get_file(self, key: str) -> bytes | None:
        try:
            async with self._client() as client:
                resp = await client.get(
                    self._contents_url(key),
                    params={"ref": self.branch},
                    headers={"Accept": "application/vnd.github.raw"},
                )
        except httpx.HTTPError as exc:
            msg = f"Failed to download {key}: {exc}"
            raise StorageOperationError(msg) from exc
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            msg = f"Failed to download {key}: {resp.status_code}"
            raise StorageOperationError(msg)
        return resp.content

    async def _blob_sha(self, client: httpx.AsyncClient, key: str) -> str | None:
        resp = await client.get(self._contents_url(key), params={"ref": self.branch})
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            msg = f"Failed to look up {key}: {resp.status_code}"
            raise StorageOperationError(msg)
        sha: str | None = resp.json().get("sha")
        return sha

    async def upload_file(
        self, key: str, data: bytes, options: StorageUploadOptions | None = None
    ) -> StorageObject:
        try:
            async with self._client() as client:
                payload: dict[str, Any] = {
                    "message": f"Upload {key}",
                    "content": base64.b64encode(data).decode("ascii"),
                    "branch": self.branch,
                }
                existing_sha = await self._blob_sha(client, key)
                if existing_sha is not None:
                    payload["sha"] = existing_sha
                resp = await client.put(self._contents_url(key), json=payload)
        except httpx.HTTPError as exc:
            msg = f"Failed to upload {key}: {exc}"
            raise StorageOperationError(msg) from exc
        if resp.status_code not in (200, 201):
            msg = f"Failed to upload {key}: {resp.status_code} {resp.text}"
            raise StorageOperationError(msg)
        content = resp.json().get("content") or {}
        return StorageObject(key=key, size=content.get("size", len(data)), etag=content.get("sha"))

    async def delete_file(self, key: str) -> None:
        try:
            async with self._client() as client:
                existing_sha = await self._blob_sha(client, key)
                if existing_sha is None:
                    return
                resp = await client.request(
                    "DELETE",
                    self._contents_url(key),
                    json={"message": f"Delete {key}", "sha": existing_sha, "branch": self.branch},
                )
        except httpx.HTTPError as exc:
            msg = f"Failed to delete {key}: {exc}"
            raise StorageOperationError(msg) from exc
        if resp.status_code not in (200, 404):
            msg = f"Failed to delete {key}: {resp.status_code}"
            raise StorageOperationError(msg)

    def generate_public_url(self, key: str) -> str:
        encoded = quote(key.lstrip("/"))
        if self.use_raw_url:
            return (
                f"https://raw.githubusercontent.com/{self.owner}/{self.repo}/"
                f"{self.branch}/{encoded}"
            )
        return f"https://github.com/{self.owner}/{self.repo}/raw/{self.branch}/{encoded}"

    def detect_live_photos(self, objects: list[StorageObject]) -> dict[str, StorageObject]:
        return detect_live_photo_pairs(objects)
