"""Tests for the Backblaze B2 storage backend using a mock HTTP transport."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from backend.storage.b2 import B2_AUTHORIZE_URL, B2StorageProvider
from backend.storage.base import StorageOperationError

API = "https://api.b2.test"
DOWNLOAD = "https://f001.b2.test"
UPLOAD = "https://pod.b2.test/upload"
CONFIG = {
    "application_key_id": "kid",
    "application_key": "key",
    "bucket_id": "bid",
    "bucket_name": "photos",
}


class FakeB2:
    """Minimal B2 API: one bucket, a token that can be revoked."""

    def __init__(self) -> None:
        self.files: dict[str, dict[str, Any]] = {}
        self.authorizations = 0
        self.token = "tok-0"
        self.reject_next_api_call = False
        self.page_size = 1000
        self.operations: list[str] = []

    def _entry(self, name: str, data: bytes) -> dict[str, Any]:
        return {
            "fileName": name,
            "fileId": f"id-{name}",
            "contentLength": len(data),
            "contentSha1": "none" if name.endswith(".mov") else f"sha-{name}",
            "uploadTimestamp": 1748779200000,
            "action": "upload",
            "data": data,
        }

    def add(self, name: str, data: bytes) -> None:
        self.files[name] = self._entry(name, data)

    def _public(self, entry: dict[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in entry.items() if key != "data"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url == B2_AUTHORIZE_URL:
            self.authorizations += 1
            self.token = f"tok-{self.authorizations}"
            return httpx.Response(
                200,
                json={"authorizationToken": self.token, "apiUrl": API, "downloadUrl": DOWNLOAD},
            )
        if url.startswith(DOWNLOAD):
            name = request.url.path.removeprefix("/file/photos/")
            if name not in self.files:
                return httpx.Response(404)
            return httpx.Response(200, content=self.files[name]["data"])
        if url == UPLOAD:
            name = request.headers["X-Bz-File-Name"]
            self.add(name, request.content)
            return httpx.Response(200, json=self._public(self.files[name]))

        operation = request.url.path.rsplit("/", 1)[-1]
        self.operations.append(operation)
        if self.reject_next_api_call or request.headers["Authorization"] != self.token:
            self.reject_next_api_call = False
            return httpx.Response(401, json={"code": "expired_auth_token"})
        body = json.loads(request.content)
        return self._operation(operation, body)

    def _operation(self, operation: str, body: dict[str, Any]) -> httpx.Response:
        if operation == "b2_list_file_names":
            names = sorted(
                name
                for name in self.files
                if name.startswith(body.get("prefix", ""))
                and name >= body.get("startFileName", "")
            )
            page = names[: self.page_size]
            next_name = names[self.page_size] if len(names) > self.page_size else None
            return httpx.Response(
                200,
                json={
                    "files": [self._public(self.files[name]) for name in page],
                    "nextFileName": next_name,
                },
            )
        if operation == "b2_list_file_versions":
            entry = self.files.get(body["prefix"])
            files = [self._public(entry)] if entry else []
            return httpx.Response(200, json={"files": files})
        if operation == "b2_delete_file_version":
            self.files.pop(body["fileName"], None)
            return httpx.Response(200, json={})
        if operation == "b2_copy_file":
            source = next(e for e in self.files.values() if e["fileId"] == body["sourceFileId"])
            self.add(body["fileName"], source["data"])
            return httpx.Response(200, json=self._public(self.files[body["fileName"]]))
        if operation == "b2_get_upload_url":
            return httpx.Response(
                200, json={"uploadUrl": UPLOAD, "authorizationToken": "upload-tok"}
            )
        return httpx.Response(400)


@pytest.fixture
def b2() -> FakeB2:
    return FakeB2()


@pytest.fixture
def provider(b2: FakeB2) -> B2StorageProvider:
    return B2StorageProvider(CONFIG, transport=httpx.MockTransport(b2))


class TestB2Config:
    def test_missing_credentials_are_named(self) -> None:
        with pytest.raises(ValueError, match="application_key_id, bucket_name"):
            B2StorageProvider({"application_key": "k", "bucket_id": "b"})

    def test_public_url_before_authorization(self, provider: B2StorageProvider) -> None:
        assert provider.generate_public_url("a.jpg") == (
            "https://f000.backblazeb2.com/file/photos/a.jpg"
        )


class TestB2Listing:
    async def test_pages_until_next_file_name_is_empty(
        self, provider: B2StorageProvider, b2: FakeB2
    ) -> None:
        b2.page_size = 1
        b2.add("a.jpg", b"abc")
        b2.add("a.mov", b"video")

        objects = await provider.list_all_files()

        assert [obj.key for obj in objects] == ["a.jpg", "a.mov"]
        assert b2.operations == ["b2_list_file_names", "b2_list_file_names"]
        assert objects[0].etag == "sha-a.jpg"
        assert objects[0].last_modified == datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
        assert objects[1].etag == "id-a.mov"

    async def test_expired_token_is_refreshed_once(
        self, provider: B2StorageProvider, b2: FakeB2
    ) -> None:
        b2.add("a.jpg", b"abc")
        b2.reject_next_api_call = True

        objects = await provider.list_all_files()

        assert [obj.key for obj in objects] == ["a.jpg"]
        assert b2.authorizations == 2

    async def test_failed_authorization_is_a_storage_error(self) -> None:
        provider = B2StorageProvider(
            CONFIG, transport=httpx.MockTransport(lambda _request: httpx.Response(401))
        )
        with pytest.raises(StorageOperationError, match="authorization failed"):
            await provider.list_all_files()


class TestB2Objects:
    async def test_download(self, provider: B2StorageProvider, b2: FakeB2) -> None:
        b2.add("a.jpg", b"abc")
        assert await provider.get_file("a.jpg") == b"abc"
        assert await provider.get_file("b.jpg") is None
        assert provider.generate_public_url("a.jpg") == f"{DOWNLOAD}/file/photos/a.jpg"

    async def test_upload(self, provider: B2StorageProvider, b2: FakeB2) -> None:
        uploaded = await provider.upload_file("new.jpg", b"data")
        assert uploaded.key == "new.jpg"
        assert uploaded.size == 4
        assert b2.files["new.jpg"]["data"] == b"data"

    async def test_delete_removes_every_version(
        self, provider: B2StorageProvider, b2: FakeB2
    ) -> None:
        b2.add("a.jpg", b"abc")
        await provider.delete_file("a.jpg")
        assert b2.files == {}
        assert b2.operations == ["b2_list_file_versions", "b2_delete_file_version"]

    async def test_move_copies_then_deletes(self, provider: B2StorageProvider, b2: FakeB2) -> None:
        b2.add("a.jpg", b"abc")

        moved = await provider.move_file("a.jpg", "2025/a.jpg")

        assert moved.key == "2025/a.jpg"
        assert set(b2.files) == {"2025/a.jpg"}

    async def test_move_missing_source(self, provider: B2StorageProvider) -> None:
        with pytest.raises(StorageOperationError, match="does not exist"):
            await provider.move_file("a.jpg", "b.jpg")
