"""Shared test fixtures for photo sync."""

from __future__ import annotations

import hashlib
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from backend.config import Settings
from backend.database import create_engine, init_schema
from backend.main import create_app
from backend.services.manifest_builder import DigestManifestBuilder, ManifestItem
from backend.services.quota_service import PlanQuota
from backend.storage.base import (
    StorageObject,
    StorageOperationError,
    StorageUploadOptions,
    detect_live_photo_pairs,
    is_image_key,
)
from backend.storage.manager import StorageManager

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable
    from pathlib import Path

    from backend.storage.base import ScanProgress

TEST_TENANT = "tenant-a"
FIXED_MTIME = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


class InMemoryStorageProvider:
    """Dict-backed storage provider with hooks for simulating drift and failures."""

    name: str = "memory"

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, datetime]] = {}
        self.failing_keys: set[str] = set()
        self.vanished_keys: set[str] = set()
        self.deleted: list[str] = []

    def put(self, key: str, data: bytes, *, last_modified: datetime = FIXED_MTIME) -> None:
        self.objects[key] = (data, last_modified)

    def _object(self, key: str) -> StorageObject:
        data, last_modified = self.objects[key]
        return StorageObject(
            key=key,
            size=len(data),
            last_modified=last_modified,
            etag=hashlib.md5(data).hexdigest(),
        )

    async def list_all_files(
        self, progress: Callable[[ScanProgress], None] | None = None
    ) -> list[StorageObject]:
        return [self._object(key) for key in sorted(self.objects)]

    async def list_images(self) -> list[StorageObject]:
        return [obj for obj in await self.list_all_files() if is_image_key(obj.key)]

    async def get_file(self, key: str) -> bytes | None:
        if key in self.failing_keys:
            msg = f"Simulated failure reading {key}"
            raise StorageOperationError(msg)
        if key in self.vanished_keys or key not in self.objects:
            return None
        return self.objects[key][0]

    async def upload_file(
        self, key: str, data: bytes, options: StorageUploadOptions | None = None
    ) -> StorageObject:
        if key in self.failing_keys:
            msg = f"Simulated failure writing {key}"
            raise StorageOperationError(msg)
        self.put(key, data)
        return self._object(key)

    async def delete_file(self, key: str) -> None:
        if key in self.failing_keys:
            msg = f"Simulated failure deleting {key}"
            raise StorageOperationError(msg)
        self.deleted.append(key)
        self.objects.pop(key, None)

    def generate_public_url(self, key: str) -> str:
        return f"https://cdn.test/{key}"

    def detect_live_photos(self, objects: list[StorageObject]) -> dict[str, StorageObject]:
        return detect_live_photo_pairs(objects)


class FailingManifestBuilder:
    """Builder that fails for chosen keys and delegates to the digest builder otherwise."""

    def __init__(
        self, failing_keys: set[str] | None = None, *, empty_keys: set[str] | None = None
    ) -> None:
        self.failing_keys = failing_keys or set()
        self.empty_keys = empty_keys or set()
        self.processed: list[str] = []
        self._delegate = DigestManifestBuilder()

    async def process(
        self,
        obj: StorageObject,
        storage: StorageManager,
        *,
        live_photo_map: dict[str, StorageObject] | None = None,
        existing: dict[str, Any] | None = None,
    ) -> ManifestItem | None:
        self.processed.append(obj.key)
        if obj.key in self.failing_keys:
            msg = f"cannot decode {obj.key}"
            raise RuntimeError(msg)
        if obj.key in self.empty_keys:
            return None
        return await self._delegate.process(
            obj, storage, live_photo_map=live_photo_map, existing=existing
        )


@pytest.fixture
def memory_provider() -> InMemoryStorageProvider:
    return InMemoryStorageProvider()


@pytest.fixture
def storage(memory_provider: InMemoryStorageProvider) -> StorageManager:
    return StorageManager(memory_provider)


@pytest.fixture
def builder() -> FailingManifestBuilder:
    return FailingManifestBuilder()


@pytest.fixture
def quota() -> PlanQuota:
    return PlanQuota()


@pytest.fixture
def photo_dir(tmp_path: Path) -> Path:
    photos = tmp_path / "photos"
    photos.mkdir()
    return photos


@pytest.fixture
def test_settings(tmp_path: Path, photo_dir: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "test.db"
    return Settings(
        _env_file=None,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        storage_provider="local",
        storage_config={"base_path": str(photo_dir), "base_url": "https://photos.test"},
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the catalogue schema in place."""
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(
    db_engine: AsyncEngine,
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session


@asynccontextmanager
async def create_test_client(
    settings: Settings,
    *,
    storage: StorageManager | None = None,
    manifest_builder: Any = None,
    tenant_id: str | None = TEST_TENANT,
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Performs the work of the application lifespan (engine, schema) because
    ASGITransport does not trigger it. A given storage manager replaces
    every storage backend the app would build from configuration.
    """
    app = create_app(settings)
    settings.validate_runtime_security()

    engine, session_factory = create_engine(settings)
    app.state.engine = engine
    app.state.session_factory = session_factory
    await init_schema(engine)

    if storage is not None:
        app.state.storage_factory = lambda _config: storage
    if manifest_builder is not None:
        app.state.manifest_builder = manifest_builder

    headers = {"X-Tenant-Id": tenant_id} if tenant_id is not None else {}
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers=headers,
    ) as ac:
        yield ac

    await engine.dispose()
