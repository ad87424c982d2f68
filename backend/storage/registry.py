"""Provider registry for storage backends."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from backend.storage.b2 import B2StorageProvider
from backend.storage.eagle import EagleStorageProvider
from backend.storage.github import GitHubStorageProvider
from backend.storage.local import LocalStorageProvider
from backend.storage.s3 import S3StorageProvider

if TYPE_CHECKING:
    from backend.storage.base import StorageProvider

PROVIDERS: dict[
    str,
    type[S3StorageProvider]
    | type[B2StorageProvider]
    | type[GitHubStorageProvider]
    | type[LocalStorageProvider]
    | type[EagleStorageProvider],
] = {
    "s3": S3StorageProvider,
    "b2": B2StorageProvider,
    "github": GitHubStorageProvider,
    "local": LocalStorageProvider,
    "eagle": EagleStorageProvider,
}


def create_provider(config: dict[str, Any]) -> StorageProvider:
    """Instantiate the backend named by ``config["provider"]``.

    Raises ValueError if the tag is missing or unknown, or if the backend
    rejects its configuration.
    """
    provider_name = config.get("provider")
    if not provider_name:
        msg = "Storage configuration is missing the provider tag"
        raise ValueError(msg)
    provider_cls = PROVIDERS.get(provider_name)
    if provider_cls is None:
        msg = f"Unknown storage provider: {provider_name!r}. Available: {list(PROVIDERS)}"
        raise ValueError(msg)
    return provider_cls(config)


def list_providers() -> list[str]:
    """Return the list of supported provider tags."""
    return list(PROVIDERS.keys())
