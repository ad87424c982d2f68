"""SQLAlchemy ORM models for the photo catalogue."""

from backend.models.base import Base
from backend.models.photo import PhotoAsset, PhotoSyncRun

__all__ = [
    "Base",
    "PhotoAsset",
    "PhotoSyncRun",
]
