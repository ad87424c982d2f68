"""Photo uploads: collision-free key allocation and the upload pipeline.

Key allocation is pure and runs entirely in memory before any network call.
Given the same inputs in the same order it always yields the same keys, so
it is tested without storage I/O. ``PhotoUploadService`` then uploads,
processes and catalogues the allocated plans one at a time.
"""

from __future__ import annotations

import logging
import posixpath
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from backend.exceptions import ManifestGenerationError, UploadAbortedError
from backend.services import catalogue_service
from backend.services.catalogue_service import AssetWrite, ConflictDetected, normalize_base_name
from backend.services.data_sync_service import flag_photo_id_collision
from backend.services.snapshot_service import storage_snapshot
from backend.services.sync_progress import (
    ActionType,
    LogLevel,
    ProgressReporter,
    StageStatus,
    SyncAction,
    SyncStage,
    SyncSummary,
)
from backend.storage.base import StorageObject, StorageOperationError, StorageUploadOptions

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.services.catalogue_service import CatalogueRecord
    from backend.services.manifest_builder import ManifestBuilder
    from backend.services.quota_service import PlanQuota
    from backend.services.sync_progress import ProgressEmitter
    from backend.storage.manager import StorageManager

logger = logging.getLogger(__name__)

VIDEO_UPLOAD_EXTENSIONS = frozenset({"mov", "mp4"})
_LIVE_PHOTO_VIDEO_VARIANTS = (".mov", ".MOV", ".mp4", ".MP4")
_NUMERIC_SUFFIX_RE = re.compile(r"^(.*?)(?:-(\d+))?$", re.DOTALL)
_SEPARATOR_RE = re.compile(r"[\\/]+")
UPLOAD_REASON = "Uploaded via dashboard"


@dataclass(frozen=True)
class UploadAssetInput:
    """One file received for upload."""

    filename: str
    data: bytes
    content_type: str | None = None
    directory: str | None = None


@dataclass
class UploadPlan:
    """Where one input will be stored. Keys are adjusted in place during allocation."""

    original: UploadAssetInput
    storage_key: str
    base_name: str
    group_key: str | None = None
    is_video: bool = False
    is_existing: bool = False


@dataclass
class AllocationResult:
    photo_plans: list[UploadPlan] = field(default_factory=list)
    video_plans: list[UploadPlan] = field(default_factory=list)
    unmatched_video_base_names: set[str] = field(default_factory=set)


# -- key helpers -------------------------------------------------------------


def normalize_key_path(raw: str) -> str:
    """Join path segments with ``/``, dropping empty, ``.`` and ``..`` segments."""
    if not raw:
        return ""
    segments = []
    for segment in _SEPARATOR_RE.split(raw):
        trimmed = segment.strip()
        if not trimmed or trimmed in (".", ".."):
            continue
        segments.append(trimmed)
    return "/".join(segments)


def _normalize_directory(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    return normalize_key_path(value.strip()) or None


def split_storage_key(storage_key: str) -> tuple[str, str]:
    """Split a key into ``(base_path, extension)``; the extension keeps its dot."""
    base_path, extension = posixpath.splitext(storage_key)
    if not extension:
        return storage_key, ""
    return base_path, extension


def resolve_storage_directory(storage_config: dict[str, Any]) -> str | None:
    """Root prefix uploads go under: ``prefix`` for S3 and B2, ``path`` for GitHub."""
    provider = storage_config.get("provider")
    if provider in ("s3", "b2"):
        return _normalize_directory(storage_config.get("prefix"))
    if provider == "github":
        return _normalize_directory(storage_config.get("path"))
    return None


def create_storage_key(input_: UploadAssetInput, storage_config: dict[str, Any]) -> str:
    """Build ``{root prefix}/{custom directory}/{filename}`` for an input.

    A filename with an empty stem falls back to a millisecond timestamp.
    """
    filename = posixpath.basename(input_.filename.replace("\\", "/"))
    stem, extension = posixpath.splitext(filename)
    stem = stem.strip()
    directories = [
        segment
        for segment in (
            resolve_storage_directory(storage_config),
            _normalize_directory(input_.directory),
        )
        if segment
    ]
    key_segment = stem or str(int(time.time() * 1000))
    return normalize_key_path("/".join([*directories, f"{key_segment}{extension}"]))


def is_video_input(input_: UploadAssetInput) -> bool:
    content_type = (input_.content_type or "").lower()
    if content_type.startswith("video/"):
        return True
    extension = posixpath.splitext(input_.filename)[1].lstrip(".").lower()
    return extension in VIDEO_UPLOAD_EXTENSIONS


def photo_id_from_key(storage_key: str) -> str:
    base_path, _ = split_storage_key(storage_key)
    return posixpath.basename(base_path)


def increment_storage_key_base(storage_key: str) -> str:
    """``a.jpg`` -> ``a-2.jpg``, ``a-2.jpg`` -> ``a-3.jpg``."""
    base_path, extension = split_storage_key(storage_key)
    match = _NUMERIC_SUFFIX_RE.match(base_path)
    root = (match.group(1) if match else "") or base_path
    suffix = int(match.group(2)) if match and match.group(2) else None
    return f"{root}-{(suffix or 1) + 1}{extension}"


def derive_video_storage_keys(storage_key: str) -> list[str]:
    """Keys a companion Live Photo video of storage_key could have."""
    base_path, _ = split_storage_key(storage_key)
    if not base_path:
        return []
    return [f"{base_path}{variant}" for variant in _LIVE_PHOTO_VIDEO_VARIANTS]


# -- allocation --------------------------------------------------------------


def prepare_upload_plans(
    inputs: Sequence[UploadAssetInput], storage_config: dict[str, Any]
) -> tuple[list[UploadPlan], list[UploadPlan]]:
    """Plan keys for a batch, suffixing in-batch duplicates with ``-N``.

    Stills and videos are numbered separately, and base paths are compared
    case-insensitively, so ``IMG.jpg`` and ``img.heic`` become ``IMG`` and
    ``img-2`` while ``IMG.mov`` stays ``IMG`` and pairs with the first.
    """
    sequences: dict[bool, dict[str, int]] = {False: {}, True: {}}
    photo_plans: list[UploadPlan] = []
    video_plans: list[UploadPlan] = []
    for input_ in inputs:
        base_path, extension = split_storage_key(create_storage_key(input_, storage_config))
        group_base = normalize_key_path(base_path).lower()
        is_video = is_video_input(input_)
        sequence = sequences[is_video].get(group_base, 0) + 1
        sequences[is_video][group_base] = sequence
        final_base = base_path if sequence <= 1 else f"{base_path}-{sequence}"
        final_key = f"{final_base}{extension}"
        plan = UploadPlan(
            original=input_,
            storage_key=final_key,
            base_name=normalize_base_name(final_key),
            group_key=f"{group_base}#{sequence}",
            is_video=is_video,
        )
        (video_plans if is_video else photo_plans).append(plan)
    return photo_plans, video_plans


def validate_live_photo_pairs(
    photo_plans: Iterable[UploadPlan], video_plans: Iterable[UploadPlan]
) -> set[str]:
    """Return base names of videos with no still of the same name in the batch."""
    photo_base_names = {plan.base_name for plan in photo_plans}
    return {plan.base_name for plan in video_plans if plan.base_name not in photo_base_names}


def ensure_upload_plan_key_uniqueness(
    plans: Iterable[UploadPlan],
    existing_storage_keys: Iterable[str],
    existing_photo_ids: Iterable[str],
) -> dict[str, str]:
    """Give every still a key and derived photo id nobody else holds.

    Each accepted key reserves both its key and its id before the next plan
    is looked at. Returns ``{group_key: new_base_path}`` for every plan that
    had to move, so paired videos can follow.
    """
    used_keys = set(existing_storage_keys)
    used_ids = set(existing_photo_ids)
    overrides: dict[str, str] = {}
    for plan in plans:
        candidate = plan.storage_key
        while candidate in used_keys or photo_id_from_key(candidate) in used_ids:
            candidate = increment_storage_key_base(candidate)
        used_keys.add(candidate)
        used_ids.add(photo_id_from_key(candidate))
        if candidate != plan.storage_key:
            plan.storage_key = candidate
            plan.base_name = normalize_base_name(candidate)
            if plan.group_key:
                overrides[plan.group_key] = split_storage_key(candidate)[0]
    return overrides


def apply_group_adjustments_to_videos(
    video_plans: Iterable[UploadPlan], overrides: dict[str, str]
) -> None:
    """Move videos to the adjusted base path of the still they pair with."""
    if not overrides:
        return
    for plan in video_plans:
        if not plan.group_key or plan.group_key not in overrides:
            continue
        _, extension = split_storage_key(plan.storage_key)
        plan.storage_key = f"{overrides[plan.group_key]}{extension}"
        plan.base_name = normalize_base_name(plan.storage_key)


def allocate_upload_keys(
    inputs: Sequence[UploadAssetInput],
    storage_config: dict[str, Any],
    existing_storage_keys: Iterable[str] = (),
    existing_photo_ids: Iterable[str] = (),
) -> AllocationResult:
    """Plan, pair and de-duplicate a batch in one call."""
    photo_plans, video_plans = prepare_upload_plans(inputs, storage_config)
    unmatched = validate_live_photo_pairs(photo_plans, video_plans)
    overrides = ensure_upload_plan_key_uniqueness(
        photo_plans, existing_storage_keys, existing_photo_ids
    )
    apply_group_adjustments_to_videos(video_plans, overrides)
    return AllocationResult(
        photo_plans=photo_plans,
        video_plans=video_plans,
        unmatched_video_base_names=unmatched,
    )


def select_active_video_plans(
    pending_photo_plans: Iterable[UploadPlan], video_plans: Iterable[UploadPlan]
) -> list[UploadPlan]:
    """First video per base name among those pairing with a pending still."""
    pending_base_names = {plan.base_name for plan in pending_photo_plans}
    seen: set[str] = set()
    active: list[UploadPlan] = []
    for plan in video_plans:
        if plan.base_name not in pending_base_names or plan.base_name in seen:
            continue
        seen.add(plan.base_name)
        active.append(plan)
    return active


# -- pipeline ----------------------------------------------------------------


@dataclass
class UploadResult:
    summary: SyncSummary
    actions: list[SyncAction] = field(default_factory=list)
    records: list[CatalogueRecord] = field(default_factory=list)


@dataclass(frozen=True)
class AssetListItem:
    record: CatalogueRecord
    public_url: str | None


class PhotoUploadService:
    """Uploads, lists and deletes a tenant's photo assets."""

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        storage: StorageManager,
        manifest_builder: ManifestBuilder,
        quota: PlanQuota,
        storage_config: dict[str, Any],
    ) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.storage = storage
        self.manifest_builder = manifest_builder
        self.quota = quota
        self.storage_config = storage_config

    def _public_url(self, record: CatalogueRecord) -> str | None:
        if record.is_database_only:
            return None
        try:
            return self.storage.generate_public_url(record.storage_key)
        except (StorageOperationError, ValueError):
            logger.warning("No public URL for %s", record.storage_key, exc_info=True)
            return None

    async def list_assets(self) -> list[AssetListItem]:
        records = await catalogue_service.load_records(self.session, self.tenant_id)
        return [
            AssetListItem(record=record, public_url=self._public_url(record)) for record in records
        ]

    async def get_summary(self) -> dict[str, int]:
        """Row counts by sync status; anything not synced or in conflict is pending."""
        counts = await catalogue_service.count_by_status(self.session, self.tenant_id)
        synced = counts.get("synced", 0)
        conflicts = counts.get("conflict", 0)
        total = sum(counts.values())
        return {
            "total": total,
            "synced": synced,
            "conflicts": conflicts,
            "pending": total - synced - conflicts,
        }

    async def delete_assets(
        self, record_ids: Sequence[int], *, delete_from_storage: bool = False
    ) -> int:
        """Delete rows, optionally removing their objects and Live Photo videos first.

        A failure deleting the photo itself propagates before any row is
        removed; missing companion videos are ignored.
        """
        records = await catalogue_service.get_records(self.session, self.tenant_id, record_ids)
        if not records:
            return 0

        if delete_from_storage:
            deleted_video_keys: set[str] = set()
            for record in records:
                if record.is_database_only:
                    continue
                await self.storage.delete_file(record.storage_key)
                for video_key in derive_video_storage_keys(record.storage_key):
                    if video_key == record.storage_key or video_key in deleted_video_keys:
                        continue
                    deleted_video_keys.add(video_key)
                    try:
                        await self.storage.delete_file(video_key)
                    except StorageOperationError:
                        logger.debug("No companion video at %s", video_key)

        deleted = await catalogue_service.delete_records(
            self.session, self.tenant_id, [record.id for record in records]
        )
        logger.info(
            "Deleted %d assets for tenant %s (from storage: %s)",
            deleted,
            self.tenant_id,
            delete_from_storage,
        )
        return deleted

    async def upload_assets(
        self,
        inputs: Sequence[UploadAssetInput],
        progress: ProgressEmitter | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> UploadResult:
        """Upload a batch, pairing stills with Live Photo videos.

        Size and quota limits are checked before any network I/O. The abort
        event is checked before each unit of work; rows written before it
        was set are kept.
        """
        reporter = ProgressReporter(progress)
        if not inputs:
            return UploadResult(summary=SyncSummary())

        def check_aborted() -> None:
            if abort_event is not None and abort_event.is_set():
                msg = "Upload aborted"
                raise UploadAbortedError(msg)

        self.quota.enforce_upload_size_limit(inputs)
        photo_plans, video_plans = prepare_upload_plans(inputs, self.storage_config)
        unmatched = validate_live_photo_pairs(photo_plans, video_plans)

        await reporter.log(
            LogLevel.INFO,
            f"Received {len(inputs)} files for upload.",
            stage=SyncStage.MISSING_IN_DB,
        )
        check_aborted()

        existing_by_key, existing_by_base_name = await self._collect_existing_records(
            photo_plans, video_plans
        )
        check_aborted()

        existing_ids = (
            await catalogue_service.list_photo_ids(self.session, self.tenant_id)
            if photo_plans
            else set()
        )
        check_aborted()

        overrides = ensure_upload_plan_key_uniqueness(photo_plans, existing_by_key, existing_ids)
        apply_group_adjustments_to_videos(video_plans, overrides)

        pending = [plan for plan in photo_plans if plan.storage_key not in existing_by_key]
        await self.quota.ensure_processing_allowance(self.session, self.tenant_id, len(pending))
        current = await catalogue_service.count_records(self.session, self.tenant_id)
        self.quota.ensure_library_capacity(current=current, incoming=len(pending))
        check_aborted()

        additional = [
            UploadPlan(
                original=UploadAssetInput(
                    filename=posixpath.basename(existing_by_base_name[base_name].storage_key),
                    data=b"",
                ),
                storage_key=existing_by_base_name[base_name].storage_key,
                base_name=base_name,
                is_existing=True,
            )
            for base_name in sorted(unmatched)
            if base_name in existing_by_base_name
        ]
        unresolved = [
            plan.original.filename
            for plan in video_plans
            if plan.base_name in unmatched and plan.base_name not in existing_by_base_name
        ]
        if unresolved:
            msg = f"Live Photo videos without a matching still: {', '.join(unresolved)}"
            raise ValueError(msg)

        all_pending = [*pending, *additional]
        active_videos = select_active_video_plans(all_pending, video_plans)
        existing_objects = await self._existing_storage_map(all_pending, active_videos)

        summary = SyncSummary(
            storage_objects=len(all_pending),
            database_records=len(existing_by_key),
        )
        totals = {
            SyncStage.MISSING_IN_DB.value: len(all_pending),
            SyncStage.ORPHAN_IN_DB.value: 0,
            SyncStage.METADATA_CONFLICTS.value: len(all_pending),
            SyncStage.STATUS_RECONCILIATION.value: 0,
        }
        mirrored_stages = (SyncStage.MISSING_IN_DB, SyncStage.METADATA_CONFLICTS)
        await reporter.start(summary, totals, dry_run=False)
        for stage in mirrored_stages:
            await reporter.stage(
                stage, StageStatus.START, processed=0, total=len(all_pending), summary=summary
            )

        result = UploadResult(summary=summary)
        if not all_pending:
            await reporter.log(
                LogLevel.WARN,
                "All files already exist; nothing uploaded.",
                stage=SyncStage.MISSING_IN_DB,
            )
        else:
            videos_by_base_name: dict[str, StorageObject] = {}
            for plan in active_videos:
                check_aborted()
                obj = existing_objects.get(plan.storage_key)
                if obj is None:
                    obj = await self._upload(plan)
                    existing_objects[plan.storage_key] = obj
                videos_by_base_name[plan.base_name] = obj

            processed = 0
            for plan in all_pending:
                check_aborted()
                action, record = await self._process_plan(
                    plan, existing_objects, videos_by_base_name, reporter
                )
                processed += 1
                if record is not None:
                    summary.inserted += 1
                    result.records.append(record)
                elif action.applied:
                    summary.conflicts += 1
                else:
                    summary.skipped += 1
                result.actions.append(action)
                for stage in mirrored_stages:
                    await reporter.action(
                        stage,
                        index=processed,
                        total=len(all_pending),
                        action=action,
                        summary=summary,
                    )
                await reporter.log(
                    LogLevel.INFO,
                    f"Processed {processed}/{len(all_pending)}: "
                    f"{(action.manifest_after or {}).get('title') or action.photo_id}",
                    stage=SyncStage.MISSING_IN_DB,
                )

        for stage in mirrored_stages:
            await reporter.stage(
                stage,
                StageStatus.COMPLETE,
                processed=len(result.actions),
                total=len(all_pending),
                summary=summary,
            )
        await reporter.complete(summary, result.actions)
        logger.info(
            "Uploaded %d assets for tenant %s via %s",
            summary.inserted,
            self.tenant_id,
            self.storage.provider_name,
        )

        reprocessed = {record.storage_key for record in result.records}
        kept = [record for key, record in existing_by_key.items() if key not in reprocessed]
        result.records = [*kept, *result.records]
        return result

    async def _collect_existing_records(
        self, photo_plans: list[UploadPlan], video_plans: list[UploadPlan]
    ) -> tuple[dict[str, CatalogueRecord], dict[str, CatalogueRecord]]:
        """Rows already holding planned still keys, plus stills videos could pair with."""
        by_key: dict[str, CatalogueRecord] = {}
        by_base_name: dict[str, CatalogueRecord] = {}
        for record in await catalogue_service.find_by_storage_keys(
            self.session, self.tenant_id, [plan.storage_key for plan in photo_plans]
        ):
            by_key[record.storage_key] = record
            by_base_name[normalize_base_name(record.storage_key)] = record

        for base_name in dict.fromkeys(plan.base_name for plan in video_plans):
            if base_name in by_base_name:
                continue
            record = await catalogue_service.find_by_base_name(
                self.session, self.tenant_id, base_name
            )
            if record is not None:
                by_key[record.storage_key] = record
                by_base_name[base_name] = record
        return by_key, by_base_name

    async def _existing_storage_map(
        self, photo_plans: list[UploadPlan], video_plans: list[UploadPlan]
    ) -> dict[str, StorageObject]:
        """Objects already stored under any of the planned keys."""
        target_keys = {plan.storage_key for plan in [*photo_plans, *video_plans]}
        if not target_keys:
            return {}
        found: dict[str, StorageObject] = {}
        for obj in await self.storage.list_all_files():
            key = normalize_key_path(obj.key)
            if key in target_keys:
                found[key] = obj if obj.key == key else StorageObject(
                    key=key, size=obj.size, last_modified=obj.last_modified, etag=obj.etag
                )
        return found

    async def _upload(self, plan: UploadPlan) -> StorageObject:
        obj = await self.storage.upload_file(
            plan.storage_key,
            plan.original.data,
            StorageUploadOptions(content_type=plan.original.content_type),
        )
        if obj.key == plan.storage_key:
            return obj
        return StorageObject(
            key=plan.storage_key, size=obj.size, last_modified=obj.last_modified, etag=obj.etag
        )

    async def _process_plan(
        self,
        plan: UploadPlan,
        existing_objects: dict[str, StorageObject],
        videos_by_base_name: dict[str, StorageObject],
        reporter: ProgressReporter,
    ) -> tuple[SyncAction, CatalogueRecord | None]:
        """Upload if needed, build the manifest and catalogue one still.

        A photo id already owned by another row flags that row as a
        conflict; the uploaded object then has no row of its own.
        """
        obj = existing_objects.get(plan.storage_key)
        if obj is None:
            if plan.is_existing:
                msg = f"Existing photo {plan.storage_key} was not found in storage"
                raise StorageOperationError(msg)
            obj = await self._upload(plan)
            existing_objects[plan.storage_key] = obj

        video = videos_by_base_name.get(plan.base_name)
        item = await self.manifest_builder.process(
            obj,
            self.storage,
            live_photo_map={obj.key: video} if video is not None else None,
        )
        if item is None:
            await reporter.log(
                LogLevel.ERROR,
                "Manifest generation returned no photo",
                stage=SyncStage.MISSING_IN_DB,
                storage_key=obj.key,
            )
            msg = f"Could not generate a manifest for {obj.key}"
            raise ManifestGenerationError(msg)

        manifest = item.to_manifest_data()
        snapshot = storage_snapshot(obj)
        outcome = await catalogue_service.insert_asset(
            self.session,
            self.tenant_id,
            AssetWrite(
                photo_id=item.id,
                storage_key=obj.key,
                storage_provider=self.storage.provider_name,
                snapshot=snapshot,
                manifest_item=manifest,
            ),
            overwrite_existing_key=True,
        )
        if isinstance(outcome, ConflictDetected):
            logger.warning(
                "Uploaded %s collides with photo id %s; flagging the owning row",
                obj.key,
                item.id,
            )
            action = await flag_photo_id_collision(
                self.session, self.tenant_id, obj, snapshot, item.id, manifest
            )
            return action, None
        action = SyncAction(
            type=ActionType.INSERT,
            storage_key=obj.key,
            photo_id=outcome.record.photo_id,
            applied=True,
            reason=UPLOAD_REASON,
            snapshot_after=snapshot,
            manifest_after=manifest,
        )
        return action, outcome.record
