"""Progress events for sync and upload runs.

Every payload is built from value copies at emission time, so a consumer
that holds on to an event never sees the run's counters move underneath it.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from backend.services.datetime_service import now_iso

if TYPE_CHECKING:
    from backend.services.catalogue_service import ConflictPayload
    from backend.services.snapshot_service import SyncObjectSnapshot


class SyncStage(StrEnum):
    """Stages of a reconciliation run, in execution order."""

    MISSING_IN_DB = "missing-in-db"
    ORPHAN_IN_DB = "orphan-in-db"
    METADATA_CONFLICTS = "metadata-conflicts"
    STATUS_RECONCILIATION = "status-reconciliation"


STAGE_ORDER: tuple[SyncStage, ...] = (
    SyncStage.MISSING_IN_DB,
    SyncStage.ORPHAN_IN_DB,
    SyncStage.METADATA_CONFLICTS,
    SyncStage.STATUS_RECONCILIATION,
)


class ActionType(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    CONFLICT = "conflict"
    ERROR = "error"


class LogLevel(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"


class EventType(StrEnum):
    START = "start"
    STAGE = "stage"
    ACTION = "action"
    LOG = "log"
    COMPLETE = "complete"
    ERROR = "error"


class StageStatus(StrEnum):
    START = "start"
    COMPLETE = "complete"


class ResolutionStrategy(StrEnum):
    PREFER_STORAGE = "prefer-storage"
    PREFER_DATABASE = "prefer-database"


@dataclass
class SyncSummary:
    """Running counters for one run. Mutated in place by the stages."""

    storage_objects: int = 0
    database_records: int = 0
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class SyncAction:
    """One processed item: what happened (or would happen) to a storage key."""

    type: ActionType
    storage_key: str
    photo_id: str | None
    applied: bool
    reason: str | None = None
    conflict_id: int | None = None
    conflict_payload: ConflictPayload | None = None
    snapshot_before: SyncObjectSnapshot | None = None
    snapshot_after: SyncObjectSnapshot | None = None
    manifest_before: dict[str, Any] | None = None
    manifest_after: dict[str, Any] | None = None
    resolution: ResolutionStrategy | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a fresh, fully detached dict."""
        snapshots: dict[str, Any] = {}
        if self.snapshot_before is not None:
            snapshots["before"] = self.snapshot_before.to_dict()
        if self.snapshot_after is not None:
            snapshots["after"] = self.snapshot_after.to_dict()
        data: dict[str, Any] = {
            "type": str(self.type),
            "storage_key": self.storage_key,
            "photo_id": self.photo_id,
            "applied": self.applied,
            "reason": self.reason,
            "conflict_id": self.conflict_id,
            "conflict_payload": (
                self.conflict_payload.to_dict() if self.conflict_payload is not None else None
            ),
            "snapshots": snapshots,
            "manifest_before": copy.deepcopy(self.manifest_before),
            "manifest_after": copy.deepcopy(self.manifest_after),
        }
        if self.resolution is not None:
            data["resolution"] = str(self.resolution)
        return data


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "payload": self.payload}

    def to_json_line(self) -> str:
        """One NDJSON line, newline included."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str) + "\n"


ProgressEmitter = Callable[[ProgressEvent], Awaitable[None]]


class ProgressReporter:
    """Builds events and forwards them to an optional emitter.

    Without an emitter every method is a no-op, so stage code never has to
    check whether anyone is listening.
    """

    def __init__(self, emitter: ProgressEmitter | None = None) -> None:
        self.emitter = emitter

    async def _emit(self, event_type: EventType, payload: dict[str, Any]) -> None:
        if self.emitter is None:
            return
        await self.emitter(ProgressEvent(type=event_type, payload=payload))

    async def start(
        self, summary: SyncSummary, totals: dict[str, int], *, dry_run: bool
    ) -> None:
        await self._emit(
            EventType.START,
            {
                "summary": summary.to_dict(),
                "totals": dict(totals),
                "options": {"dry_run": dry_run},
            },
        )

    async def stage(
        self,
        stage: SyncStage,
        status: StageStatus,
        *,
        processed: int,
        total: int,
        summary: SyncSummary,
    ) -> None:
        await self._emit(
            EventType.STAGE,
            {
                "stage": str(stage),
                "status": str(status),
                "processed": processed,
                "total": total,
                "summary": summary.to_dict(),
            },
        )

    async def action(
        self,
        stage: SyncStage,
        *,
        index: int,
        total: int,
        action: SyncAction,
        summary: SyncSummary,
    ) -> None:
        await self._emit(
            EventType.ACTION,
            {
                "stage": str(stage),
                "index": index,
                "total": total,
                "action": action.to_dict(),
                "summary": summary.to_dict(),
            },
        )

    async def log(
        self,
        level: LogLevel,
        message: str,
        *,
        stage: SyncStage | None = None,
        storage_key: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        await self._emit(
            EventType.LOG,
            {
                "level": str(level),
                "message": message,
                "stage": str(stage) if stage is not None else None,
                "storage_key": storage_key,
                "details": copy.deepcopy(details) if details is not None else None,
                "timestamp": now_iso(),
            },
        )

    async def complete(self, summary: SyncSummary, actions: list[SyncAction]) -> None:
        await self._emit(
            EventType.COMPLETE,
            {
                "summary": summary.to_dict(),
                "actions": [action.to_dict() for action in actions],
            },
        )

    async def error(self, message: str) -> None:
        await self._emit(EventType.ERROR, {"message": message})
