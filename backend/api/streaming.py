"""NDJSON streaming of progress events produced by a background task."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from fastapi.responses import StreamingResponse

from backend.exceptions import (
    ManifestGenerationError,
    NotFoundError,
    ObjectTooLargeError,
    QuotaExceededError,
    StateConflictError,
    UploadAbortedError,
)
from backend.services.sync_progress import EventType, ProgressEvent
from backend.storage.base import StorageOperationError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from backend.services.sync_progress import ProgressEmitter

    Producer = Callable[[ProgressEmitter], Awaitable[object]]

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"

# Errors whose message is safe to show to the client.
_CLIENT_SAFE_ERRORS = (
    ValueError,
    NotFoundError,
    StateConflictError,
    QuotaExceededError,
    ObjectTooLargeError,
    ManifestGenerationError,
    StorageOperationError,
)

# Keep strong references so abandoned producers are not garbage collected mid-run.
_background_tasks: set[asyncio.Task[None]] = set()


def client_error_message(exc: Exception) -> str:
    if isinstance(exc, _CLIENT_SAFE_ERRORS):
        return str(exc) or exc.__class__.__name__
    return "Internal server error"


async def stream_progress(
    producer: Producer,
    *,
    abort_event: asyncio.Event | None = None,
) -> AsyncIterator[str]:
    """Run producer in a task and yield each event it emits as one NDJSON line.

    A fatal exception becomes a final ``error`` event. An aborted upload ends
    the stream quietly. When the consumer goes away the abort event is set if
    one was given; otherwise the producer task is cancelled.
    """
    queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()

    async def emit(event: ProgressEvent) -> None:
        await queue.put(event)

    async def run() -> None:
        try:
            await producer(emit)
        except UploadAbortedError:
            logger.info("Streaming run aborted by the client")
        except Exception as exc:
            logger.error("Streaming run failed: %s", exc, exc_info=exc)
            await queue.put(
                ProgressEvent(type=EventType.ERROR, payload={"message": client_error_message(exc)})
            )
        finally:
            await queue.put(None)

    task = asyncio.create_task(run())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    finished = False
    try:
        while True:
            event = await queue.get()
            if event is None:
                finished = True
                break
            yield event.to_json_line()
    finally:
        if not finished:
            if abort_event is not None:
                abort_event.set()
            else:
                task.cancel()
        else:
            with contextlib.suppress(asyncio.CancelledError):
                await task


def ndjson_response(
    producer: Producer,
    *,
    abort_event: asyncio.Event | None = None,
) -> StreamingResponse:
    return StreamingResponse(
        stream_progress(producer, abort_event=abort_event),
        media_type=NDJSON_MEDIA_TYPE,
    )
