"""Per-job progress events and their Server-Sent Events rendering."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Literal

logger = logging.getLogger(__name__)

ProgressStatus = Literal["started", "processing", "completed"]

STAGE_ACQUISITION = "acquisition"
STAGE_VALIDATION = "validation"
STAGE_INIT = "init"
STAGE_SCENE_SEGMENTATION = "scene-segmentation"
STAGE_AUDIO_EXTRACTION = "audio-extraction"
STAGE_KEYFRAME_EXTRACTION = "keyframe-extraction"
STAGE_PERSONA_SAVE = "persona-save"
STAGE_NARRATIVE_SYNTHESIS = "narrative-synthesis"
STAGE_COMPLETE = "complete"
STAGE_ERROR = "error"

TERMINAL_STAGES = frozenset({STAGE_COMPLETE, STAGE_ERROR})
KEEPALIVE_SECONDS = 15.0


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One ordered progress notification for a job."""

    stage: str
    status: ProgressStatus | None = None
    message: str = ""
    details: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"stage": self.stage}
        if self.status is not None:
            payload["status"] = self.status
        payload["message"] = self.message
        if self.details:
            payload["details"] = dict(self.details)
        return payload


ProgressListener = Callable[[ProgressEvent], None]


def format_sse(event: ProgressEvent) -> str:
    """Render one event as an SSE frame named `progress`, `complete` or `error`."""
    if event.stage == STAGE_COMPLETE:
        name = "complete"
    elif event.stage == STAGE_ERROR:
        name = "error"
    else:
        name = "progress"
    data = json.dumps(event.to_payload(), ensure_ascii=False)
    return f"event: {name}\ndata: {data}\n\n"


@dataclass
class ProgressChannel:
    """Single-listener event stream bridging a worker thread to an asyncio consumer.

    Exactly one terminal event is delivered; anything emitted after it is dropped.
    There is no replay: events emitted before the listener starts reading are
    buffered, nothing more.
    """

    loop: asyncio.AbstractEventLoop | None = None
    _queue: asyncio.Queue[ProgressEvent] = field(default_factory=asyncio.Queue, init=False)
    _closed: bool = field(default=False, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: ProgressEvent) -> None:
        with self._lock:
            if self._closed:
                logger.debug("progress.dropped stage=%s", event.stage)
                return
            if event.is_terminal:
                self._closed = True
        if self.loop is not None:
            self.loop.call_soon_threadsafe(self._queue.put_nowait, event)
        else:
            self._queue.put_nowait(event)

    __call__ = emit

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in emission order until the terminal event."""
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                return

    async def sse_stream(self, keepalive_seconds: float = KEEPALIVE_SECONDS) -> AsyncIterator[str]:
        """Yield SSE frames, with comment keepalives while the pipeline is quiet."""
        while True:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)
            if event.is_terminal:
                return


def log_progress(event: ProgressEvent) -> None:
    """Listener that writes progress events to the log."""
    level = logging.ERROR if event.stage == STAGE_ERROR else logging.INFO
    logger.log(
        level,
        "progress stage=%s status=%s message=%s",
        event.stage,
        event.status or "-",
        event.message,
    )
