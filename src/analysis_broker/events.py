"""In-process event bus for analysis progress streaming.

The pipeline publishes progress chunks while the tool runs, then a single
completion or failure event per request. Observers either subscribe with
an ``asyncio.Queue`` or register a plain callback listener.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum

import structlog
from pydantic import BaseModel, Field

from analysis_broker.models import AnalysisResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_DEFAULT_BUFFER_SIZE = 200
_DEFAULT_TRACKED_REQUESTS = 100


class EventType(StrEnum):
    """Types of events emitted by the pipeline."""

    PROGRESS = "progress"
    CACHE_HIT = "cache_hit"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineEvent(BaseModel):
    """Common envelope for pipeline events."""

    request_id: str
    event_type: EventType
    ts: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


class ProgressEvent(PipelineEvent):
    """A chunk of tool output with the inferred phase."""

    event_type: EventType = EventType.PROGRESS
    phase: str
    raw_chunk: str
    stream: str = "stdout"


class CacheHitEvent(PipelineEvent):
    """A request served from the store.

    ``request_id`` identifies the request that hit; ``cached_request_id`` is
    the ID carried by the returned result, from the run that produced it.
    """

    event_type: EventType = EventType.CACHE_HIT
    cache_key: str
    cached_request_id: str


class CompletedEvent(PipelineEvent):
    event_type: EventType = EventType.COMPLETED
    result: AnalysisResult


class FailedEvent(PipelineEvent):
    event_type: EventType = EventType.FAILED
    error: str


Listener = Callable[[PipelineEvent], None]


class EventBus:
    """Publish/subscribe event bus with bounded per-request buffers.

    Buffers are kept for the most recent ``tracked_requests`` request IDs.
    """

    def __init__(
        self,
        buffer_size: int = _DEFAULT_BUFFER_SIZE,
        tracked_requests: int = _DEFAULT_TRACKED_REQUESTS,
    ) -> None:
        self._buffer_size = buffer_size
        self._tracked_requests = tracked_requests
        self._buffers: dict[str, deque[PipelineEvent]] = {}
        self._subscribers: set[asyncio.Queue[PipelineEvent]] = set()
        self._listeners: list[Listener] = []

    def publish(self, event: PipelineEvent) -> None:
        buffer = self._buffers.get(event.request_id)
        if buffer is None:
            while len(self._buffers) >= self._tracked_requests:
                self._buffers.pop(next(iter(self._buffers)))
            buffer = deque(maxlen=self._buffer_size)
            self._buffers[event.request_id] = buffer
        buffer.append(event)

        for queue in list(self._subscribers):
            queue.put_nowait(event)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "event_listener_failed",
                    request_id=event.request_id,
                    event_type=event.event_type.value,
                )

    def subscribe(self) -> asyncio.Queue[PipelineEvent]:
        queue: asyncio.Queue[PipelineEvent] = asyncio.Queue()
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[PipelineEvent]) -> None:
        self._subscribers.discard(queue)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def recent_events(self, request_id: str) -> list[PipelineEvent]:
        return list(self._buffers.get(request_id, []))

    def forget(self, request_id: str) -> None:
        self._buffers.pop(request_id, None)
