"""Fan a single model response out to live and resumed connections.

A :class:`BufferedStream` records every chunk produced for one response and
lets any number of subscribers read it: each subscriber first receives the
chunks already recorded, then follows new ones as they arrive, so every
subscriber sees the full sequence exactly once and in order.

The producer runs on its own thread. An HTTP client going away only stops
its subscriber; the model call keeps running and the chunks stay available
for a reconnecting client until the stream is evicted from the sink.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from .errors import SinkUnavailable

logger = logging.getLogger(__name__)

Chunk = Dict[str, Any]

PENDING = "pending"
LIVE = "live"
COMPLETED = "completed"
ABORTED = "aborted"

STATUS_LIVE = "live"
STATUS_EXHAUSTED = "exhausted"
STATUS_UNKNOWN = "unknown"

DEFAULT_STREAM_TTL_SECONDS = 60 * 60


# ---------- Chunk protocol ----------
def start_chunk(message_id: str, metadata: Optional[Dict[str, Any]] = None) -> Chunk:
    chunk: Chunk = {"type": "start", "messageId": message_id}
    if metadata:
        chunk["messageMetadata"] = metadata
    return chunk


def text_start_chunk(part_id: str) -> Chunk:
    return {"type": "text-start", "id": part_id}


def text_delta_chunk(part_id: str, delta: str) -> Chunk:
    return {"type": "text-delta", "id": part_id, "delta": delta}


def text_end_chunk(part_id: str) -> Chunk:
    return {"type": "text-end", "id": part_id}


def finish_chunk() -> Chunk:
    return {"type": "finish"}


def error_chunk(error_text: str) -> Chunk:
    return {"type": "error", "errorText": error_text}


def encode_sse(chunks: Iterable[Chunk]) -> Iterator[str]:
    """Render chunks as Server-Sent Events, ending with a ``[DONE]`` marker."""
    for chunk in chunks:
        yield f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n"
    yield "data: [DONE]\n\n"


# ---------- Buffer ----------
class BufferedStream:
    """Single-producer, multi-subscriber replayable chunk buffer.

    The stream is terminal once the producer calls :meth:`finish`, either
    because its source was exhausted (``completed``) or raised
    (``aborted``). Subscribers stopping early never terminate it.
    """

    def __init__(self, stream_id: Optional[str] = None) -> None:
        self.stream_id = stream_id
        self.finished_at: Optional[float] = None
        self._cond = threading.Condition()
        self._chunks: List[Chunk] = []
        self._state = PENDING
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> str:
        with self._cond:
            return self._state

    @property
    def is_exhausted(self) -> bool:
        with self._cond:
            return self._exhausted()

    def _exhausted(self) -> bool:
        return self._state in (COMPLETED, ABORTED)

    @property
    def buffered(self) -> int:
        with self._cond:
            return len(self._chunks)

    def publish(self, chunk: Chunk) -> None:
        with self._cond:
            if self._exhausted():
                raise RuntimeError(f"stream {self.stream_id} already finished")
            self._state = LIVE
            self._chunks.append(chunk)
            self._cond.notify_all()

    def finish(self, *, aborted: bool = False, error: Optional[str] = None) -> None:
        """Mark the stream terminal, appending an ``error`` chunk when given."""
        with self._cond:
            if self._exhausted():
                return
            if error is not None:
                self._chunks.append(error_chunk(error))
            self._state = ABORTED if aborted else COMPLETED
            self.finished_at = time.monotonic()
            self._cond.notify_all()
        logger.debug("Stream %s finished (%s)", self.stream_id, ABORTED if aborted else COMPLETED)

    def subscribe(self) -> Iterator[Chunk]:
        """Return an iterator replaying recorded chunks, then following live ones."""
        return self._follow()

    def _follow(self) -> Iterator[Chunk]:
        index = 0
        while True:
            with self._cond:
                while index >= len(self._chunks) and not self._exhausted():
                    self._cond.wait()
                if index >= len(self._chunks):
                    return
                batch = self._chunks[index:]
            index += len(batch)
            yield from batch

    def run(self, source: Iterable[Chunk]) -> None:
        """Drain ``source`` into the buffer, then mark the stream terminal."""
        try:
            for chunk in source:
                self.publish(chunk)
        except Exception as exc:
            logger.exception("Producer for stream %s failed", self.stream_id)
            self.finish(aborted=True, error=str(exc) or type(exc).__name__)
        else:
            self.finish()

    def start(self, source: Iterable[Chunk]) -> threading.Thread:
        if self._thread is not None:
            raise RuntimeError(f"stream {self.stream_id} already started")
        self._thread = threading.Thread(
            target=self.run,
            args=(source,),
            name=f"chat-stream-{self.stream_id or 'anonymous'}",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


# ---------- Sinks ----------
class StreamSink(ABC):
    """Registry of resumable streams keyed by stream id."""

    @abstractmethod
    def register(self, stream_id: str, supplier: Callable[[], BufferedStream]) -> None:
        """Record the stream produced by ``supplier`` under ``stream_id``."""

    @abstractmethod
    def resume(self, stream_id: str) -> Optional[Iterator[Chunk]]:
        """Return a replay-then-live iterator, or None when nothing is in flight."""

    @abstractmethod
    def status(self, stream_id: str) -> str:
        """Return ``live``, ``exhausted`` or ``unknown``."""


class InMemoryStreamSink(StreamSink):
    """Keep streams in process memory, evicting finished ones after a TTL."""

    def __init__(self, ttl_seconds: int = DEFAULT_STREAM_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._streams: Dict[str, BufferedStream] = {}

    def _evict_stale(self) -> None:
        now = time.monotonic()
        expired = [
            stream_id
            for stream_id, stream in self._streams.items()
            if stream.finished_at is not None and now - stream.finished_at > self.ttl_seconds
        ]
        for stream_id in expired:
            logger.info("Evicting stream %s finished more than %d seconds ago", stream_id, self.ttl_seconds)
            self._streams.pop(stream_id, None)

    def register(self, stream_id: str, supplier: Callable[[], BufferedStream]) -> None:
        with self._lock:
            self._evict_stale()
            if stream_id in self._streams:
                raise SinkUnavailable(f"stream {stream_id} is already registered")
            self._streams[stream_id] = supplier()
        logger.info("Registered resumable stream %s", stream_id)

    def resume(self, stream_id: str) -> Optional[Iterator[Chunk]]:
        with self._lock:
            self._evict_stale()
            stream = self._streams.get(stream_id)
        if stream is None or stream.is_exhausted:
            return None
        logger.info("Resuming stream %s after %d buffered chunk(s)", stream_id, stream.buffered)
        return stream.subscribe()

    def status(self, stream_id: str) -> str:
        with self._lock:
            self._evict_stale()
            stream = self._streams.get(stream_id)
        if stream is None:
            return STATUS_UNKNOWN
        return STATUS_EXHAUSTED if stream.is_exhausted else STATUS_LIVE


# ---------- Multiplexer ----------
class ForkedStream:
    """One response split into the requesting connection and the sink."""

    def __init__(self, source: Iterable[Chunk], sink: Optional[StreamSink]) -> None:
        self.buffer = BufferedStream()
        self.live = self.buffer.subscribe()
        self._source = source
        self._sink = sink

    def register(self, stream_id: str) -> None:
        if self._sink is None:
            raise SinkUnavailable("no resumable stream sink is configured")
        self.buffer.stream_id = stream_id
        self._sink.register(stream_id, lambda: self.buffer)

    def start(self) -> None:
        self.buffer.start(self._source)


class StreamMultiplexer:
    """Process-wide fan-out point, built once by the application.

    Without a sink every response is still produced in the background but
    only the requesting connection receives it.
    """

    def __init__(self, sink: Optional[StreamSink] = None) -> None:
        self.sink = sink

    @property
    def resumable(self) -> bool:
        return self.sink is not None

    def fork(self, source: Iterable[Chunk]) -> ForkedStream:
        return ForkedStream(source, self.sink)

    def resume(self, stream_id: str) -> Optional[Iterator[Chunk]]:
        if self.sink is None:
            return None
        return self.sink.resume(stream_id)

    def status(self, stream_id: str) -> str:
        if self.sink is None:
            return STATUS_UNKNOWN
        return self.sink.status(stream_id)
