"""Per-request orchestration of chat turns with persisted, resumable streams."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from .config import ChatConfig
from .errors import ConcurrentModification, PersistenceFailure, SinkUnavailable
from .history import reconcile
from .models import ASSISTANT, ChatMessage, ChatState, generate_id, to_model_messages
from .store import ChatStore
from .streams import (
    STATUS_LIVE,
    Chunk,
    ForkedStream,
    StreamMultiplexer,
    error_chunk,
    finish_chunk,
    start_chunk,
    text_delta_chunk,
    text_end_chunk,
    text_start_chunk,
)

logger = logging.getLogger(__name__)

ModelProvider = Callable[[List[Dict[str, str]]], Iterable[str]]


@dataclass
class _StreamRun:
    chat_id: str
    messages: List[ChatMessage]
    version: int
    stream_id: Optional[str] = None


class ChatSessionCoordinator:
    """Reconcile history, persist it around the model call and fan out the reply.

    ``stream_chat`` performs every step that can reject the request (history
    reconciliation and the pre-stream save) before returning, so callers can
    map those errors to an HTTP status. The model call itself runs on a
    background producer; its output is delivered through the returned
    iterator and, when a sink is configured, recorded for later resumption.
    """

    def __init__(
        self,
        store: ChatStore,
        provider: ModelProvider,
        multiplexer: Optional[StreamMultiplexer] = None,
        config: Optional[ChatConfig] = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.multiplexer = multiplexer or StreamMultiplexer()
        self.config = config or ChatConfig()

    def stream_chat(
        self,
        chat_id: str,
        trigger: str,
        *,
        message: Optional[ChatMessage] = None,
        message_id: Optional[str] = None,
    ) -> Iterator[Chunk]:
        if not chat_id:
            raise ValueError("chat id is required")

        chat = self.store.read(chat_id)
        if chat.active_stream_id:
            logger.info("Chat %s supersedes active stream %s", chat_id, chat.active_stream_id)
        messages = reconcile(chat.messages, trigger, message_id, message)

        saved = self.store.save(
            chat_id,
            messages=messages,
            active_stream_id=None,
            expected_version=chat.version,
            touch=True,
        )
        run = _StreamRun(chat_id=chat_id, messages=messages, version=saved.version)
        logger.info("Chat %s: %s with %d message(s)", chat_id, trigger, len(messages))

        forked = self.multiplexer.fork(self._produce(run))
        if self.multiplexer.resumable:
            self._register(forked, run)
        forked.start()
        return forked.live

    def resume_stream(self, chat_id: str) -> Optional[Iterator[Chunk]]:
        """Re-attach to the chat's in-flight response, if there is one.

        A marker pointing at a stream the sink no longer reports as live is
        stale and gets cleared.
        """
        chat = self.store.read(chat_id)
        stream_id = chat.active_stream_id
        if not stream_id:
            return None

        stream = self.multiplexer.resume(stream_id)
        if stream is not None:
            return stream

        status = self.multiplexer.status(stream_id)
        if status != STATUS_LIVE:
            logger.info("Clearing stale stream %s (%s) on chat %s", stream_id, status, chat_id)
            try:
                self.store.save(chat_id, active_stream_id=None, expected_version=chat.version)
            except ConcurrentModification:
                logger.debug("Chat %s changed while clearing stale stream %s", chat_id, stream_id)
        return None

    def get_chat(self, chat_id: str) -> ChatState:
        return self.store.read(chat_id)

    def create_chat(self) -> ChatState:
        return self.store.create()

    def _register(self, forked: ForkedStream, run: _StreamRun) -> None:
        stream_id = generate_id()
        try:
            forked.register(stream_id)
        except SinkUnavailable:
            logger.warning("Stream for chat %s is not resumable", run.chat_id, exc_info=True)
            return

        run.stream_id = stream_id
        try:
            state = self.store.save(run.chat_id, active_stream_id=stream_id, expected_version=run.version)
        except PersistenceFailure:
            logger.exception("Failed to record active stream %s on chat %s", stream_id, run.chat_id)
            return
        run.version = state.version

    def _produce(self, run: _StreamRun) -> Iterator[Chunk]:
        message_id = generate_id()
        part_id = generate_id()
        metadata = {"createdAt": int(time.time() * 1000)}
        prompt = to_model_messages(run.messages, system_prompt=self.config.system_prompt)

        yield start_chunk(message_id, metadata)
        tokens: List[str] = []
        try:
            for token in self.provider(prompt):
                if not tokens:
                    yield text_start_chunk(part_id)
                tokens.append(token)
                yield text_delta_chunk(part_id, token)
        except Exception as exc:
            # The marker stays set; resumption reports the stream as exhausted.
            logger.exception("Model provider failed for chat %s (stream %s)", run.chat_id, run.stream_id)
            yield error_chunk(str(exc) or type(exc).__name__)
            return

        if tokens:
            yield text_end_chunk(part_id)

        parts = [{"type": "text", "text": "".join(tokens)}] if tokens else []
        reply = ChatMessage(id=message_id, role=ASSISTANT, parts=parts, metadata=metadata)
        self._persist_transcript(run, run.messages + [reply])
        yield finish_chunk()

    def _persist_transcript(self, run: _StreamRun, transcript: List[ChatMessage]) -> None:
        try:
            state = self.store.save(
                run.chat_id,
                messages=transcript,
                active_stream_id=None,
                expected_version=run.version,
            )
        except ConcurrentModification as exc:
            logger.warning("Dropping transcript for chat %s: newer history exists (%s)", run.chat_id, exc)
            return
        except PersistenceFailure:
            logger.exception("Failed to persist transcript for chat %s", run.chat_id)
            return
        run.version = state.version
        logger.info("Chat %s now holds %d message(s)", run.chat_id, len(transcript))
