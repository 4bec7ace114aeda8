"""Shared fixtures and fakes for the resumable chat test suite.

Model providers are plain callables returning token iterators, so tests
control exactly which tokens arrive and when.
"""

import threading

import pytest

from resumable_chat.config import ChatConfig
from resumable_chat.models import ASSISTANT, USER, ChatMessage
from resumable_chat.service import ChatSessionCoordinator
from resumable_chat.store import InMemoryChatStore
from resumable_chat.streams import InMemoryStreamSink, StreamMultiplexer


def user(message_id, text):
    return ChatMessage(id=message_id, role=USER, parts=[{"type": "text", "text": text}])


def assistant(message_id, text):
    return ChatMessage(id=message_id, role=ASSISTANT, parts=[{"type": "text", "text": text}])


def chunk_types(chunks):
    return [chunk["type"] for chunk in chunks]


class FakeProvider:
    """Records every prompt and replies with fixed tokens."""

    def __init__(self, tokens=("Hello", ", ", "world")):
        self.tokens = list(tokens)
        self.prompts = []

    def __call__(self, messages):
        self.prompts.append(messages)
        return iter(self.tokens)


class GatedProvider:
    """Yields ``before`` tokens, blocks until ``gate`` is set, then yields ``after``."""

    def __init__(self, before=("Hel",), after=("lo",)):
        self.before = list(before)
        self.after = list(after)
        self.gate = threading.Event()
        self.prompts = []

    def __call__(self, messages):
        self.prompts.append(messages)
        return self._tokens()

    def _tokens(self):
        yield from self.before
        if not self.gate.wait(timeout=10):
            raise TimeoutError("gate never opened")
        yield from self.after


class FailingProvider:
    """Yields some tokens, then raises like a dropped provider connection."""

    def __init__(self, tokens=("partial",), error=None):
        self.tokens = list(tokens)
        self.error = error or ConnectionError("provider connection reset")

    def __call__(self, messages):
        return self._tokens()

    def _tokens(self):
        yield from self.tokens
        raise self.error


@pytest.fixture
def store():
    return InMemoryChatStore()


@pytest.fixture
def sink():
    return InMemoryStreamSink(ttl_seconds=60)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def coordinator(store, provider, sink):
    return ChatSessionCoordinator(store, provider, StreamMultiplexer(sink), ChatConfig())
