"""Exceptions raised by the chat session core.

Reconciliation errors are raised before anything is persisted and are safe
to retry with corrected input. Persistence errors before the model call are
fatal to the request. Provider and sink failures never reach the client as
HTTP errors once streaming has begun.
"""

from __future__ import annotations

__all__ = [
    "AnchorNotFound",
    "ChatError",
    "ConcurrentModification",
    "EmptyHistory",
    "PersistenceFailure",
    "ProviderFailure",
    "ReconcileError",
    "SinkUnavailable",
]


class ChatError(Exception):
    """Base class for chat session failures."""


class ReconcileError(ChatError, ValueError):
    """The requested action cannot be applied to the stored history."""


class AnchorNotFound(ReconcileError):
    """The anchor message id is absent from the chat history."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"message {message_id} not found")
        self.message_id = message_id


class EmptyHistory(ReconcileError):
    """Regeneration was requested on a chat without messages."""

    def __init__(self) -> None:
        super().__init__("nothing to regenerate: chat has no messages")


class PersistenceFailure(ChatError):
    """The chat store could not read or write chat state."""


class ConcurrentModification(PersistenceFailure):
    """The stored chat changed since it was read."""

    def __init__(self, chat_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"chat {chat_id} was modified concurrently (expected version {expected}, found {actual})"
        )
        self.chat_id = chat_id
        self.expected = expected
        self.actual = actual


class ProviderFailure(ChatError):
    """The model provider failed to produce a response."""


class SinkUnavailable(ChatError):
    """No resumable sink is configured or it refused the stream."""
