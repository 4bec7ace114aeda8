"""Chat sessions with reconciled history and resumable streaming responses.

The package persists each chat's message history around a streaming model
call and records the response so a reconnecting client can replay it and
keep following it live. ``resumable_chat.api.create_app`` builds the HTTP
service; ``resumable_chat.service.ChatSessionCoordinator`` can be embedded
directly with any store, model provider and stream sink.
"""

from .config import ChatConfig, ChatLLMConfig
from .history import reconcile
from .service import ChatSessionCoordinator
from .store import FileChatStore, InMemoryChatStore
from .streams import InMemoryStreamSink, StreamMultiplexer

__all__ = [
    "ChatConfig",
    "ChatLLMConfig",
    "ChatSessionCoordinator",
    "FileChatStore",
    "InMemoryChatStore",
    "InMemoryStreamSink",
    "StreamMultiplexer",
    "reconcile",
]
