"""Configuration objects for the resumable chat service."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class ChatLLMConfig:
    """LLM connection details."""

    endpoint: str = "http://localhost:8000/v1/chat/completions"
    model: str = "gpt-4o-mini"
    request_timeout: int = 60


@dataclass
class ChatConfig:
    """Runtime controls for chat behaviour."""

    llm: ChatLLMConfig = field(default_factory=ChatLLMConfig)
    system_prompt: Optional[str] = None
    model_kwargs: Dict[str, object] = field(default_factory=dict)
    # None keeps chats in process memory only.
    store_dir: Optional[str] = None
    enable_resumable_streams: bool = True
    stream_ttl_seconds: int = 60 * 60
