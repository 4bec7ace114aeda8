"""Chat and message records shared by the store, reconciler and coordinator."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

USER = "user"
ASSISTANT = "assistant"
SYSTEM = "system"


def generate_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ChatMessage:
    id: str
    role: str
    parts: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ChatMessage":
        if not payload.get("id"):
            raise ValueError("message id is required")
        if not payload.get("role"):
            raise ValueError("message role is required")
        return cls(
            id=str(payload["id"]),
            role=str(payload["role"]),
            parts=[dict(part) for part in payload.get("parts") or []],
            metadata=dict(payload.get("metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "parts": [dict(part) for part in self.parts],
            "metadata": dict(self.metadata),
        }

    @property
    def text(self) -> str:
        """Concatenated content of every text part."""
        return "".join(str(part.get("text", "")) for part in self.parts if part.get("type") == "text")


@dataclass
class ChatState:
    """Persisted state of one chat."""

    id: str
    messages: List[ChatMessage] = field(default_factory=list)
    active_stream_id: Optional[str] = None
    version: int = 0
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ChatState":
        return cls(
            id=str(payload["id"]),
            messages=[ChatMessage.from_dict(item) for item in payload.get("messages") or []],
            active_stream_id=payload.get("activeStreamId"),
            version=int(payload.get("version", 0)),
            updated_at=float(payload.get("updatedAt", time.time())),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "messages": [message.to_dict() for message in self.messages],
            "activeStreamId": self.active_stream_id,
            "version": self.version,
            "updatedAt": self.updated_at,
        }


def to_model_messages(
    messages: Iterable[ChatMessage],
    *,
    system_prompt: Optional[str] = None,
) -> List[Dict[str, str]]:
    """Convert stored messages into chat-completions ``{role, content}`` turns.

    Messages carrying no text part (e.g. only tool results) are skipped since
    the provider endpoint only accepts textual content.
    """
    prompt: List[Dict[str, str]] = []
    if system_prompt:
        prompt.append({"role": SYSTEM, "content": system_prompt})
    for message in messages:
        content = message.text
        if not content:
            continue
        prompt.append({"role": message.role, "content": content})
    return prompt
