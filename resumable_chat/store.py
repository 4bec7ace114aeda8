"""Chat state persistence.

Stores map a chat id to its :class:`~resumable_chat.models.ChatState`. Saves
are partial merges: fields left as :data:`UNSET` keep their stored value and
``active_stream_id=None`` explicitly clears the in-flight marker. Each save
that changes something bumps the chat's ``version``; passing
``expected_version`` turns the save into a compare-and-set so a slow request
cannot silently overwrite newer history.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from .errors import ConcurrentModification, PersistenceFailure
from .models import ChatState, generate_id

logger = logging.getLogger(__name__)

_CHAT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class ChatStore(ABC):
    """Durable mapping from chat id to chat state."""

    @abstractmethod
    def read(self, chat_id: str) -> ChatState:
        """Return the stored chat, or an empty chat when the id is unknown."""

    @abstractmethod
    def save(
        self,
        chat_id: str,
        *,
        messages: Any = UNSET,
        active_stream_id: Any = UNSET,
        expected_version: Optional[int] = None,
        touch: bool = False,
    ) -> ChatState:
        """Merge the given fields into the stored chat and return the result.

        ``touch=True`` bumps the version even when nothing else changes, so a
        writer can claim its place in the chat's history.
        """

    @abstractmethod
    def exists(self, chat_id: str) -> bool:
        """Return True when the chat has been persisted."""

    def create(self, chat_id: Optional[str] = None) -> ChatState:
        """Persist an empty chat, leaving an existing one untouched."""
        chat_id = chat_id or generate_id()
        if self.exists(chat_id):
            return self.read(chat_id)
        return self.save(chat_id, messages=[])


def merge_state(
    current: ChatState,
    *,
    messages: Any = UNSET,
    active_stream_id: Any = UNSET,
    expected_version: Optional[int] = None,
    touch: bool = False,
) -> ChatState:
    """Apply a partial save to ``current`` and return the new state.

    Returns ``current`` itself when the save changes nothing and ``touch`` is
    not set.
    """
    if expected_version is not None and expected_version != current.version:
        raise ConcurrentModification(current.id, expected_version, current.version)

    new_messages = current.messages if messages is UNSET else [copy.deepcopy(m) for m in messages]
    new_stream_id = current.active_stream_id if active_stream_id is UNSET else active_stream_id
    if not touch and new_messages == current.messages and new_stream_id == current.active_stream_id:
        return current

    return ChatState(
        id=current.id,
        messages=new_messages,
        active_stream_id=new_stream_id,
        version=current.version + 1,
        updated_at=time.time(),
    )


class InMemoryChatStore(ChatStore):
    """Thread-safe in-RAM store, lost on restart."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._chats: Dict[str, ChatState] = {}

    def read(self, chat_id: str) -> ChatState:
        with self._lock:
            state = self._chats.get(chat_id)
            return copy.deepcopy(state) if state else ChatState(id=chat_id)

    def save(
        self,
        chat_id: str,
        *,
        messages: Any = UNSET,
        active_stream_id: Any = UNSET,
        expected_version: Optional[int] = None,
        touch: bool = False,
    ) -> ChatState:
        with self._lock:
            current = self._chats.get(chat_id) or ChatState(id=chat_id)
            updated = merge_state(
                current,
                messages=messages,
                active_stream_id=active_stream_id,
                expected_version=expected_version,
                touch=touch,
            )
            if updated is not current or chat_id not in self._chats:
                self._chats[chat_id] = updated
            return copy.deepcopy(updated)

    def exists(self, chat_id: str) -> bool:
        with self._lock:
            return chat_id in self._chats


class FileChatStore(ChatStore):
    """One JSON document per chat under ``root``."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self._lock = Lock()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceFailure(f"cannot create chat directory {self.root}: {exc}") from exc
        logger.debug("FileChatStore initialised at %s", self.root)

    def _path(self, chat_id: str) -> Path:
        if not _CHAT_ID_RE.match(chat_id or ""):
            raise ValueError(f"invalid chat id '{chat_id}'")
        return self.root / f"{chat_id}.json"

    def _load(self, chat_id: str) -> ChatState:
        path = self._path(chat_id)
        if not path.exists():
            return ChatState(id=chat_id)
        try:
            with path.open("r", encoding="utf-8") as f:
                payload = json.load(f)
            return ChatState.from_dict(payload)
        except (OSError, ValueError, KeyError) as exc:
            raise PersistenceFailure(f"failed to read chat {chat_id}: {exc}") from exc

    def _write(self, state: ChatState) -> None:
        path = self._path(state.id)
        tmp_name: Optional[str] = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{state.id}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, ensure_ascii=False)
            os.replace(tmp_name, path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceFailure(f"failed to write chat {state.id}: {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.warning("Could not remove temporary file %s", tmp_name, exc_info=True)

    def read(self, chat_id: str) -> ChatState:
        with self._lock:
            return self._load(chat_id)

    def save(
        self,
        chat_id: str,
        *,
        messages: Any = UNSET,
        active_stream_id: Any = UNSET,
        expected_version: Optional[int] = None,
        touch: bool = False,
    ) -> ChatState:
        with self._lock:
            current = self._load(chat_id)
            updated = merge_state(
                current,
                messages=messages,
                active_stream_id=active_stream_id,
                expected_version=expected_version,
                touch=touch,
            )
            if updated is not current or not self._path(chat_id).exists():
                self._write(updated)
                logger.debug("Saved chat %s at version %d", chat_id, updated.version)
            return updated

    def exists(self, chat_id: str) -> bool:
        return self._path(chat_id).exists()
