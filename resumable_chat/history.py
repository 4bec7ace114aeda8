"""Reconcile stored chat history with an incoming submit/regenerate action."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .errors import AnchorNotFound, EmptyHistory, ReconcileError
from .models import ASSISTANT, ChatMessage

logger = logging.getLogger(__name__)

SUBMIT_MESSAGE = "submit-message"
REGENERATE_MESSAGE = "regenerate-message"
TRIGGERS = (SUBMIT_MESSAGE, REGENERATE_MESSAGE)


def reconcile(
    stored: Sequence[ChatMessage],
    trigger: str,
    anchor_id: Optional[str] = None,
    new_message: Optional[ChatMessage] = None,
) -> List[ChatMessage]:
    """Return the message sequence to persist and submit to the model.

    ``submit-message`` appends ``new_message``; with an anchor the history is
    first cut to everything before the anchor (edit-and-resend).
    ``regenerate-message`` cuts the history back to the user turn that the
    anchor (default: the last message) belongs to. An assistant anchor is
    dropped, a user anchor is kept.
    """
    if trigger == SUBMIT_MESSAGE:
        if new_message is None:
            raise ReconcileError("submit-message requires a message")
        if anchor_id is None:
            return list(stored) + [new_message]
        index = _find(stored, anchor_id)
        logger.debug("Editing history at %s, discarding %d message(s)", anchor_id, len(stored) - index)
        return list(stored[:index]) + [new_message]

    if trigger == REGENERATE_MESSAGE:
        if anchor_id is None:
            if not stored:
                raise EmptyHistory()
            index = len(stored) - 1
        else:
            index = _find(stored, anchor_id)
        end = index if stored[index].role == ASSISTANT else index + 1
        return list(stored[:end])

    raise ReconcileError(f"unknown trigger '{trigger}'")


def _find(stored: Sequence[ChatMessage], message_id: str) -> int:
    for index, message in enumerate(stored):
        if message.id == message_id:
            return index
    raise AnchorNotFound(message_id)
