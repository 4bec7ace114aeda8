"""Client wrapper for streaming chat-completions requests."""

from __future__ import annotations

import json
import logging
from typing import Dict, Iterator, List, Optional

import requests

from .config import ChatLLMConfig
from .errors import ProviderFailure

logger = logging.getLogger(__name__)


class ChatLLMClient:
    """Thin wrapper around a chat-completions endpoint with streaming support.

    Instances are callable so they can be handed to the session coordinator
    as its model provider.
    """

    def __init__(self, config: ChatLLMConfig, *, model_kwargs: Optional[Dict[str, object]] = None) -> None:
        self.config = config
        self.model_kwargs = dict(model_kwargs or {})

    def __call__(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        return self.stream_completion(messages, model_kwargs=self.model_kwargs)

    def stream_completion(
        self,
        messages: List[Dict[str, str]],
        *,
        model_kwargs: Optional[Dict[str, object]] = None,
    ) -> Iterator[str]:
        """Yield tokens from the model as they arrive."""
        payload: Dict[str, object] = {
            "model": self.config.model,
            "messages": messages,
            "stream": True,
        }
        if model_kwargs:
            payload.update(model_kwargs)

        logger.info("Streaming chat completion to %s using model %s", self.config.endpoint, self.config.model)
        try:
            response = requests.post(
                self.config.endpoint,
                json=payload,
                stream=True,
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ProviderFailure(f"chat completion request failed: {exc}") from exc

        try:
            for raw_line in response.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8").strip()
                if line.startswith("data:"):
                    line = line[5:].strip()
                if not line or line == "[DONE]":
                    continue

                try:
                    chunk = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON stream line: %s", line)
                    continue

                token = self._extract_delta(chunk)
                if token:
                    yield token
        except requests.RequestException as exc:
            raise ProviderFailure(f"chat completion stream interrupted: {exc}") from exc
        finally:
            response.close()

    @staticmethod
    def _extract_delta(payload: Dict[str, object]) -> str:
        choices = payload.get("choices") or []
        if not isinstance(choices, list) or not choices:
            return ""
        delta = choices[0].get("delta") or {}
        content = delta.get("content") or ""
        return str(content)
