# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Reply engine backed by an OpenAI-compatible chat completion API.

Works with any provider exposing ``POST <base>/chat/completions`` with
bearer authentication (DeepSeek, Together, OpenAI, local servers).  The
engine makes exactly one request per call and raises on any failure;
the router owns the fallback reply.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import httpx


logger = logging.getLogger(__name__)


class ReplyEngine(Protocol):
    """Interface for reply generation."""

    def complete(self, history: Sequence[dict[str, str]]) -> str:
        """Generate the assistant reply for a conversation history.

        Args:
            history: Ordered ``{"role", "content"}`` messages, oldest
                first, ending with the user's latest message.

        Raises:
            Exception: On any failure; callers substitute a fallback.
        """
        ...


class ReplyEngineError(Exception):
    """Raised when the backend returns an unusable response."""


class ChatCompletionEngine:
    """``ReplyEngine`` calling a chat completion endpoint over HTTP.

    Args:
        api_url: Base URL, e.g. ``https://api.deepseek.com/v1``.
        api_key: Bearer token.
        model: Model identifier.
        max_tokens: Completion token limit.
        timeout_seconds: Bound on the whole request.
        system_prompt: Optional system message prepended to each request.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str,
        *,
        max_tokens: int = 512,
        timeout_seconds: float = 30.0,
        system_prompt: str | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.model = model
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self.system_prompt = system_prompt
        self._api_key = api_key

    def complete(self, history: Sequence[dict[str, str]]) -> str:
        """Request one completion for ``history``.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses.
            httpx.TimeoutException: On request timeout.
            ReplyEngineError: If the response has no usable content.
        """
        messages = list(history)
        if self.system_prompt:
            messages.insert(
                0, {"role": "system", "content": self.system_prompt}
            )

        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(
                f"{self.api_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "content-type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": messages,
                    "max_tokens": self.max_tokens,
                },
            )
            response.raise_for_status()

        data = response.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ReplyEngineError(
                f"Malformed completion response: {e!r}"
            ) from e
        if not isinstance(content, str) or not content.strip():
            raise ReplyEngineError("Completion response has no content")

        logger.debug(
            "Completion received (%d messages in, %d chars out)",
            len(messages),
            len(content),
        )
        return content.strip()
