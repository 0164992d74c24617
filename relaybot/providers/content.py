# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Quote and image generation providers used by chat commands.

Each call is a single HTTP request bounded by a timeout.  Failures raise;
the command table converts them into fallback payloads.
"""

from __future__ import annotations

import httpx


class ContentProviderError(Exception):
    """Raised when a provider returns an unusable response."""


class QuoteProvider:
    """Fetches a random quote from a quotable-style endpoint.

    The endpoint must return ``{"content": ..., "author": ...}``.
    """

    def __init__(self, url: str, *, timeout_seconds: float = 30.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds

    def fetch(self) -> str:
        """Return a formatted quote: ``"<content>" — <author>``.

        Raises:
            httpx.HTTPError: On transport errors or non-2xx responses.
            ContentProviderError: If the response lacks a quote.
        """
        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.get(self.url)
            response.raise_for_status()

        data = response.json()
        if isinstance(data, list) and data:
            data = data[0]
        if not isinstance(data, dict) or not data.get("content"):
            raise ContentProviderError("Quote response has no content")

        author = data.get("author") or "Unknown"
        return f'"{data["content"]}" — {author}'


class ImageProvider:
    """Generates images through an OpenAI-style images endpoint.

    Args:
        api_url: Full generation endpoint URL.
        api_key: Bearer token.  None makes every call fail fast.
        model: Model identifier.
        size: Requested image size (``WIDTHxHEIGHT``).
        timeout_seconds: Bound on the whole request.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str | None,
        model: str,
        *,
        size: str = "512x512",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.api_url = api_url
        self.model = model
        self.size = size
        self.timeout_seconds = timeout_seconds
        self._api_key = api_key

    def generate(self, prompt: str) -> str:
        """Generate one image and return its URL.

        Raises:
            ContentProviderError: If no API key is configured or the
                response has no image URL.
            httpx.HTTPError: On transport errors or non-2xx responses.
        """
        if not self._api_key:
            raise ContentProviderError("Image generation is not configured")

        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={
                    "model": self.model,
                    "prompt": prompt,
                    "n": 1,
                    "size": self.size,
                },
            )
            response.raise_for_status()

        data = response.json()
        try:
            url = data["data"][0]["url"]
        except (KeyError, IndexError, TypeError) as e:
            raise ContentProviderError(
                f"Malformed image response: {e!r}"
            ) from e
        if not url:
            raise ContentProviderError("Image response has no URL")
        return str(url)
