# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Slack Socket Mode transport.

Wraps the Bolt SDK's ``App`` and ``SocketModeHandler``.  The handler's
auto-reconnect is disabled: a closed socket is reported as a transient
``CLOSE`` event and the session manager decides whether and when to
reconnect with a fresh transport.

Slack authenticates with tokens, so the transport is always registered
and never issues QR codes or pairing codes.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Any

from slack_bolt import App
from slack_bolt.adapter.socket_mode import SocketModeHandler
from slack_sdk.errors import SlackApiError

from relaybot.gateway.config import SlackTransportConfig
from relaybot.gateway.transport import (
    CloseReason,
    ConnectionEvent,
    ConnectionStatus,
    Credentials,
    CredentialsUpdate,
    EventSink,
    InboundMessage,
    OutboundPayload,
    PairingUnsupportedError,
    TransportError,
    TransportFactory,
)


logger = logging.getLogger(__name__)

#: ``auth.test`` errors meaning the token no longer grants access.
_LOGGED_OUT_ERRORS = frozenset(
    {"invalid_auth", "account_inactive", "token_revoked", "not_authed"}
)

_MENTION_RE = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")
_LEADING_MENTIONS_RE = re.compile(r"^(?:\s*<@[A-Z0-9]+(?:\|[^>]*)?>)+\s*")

#: Unicode emoji -> Slack reaction name.
_REACTION_NAMES = {
    "⏳": "hourglass_flowing_sand",
    "✅": "white_check_mark",
    "👍": "+1",
    "❌": "x",
    "👀": "eyes",
}


def _api_error(e: SlackApiError) -> str:
    response = getattr(e, "response", None)
    if response is None:
        return str(e)
    return str(response.get("error") or e)


class SlackTransport:
    """``TransportClient`` over one Slack Socket Mode connection.

    Args:
        config: Slack tokens.
        credentials: Previously persisted identity (``bot_user_id``),
            used until ``auth.test`` reports the current one.
        sink: Receives connection, credential and message events.
        app: Optional pre-built Bolt ``App`` (for testing).
        handler: Optional pre-built ``SocketModeHandler`` (for testing).
    """

    def __init__(
        self,
        config: SlackTransportConfig,
        credentials: Credentials,
        sink: EventSink,
        app: App | None = None,
        handler: SocketModeHandler | None = None,
    ) -> None:
        self._sink = sink
        self._app = app or App(
            token=config.bot_token, token_verification_enabled=False
        )
        self._handler = handler or SocketModeHandler(
            self._app, config.app_token, auto_reconnect_enabled=False
        )
        self._self_id: str | None = credentials.get("bot_user_id")
        self._closed = threading.Event()

    @property
    def registered(self) -> bool:
        return True

    @property
    def self_id(self) -> str | None:
        return self._self_id

    def connect(self) -> None:
        """Verify the bot token, then open the Socket Mode connection.

        A revoked or invalid token is reported as a ``LOGGED_OUT`` close
        instead of raising.

        Raises:
            TransportError: If the token check or socket connect fails
                for any other reason.
        """
        self._sink(
            ConnectionEvent(
                status=ConnectionStatus.CONNECTING, detail="authenticating"
            )
        )
        try:
            auth = self._app.client.auth_test()
        except SlackApiError as e:
            error = _api_error(e)
            if error in _LOGGED_OUT_ERRORS:
                logger.error("Slack token rejected: %s", error)
                self._sink(
                    ConnectionEvent(
                        status=ConnectionStatus.CLOSE,
                        close_reason=CloseReason.LOGGED_OUT,
                        detail=error,
                    )
                )
                return
            raise TransportError(f"auth.test failed: {error}") from e

        self._self_id = auth.get("user_id") or self._self_id
        self._sink(
            CredentialsUpdate(
                credentials={
                    "team_id": auth.get("team_id", ""),
                    "bot_id": auth.get("bot_id", ""),
                    "bot_user_id": self._self_id or "",
                }
            )
        )

        self._app.event("message")(self._on_message_event)
        self._install_connection_listeners()
        try:
            # Non-blocking: the WebSocket runs in a background thread.
            self._handler.connect()
        except Exception as e:
            raise TransportError(f"Socket Mode connect failed: {e}") from e

        logger.info(
            "Slack Socket Mode connected as %s (team %s)",
            self._self_id,
            auth.get("team_id", ""),
        )
        self._sink(
            ConnectionEvent(
                status=ConnectionStatus.OPEN,
                detail=f"connected as {self._self_id}",
            )
        )

    def close(self) -> None:
        """Disconnect Socket Mode.  Safe to call more than once."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._handler.close()
        logger.info("Slack transport closed")

    def send(self, conversation_id: str, payload: OutboundPayload) -> None:
        """Post a message, with an image block for image payloads.

        Raises:
            TransportError: If ``chat.postMessage`` fails.
        """
        kwargs: dict[str, Any] = {
            "channel": conversation_id,
            "text": payload.text or payload.image_url or "",
        }
        if payload.image_url is not None:
            blocks: list[dict[str, Any]] = []
            if payload.text:
                blocks.append(
                    {
                        "type": "section",
                        "text": {"type": "mrkdwn", "text": payload.text},
                    }
                )
            blocks.append(
                {
                    "type": "image",
                    "image_url": payload.image_url,
                    "alt_text": (payload.text or "generated image")[:200],
                }
            )
            kwargs["blocks"] = blocks
        try:
            self._app.client.chat_postMessage(**kwargs)
        except SlackApiError as e:
            raise TransportError(
                f"chat.postMessage failed: {_api_error(e)}"
            ) from e

    def react(self, conversation_id: str, message_ref: str, emoji: str) -> None:
        """Add a reaction.  Reacting twice with the same emoji is a no-op.

        Raises:
            TransportError: If ``reactions.add`` fails.
        """
        name = _REACTION_NAMES.get(emoji, emoji.strip(":"))
        try:
            self._app.client.reactions_add(
                channel=conversation_id, timestamp=message_ref, name=name
            )
        except SlackApiError as e:
            error = _api_error(e)
            if error == "already_reacted":
                return
            raise TransportError(f"reactions.add failed: {error}") from e

    def request_pairing_code(self, phone_number: str) -> str:
        raise PairingUnsupportedError("Slack uses token authentication")

    def _install_connection_listeners(self) -> None:
        """Install close/error listeners on the Socket Mode client."""
        client = getattr(self._handler, "client", None)
        if client is None:
            logger.warning(
                "Socket Mode handler has no 'client' attribute; "
                "close events will not be reported"
            )
            return
        client.on_close_listeners.append(self._on_ws_close)
        client.on_error_listeners.append(self._on_ws_error)

    def _on_ws_close(self, code: int, reason: str | None = None) -> None:
        if self._closed.is_set():
            return
        logger.warning(
            "Slack WebSocket closed: code=%s reason=%s", code, reason
        )
        self._sink(
            ConnectionEvent(
                status=ConnectionStatus.CLOSE,
                close_reason=CloseReason.CONNECTION_CLOSED,
                detail=f"WebSocket closed (code={code})",
            )
        )

    def _on_ws_error(self, error: Exception) -> None:
        logger.warning("Slack WebSocket error: %s", error)

    def _on_message_event(self, event: dict[str, Any]) -> None:
        """Translate a ``message`` event into an ``InboundMessage``.

        Edits, deletions and other subtyped messages are ignored.
        """
        if event.get("subtype"):
            return
        text = event.get("text") or ""
        user = event.get("user", "")
        from_me = bool(event.get("bot_id")) or (
            self._self_id is not None and user == self._self_id
        )
        self._sink(
            InboundMessage(
                conversation_id=event.get("channel", ""),
                text=_LEADING_MENTIONS_RE.sub("", text).strip(),
                message_ref=event.get("ts", ""),
                is_group=event.get("channel_type") != "im",
                mentioned_ids=tuple(_MENTION_RE.findall(text)),
                from_me=from_me,
                sender_name=user,
            )
        )


def slack_transport_factory(config: SlackTransportConfig) -> TransportFactory:
    """Return a factory creating ``SlackTransport`` instances for ``config``."""

    def factory(credentials: Credentials, sink: EventSink) -> SlackTransport:
        return SlackTransport(config, credentials, sink)

    return factory
