# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Transport client protocol and event types.

Defines the boundary between the gateway core and the client library
that speaks a messaging network's wire protocol.  A transport turns
network frames into three kinds of events, delivered through the
``EventSink`` it was created with:

- ``ConnectionEvent``: connection progress, pairing artifacts and close
  reasons.
- ``CredentialsUpdate``: new credential or key material to persist.
- ``InboundMessage``: a message received from a conversation.

It also performs outbound operations (send, react, pairing code
requests).  The core never talks to the network directly.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol


#: Opaque credential and key material owned by the transport.
Credentials = dict[str, Any]


class TransportError(Exception):
    """Base exception for transport failures."""


class PairingUnsupportedError(TransportError):
    """Raised when a transport cannot issue pairing codes."""


class ConnectionStatus(Enum):
    """Connection progress reported by the transport."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


class CloseReason(Enum):
    """Why a connection closed.

    Values follow the status codes used by multi-device messaging
    clients so transports can map raw disconnect codes directly with
    ``from_status_code``.  Only ``LOGGED_OUT`` is terminal: the
    credentials were revoked and the operator must re-register.  Every
    other reason is transient and triggers a reconnect.
    """

    LOGGED_OUT = 401
    CONNECTION_LOST = 408
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515
    UNKNOWN = 0

    @classmethod
    def from_status_code(cls, code: int | None) -> CloseReason:
        """Map a raw disconnect status code to a reason."""
        if code is None:
            return cls.UNKNOWN
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        """Whether reconnecting is pointless without re-registration."""
        return self is CloseReason.LOGGED_OUT


@dataclass(frozen=True)
class ConnectionEvent:
    """Connection state change.

    Attributes:
        status: New connection status.
        qr: Scannable pairing payload, when the transport issued one.
        pairing_code: Numeric pairing code, when the transport issued one.
        close_reason: Why the connection closed (``CLOSE`` only).
        detail: Free-form description for logs.
    """

    status: ConnectionStatus
    qr: str | None = None
    pairing_code: str | None = None
    close_reason: CloseReason | None = None
    detail: str = ""


@dataclass(frozen=True)
class CredentialsUpdate:
    """Credential material changed and must be persisted."""

    credentials: Credentials


@dataclass(frozen=True)
class InboundMessage:
    """A message received from a conversation.

    Attributes:
        conversation_id: Stable key of the one-to-one or group thread.
        text: Plain message text.  Empty for non-text payloads.
        message_ref: Transport reference used for reactions.
        is_group: Whether the conversation has more than two members.
        mentioned_ids: Identities mentioned in the message.
        from_me: Whether the message was sent by this account.
        sender_name: Display name of the sender, if known.
    """

    conversation_id: str
    text: str
    message_ref: str = ""
    is_group: bool = False
    mentioned_ids: tuple[str, ...] = ()
    from_me: bool = False
    sender_name: str = ""


@dataclass(frozen=True)
class OutboundPayload:
    """Message to deliver to a conversation.

    When ``image_url`` is set the payload is an image and ``text`` is its
    caption.
    """

    text: str = ""
    image_url: str | None = None

    @property
    def is_image(self) -> bool:
        return self.image_url is not None

    def describe(self) -> str:
        """Return a one-line text rendering for the activity log."""
        if self.image_url is not None:
            return f"[image] {self.image_url} {self.text}".rstrip()
        return self.text


TransportEvent = ConnectionEvent | CredentialsUpdate | InboundMessage

#: Callback a transport uses to deliver events to the gateway.
EventSink = Callable[[TransportEvent], None]


class TransportClient(Protocol):
    """Interface for a messaging network client.

    A transport instance represents one connection attempt.  After
    ``close()`` (or a ``CLOSE`` event) it is discarded and the session
    manager creates a fresh one through the ``TransportFactory``.

    Implementations may emit events from any thread; the session manager
    serializes them.
    """

    @property
    def registered(self) -> bool:
        """Whether the credentials are already paired with an account."""
        ...

    @property
    def self_id(self) -> str | None:
        """Identity of the connected account, once known."""
        ...

    def connect(self) -> None:
        """Start connecting.  Must not block until the connection opens.

        Raises:
            TransportError: If the attempt cannot even be started.
        """
        ...

    def close(self) -> None:
        """Tear down the connection and release resources."""
        ...

    def send(self, conversation_id: str, payload: OutboundPayload) -> None:
        """Deliver a message.

        Raises:
            TransportError: If delivery fails.
        """
        ...

    def react(self, conversation_id: str, message_ref: str, emoji: str) -> None:
        """React to a message with an emoji.

        Raises:
            TransportError: If the reaction fails.
        """
        ...

    def request_pairing_code(self, phone_number: str) -> str:
        """Request a numeric pairing code for an unregistered account.

        Raises:
            PairingUnsupportedError: If the network has no pairing codes.
            TransportError: If the request fails.
        """
        ...


#: Creates a transport for one connection attempt.
TransportFactory = Callable[[Credentials, EventSink], TransportClient]

