# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test packages."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from relaybot.gateway.session import ReconnectPolicy, SessionManager
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
)
from relaybot.logging import SecretFilter


class FakeTransport:
    """In-memory ``TransportClient`` driven by the test.

    Events are only emitted when a test calls one of the ``emit_*``
    helpers.
    """

    def __init__(
        self,
        credentials: Credentials,
        sink: EventSink,
        *,
        registered: bool = True,
        self_id: str | None = "UBOT",
        pairing_code: str | None = "1234-5678",
        connect_error: Exception | None = None,
    ) -> None:
        self.credentials = credentials
        self.sink = sink
        self._registered = registered
        self._self_id = self_id
        self._pairing_code = pairing_code
        self._connect_error = connect_error
        self.connected = False
        self.closed = False
        self.sent: list[tuple[str, OutboundPayload]] = []
        self.reactions: list[tuple[str, str, str]] = []
        self.pairing_requests: list[str] = []
        self.fail_sends_to: set[str] = set()
        self.fail_reactions = False

    @property
    def registered(self) -> bool:
        return self._registered

    @property
    def self_id(self) -> str | None:
        return self._self_id

    def connect(self) -> None:
        if self._connect_error is not None:
            raise self._connect_error
        self.connected = True

    def close(self) -> None:
        self.closed = True

    def send(self, conversation_id: str, payload: OutboundPayload) -> None:
        if conversation_id in self.fail_sends_to:
            raise TransportError(f"send to {conversation_id} failed")
        self.sent.append((conversation_id, payload))

    def react(self, conversation_id: str, message_ref: str, emoji: str) -> None:
        if self.fail_reactions:
            raise TransportError("react failed")
        self.reactions.append((conversation_id, message_ref, emoji))

    def request_pairing_code(self, phone_number: str) -> str:
        self.pairing_requests.append(phone_number)
        if self._pairing_code is None:
            raise PairingUnsupportedError("no pairing codes")
        return self._pairing_code

    # -- Test helpers --------------------------------------------------------

    def emit_open(self) -> None:
        self.sink(ConnectionEvent(status=ConnectionStatus.OPEN))

    def emit_close(self, reason: CloseReason) -> None:
        self.sink(
            ConnectionEvent(status=ConnectionStatus.CLOSE, close_reason=reason)
        )

    def emit_qr(self, qr: str) -> None:
        self.sink(ConnectionEvent(status=ConnectionStatus.CONNECTING, qr=qr))

    def emit_credentials(self, credentials: Credentials) -> None:
        self.sink(CredentialsUpdate(credentials=credentials))

    def emit_message(
        self, conversation_id: str, text: str, **kwargs: Any
    ) -> None:
        self.sink(
            InboundMessage(conversation_id=conversation_id, text=text, **kwargs)
        )


class FakeTransportFactory:
    """``TransportFactory`` recording every transport it creates.

    Args:
        connect_failures: Number of transports whose ``connect()`` raises.
        **transport_kwargs: Passed to each ``FakeTransport``.
    """

    def __init__(self, connect_failures: int = 0, **transport_kwargs: Any):
        self.connect_failures = connect_failures
        self.transport_kwargs = transport_kwargs
        self.transports: list[FakeTransport] = []

    def __call__(
        self, credentials: Credentials, sink: EventSink
    ) -> FakeTransport:
        error = None
        if self.connect_failures > 0:
            self.connect_failures -= 1
            error = TransportError("connect refused")
        transport = FakeTransport(
            credentials, sink, connect_error=error, **self.transport_kwargs
        )
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]


class InMemoryCredentialStore:
    """``CredentialStore`` recording saves and clears."""

    def __init__(
        self, initial: Credentials | None = None, fail: bool = False
    ) -> None:
        self.data: Credentials = dict(initial or {})
        self.fail = fail
        self.saves: list[Credentials] = []
        self.clears = 0

    def load(self) -> Credentials:
        return dict(self.data)

    def save(self, credentials: Credentials) -> None:
        if self.fail:
            raise OSError("disk full")
        self.saves.append(dict(credentials))
        self.data = dict(credentials)

    def clear(self) -> None:
        self.clears += 1
        self.data = {}


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture(autouse=True)
def _clear_secrets() -> Iterator[None]:
    """Keep registered secrets from leaking between tests."""
    yield
    SecretFilter.clear_secrets()


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def fast_policy() -> ReconnectPolicy:
    """Reconnect policy without delays and three attempts."""
    return ReconnectPolicy(
        max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0
    )


@pytest.fixture
def session(
    transport_factory: FakeTransportFactory,
    credential_store: InMemoryCredentialStore,
    fast_policy: ReconnectPolicy,
) -> Iterator[SessionManager]:
    """Unthreaded session; tests drive it with ``process_pending()``."""
    manager = SessionManager(
        transport_factory,
        credential_store,
        policy=fast_policy,
        threaded=False,
    )
    yield manager
    manager.shutdown()


@pytest.fixture
def open_session(
    session: SessionManager, transport_factory: FakeTransportFactory
) -> SessionManager:
    """Session already in ``OPEN`` state."""
    session.start()
    transport_factory.latest.emit_open()
    session.process_pending()
    return session
