# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Session lifecycle state machine.

``SessionManager`` owns the single transport connection of the gateway.
It creates transports through a ``TransportFactory``, pairs unregistered
accounts, persists credential updates, and reconnects after transient
closes with bounded exponential backoff.

State model::

    IDLE --start--> CONNECTING --qr--> AWAITING_QR --open--> OPEN
                        |  \\--pairing code--> AWAITING_PAIR_CODE --open--/
                        |
    OPEN/CONNECTING --transient close--> CONNECTING (after backoff)
                    --transient close, attempts exhausted--> DEGRADED
                    --logged out--> CLOSED

    any --stop--> IDLE

Every transport event is tagged with the generation of the transport
that produced it and queued.  A single dispatcher processes the queue in
order, so state transitions never interleave.  Tearing a transport down
bumps the generation, which turns any late connection or message events
it still emits into no-ops.  Late credential updates are still
persisted, unless the operator re-registered since.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from relaybot.gateway.config import SessionConfig
from relaybot.gateway.credentials import CredentialStore
from relaybot.gateway.transport import (
    CloseReason,
    ConnectionEvent,
    ConnectionStatus,
    Credentials,
    CredentialsUpdate,
    InboundMessage,
    OutboundPayload,
    PairingUnsupportedError,
    TransportClient,
    TransportEvent,
    TransportFactory,
)


logger = logging.getLogger(__name__)

#: Handler invoked for every inbound message.
MessageHandler = Callable[[InboundMessage], None]

#: Queue sentinel that stops the dispatcher thread.
_STOP = object()


class SessionStatus(Enum):
    """Lifecycle status of the session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_QR = "awaiting_qr"
    AWAITING_PAIR_CODE = "awaiting_pair_code"
    OPEN = "open"
    CLOSED = "closed"
    DEGRADED = "degraded"

    @property
    def active(self) -> bool:
        """Whether a connection exists or is being established."""
        return self in _ACTIVE_STATUSES


_ACTIVE_STATUSES = frozenset(
    {
        SessionStatus.CONNECTING,
        SessionStatus.AWAITING_QR,
        SessionStatus.AWAITING_PAIR_CODE,
        SessionStatus.OPEN,
    }
)


class PairingKind(Enum):
    """How the operator pairs an unregistered account."""

    QR = "qr"
    PAIR_CODE = "pair_code"


@dataclass(frozen=True)
class PairingArtifact:
    """QR payload or numeric code the operator needs for pairing."""

    kind: PairingKind
    value: str


@dataclass(frozen=True)
class SessionState:
    """Immutable snapshot of the session.

    Attributes:
        status: Current lifecycle status.
        pairing: Pending pairing artifact, if any.
        message: Human-readable description of the status.
        reconnect_attempts: Consecutive transient closes since the last
            successful open.
    """

    status: SessionStatus = SessionStatus.IDLE
    pairing: PairingArtifact | None = None
    message: str = ""
    reconnect_attempts: int = 0


@dataclass(frozen=True)
class ReconnectPolicy:
    """Bounded exponential backoff for transient closes.

    Attempt ``n`` (1-based) waits ``base * multiplier ** (n - 1)``
    seconds, capped at ``max_delay_seconds``.  After ``max_attempts``
    consecutive failures the session is marked degraded.
    """

    max_attempts: int = 5
    base_delay_seconds: float = 2.0
    multiplier: float = 3.0
    max_delay_seconds: float = 60.0

    def delay(self, attempt: int) -> float:
        """Return the wait before reconnect attempt ``attempt``."""
        return min(
            self.base_delay_seconds * self.multiplier ** max(attempt - 1, 0),
            self.max_delay_seconds,
        )

    @classmethod
    def from_config(cls, config: SessionConfig) -> ReconnectPolicy:
        return cls(
            max_attempts=config.reconnect_max_attempts,
            base_delay_seconds=config.reconnect_base_delay_seconds,
            multiplier=config.reconnect_multiplier,
            max_delay_seconds=config.reconnect_max_delay_seconds,
        )


class SessionNotOpenError(Exception):
    """Raised when sending while no connection is open."""


class SessionManager:
    """Drives the transport connection through its lifecycle.

    Args:
        transport_factory: Creates one transport per connection attempt.
        credential_store: Persists credential updates.
        policy: Reconnect backoff policy.
        phone_number: Number used to request pairing codes for
            unregistered accounts.  None leaves pairing to QR codes.
        credentials_timeout_seconds: Bound on a single credential write.
        threaded: Run a background dispatcher thread.  When False, events
            are only processed by ``process_pending()`` (for tests).
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        credential_store: CredentialStore,
        *,
        policy: ReconnectPolicy | None = None,
        phone_number: str | None = None,
        credentials_timeout_seconds: float = 10.0,
        threaded: bool = True,
    ) -> None:
        self._factory = transport_factory
        self._store = credential_store
        self.policy = policy or ReconnectPolicy()
        self._phone_number = phone_number
        self._credentials_timeout = credentials_timeout_seconds
        self._threaded = threaded

        self._lock = threading.Lock()
        # Signalled whenever the generation changes, so backoff waits
        # end early on stop().
        self._generation_changed = threading.Condition(self._lock)
        self._generation = 0
        self._state = SessionState(message="not started")
        self._transport: TransportClient | None = None
        self._credentials: Credentials | None = None
        self._last_persisted: Credentials | None = None
        # Transports older than this generation predate the last
        # re-registration; their credential updates are discarded.
        self._credentials_floor = 0
        self._handler: MessageHandler | None = None

        self._queue: queue.Queue[Any] = queue.Queue()
        self._dispatcher: threading.Thread | None = None
        self._persist_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="credentials"
        )

    # -- Reads ---------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        """Current state snapshot."""
        with self._lock:
            return self._state

    def current_status(self) -> SessionStatus:
        return self.state.status

    def current_pairing_artifact(self) -> PairingArtifact | None:
        return self.state.pairing

    @property
    def running(self) -> bool:
        """Whether the connection is open."""
        return self.state.status is SessionStatus.OPEN

    @property
    def self_id(self) -> str | None:
        """Identity of the connected account, once known."""
        with self._lock:
            transport = self._transport
        return transport.self_id if transport is not None else None

    def set_message_handler(self, handler: MessageHandler) -> None:
        """Register the callback for inbound messages."""
        self._handler = handler

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> bool:
        """Start connecting.

        Returns:
            False if a connection is already open or being established.
        """
        with self._lock:
            if self._state.status.active:
                logger.debug(
                    "Start ignored: session is %s", self._state.status.value
                )
                return False
            reregister = self._state.status is SessionStatus.CLOSED
            if reregister:
                self._credentials_floor = self._generation + 1
            self._set_state(
                SessionState(
                    status=SessionStatus.CONNECTING, message="starting"
                )
            )
            generation = self._generation

        if reregister:
            logger.info("Clearing credentials for re-registration")
            try:
                self._store.clear()
            except OSError as e:
                logger.warning("Failed to clear stored credentials: %s", e)
            with self._lock:
                self._credentials = {}
                self._last_persisted = None

        self._ensure_dispatcher()
        self._launch(generation)
        return True

    def stop(self) -> bool:
        """Tear down the connection and return to ``IDLE``.

        Also cancels a pending reconnect wait.

        Returns:
            Whether anything was active (connecting, open or waiting to
            reconnect).
        """
        with self._lock:
            was_active = self._state.status.active
            self._bump_generation()
            transport, self._transport = self._transport, None
            self._set_state(SessionState(message="stopped"))

        if transport is not None:
            self._close_transport(transport)
        return was_active

    def shutdown(self, timeout: float | None = 5.0) -> None:
        """Stop the session and join the dispatcher thread."""
        self.stop()
        dispatcher = self._dispatcher
        if dispatcher is not None:
            self._queue.put(_STOP)
            dispatcher.join(timeout=timeout)
            if dispatcher.is_alive():
                logger.warning("Session dispatcher did not stop in time")
            self._dispatcher = None
        self._persist_executor.shutdown(wait=False, cancel_futures=True)

    # -- Outbound ------------------------------------------------------------

    def _open_transport(self) -> TransportClient:
        with self._lock:
            if (
                self._transport is None
                or self._state.status is not SessionStatus.OPEN
            ):
                raise SessionNotOpenError(
                    f"Session is {self._state.status.value}"
                )
            return self._transport

    def send(self, conversation_id: str, payload: OutboundPayload) -> None:
        """Deliver a message over the open connection.

        Raises:
            SessionNotOpenError: If no connection is open.
            TransportError: If delivery fails.
        """
        self._open_transport().send(conversation_id, payload)

    def react(self, conversation_id: str, message_ref: str, emoji: str) -> None:
        """React to a message over the open connection.

        Raises:
            SessionNotOpenError: If no connection is open.
            TransportError: If the reaction fails.
        """
        self._open_transport().react(conversation_id, message_ref, emoji)

    # -- Internals -----------------------------------------------------------

    def _set_state(self, new: SessionState) -> None:
        """Replace the state snapshot.  Caller holds ``self._lock``."""
        old = self._state
        self._state = new
        if old.status is new.status and old.pairing == new.pairing:
            return
        level = logging.INFO
        if new.status is SessionStatus.DEGRADED:
            level = logging.WARNING
        elif new.status is SessionStatus.CLOSED:
            level = logging.CRITICAL
        logger.log(
            level,
            "Session %s -> %s: %s",
            old.status.value,
            new.status.value,
            new.message,
        )

    def _bump_generation(self) -> int:
        """Invalidate the current transport.  Caller holds ``self._lock``."""
        self._generation += 1
        self._generation_changed.notify_all()
        return self._generation

    def _ensure_dispatcher(self) -> None:
        if not self._threaded:
            return
        if self._dispatcher is not None and self._dispatcher.is_alive():
            return
        self._dispatcher = threading.Thread(
            target=self._run_dispatcher,
            daemon=True,
            name="session-dispatcher",
        )
        self._dispatcher.start()

    def _close_transport(self, transport: TransportClient) -> None:
        try:
            transport.close()
        except Exception:
            logger.exception("Error closing transport")

    def _launch(self, expected_generation: int) -> None:
        """Create and connect a new transport.

        Does nothing if the session was stopped or restarted since
        ``expected_generation`` was taken.
        """
        with self._lock:
            if self._generation != expected_generation:
                return
            generation = self._bump_generation()
            credentials = self._credentials

        if credentials is None:
            credentials = self._store.load()
            with self._lock:
                self._credentials = credentials
                self._last_persisted = dict(credentials) or None

        def sink(event: TransportEvent) -> None:
            self._queue.put((generation, event))

        try:
            transport = self._factory(dict(credentials), sink)
        except Exception as e:
            logger.exception("Failed to create transport")
            sink(
                ConnectionEvent(
                    status=ConnectionStatus.CLOSE,
                    close_reason=CloseReason.UNKNOWN,
                    detail=f"transport creation failed: {e}",
                )
            )
            return

        with self._lock:
            if self._generation != generation:
                stale = True
            else:
                stale = False
                self._transport = transport
        if stale:
            self._close_transport(transport)
            return

        try:
            transport.connect()
        except Exception as e:
            logger.warning("Transport connect failed: %s", e)
            sink(
                ConnectionEvent(
                    status=ConnectionStatus.CLOSE,
                    close_reason=CloseReason.CONNECTION_CLOSED,
                    detail=f"connect failed: {e}",
                )
            )
            return

        if transport.registered or not self._phone_number:
            return
        try:
            code = transport.request_pairing_code(self._phone_number)
        except PairingUnsupportedError:
            logger.info("Transport has no pairing codes; waiting for QR")
        except Exception as e:
            logger.warning("Pairing code request failed: %s", e)
        else:
            sink(
                ConnectionEvent(
                    status=ConnectionStatus.CONNECTING, pairing_code=code
                )
            )

    def _run_dispatcher(self) -> None:
        logger.debug("Session dispatcher started")
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            try:
                self._dispatch(item)
            except Exception:
                logger.exception("Error dispatching session event")
        logger.debug("Session dispatcher stopped")

    def process_pending(self) -> int:
        """Process every queued event on the calling thread.

        Intended for ``threaded=False`` sessions.

        Returns:
            Number of events processed.
        """
        processed = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return processed
            if item is _STOP:
                continue
            self._dispatch(item)
            processed += 1

    def _dispatch(self, item: tuple[int, TransportEvent]) -> None:
        generation, event = item
        if isinstance(event, CredentialsUpdate):
            # Persisted even from a closed transport; only a
            # re-registration invalidates older updates.
            with self._lock:
                discard = generation < self._credentials_floor
            if discard:
                logger.debug("Dropping credentials from before re-register")
                return
            self._on_credentials(event)
            return

        with self._lock:
            current = generation == self._generation
        if not current:
            logger.debug("Dropping event from stale transport: %r", event)
            return

        if isinstance(event, ConnectionEvent):
            self._on_connection(generation, event)
        elif isinstance(event, InboundMessage):
            self._on_message(event)
        else:
            logger.warning("Ignoring unknown transport event: %r", event)

    def _on_connection(self, generation: int, event: ConnectionEvent) -> None:
        if event.status is ConnectionStatus.CLOSE:
            self._on_close(generation, event)
            return

        with self._lock:
            state = self._state
            if event.status is ConnectionStatus.OPEN:
                self._set_state(
                    SessionState(
                        status=SessionStatus.OPEN,
                        message=event.detail or "connected",
                    )
                )
            elif event.qr is not None:
                self._set_state(
                    dataclasses.replace(
                        state,
                        status=SessionStatus.AWAITING_QR,
                        pairing=PairingArtifact(PairingKind.QR, event.qr),
                        message="scan the QR code to pair",
                    )
                )
            elif event.pairing_code is not None:
                self._set_state(
                    dataclasses.replace(
                        state,
                        status=SessionStatus.AWAITING_PAIR_CODE,
                        pairing=PairingArtifact(
                            PairingKind.PAIR_CODE, event.pairing_code
                        ),
                        message="enter the pairing code on the phone",
                    )
                )
            elif state.pairing is None:
                self._set_state(
                    dataclasses.replace(
                        state,
                        status=SessionStatus.CONNECTING,
                        message=event.detail or state.message,
                    )
                )

    def _on_close(self, generation: int, event: ConnectionEvent) -> None:
        reason = event.close_reason or CloseReason.UNKNOWN
        detail = f"{reason.name.lower()}"
        if event.detail:
            detail = f"{detail}: {event.detail}"

        with self._lock:
            if self._generation != generation:
                return
            expected = self._bump_generation()
            transport, self._transport = self._transport, None

            if reason.is_terminal:
                self._set_state(
                    SessionState(
                        status=SessionStatus.CLOSED,
                        message=f"{detail}; re-registration required",
                    )
                )
                attempt = 0
            else:
                attempt = self._state.reconnect_attempts + 1
                if attempt > self.policy.max_attempts:
                    self._set_state(
                        SessionState(
                            status=SessionStatus.DEGRADED,
                            message=(
                                f"gave up after {self.policy.max_attempts} "
                                f"reconnect attempts ({detail})"
                            ),
                            reconnect_attempts=self.policy.max_attempts,
                        )
                    )
                    attempt = 0
                else:
                    self._set_state(
                        SessionState(
                            status=SessionStatus.CONNECTING,
                            message=(
                                f"reconnecting (attempt {attempt}/"
                                f"{self.policy.max_attempts}) after {detail}"
                            ),
                            reconnect_attempts=attempt,
                        )
                    )

        if transport is not None:
            self._close_transport(transport)
        if not attempt:
            return

        delay = self.policy.delay(attempt)
        logger.info("Reconnecting in %.1fs", delay)
        with self._generation_changed:
            cancelled = self._generation_changed.wait_for(
                lambda: self._generation != expected, timeout=delay
            )
        if cancelled:
            logger.debug("Reconnect cancelled")
            return
        self._launch(expected)

    def _on_credentials(self, event: CredentialsUpdate) -> None:
        with self._lock:
            merged = {**(self._credentials or {}), **event.credentials}
            self._credentials = merged
            if merged == self._last_persisted:
                return

        try:
            future = self._persist_executor.submit(
                self._store.save, dict(merged)
            )
            future.result(timeout=self._credentials_timeout)
        except concurrent.futures.TimeoutError:
            logger.error(
                "Persisting credentials timed out after %.1fs",
                self._credentials_timeout,
            )
        except Exception:
            logger.exception("Failed to persist credentials")
        else:
            with self._lock:
                self._last_persisted = merged
            logger.debug("Credentials persisted")

    def _on_message(self, message: InboundMessage) -> None:
        handler = self._handler
        if handler is None:
            logger.debug(
                "No message handler; dropping message from %s",
                message.conversation_id,
            )
            return
        try:
            handler(message)
        except Exception:
            logger.exception(
                "Message handler failed for %s", message.conversation_id
            )
