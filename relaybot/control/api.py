# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Operator control API.

Transport-neutral operations behind the HTTP control surface: status,
start/stop, activity log access, broadcast and direct sends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from relaybot.gateway.activity_log import ActivityLog, Direction, LogEntry
from relaybot.gateway.session import (
    PairingArtifact,
    SessionManager,
    SessionStatus,
)
from relaybot.gateway.transport import OutboundPayload


logger = logging.getLogger(__name__)


class BotNotRunningError(Exception):
    """Raised when an operation needs an open session."""


@dataclass(frozen=True)
class StatusReport:
    """Operator-facing session status.

    Attributes:
        running: Whether the session is open.
        status: Lifecycle status.
        pairing: Pending pairing artifact, if any.
        message: Human-readable status detail.
        reconnect_attempts: Consecutive reconnect attempts.
    """

    running: bool
    status: SessionStatus
    pairing: PairingArtifact | None
    message: str
    reconnect_attempts: int = 0

    def to_dict(self, reveal_pairing: bool = True) -> dict[str, Any]:
        """Serialize for JSON.

        Args:
            reveal_pairing: Include the pairing value.  When False only
                the artifact kind is reported.
        """
        pairing: dict[str, str] | None = None
        if self.pairing is not None:
            pairing = {"kind": self.pairing.kind.value}
            if reveal_pairing:
                pairing["value"] = self.pairing.value
        return {
            "running": self.running,
            "status": self.status.value,
            "pairing": pairing,
            "message": self.message,
            "reconnect_attempts": self.reconnect_attempts,
        }


class ControlAPI:
    """Operator operations on the session and activity log.

    Args:
        session: Session manager.
        activity_log: Activity log (also the broadcast audience).
        branding: Suffix appended to broadcasts and direct sends.
    """

    def __init__(
        self,
        session: SessionManager,
        activity_log: ActivityLog,
        branding: str = "",
    ) -> None:
        self._session = session
        self._log = activity_log
        self.branding = branding

    def _brand(self, text: str) -> str:
        if not self.branding:
            return text
        return f"{text}\n\n{self.branding}"

    def status(self) -> StatusReport:
        state = self._session.state
        return StatusReport(
            running=state.status is SessionStatus.OPEN,
            status=state.status,
            pairing=state.pairing,
            message=state.message,
            reconnect_attempts=state.reconnect_attempts,
        )

    def start_bot(self) -> bool:
        """Start the session.  Returns False if it was already active."""
        started = self._session.start()
        logger.info("Operator start: %s", "started" if started else "no-op")
        return started

    def stop_bot(self) -> bool:
        """Stop the session.  Returns whether anything was active."""
        stopped = self._session.stop()
        logger.info("Operator stop: %s", "stopped" if stopped else "no-op")
        return stopped

    def list_recent_log(self, limit: int = 50) -> list[LogEntry]:
        """Return the newest ``limit`` activity entries, oldest first."""
        return self._log.tail(limit)

    def clear_log(self) -> int:
        """Clear the activity log.  Returns how many entries were removed."""
        return self._log.clear()

    def broadcast(self, message: str) -> int:
        """Send a branded message to every conversation ever seen.

        Every recipient gets one attempt; failures are logged and do not
        stop the remaining sends.

        Returns:
            Number of successful sends.

        Raises:
            ValueError: If the message is empty.
            BotNotRunningError: If the session is not open.
        """
        message = message.strip()
        if not message:
            raise ValueError("Broadcast message is empty")
        if not self._session.running:
            raise BotNotRunningError("Bot is not running")

        text = self._brand(message)
        audience = self._log.audience()
        sent = 0
        for conversation_id in audience:
            if self._send(conversation_id, text):
                sent += 1
        logger.info("Broadcast delivered to %d/%d", sent, len(audience))
        return sent

    def send_direct(self, conversation_id: str, text: str) -> bool:
        """Send a branded message to one conversation.

        Raises:
            ValueError: If the conversation or text is empty.
            BotNotRunningError: If the session is not open.
        """
        conversation_id = conversation_id.strip()
        text = text.strip()
        if not conversation_id or not text:
            raise ValueError("Recipient and text are required")
        if not self._session.running:
            raise BotNotRunningError("Bot is not running")
        return self._send(conversation_id, self._brand(text))

    def _send(self, conversation_id: str, text: str) -> bool:
        payload = OutboundPayload(text=text)
        try:
            self._session.send(conversation_id, payload)
        except Exception as e:
            logger.warning("Failed to send to %s: %s", conversation_id, e)
            return False
        self._log.append(conversation_id, Direction.OUT, payload.describe())
        return True
