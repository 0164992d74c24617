# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Append-only activity log of inbound and outbound turns.

Every message the router accepts and every reply it delivers is recorded
as a ``LogEntry``.  The distinct conversation IDs across all entries form
the broadcast audience.

Only the newest ``max_entries`` entries are kept in memory for the
control surface.  When a path is given every entry is also appended to a
newline-delimited JSON file (``activity.jsonl``), which stays the full
record.  The file is streamed back at startup so the audience survives
restarts.
"""

from __future__ import annotations

import collections
import json
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path


logger = logging.getLogger(__name__)

ACTIVITY_LOG_FILE_NAME = "activity.jsonl"

DEFAULT_MAX_ENTRIES = 1000


class Direction(Enum):
    """Whether a turn was received or sent."""

    IN = "in"
    OUT = "out"


@dataclass(frozen=True)
class LogEntry:
    """One recorded turn.

    Attributes:
        time: ISO 8601 UTC timestamp.
        conversation_id: Conversation the turn belongs to.
        direction: Received or sent.
        text: Message text (image payloads are described in text).
    """

    time: str
    conversation_id: str
    direction: Direction
    text: str

    def to_dict(self) -> dict[str, str]:
        return {
            "time": self.time,
            "conversation_id": self.conversation_id,
            "direction": self.direction.value,
            "text": self.text,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LogEntry:
        """Build an entry from its serialized form.

        Raises:
            KeyError: If a field is missing.
            ValueError: If the direction is invalid.
        """
        return cls(
            time=str(data["time"]),
            conversation_id=str(data["conversation_id"]),
            direction=Direction(data["direction"]),
            text=str(data["text"]),
        )


class ActivityLog:
    """Thread-safe append-only activity log.

    Readers always get a snapshot, so the control surface can iterate
    while the inbound stream keeps appending.

    Args:
        path: JSON Lines file for persistence.  None keeps the log in
            memory only.
        max_entries: Entries kept in memory; older ones remain only in
            the file.
    """

    def __init__(
        self,
        path: Path | None = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1: {max_entries}")
        self.path = path
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: collections.deque[LogEntry] = collections.deque(
            maxlen=max_entries
        )
        self._conversations: dict[str, None] = {}
        if path is not None:
            self._load(path)

    def _load(self, path: Path) -> None:
        if not path.exists():
            return
        loaded = 0
        skipped = 0
        try:
            with path.open() as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        entry = LogEntry.from_dict(json.loads(line))
                    except (
                        json.JSONDecodeError,
                        KeyError,
                        ValueError,
                        TypeError,
                    ):
                        skipped += 1
                        continue
                    loaded += 1
                    self._entries.append(entry)
                    self._conversations.setdefault(entry.conversation_id)
        except OSError as e:
            logger.warning("Failed to read activity log %s: %s", path, e)
            return

        if skipped:
            logger.warning(
                "Skipped %d malformed lines in activity log %s", skipped, path
            )
        logger.info(
            "Loaded %d activity log entries (%d conversations) from %s",
            loaded,
            len(self._conversations),
            path,
        )

    def append(
        self, conversation_id: str, direction: Direction, text: str
    ) -> LogEntry:
        """Record a turn and return the new entry.

        A persistence failure is logged; the entry is still kept in
        memory.
        """
        entry = LogEntry(
            time=datetime.now(UTC).isoformat(),
            conversation_id=conversation_id,
            direction=direction,
            text=text,
        )
        with self._lock:
            self._entries.append(entry)
            self._conversations.setdefault(conversation_id)
            if self.path is not None:
                try:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    with self.path.open("a") as f:
                        f.write(json.dumps(entry.to_dict()) + "\n")
                except OSError as e:
                    logger.warning(
                        "Failed to persist activity log entry to %s: %s",
                        self.path,
                        e,
                    )
        return entry

    def tail(self, limit: int) -> list[LogEntry]:
        """Return the newest ``limit`` entries, oldest first."""
        if limit <= 0:
            return []
        with self._lock:
            return list(self._entries)[-limit:]

    def entries(self) -> list[LogEntry]:
        """Return a snapshot of all entries."""
        with self._lock:
            return list(self._entries)

    def audience(self) -> list[str]:
        """Return distinct conversation IDs in first-seen order."""
        with self._lock:
            return list(self._conversations)

    def has_conversation(self, conversation_id: str) -> bool:
        """Whether any entry was ever recorded for the conversation."""
        with self._lock:
            return conversation_id in self._conversations

    def clear(self) -> int:
        """Remove every entry (and the file).  Returns how many were removed."""
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._conversations.clear()
            if self.path is not None:
                try:
                    self.path.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(
                        "Failed to remove activity log %s: %s", self.path, e
                    )
        logger.info("Activity log cleared (%d entries)", removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
