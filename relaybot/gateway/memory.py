# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Bounded per-conversation dialogue memory.

Each conversation keeps an ordered history of role-tagged turns that is
forwarded to the reply engine.  Every bound is enforced on write:

- at most ``max_turns`` turns per conversation (oldest dropped first; a
  history never starts with an assistant turn, so trimming drops a whole
  exchange),
- at most ``max_conversations`` conversations (least recently used
  evicted first),
- optionally, conversations idle for longer than ``idle_ttl_seconds``
  are forgotten.
"""

from __future__ import annotations

import collections
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum


class Role(Enum):
    """Author of a turn."""

    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    """One role-tagged message in a conversation."""

    role: Role
    content: str

    def as_message(self) -> dict[str, str]:
        """Return the chat-completion message form of this turn."""
        return {"role": self.role.value, "content": self.content}


@dataclass
class _Conversation:
    turns: collections.deque[Turn]
    last_activity: float


class MemoryStore:
    """Thread-safe bounded conversation memory.

    One lock guards the conversation map and every history.  Each
    operation holds it for a bounded copy or append, and a write is
    never separated from the lookup that found its conversation, so
    a concurrent ``clear`` or eviction cannot swallow a turn.

    Args:
        max_turns: Turns kept per conversation.
        max_conversations: Conversations kept before LRU eviction.
        idle_ttl_seconds: Forget conversations idle for longer than
            this.  None disables expiry.
        clock: Time source (injectable for tests).
    """

    def __init__(
        self,
        max_turns: int = 20,
        max_conversations: int = 1000,
        idle_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_turns < 1:
            raise ValueError(f"max_turns must be >= 1: {max_turns}")
        if max_conversations < 1:
            raise ValueError(
                f"max_conversations must be >= 1: {max_conversations}"
            )
        self.max_turns = max_turns
        self.max_conversations = max_conversations
        self.idle_ttl_seconds = idle_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        # OrderedDict maintains recency order for LRU eviction
        self._conversations: collections.OrderedDict[str, _Conversation] = (
            collections.OrderedDict()
        )

    def _expired(self, conversation: _Conversation, now: float) -> bool:
        return (
            self.idle_ttl_seconds is not None
            and now - conversation.last_activity > self.idle_ttl_seconds
        )

    def _lookup(
        self, conversation_id: str, *, create: bool
    ) -> _Conversation | None:
        """Return the conversation, creating or expiring it as needed.

        Must be called with ``self._lock`` held.
        """
        now = self._clock()
        conversation = self._conversations.get(conversation_id)
        if conversation is not None and self._expired(conversation, now):
            del self._conversations[conversation_id]
            conversation = None
        if conversation is None:
            if not create:
                return None
            conversation = _Conversation(
                turns=collections.deque(maxlen=self.max_turns),
                last_activity=now,
            )
            self._conversations[conversation_id] = conversation
            while len(self._conversations) > self.max_conversations:
                self._conversations.popitem(last=False)
        else:
            self._conversations.move_to_end(conversation_id)
        return conversation

    def append(self, conversation_id: str, turn: Turn) -> None:
        """Append a turn, dropping the oldest turns when full.

        Leading assistant turns are dropped too, so the history handed
        to the reply engine always opens with a user turn.
        """
        with self._lock:
            conversation = self._lookup(conversation_id, create=True)
            assert conversation is not None
            turns = conversation.turns
            turns.append(turn)
            while turns and turns[0].role is Role.ASSISTANT:
                turns.popleft()
            conversation.last_activity = self._clock()

    def get(self, conversation_id: str) -> list[Turn]:
        """Return a snapshot of the conversation's history, oldest first."""
        with self._lock:
            conversation = self._lookup(conversation_id, create=False)
            if conversation is None:
                return []
            return list(conversation.turns)

    def messages(self, conversation_id: str) -> list[dict[str, str]]:
        """Return the history in chat-completion message form."""
        return [turn.as_message() for turn in self.get(conversation_id)]

    def clear(self, conversation_id: str) -> None:
        """Forget a conversation.  Clearing an unknown one is a no-op."""
        with self._lock:
            self._conversations.pop(conversation_id, None)

    def conversation_ids(self) -> list[str]:
        """Return remembered conversation IDs, least recently used first."""
        with self._lock:
            return list(self._conversations)

    def __len__(self) -> int:
        with self._lock:
            return len(self._conversations)
