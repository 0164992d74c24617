# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for bounded conversation memory."""

import collections
import threading

import pytest

from relaybot.gateway.memory import MemoryStore, Role, Turn


class LockCheckingTurns(collections.deque):
    """Turn history that fails when written without the store lock."""

    def __init__(self, lock, iterable=(), maxlen=None) -> None:
        super().__init__(iterable, maxlen)
        self.lock = lock

    def append(self, turn: Turn) -> None:
        assert self.lock.locked(), "turn written outside the store lock"
        super().append(turn)


class LockCheckingStore(MemoryStore):
    def _lookup(self, conversation_id, *, create):
        conversation = super()._lookup(conversation_id, create=create)
        if conversation is not None and not isinstance(
            conversation.turns, LockCheckingTurns
        ):
            conversation.turns = LockCheckingTurns(
                self._lock, conversation.turns, maxlen=self.max_turns
            )
        return conversation


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestMemoryStore:
    def test_append_and_get(self) -> None:
        store = MemoryStore()
        store.append("D1", Turn(Role.USER, "Hello"))
        store.append("D1", Turn(Role.ASSISTANT, "Hi there"))

        assert store.get("D1") == [
            Turn(Role.USER, "Hello"),
            Turn(Role.ASSISTANT, "Hi there"),
        ]
        assert store.messages("D1") == [
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": "Hi there"},
        ]

    def test_unknown_conversation_is_empty(self) -> None:
        store = MemoryStore()
        assert store.get("nope") == []
        assert len(store) == 0

    def test_get_returns_snapshot(self) -> None:
        store = MemoryStore()
        store.append("D1", Turn(Role.USER, "a"))
        snapshot = store.get("D1")
        store.append("D1", Turn(Role.USER, "b"))

        assert len(snapshot) == 1

    def test_turns_are_capped(self) -> None:
        store = MemoryStore(max_turns=3)
        for i in range(5):
            store.append("D1", Turn(Role.USER, str(i)))

        assert [t.content for t in store.get("D1")] == ["2", "3", "4"]

    def test_trimming_drops_whole_exchanges(self) -> None:
        store = MemoryStore(max_turns=3)
        for i in range(3):
            store.append("D1", Turn(Role.USER, f"q{i}"))
            store.append("D1", Turn(Role.ASSISTANT, f"a{i}"))

        assert store.get("D1") == [
            Turn(Role.USER, "q2"),
            Turn(Role.ASSISTANT, "a2"),
        ]

        store.append("D1", Turn(Role.USER, "q3"))
        assert store.messages("D1")[0] == {"role": "user", "content": "q2"}
        assert len(store.get("D1")) == 3

    def test_history_never_opens_with_assistant_turn(self) -> None:
        store = MemoryStore(max_turns=2)
        store.append("D1", Turn(Role.ASSISTANT, "unprompted"))

        assert store.get("D1") == []

        store.append("D1", Turn(Role.USER, "hi"))
        store.append("D1", Turn(Role.ASSISTANT, "hello"))
        store.append("D1", Turn(Role.USER, "again"))

        assert store.get("D1") == [Turn(Role.USER, "again")]

    def test_least_recently_used_conversation_evicted(self) -> None:
        store = MemoryStore(max_conversations=2)
        store.append("A", Turn(Role.USER, "a"))
        store.append("B", Turn(Role.USER, "b"))
        # Touch A so B becomes least recently used
        store.get("A")
        store.append("C", Turn(Role.USER, "c"))

        assert store.conversation_ids() == ["A", "C"]
        assert store.get("B") == []

    def test_idle_conversations_expire(self) -> None:
        clock = FakeClock()
        store = MemoryStore(idle_ttl_seconds=60.0, clock=clock)
        store.append("D1", Turn(Role.USER, "hi"))

        clock.now += 61.0

        assert store.get("D1") == []
        assert len(store) == 0

    def test_activity_refreshes_ttl(self) -> None:
        clock = FakeClock()
        store = MemoryStore(idle_ttl_seconds=60.0, clock=clock)
        store.append("D1", Turn(Role.USER, "a"))
        clock.now += 50.0
        store.append("D1", Turn(Role.USER, "b"))
        clock.now += 50.0

        assert len(store.get("D1")) == 2

    def test_clear_is_idempotent(self) -> None:
        store = MemoryStore()
        store.append("D1", Turn(Role.USER, "hi"))

        store.clear("D1")
        store.clear("D1")
        store.clear("never-seen")

        assert store.get("D1") == []

    @pytest.mark.parametrize(
        "kwargs", [{"max_turns": 0}, {"max_conversations": 0}]
    )
    def test_invalid_bounds(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            MemoryStore(**kwargs)

    def test_concurrent_appends(self) -> None:
        store = MemoryStore(max_turns=1000)

        def worker(n: int) -> None:
            for i in range(100):
                store.append("D1", Turn(Role.USER, f"{n}-{i}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.get("D1")) == 400

    def test_append_writes_under_store_lock(self) -> None:
        store = LockCheckingStore(max_turns=4, max_conversations=2)
        store.append("D1", Turn(Role.USER, "a"))
        store.append("D2", Turn(Role.USER, "b"))
        store.append("D1", Turn(Role.ASSISTANT, "c"))
        # Evicts D2
        store.append("D3", Turn(Role.USER, "d"))

        assert store.get("D1") == [
            Turn(Role.USER, "a"),
            Turn(Role.ASSISTANT, "c"),
        ]
        assert store.conversation_ids() == ["D3", "D1"]
