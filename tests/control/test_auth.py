# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for operator PIN hashing and rate limiting."""

import pytest

from relaybot.control.auth import RateLimiter, hash_pin, verify_pin


class TestPinHashing:
    def test_roundtrip(self) -> None:
        encoded = hash_pin("2468")

        assert encoded.startswith("scrypt$")
        assert verify_pin("2468", encoded)
        assert not verify_pin("1357", encoded)

    def test_salt_makes_hashes_differ(self) -> None:
        assert hash_pin("2468") != hash_pin("2468")

    def test_fixed_salt_is_deterministic(self) -> None:
        salt = b"\x00" * 16
        assert hash_pin("2468", salt=salt) == hash_pin("2468", salt=salt)

    def test_empty_pin_rejected(self) -> None:
        with pytest.raises(ValueError):
            hash_pin("")

    @pytest.mark.parametrize(
        ("pin", "encoded"),
        [
            (None, "scrypt$00$00"),
            ("", "scrypt$00$00"),
            ("2468", None),
            ("2468", "plaintext"),
            ("2468", "md5$00$00"),
            ("2468", "scrypt$zz$00"),
        ],
    )
    def test_invalid_inputs_fail_closed(
        self, pin: str | None, encoded: str | None
    ) -> None:
        assert verify_pin(pin, encoded) is False


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    def test_allows_up_to_limit(self) -> None:
        limiter = RateLimiter(3, 60.0, clock=FakeClock())

        assert [limiter.allow("a") for _ in range(4)] == [
            True,
            True,
            True,
            False,
        ]

    def test_keys_are_independent(self) -> None:
        limiter = RateLimiter(1, 60.0, clock=FakeClock())

        assert limiter.allow("a")
        assert limiter.allow("b")
        assert not limiter.allow("a")

    def test_window_slides(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(2, 10.0, clock=clock)
        limiter.allow("a")
        clock.now = 5.0
        limiter.allow("a")
        assert not limiter.allow("a")

        clock.now = 10.5

        assert limiter.allow("a")
        assert not limiter.allow("a")
