# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Operator authentication and rate limiting for the control surface.

The operator PIN is never stored in plain text: configuration hashes it
with scrypt at load time (or accepts a pre-computed hash), and requests
are checked with a constant-time comparison.

Hash format: ``scrypt$<salt hex>$<digest hex>``.
"""

import collections
import hashlib
import hmac
import secrets
import threading
import time
from collections.abc import Callable


_SCHEME = "scrypt"
_SALT_BYTES = 16
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1
_DIGEST_BYTES = 32


def _derive(pin: str, salt: bytes) -> bytes:
    return hashlib.scrypt(
        pin.encode("utf-8"),
        salt=salt,
        n=_SCRYPT_N,
        r=_SCRYPT_R,
        p=_SCRYPT_P,
        dklen=_DIGEST_BYTES,
    )


def hash_pin(pin: str, *, salt: bytes | None = None) -> str:
    """Hash an operator PIN for storage.

    Args:
        pin: Plain-text PIN.  Must not be empty.
        salt: Salt override (tests only).  Random by default.

    Returns:
        Encoded hash string.

    Raises:
        ValueError: If the PIN is empty.
    """
    if not pin:
        raise ValueError("PIN must not be empty")
    if salt is None:
        salt = secrets.token_bytes(_SALT_BYTES)
    digest = _derive(pin, salt)
    return f"{_SCHEME}${salt.hex()}${digest.hex()}"


def verify_pin(pin: str | None, encoded: str | None) -> bool:
    """Check a PIN against an encoded hash in constant time.

    Returns False for a missing PIN, a missing hash or a malformed hash
    rather than raising.
    """
    if not pin or not encoded:
        return False
    try:
        scheme, salt_hex, digest_hex = encoded.split("$")
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(digest_hex)
    except ValueError:
        return False
    if scheme != _SCHEME:
        return False
    return hmac.compare_digest(_derive(pin, salt), expected)


class RateLimiter:
    """Sliding-window request limiter keyed by client.

    Thread-safe; the control server calls it from its request threads.

    Args:
        max_requests: Requests allowed per window and key.
        window_seconds: Window length.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[str, collections.deque[float]] = {}

    def allow(self, key: str) -> bool:
        """Record a request for ``key`` and report whether it is allowed.

        Rejected requests are not recorded, so a client that backs off
        regains access once its window drains.
        """
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            hits = self._hits.setdefault(key, collections.deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            # Drop keys whose windows have fully drained
            if len(self._hits) > 1024:
                stale = [k for k, v in self._hits.items() if v[-1] <= cutoff]
                for k in stale:
                    del self._hits[k]
            return True
