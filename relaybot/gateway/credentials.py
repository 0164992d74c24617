# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Session credential persistence.

Transports emit ``CredentialsUpdate`` events whenever their key material
changes; the session manager persists each update through a
``CredentialStore`` so a restarted process can resume the same session
without pairing again.
"""

from __future__ import annotations

import json
import logging
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from relaybot.gateway.transport import Credentials


logger = logging.getLogger(__name__)

CREDENTIALS_FILE_NAME = "credentials.json"


class CredentialStore(Protocol):
    """Interface for credential persistence."""

    def load(self) -> Credentials:
        """Return the stored credentials, or an empty mapping."""
        ...

    def save(self, credentials: Credentials) -> None:
        """Persist credentials, replacing any previous value.

        Raises:
            OSError: If the write fails.
        """
        ...

    def clear(self) -> None:
        """Forget stored credentials (forces re-registration)."""
        ...


class FileCredentialStore:
    """JSON file-backed credential store.

    Thread-safe via an internal lock.  Writes go to a temporary file
    that replaces the target, so a crash mid-write never leaves a
    truncated credentials file behind.

    Args:
        state_dir: Directory for persistent state (created if missing).
    """

    def __init__(self, state_dir: Path) -> None:
        self._path = state_dir / CREDENTIALS_FILE_NAME
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Credentials:
        """Load credentials from disk.

        A missing, unreadable or malformed file yields empty credentials
        (the transport then starts a fresh pairing).
        """
        with self._lock:
            if not self._path.exists():
                return {}
            try:
                with open(self._path) as f:
                    data = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(
                    "Failed to load credentials %s: %s", self._path, e
                )
                return {}
            if not isinstance(data, dict):
                logger.warning(
                    "Ignoring credentials %s: expected a JSON object",
                    self._path,
                )
                return {}
            return data

    def save(self, credentials: Credentials) -> None:
        """Persist credentials atomically.

        Raises:
            OSError: If the directory cannot be created or the write fails.
            TypeError: If the credentials are not JSON-serializable.
        """
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
            try:
                with open(fd, "w") as f:
                    json.dump(credentials, f, sort_keys=True)
                Path(tmp).replace(self._path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise

    def clear(self) -> None:
        """Delete the credentials file if present."""
        with self._lock:
            self._path.unlink(missing_ok=True)
        logger.info("Cleared stored credentials %s", self._path)
