# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for file-backed credential persistence."""

import json
from pathlib import Path

from relaybot.gateway.credentials import (
    CREDENTIALS_FILE_NAME,
    FileCredentialStore,
)


class TestFileCredentialStore:
    def test_load_missing_returns_empty(self, tmp_path: Path) -> None:
        assert FileCredentialStore(tmp_path).load() == {}

    def test_save_and_load(self, tmp_path: Path) -> None:
        store = FileCredentialStore(tmp_path / "state")
        store.save({"team_id": "T1", "bot_user_id": "UBOT"})

        assert store.path == tmp_path / "state" / CREDENTIALS_FILE_NAME
        assert FileCredentialStore(tmp_path / "state").load() == {
            "team_id": "T1",
            "bot_user_id": "UBOT",
        }

    def test_save_replaces_and_leaves_no_temp_files(
        self, tmp_path: Path
    ) -> None:
        store = FileCredentialStore(tmp_path)
        store.save({"a": 1})
        store.save({"b": 2})

        assert store.load() == {"b": 2}
        assert [p.name for p in tmp_path.iterdir()] == [CREDENTIALS_FILE_NAME]

    def test_corrupt_file_loads_empty(self, tmp_path: Path) -> None:
        (tmp_path / CREDENTIALS_FILE_NAME).write_text("{not json")

        assert FileCredentialStore(tmp_path).load() == {}

    def test_non_object_loads_empty(self, tmp_path: Path) -> None:
        (tmp_path / CREDENTIALS_FILE_NAME).write_text(json.dumps([1, 2]))

        assert FileCredentialStore(tmp_path).load() == {}

    def test_clear(self, tmp_path: Path) -> None:
        store = FileCredentialStore(tmp_path)
        store.save({"a": 1})

        store.clear()
        store.clear()

        assert not store.path.exists()
        assert store.load() == {}
