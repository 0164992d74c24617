# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for gateway configuration loading."""

from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from relaybot.control.auth import verify_pin
from relaybot.gateway.config import (
    DEFAULT_BRANDING,
    BotConfig,
    ConfigError,
    GatewayConfig,
    MemoryConfig,
    SessionConfig,
    _EnvVar,
    _resolve,
)
from relaybot.logging import SecretFilter


def _raw(**sections: Any) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "transport": {"bot_token": "xoxb-1", "app_token": "xapp-1"},
        "reply_engine": {"api_key": "sk-test"},
    }
    raw.update(sections)
    return raw


class TestResolve:
    def test_env_var(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RELAYBOT_TEST_VALUE", "42")
        assert _resolve(_EnvVar("RELAYBOT_TEST_VALUE"), int) == 42

    def test_missing_env_var_uses_default(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("RELAYBOT_TEST_VALUE", raising=False)
        assert _resolve(_EnvVar("RELAYBOT_TEST_VALUE"), int, default=7) == 7

    def test_missing_required_env_var(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("RELAYBOT_TEST_VALUE", raising=False)
        with pytest.raises(ConfigError, match="RELAYBOT_TEST_VALUE"):
            _resolve(_EnvVar("RELAYBOT_TEST_VALUE"), str, required="x")

    def test_bool_strings(self) -> None:
        assert _resolve("yes", bool) is True
        assert _resolve("off", bool) is False
        with pytest.raises(ConfigError):
            _resolve("maybe", bool)

    def test_bool_is_not_an_int(self) -> None:
        with pytest.raises(ConfigError):
            _resolve(True, int)

    def test_bad_number(self) -> None:
        with pytest.raises(ConfigError, match="int"):
            _resolve("many", int)


class TestGatewayConfig:
    def test_defaults(self, tmp_path: Path) -> None:
        config = GatewayConfig._from_raw(
            _raw(storage={"state_dir": str(tmp_path)})
        )

        assert config.transport.bot_token == "xoxb-1"
        assert config.reply_engine.api_url == "https://api.deepseek.com/v1"
        assert config.reply_engine.model == "deepseek-chat"
        assert config.reply_engine.max_tokens == 512
        assert config.bot.command_prefixes == ("!",)
        assert config.bot.branding == DEFAULT_BRANDING
        assert config.bot.welcome_text is None
        assert config.session.reconnect_max_attempts == 5
        assert config.memory.max_turns == 20
        assert config.control.port == 4000
        assert config.control.pin_hash is None
        assert config.state_dir == tmp_path
        assert config.activity_log_max_entries == 1000

    def test_missing_transport_token(self) -> None:
        raw = _raw(transport={"app_token": "xapp-1"})
        with pytest.raises(ConfigError, match="transport.bot_token"):
            GatewayConfig._from_raw(raw)

    def test_missing_api_key(self) -> None:
        raw = _raw()
        raw["reply_engine"] = {}
        with pytest.raises(ConfigError, match="reply_engine.api_key"):
            GatewayConfig._from_raw(raw)

    def test_unknown_transport_type(self) -> None:
        raw = _raw()
        raw["transport"] = {**raw["transport"], "type": "carrier-pigeon"}
        with pytest.raises(ConfigError, match="carrier-pigeon"):
            GatewayConfig._from_raw(raw)

    def test_section_must_be_mapping(self) -> None:
        with pytest.raises(ConfigError, match="'bot'"):
            GatewayConfig._from_raw(_raw(bot=["!"]))

    def test_pin_is_hashed_and_redacted(self) -> None:
        config = GatewayConfig._from_raw(_raw(control={"pin": "4321"}))

        assert config.control.pin_hash is not None
        assert "4321" not in config.control.pin_hash
        assert verify_pin("4321", config.control.pin_hash)
        assert "4321" in SecretFilter._secrets

    def test_bot_section(self) -> None:
        config = GatewayConfig._from_raw(
            _raw(
                bot={
                    "command_prefixes": ["!", "/"],
                    "branding": "",
                    "welcome": "Hi!",
                    "reactions": {"processing": "", "done": "👍"},
                }
            )
        )

        assert config.bot.command_prefixes == ("!", "/")
        assert config.bot.branding == ""
        assert config.bot.welcome_text == "Hi!"
        assert config.bot.processing_reaction is None
        assert config.bot.done_reaction == "👍"

    def test_reconnect_section(self) -> None:
        config = GatewayConfig._from_raw(
            _raw(
                session={
                    "phone_number": "15550100",
                    "reconnect": {"max_attempts": 2, "base_delay": 0.5},
                }
            )
        )

        assert config.session.phone_number == "15550100"
        assert config.session.reconnect_max_attempts == 2
        assert config.session.reconnect_base_delay_seconds == 0.5

    def test_tokens_registered_as_secrets(self) -> None:
        GatewayConfig._from_raw(_raw())

        assert {"xoxb-1", "xapp-1", "sk-test"} <= SecretFilter._secrets

    def test_from_yaml_resolves_env(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("RELAYBOT_TEST_KEY", "sk-from-env")
        config_file = tmp_path / "relaybot.yaml"
        config_file.write_text(
            "transport:\n"
            "  bot_token: xoxb-1\n"
            "  app_token: xapp-1\n"
            "reply_engine:\n"
            "  api_key: !env RELAYBOT_TEST_KEY\n"
            f"storage:\n  state_dir: {tmp_path}\n"
        )

        with patch("relaybot.gateway.config.load_dotenv_once"):
            config = GatewayConfig.from_yaml(config_file)

        assert config.reply_engine.api_key == "sk-from-env"

    def test_from_yaml_missing_file(self, tmp_path: Path) -> None:
        with (
            patch("relaybot.gateway.config.load_dotenv_once"),
            pytest.raises(ConfigError, match="not found"),
        ):
            GatewayConfig.from_yaml(tmp_path / "missing.yaml")

    def test_from_yaml_not_a_mapping(self, tmp_path: Path) -> None:
        config_file = tmp_path / "relaybot.yaml"
        config_file.write_text("- just\n- a list\n")
        with (
            patch("relaybot.gateway.config.load_dotenv_once"),
            pytest.raises(ConfigError, match="mapping"),
        ):
            GatewayConfig.from_yaml(config_file)


class TestSectionValidation:
    def test_memory_max_turns(self) -> None:
        with pytest.raises(ValueError):
            MemoryConfig(max_turns=1)

    def test_session_attempts(self) -> None:
        with pytest.raises(ValueError):
            SessionConfig(reconnect_max_attempts=0)

    def test_session_negative_max_delay(self) -> None:
        with pytest.raises(ValueError, match="max delay"):
            SessionConfig(reconnect_max_delay_seconds=-1.0)

    def test_session_zero_max_delay_is_allowed(self) -> None:
        config = SessionConfig(
            reconnect_base_delay_seconds=0.0,
            reconnect_max_delay_seconds=0.0,
        )
        assert config.reconnect_max_delay_seconds == 0.0

    def test_activity_log_max_entries(self, tmp_path: Path) -> None:
        raw = _raw(
            storage={"state_dir": str(tmp_path), "activity_log_max_entries": 0}
        )
        with pytest.raises(ValueError, match="Activity log"):
            GatewayConfig._from_raw(raw)

    def test_blank_command_prefix(self) -> None:
        with pytest.raises(ValueError):
            BotConfig(command_prefixes=(" ",))
