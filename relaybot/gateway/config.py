# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Configuration for the relaybot gateway.

Configuration is loaded from a YAML file.  The default location follows
the XDG Base Directory Specification:

    ``$XDG_CONFIG_HOME/relaybot/relaybot.yaml``
    (typically ``~/.config/relaybot/relaybot.yaml``)

``!env`` tags resolve values from environment variables, so secrets can
live in ``.env`` files or the service environment rather than the YAML
file itself.  Example::

    transport:
      type: slack
      bot_token: !env SLACK_BOT_TOKEN
      app_token: !env SLACK_APP_TOKEN
    session:
      phone_number: !env PHONE_NUMBER
    bot:
      command_prefixes: ["!", "/"]
    reply_engine:
      api_url: https://api.deepseek.com/v1
      api_key: !env DEEPSEEK_API_KEY
      model: deepseek-chat
    control:
      port: 4000
      pin: !env BROADCAST_PASSWORD
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar, overload

import yaml
from platformdirs import user_config_path, user_state_path

from relaybot.control.auth import hash_pin
from relaybot.gateway.dotenv_loader import load_dotenv_once
from relaybot.logging import SecretFilter


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "relaybot"

#: Suffix appended to every reply and broadcast.
DEFAULT_BRANDING = "_Relaybot – Smart Chats. Instant Replies_"

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})

_TRANSPORT_TYPES = frozenset({"slack"})


def get_config_path() -> Path:
    """Return the default config file path (XDG config directory)."""
    return user_config_path(_APP_NAME) / "relaybot.yaml"


def get_dotenv_path() -> Path:
    """Return the default ``.env`` path inside the XDG config directory."""
    return user_config_path(_APP_NAME) / ".env"


def get_state_dir() -> Path:
    """Return the default state directory.

    Uses XDG: ``$XDG_STATE_HOME/relaybot`` (typically
    ``~/.local/state/relaybot``).  Credentials and the activity log live
    here.
    """
    return user_state_path(_APP_NAME)


class ConfigError(Exception):
    """Base exception for configuration errors."""


# ---------------------------------------------------------------------------
# YAML tag placeholders
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


# ---------------------------------------------------------------------------
# Value resolution
# ---------------------------------------------------------------------------


def _coerce_bool(value: object) -> bool:
    """Coerce a value to bool, handling string representations."""
    if isinstance(value, bool):
        return value
    s = str(value).lower().strip()
    if s in _BOOL_TRUTHY:
        return True
    if s in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {value!r} to bool")


def _raw_resolve(value: object) -> str | None:
    """Resolve an ``_EnvVar`` to its string value, or stringify literals.

    Returns None if the value is None or the env var is not set.
    """
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name)
    if value is None:
        return None
    return str(value)


_MISSING = object()

_T = TypeVar("_T")


@overload
def _resolve(value: object, coerce: type[_T], *, default: _T) -> _T: ...


@overload
def _resolve(
    value: object,
    coerce: type[_T],
    *,
    required: str,
) -> _T: ...


@overload
def _resolve(value: object, coerce: type[_T]) -> _T | None: ...


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
    required: str = "",
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    Args:
        value: Raw value from YAML (may be ``_EnvVar``, None, or a
            literal already parsed by PyYAML).
        coerce: Target type (``str``, ``int``, ``float``, ``bool``,
            ``Path``).
        default: Default when value is absent.
        required: Human-readable field name.  When set, raises
            ``ConfigError`` if the value is absent.

    Returns:
        The resolved, coerced value, or None when optional and absent.
    """
    if not isinstance(value, _EnvVar) and value is not None:
        if coerce is bool:
            return _coerce_bool(value)
        if isinstance(value, coerce) and not (
            coerce is int and isinstance(value, bool)
        ):
            return value

    resolved = _raw_resolve(value)

    if resolved is None or (resolved == "" and coerce is not str):
        if required:
            if isinstance(value, _EnvVar):
                raise ConfigError(
                    f"Required config '{required}': environment variable "
                    f"'{value.var_name}' is not set"
                )
            raise ConfigError(f"Required config '{required}' is missing")
        if default is not _MISSING:
            return default
        return None

    if coerce is bool:
        return _coerce_bool(resolved)
    if coerce is Path:
        return Path(resolved).expanduser()
    try:
        return coerce(resolved)
    except (TypeError, ValueError) as e:
        raise ConfigError(
            f"Cannot convert {resolved!r} to {coerce.__name__}"
        ) from e


def _resolve_string_list(
    value: object, *, field_name: str, default: tuple[str, ...] = ()
) -> tuple[str, ...]:
    """Resolve a list of strings, handling ``!env`` for each element.

    A bare string is accepted as a one-element list.
    """
    if value is None:
        return default
    if not isinstance(value, list):
        value = [value]

    result: list[str] = []
    for item in value:
        resolved = _raw_resolve(item)
        if resolved:
            result.append(resolved)
    if not result:
        raise ConfigError(f"Config '{field_name}' must not be empty")
    return tuple(result)


def _section(raw: dict, name: str) -> dict:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' must be a YAML mapping")
    return section


# ---------------------------------------------------------------------------
# Configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SlackTransportConfig:
    """Slack Socket Mode credentials.

    Attributes:
        bot_token: Bot user OAuth token (``xoxb-``).
        app_token: App-level token with ``connections:write`` (``xapp-``).
    """

    bot_token: str
    app_token: str

    def __post_init__(self) -> None:
        SecretFilter.register_secret(self.bot_token)
        SecretFilter.register_secret(self.app_token)

    @property
    def transport_type(self) -> str:
        return "slack"


@dataclass(frozen=True)
class SessionConfig:
    """Session lifecycle settings.

    Attributes:
        phone_number: Phone number for pairing-code registration.  When
            unset, unregistered transports fall back to QR pairing.
        reconnect_max_attempts: Consecutive transient closes tolerated
            before the session is marked degraded.
        reconnect_base_delay_seconds: Delay before the first reconnect.
        reconnect_multiplier: Backoff growth factor per attempt.
        reconnect_max_delay_seconds: Upper bound for a single delay.
        credentials_timeout_seconds: Bound on a credential store write.
    """

    phone_number: str | None = None
    reconnect_max_attempts: int = 5
    reconnect_base_delay_seconds: float = 2.0
    reconnect_multiplier: float = 3.0
    reconnect_max_delay_seconds: float = 60.0
    credentials_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.reconnect_max_attempts < 1:
            raise ValueError(
                f"Reconnect max attempts must be >= 1: "
                f"{self.reconnect_max_attempts}"
            )
        if self.reconnect_base_delay_seconds < 0:
            raise ValueError(
                f"Reconnect base delay must be >= 0: "
                f"{self.reconnect_base_delay_seconds}"
            )
        if self.reconnect_multiplier < 1:
            raise ValueError(
                f"Reconnect multiplier must be >= 1: "
                f"{self.reconnect_multiplier}"
            )
        if self.reconnect_max_delay_seconds < 0:
            raise ValueError(
                f"Reconnect max delay must be >= 0: "
                f"{self.reconnect_max_delay_seconds}"
            )
        if self.credentials_timeout_seconds <= 0:
            raise ValueError(
                f"Credentials timeout must be > 0: "
                f"{self.credentials_timeout_seconds}"
            )


@dataclass(frozen=True)
class BotConfig:
    """Conversation behaviour.

    Attributes:
        command_prefixes: Sentinels marking a message as a command.
        branding: Suffix appended to replies.  Empty disables it.
        bot_id: Identity matched against group mentions.  Defaults to
            the identity reported by the transport.
        welcome_text: Sent instead of a reply to a conversation's very
            first message.  None disables the greeting.
        processing_reaction: Emoji reacted on receipt.  None disables.
        done_reaction: Emoji reacted after replying.  None disables.
    """

    command_prefixes: tuple[str, ...] = ("!",)
    branding: str = DEFAULT_BRANDING
    bot_id: str | None = None
    welcome_text: str | None = None
    processing_reaction: str | None = "⏳"
    done_reaction: str | None = "✅"

    def __post_init__(self) -> None:
        if not self.command_prefixes:
            raise ValueError("At least one command prefix is required")
        for prefix in self.command_prefixes:
            if not prefix or prefix.isspace():
                raise ValueError(f"Invalid command prefix: {prefix!r}")


@dataclass(frozen=True)
class MemoryConfig:
    """Conversation memory bounds.

    Attributes:
        max_turns: Turns kept per conversation.
        max_conversations: Conversations kept before LRU eviction.
        idle_ttl_seconds: Drop conversations idle for longer than this.
            None keeps them until evicted.
    """

    max_turns: int = 20
    max_conversations: int = 1000
    idle_ttl_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_turns < 2:
            raise ValueError(f"Memory max turns must be >= 2: {self.max_turns}")
        if self.max_conversations < 1:
            raise ValueError(
                f"Memory max conversations must be >= 1: "
                f"{self.max_conversations}"
            )
        if self.idle_ttl_seconds is not None and self.idle_ttl_seconds <= 0:
            raise ValueError(
                f"Memory idle TTL must be > 0: {self.idle_ttl_seconds}"
            )


@dataclass(frozen=True)
class ReplyEngineConfig:
    """OpenAI-compatible chat completion backend.

    Attributes:
        api_url: Base URL; ``/chat/completions`` is appended.
        api_key: Bearer token.
        model: Model identifier.
        max_tokens: Completion token limit.
        timeout_seconds: Request timeout.
        system_prompt: Optional system message prepended to history.
    """

    api_url: str
    api_key: str
    model: str
    max_tokens: int = 512
    timeout_seconds: float = 30.0
    system_prompt: str | None = None

    def __post_init__(self) -> None:
        SecretFilter.register_secret(self.api_key)
        if self.max_tokens < 1:
            raise ValueError(f"Max tokens must be >= 1: {self.max_tokens}")
        if self.timeout_seconds <= 0:
            raise ValueError(
                f"Reply engine timeout must be > 0: {self.timeout_seconds}"
            )


@dataclass(frozen=True)
class ContentConfig:
    """Quote and image providers used by commands.

    Attributes:
        quote_url: Endpoint returning ``{"content", "author"}``.
        image_api_url: Image generation endpoint.
        image_api_key: Bearer token for image generation.  When unset,
            image commands always return the placeholder image.
        image_model: Image model identifier.
        image_size: Requested image size.
        timeout_seconds: Request timeout for both providers.
    """

    quote_url: str = "https://api.quotable.io/random"
    image_api_url: str = "https://api.together.xyz/v1/images/generations"
    image_api_key: str | None = None
    image_model: str = "stabilityai/stable-diffusion-xl-base-1.0"
    image_size: str = "512x512"
    timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        SecretFilter.register_secret(self.image_api_key)
        if self.timeout_seconds <= 0:
            raise ValueError(
                f"Content timeout must be > 0: {self.timeout_seconds}"
            )


@dataclass(frozen=True)
class ControlConfig:
    """Operator control surface.

    Attributes:
        enabled: Serve the control HTTP surface.
        host: Bind address.
        port: Bind port.
        pin_hash: Hashed operator PIN (see ``relaybot.control.auth``).
            None disables every mutating endpoint.
        rate_limit_requests: Mutating requests allowed per window and
            client.
        rate_limit_window_seconds: Rate limit window length.
    """

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 4000
    pin_hash: str | None = None
    rate_limit_requests: int = 30
    rate_limit_window_seconds: float = 60.0

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Control port out of range: {self.port}")
        if self.rate_limit_requests < 1:
            raise ValueError(
                f"Rate limit must be >= 1 request: {self.rate_limit_requests}"
            )
        if self.rate_limit_window_seconds <= 0:
            raise ValueError(
                f"Rate limit window must be > 0: "
                f"{self.rate_limit_window_seconds}"
            )


@dataclass(frozen=True)
class GatewayConfig:
    """Complete gateway configuration.

    Attributes:
        transport: Transport credentials.
        reply_engine: Chat completion backend.
        session: Session lifecycle settings.
        bot: Conversation behaviour.
        memory: Conversation memory bounds.
        content: Quote and image providers.
        control: Operator control surface.
        state_dir: Directory for credentials and the activity log.
        activity_log_max_entries: Activity log entries kept in memory.
    """

    transport: SlackTransportConfig
    reply_engine: ReplyEngineConfig
    session: SessionConfig
    bot: BotConfig
    memory: MemoryConfig
    content: ContentConfig
    control: ControlConfig
    state_dir: Path
    activity_log_max_entries: int = 1000

    def __post_init__(self) -> None:
        if self.activity_log_max_entries < 1:
            raise ValueError(
                f"Activity log max entries must be >= 1: "
                f"{self.activity_log_max_entries}"
            )

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> "GatewayConfig":
        """Load configuration from a YAML file.

        A ``.env`` file is loaded first if present, then ``!env`` tags
        are resolved.

        Args:
            config_path: Path to YAML config file.  Defaults to
                ``~/.config/relaybot/relaybot.yaml`` (XDG).

        Raises:
            ConfigError: If the file is missing or required values are
                absent.
        """
        load_dotenv_once()

        if config_path is None:
            config_path = get_config_path()

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            raw = yaml.load(f, Loader=_make_loader())

        if not isinstance(raw, dict):
            raise ConfigError(
                f"Config file must be a YAML mapping: {config_path}"
            )

        config = cls._from_raw(raw)
        logger.info(
            "Config loaded from %s (transport=%s, state_dir=%s)",
            config_path,
            config.transport.transport_type,
            config.state_dir,
        )
        return config

    @classmethod
    def _from_raw(cls, raw: dict) -> "GatewayConfig":
        """Build config from parsed (but unresolved) YAML dict."""
        storage = _section(raw, "storage")
        return cls(
            transport=_parse_transport(_section(raw, "transport")),
            reply_engine=_parse_reply_engine(_section(raw, "reply_engine")),
            session=_parse_session(_section(raw, "session")),
            bot=_parse_bot(_section(raw, "bot")),
            memory=_parse_memory(_section(raw, "memory")),
            content=_parse_content(_section(raw, "content")),
            control=_parse_control(_section(raw, "control")),
            state_dir=_resolve(
                storage.get("state_dir"), Path, default=get_state_dir()
            ),
            activity_log_max_entries=_resolve(
                storage.get("activity_log_max_entries"), int, default=1000
            ),
        )


def _parse_transport(raw: dict) -> SlackTransportConfig:
    transport_type = _resolve(raw.get("type"), str, default="slack")
    if transport_type not in _TRANSPORT_TYPES:
        raise ConfigError(
            f"Unknown transport type {transport_type!r} "
            f"(supported: {', '.join(sorted(_TRANSPORT_TYPES))})"
        )
    return SlackTransportConfig(
        bot_token=_resolve(
            raw.get("bot_token"), str, required="transport.bot_token"
        ),
        app_token=_resolve(
            raw.get("app_token"), str, required="transport.app_token"
        ),
    )


def _parse_session(raw: dict) -> SessionConfig:
    reconnect = raw.get("reconnect") or {}
    if not isinstance(reconnect, dict):
        raise ConfigError("'session.reconnect' must be a YAML mapping")
    return SessionConfig(
        phone_number=_resolve(raw.get("phone_number"), str) or None,
        reconnect_max_attempts=_resolve(
            reconnect.get("max_attempts"), int, default=5
        ),
        reconnect_base_delay_seconds=_resolve(
            reconnect.get("base_delay"), float, default=2.0
        ),
        reconnect_multiplier=_resolve(
            reconnect.get("multiplier"), float, default=3.0
        ),
        reconnect_max_delay_seconds=_resolve(
            reconnect.get("max_delay"), float, default=60.0
        ),
        credentials_timeout_seconds=_resolve(
            raw.get("credentials_timeout"), float, default=10.0
        ),
    )


def _parse_bot(raw: dict) -> BotConfig:
    reactions = raw.get("reactions") or {}
    if not isinstance(reactions, dict):
        raise ConfigError("'bot.reactions' must be a YAML mapping")
    return BotConfig(
        command_prefixes=_resolve_string_list(
            raw.get("command_prefixes"),
            field_name="bot.command_prefixes",
            default=("!",),
        ),
        branding=_resolve(raw.get("branding"), str, default=DEFAULT_BRANDING),
        bot_id=_resolve(raw.get("bot_id"), str) or None,
        welcome_text=_resolve(raw.get("welcome"), str) or None,
        processing_reaction=_resolve(
            reactions.get("processing", "⏳"), str
        )
        or None,
        done_reaction=_resolve(reactions.get("done", "✅"), str) or None,
    )


def _parse_memory(raw: dict) -> MemoryConfig:
    return MemoryConfig(
        max_turns=_resolve(raw.get("max_turns"), int, default=20),
        max_conversations=_resolve(
            raw.get("max_conversations"), int, default=1000
        ),
        idle_ttl_seconds=_resolve(raw.get("idle_ttl_seconds"), float),
    )


def _parse_reply_engine(raw: dict) -> ReplyEngineConfig:
    return ReplyEngineConfig(
        api_url=_resolve(
            raw.get("api_url"), str, default="https://api.deepseek.com/v1"
        ),
        api_key=_resolve(
            raw.get("api_key"), str, required="reply_engine.api_key"
        ),
        model=_resolve(raw.get("model"), str, default="deepseek-chat"),
        max_tokens=_resolve(raw.get("max_tokens"), int, default=512),
        timeout_seconds=_resolve(raw.get("timeout"), float, default=30.0),
        system_prompt=_resolve(raw.get("system_prompt"), str) or None,
    )


def _parse_content(raw: dict) -> ContentConfig:
    defaults = ContentConfig()
    return ContentConfig(
        quote_url=_resolve(
            raw.get("quote_url"), str, default=defaults.quote_url
        ),
        image_api_url=_resolve(
            raw.get("image_api_url"), str, default=defaults.image_api_url
        ),
        image_api_key=_resolve(raw.get("image_api_key"), str) or None,
        image_model=_resolve(
            raw.get("image_model"), str, default=defaults.image_model
        ),
        image_size=_resolve(
            raw.get("image_size"), str, default=defaults.image_size
        ),
        timeout_seconds=_resolve(raw.get("timeout"), float, default=30.0),
    )


def _parse_control(raw: dict) -> ControlConfig:
    rate_limit = raw.get("rate_limit") or {}
    if not isinstance(rate_limit, dict):
        raise ConfigError("'control.rate_limit' must be a YAML mapping")

    pin_hash = _resolve(raw.get("pin_hash"), str) or None
    if pin_hash is None:
        pin = _resolve(raw.get("pin"), str) or None
        if pin is not None:
            SecretFilter.register_secret(pin)
            pin_hash = hash_pin(pin)
    if pin_hash is None:
        logger.warning(
            "No control PIN configured; mutating control endpoints are "
            "disabled"
        )

    return ControlConfig(
        enabled=_resolve(raw.get("enabled"), bool, default=True),
        host=_resolve(raw.get("host"), str, default="127.0.0.1"),
        port=_resolve(raw.get("port"), int, default=4000),
        pin_hash=pin_hash,
        rate_limit_requests=_resolve(
            rate_limit.get("requests"), int, default=30
        ),
        rate_limit_window_seconds=_resolve(
            rate_limit.get("window_seconds"), float, default=60.0
        ),
    )
