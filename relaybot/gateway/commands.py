# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Chat command parsing and dispatch.

Message text starting with a command sentinel (``!`` or ``/`` depending
on deployment) is resolved once by ``parse_command`` into a ``Command``
and dispatched through ``CommandTable`` by its kind.  Commands never
reach the reply engine.

Every handler is total: provider failures become fallback payloads and
unknown tokens become a normal "unknown command" reply.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from relaybot.gateway.memory import MemoryStore
from relaybot.gateway.transport import OutboundPayload
from relaybot.providers.content import ImageProvider, QuoteProvider


logger = logging.getLogger(__name__)

FALLBACK_QUOTE = "Keep going. You are amazing!"
PLACEHOLDER_IMAGE_URL = "https://via.placeholder.com/512?text=Image+Error"

FUN_FACTS = (
    '🤣 Fun fact: A group of flamingos is called a "flamboyance".',
    "🌍 Earth is the only planet not named after a god.",
    "🐶 Dogs can smell your mood!",
    "🍯 Honey never spoils!",
    "🧠 The human brain has 86 billion neurons.",
)


class CommandKind(Enum):
    """Closed set of chat commands."""

    HELP = "help"
    QUOTE = "quote"
    RESET = "reset"
    IMAGE = "image"
    FUN = "fun"
    UNKNOWN = "unknown"


#: Normalized token -> command kind.  Aliases map to the same kind.
COMMAND_TOKENS: dict[str, CommandKind] = {
    "help": CommandKind.HELP,
    "menu": CommandKind.HELP,
    "quote": CommandKind.QUOTE,
    "reset": CommandKind.RESET,
    "image": CommandKind.IMAGE,
    "img": CommandKind.IMAGE,
    "fun": CommandKind.FUN,
}


@dataclass(frozen=True)
class Command:
    """A parsed chat command.

    Attributes:
        kind: Resolved command.
        token: Normalized (lowercase) token as typed.
        argument: Remaining text after the token, original case.
    """

    kind: CommandKind
    token: str
    argument: str = ""


def parse_command(text: str, prefixes: Iterable[str]) -> Command | None:
    """Resolve message text into a command.

    Args:
        text: Raw message text.
        prefixes: Command sentinels.  The longest matching one wins.

    Returns:
        The parsed command, or None if the text is not a command.
    """
    stripped = text.strip()
    for prefix in sorted(prefixes, key=len, reverse=True):
        if prefix and stripped.startswith(prefix):
            body = stripped[len(prefix) :]
            break
    else:
        return None

    parts = body.split(maxsplit=1)
    token = parts[0].lower() if parts else ""
    argument = parts[1].strip() if len(parts) > 1 else ""
    return Command(
        kind=COMMAND_TOKENS.get(token, CommandKind.UNKNOWN),
        token=token,
        argument=argument,
    )


class CommandTable:
    """Dispatches parsed commands to their handlers.

    Handlers only touch the memory store (``reset``) and the external
    content providers (``quote``, ``image``).

    Args:
        memory: Conversation memory, cleared by ``reset``.
        quotes: Quote provider for ``quote``.
        images: Image provider for ``image``.
        prefix: Sentinel shown in help and error texts.
        branding: Suffix appended to every reply.  Empty disables it.
        rng: Random source for ``fun`` (injectable for tests).
    """

    def __init__(
        self,
        memory: MemoryStore,
        quotes: QuoteProvider,
        images: ImageProvider,
        *,
        prefix: str = "!",
        branding: str = "",
        rng: random.Random | None = None,
    ) -> None:
        self._memory = memory
        self._quotes = quotes
        self._images = images
        self.prefix = prefix
        self.branding = branding
        self._rng = rng or random.Random()
        self._handlers: dict[
            CommandKind, Callable[[str, Command], OutboundPayload]
        ] = {
            CommandKind.HELP: self._help,
            CommandKind.QUOTE: self._quote,
            CommandKind.RESET: self._reset,
            CommandKind.IMAGE: self._image,
            CommandKind.FUN: self._fun,
            CommandKind.UNKNOWN: self._unknown,
        }

    def _brand(self, text: str) -> str:
        if not self.branding:
            return text
        return f"{text}\n\n{self.branding}"

    def help_text(self) -> str:
        """Return the static usage text."""
        p = self.prefix
        return self._brand(
            "🧠 *Commands*\n"
            "\n"
            f"• *{p}help* – Show this menu\n"
            f"• *{p}quote* – Get a motivational quote\n"
            f"• *{p}img [prompt]* – Generate an image\n"
            f"• *{p}fun* – Random fun fact\n"
            f"• *{p}reset* – Clear your memory context\n"
            "• Chat freely – Talk to the AI"
        )

    def unknown_text(self) -> str:
        """Return the reply for unrecognized commands."""
        return self._brand(f"❓ Unknown command. Type *{self.prefix}help*")

    def execute(
        self, command: Command, conversation_id: str
    ) -> OutboundPayload:
        """Run a command and return the reply payload.  Never raises."""
        handler = self._handlers[command.kind]
        try:
            return handler(conversation_id, command)
        except Exception:
            logger.exception(
                "Command %r failed for %s", command.token, conversation_id
            )
            return OutboundPayload(text=self.unknown_text())

    def _help(self, conversation_id: str, command: Command) -> OutboundPayload:
        return OutboundPayload(text=self.help_text())

    def _quote(self, conversation_id: str, command: Command) -> OutboundPayload:
        try:
            quote = self._quotes.fetch()
        except Exception as e:
            logger.warning("Quote provider failed: %s", e)
            quote = FALLBACK_QUOTE
        return OutboundPayload(text=self._brand(f"💡 {quote}"))

    def _reset(self, conversation_id: str, command: Command) -> OutboundPayload:
        self._memory.clear(conversation_id)
        logger.info("Memory cleared for %s", conversation_id)
        return OutboundPayload(text=self._brand("🔄 Memory cleared."))

    def _image(self, conversation_id: str, command: Command) -> OutboundPayload:
        prompt = command.argument
        if not prompt:
            return OutboundPayload(
                text=self._brand(
                    f"🖼️ Usage: *{self.prefix}img [prompt]*, e.g. "
                    f"{self.prefix}img a lighthouse at dawn"
                )
            )
        try:
            url = self._images.generate(prompt)
        except Exception as e:
            logger.warning("Image provider failed: %s", e)
            url = PLACEHOLDER_IMAGE_URL
        return OutboundPayload(
            text=self._brand(f"🖼️ “{prompt}”"),
            image_url=url,
        )

    def _fun(self, conversation_id: str, command: Command) -> OutboundPayload:
        return OutboundPayload(text=self._brand(self._rng.choice(FUN_FACTS)))

    def _unknown(
        self, conversation_id: str, command: Command
    ) -> OutboundPayload:
        return OutboundPayload(text=self.unknown_text())
