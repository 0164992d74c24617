# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Conversation router.

Decides what happens to each inbound message: silence, a welcome, a
command reply, or a reply-engine reply.  The router is registered as the
session manager's message handler and delivers replies back through the
session.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from typing import Protocol

from relaybot.gateway.activity_log import ActivityLog, Direction
from relaybot.gateway.commands import CommandTable, parse_command
from relaybot.gateway.memory import MemoryStore, Role, Turn
from relaybot.gateway.transport import InboundMessage, OutboundPayload
from relaybot.providers.reply_engine import ReplyEngine


logger = logging.getLogger(__name__)

FALLBACK_REPLY = "⚠️ Sorry, I could not think right now."


class MessageSender(Protocol):
    """Outbound side of the session used by the router."""

    @property
    def self_id(self) -> str | None: ...

    def send(self, conversation_id: str, payload: OutboundPayload) -> None:
        ...

    def react(
        self, conversation_id: str, message_ref: str, emoji: str
    ) -> None: ...


class ConversationRouter:
    """Routes inbound messages to commands or the reply engine.

    Messages of the same conversation are handled one at a time so each
    reply sees the history written by the previous one.

    Args:
        sender: Session used to deliver replies and reactions.
        memory: Per-conversation dialogue memory.
        activity_log: Log of inbound and outbound turns.
        engine: Reply engine for free-form messages.
        commands: Command table.
        command_prefixes: Sentinels marking a message as a command.
        branding: Suffix appended to engine replies.  Empty disables it.
        bot_id: Identity that must be mentioned in groups.  None uses
            the session's own identity.
        welcome_text: Greeting sent instead of a reply to the first
            message of a new conversation.  None disables it.
        processing_reaction: Emoji reacted on receipt.  None disables.
        done_reaction: Emoji reacted after a delivered reply.  None
            disables.
    """

    def __init__(
        self,
        sender: MessageSender,
        memory: MemoryStore,
        activity_log: ActivityLog,
        engine: ReplyEngine,
        commands: CommandTable,
        *,
        command_prefixes: Sequence[str] = ("!",),
        branding: str = "",
        bot_id: str | None = None,
        welcome_text: str | None = None,
        processing_reaction: str | None = "⏳",
        done_reaction: str | None = "✅",
    ) -> None:
        self._sender = sender
        self._memory = memory
        self._log = activity_log
        self._engine = engine
        self._commands = commands
        self.command_prefixes = tuple(command_prefixes)
        self.branding = branding
        self.bot_id = bot_id
        self.welcome_text = welcome_text
        self.processing_reaction = processing_reaction
        self.done_reaction = done_reaction
        self._locks_lock = threading.Lock()
        self._conversation_locks: dict[str, threading.Lock] = {}

    def _conversation_lock(self, conversation_id: str) -> threading.Lock:
        with self._locks_lock:
            if conversation_id not in self._conversation_locks:
                self._conversation_locks[conversation_id] = threading.Lock()
            return self._conversation_locks[conversation_id]

    def _addressed(self, message: InboundMessage) -> bool:
        if not message.is_group:
            return True
        bot_id = self.bot_id or self._sender.self_id
        if not bot_id:
            return False
        return bot_id in message.mentioned_ids

    def handle(self, message: InboundMessage) -> None:
        """Process one inbound message.

        Engine, provider and delivery failures are logged, never raised.
        """
        text = message.text.strip()
        if message.from_me or not text:
            return
        if not self._addressed(message):
            logger.debug(
                "Ignoring group message in %s without mention",
                message.conversation_id,
            )
            return

        with self._conversation_lock(message.conversation_id):
            self._handle_addressed(message, text)

    def _handle_addressed(self, message: InboundMessage, text: str) -> None:
        cid = message.conversation_id
        first_contact = not self._log.has_conversation(cid)
        self._log.append(cid, Direction.IN, text)
        logger.info("Message from %s (%d chars)", cid, len(text))

        if self.welcome_text and first_contact:
            self._deliver(cid, OutboundPayload(text=self.welcome_text))
            return

        self._react(message, self.processing_reaction)

        command = parse_command(text, self.command_prefixes)
        if command is not None:
            logger.info("Command %r from %s", command.token, cid)
            payload = self._commands.execute(command, cid)
        else:
            payload = OutboundPayload(text=self._reply(cid, text))

        if self._deliver(cid, payload):
            self._react(message, self.done_reaction)

    def _reply(self, conversation_id: str, text: str) -> str:
        """Generate the branded engine reply, updating memory."""
        self._memory.append(conversation_id, Turn(Role.USER, text))
        try:
            history = self._memory.messages(conversation_id)
            reply = self._engine.complete(history)
        except Exception as e:
            logger.warning(
                "Reply engine failed for %s: %s", conversation_id, e
            )
            reply = FALLBACK_REPLY
        self._memory.append(conversation_id, Turn(Role.ASSISTANT, reply))
        if not self.branding:
            return reply
        return f"{reply}\n\n{self.branding}"

    def _deliver(self, conversation_id: str, payload: OutboundPayload) -> bool:
        """Send a payload and log it.  Returns whether delivery succeeded."""
        try:
            self._sender.send(conversation_id, payload)
        except Exception as e:
            logger.warning("Failed to send reply to %s: %s", conversation_id, e)
            return False
        self._log.append(conversation_id, Direction.OUT, payload.describe())
        return True

    def _react(self, message: InboundMessage, emoji: str | None) -> None:
        if not emoji or not message.message_ref:
            return
        try:
            self._sender.react(
                message.conversation_id, message.message_ref, emoji
            )
        except Exception as e:
            logger.debug(
                "Reaction %s failed in %s: %s",
                emoji,
                message.conversation_id,
                e,
            )
