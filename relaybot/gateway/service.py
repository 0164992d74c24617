# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Gateway service: component wiring and command-line entry point.

Builds the credential store, activity log, memory, providers, router,
session manager and control server from a ``GatewayConfig``, starts
them, and blocks until shutdown.
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from pathlib import Path

from relaybot.control.api import ControlAPI
from relaybot.control.auth import RateLimiter
from relaybot.control.server import ControlServer
from relaybot.gateway.activity_log import ACTIVITY_LOG_FILE_NAME, ActivityLog
from relaybot.gateway.commands import CommandTable
from relaybot.gateway.config import GatewayConfig
from relaybot.gateway.credentials import FileCredentialStore
from relaybot.gateway.memory import MemoryStore
from relaybot.gateway.router import ConversationRouter
from relaybot.gateway.session import ReconnectPolicy, SessionManager
from relaybot.gateway.slack.transport import slack_transport_factory
from relaybot.gateway.transport import TransportFactory
from relaybot.logging import configure_logging
from relaybot.providers import (
    ChatCompletionEngine,
    ImageProvider,
    QuoteProvider,
    ReplyEngine,
)


logger = logging.getLogger(__name__)


class GatewayService:
    """Owns every gateway component and their lifecycle.

    Args:
        config: Gateway configuration.
        transport_factory: Transport factory override.  Defaults to the
            Slack transport built from ``config.transport``.
        engine: Reply engine override.  Defaults to a chat completion
            engine built from ``config.reply_engine``.
        threaded: Passed to the session manager.
    """

    def __init__(
        self,
        config: GatewayConfig,
        transport_factory: TransportFactory | None = None,
        engine: ReplyEngine | None = None,
        threaded: bool = True,
    ) -> None:
        self.config = config
        self._shutdown_event = threading.Event()
        self._stopped = False

        config.state_dir.mkdir(parents=True, exist_ok=True)
        self.credential_store = FileCredentialStore(config.state_dir)
        self.activity_log = ActivityLog(
            config.state_dir / ACTIVITY_LOG_FILE_NAME,
            max_entries=config.activity_log_max_entries,
        )
        self.memory = MemoryStore(
            max_turns=config.memory.max_turns,
            max_conversations=config.memory.max_conversations,
            idle_ttl_seconds=config.memory.idle_ttl_seconds,
        )

        reply = config.reply_engine
        self.engine = engine or ChatCompletionEngine(
            reply.api_url,
            reply.api_key,
            reply.model,
            max_tokens=reply.max_tokens,
            timeout_seconds=reply.timeout_seconds,
            system_prompt=reply.system_prompt,
        )
        content = config.content
        self.commands = CommandTable(
            self.memory,
            QuoteProvider(
                content.quote_url, timeout_seconds=content.timeout_seconds
            ),
            ImageProvider(
                content.image_api_url,
                content.image_api_key,
                content.image_model,
                size=content.image_size,
                timeout_seconds=content.timeout_seconds,
            ),
            prefix=config.bot.command_prefixes[0],
            branding=config.bot.branding,
        )

        self.session = SessionManager(
            transport_factory or slack_transport_factory(config.transport),
            self.credential_store,
            policy=ReconnectPolicy.from_config(config.session),
            phone_number=config.session.phone_number,
            credentials_timeout_seconds=(
                config.session.credentials_timeout_seconds
            ),
            threaded=threaded,
        )
        self.router = ConversationRouter(
            self.session,
            self.memory,
            self.activity_log,
            self.engine,
            self.commands,
            command_prefixes=config.bot.command_prefixes,
            branding=config.bot.branding,
            bot_id=config.bot.bot_id,
            welcome_text=config.bot.welcome_text,
            processing_reaction=config.bot.processing_reaction,
            done_reaction=config.bot.done_reaction,
        )
        self.session.set_message_handler(self.router.handle)

        self.api = ControlAPI(
            self.session, self.activity_log, branding=config.bot.branding
        )
        self.control: ControlServer | None = None
        if config.control.enabled:
            self.control = ControlServer(
                self.api,
                host=config.control.host,
                port=config.control.port,
                pin_hash=config.control.pin_hash,
                rate_limiter=RateLimiter(
                    config.control.rate_limit_requests,
                    config.control.rate_limit_window_seconds,
                ),
            )

    def start(self, block: bool = True) -> None:
        """Start the control server and the session.

        Args:
            block: Wait until ``stop()`` is called.
        """
        logger.info("Starting gateway service...")
        if self.control is not None:
            self.control.start()
        self.session.start()
        if not block:
            return
        try:
            while not self._shutdown_event.wait(timeout=1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted by user")

    def stop(self) -> None:
        """Stop the service gracefully."""
        if self._stopped:
            return
        self._stopped = True

        logger.info("Stopping gateway service...")
        self._shutdown_event.set()
        self.session.shutdown()
        if self.control is not None:
            self.control.stop()
        logger.info("Service stopped")


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments. If None, uses sys.argv[1:].

    Returns:
        Exit code (0=success, 1=config error, 2=startup, 3=runtime error).
    """
    parser = argparse.ArgumentParser(
        description="Relaybot Gateway",
        epilog="Answers chat messages and exposes an operator dashboard.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help=(
            "Path to relaybot.yaml config file"
            " (default: ~/.config/relaybot/relaybot.yaml)"
        ),
    )
    args = parser.parse_args(argv)

    configure_logging(
        level=logging.DEBUG if args.debug else logging.INFO,
        add_secret_filter=True,
    )

    logger.info("Relaybot gateway starting...")

    try:
        config = GatewayConfig.from_yaml(config_path=args.config)
    except Exception as e:
        logger.critical("Configuration error: %s", e)
        return 1

    try:
        service = GatewayService(config)
    except Exception as e:
        logger.exception("Failed to initialize service: %s", e)
        return 2

    def shutdown_handler(signum: int, frame: object) -> None:
        """Handle shutdown signals."""
        logger.info("Received signal %d, initiating shutdown...", signum)
        service.stop()

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    try:
        service.start()
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Fatal runtime error: %s", e)
        return 3
    finally:
        service.stop()
