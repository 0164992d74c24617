# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""HTTP clients for the reply engine and the command content providers."""

from relaybot.providers.content import ImageProvider, QuoteProvider
from relaybot.providers.reply_engine import ChatCompletionEngine, ReplyEngine


__all__ = [
    "ChatCompletionEngine",
    "ImageProvider",
    "QuoteProvider",
    "ReplyEngine",
]
