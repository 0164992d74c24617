# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Relaybot: a chat gateway with bounded per-conversation memory."""
