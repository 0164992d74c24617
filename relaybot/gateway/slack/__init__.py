# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Slack transport for the gateway.

Provides a ``TransportClient`` over Slack Socket Mode:
- SlackTransport: one Socket Mode connection
- slack_transport_factory: ``TransportFactory`` bound to a config
"""
