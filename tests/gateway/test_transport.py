# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for transport boundary types."""

import pytest

from relaybot.gateway.transport import CloseReason, OutboundPayload


class TestCloseReason:
    @pytest.mark.parametrize(
        ("code", "reason"),
        [
            (401, CloseReason.LOGGED_OUT),
            (408, CloseReason.CONNECTION_LOST),
            (428, CloseReason.CONNECTION_CLOSED),
            (440, CloseReason.CONNECTION_REPLACED),
            (515, CloseReason.RESTART_REQUIRED),
            (999, CloseReason.UNKNOWN),
            (None, CloseReason.UNKNOWN),
        ],
    )
    def test_from_status_code(
        self, code: int | None, reason: CloseReason
    ) -> None:
        assert CloseReason.from_status_code(code) is reason

    def test_only_logged_out_is_terminal(self) -> None:
        assert [r for r in CloseReason if r.is_terminal] == [
            CloseReason.LOGGED_OUT
        ]


class TestOutboundPayload:
    def test_describe_text(self) -> None:
        assert OutboundPayload(text="hi").describe() == "hi"

    def test_describe_image(self) -> None:
        payload = OutboundPayload(text="a fox", image_url="https://img/1.png")

        assert payload.is_image
        assert payload.describe() == "[image] https://img/1.png a fox"
        assert (
            OutboundPayload(image_url="https://img/1.png").describe()
            == "[image] https://img/1.png"
        )
