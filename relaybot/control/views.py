# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""HTML rendering for the operator dashboard.

Every user-supplied or message-derived string is escaped with
``html.escape`` before it reaches the page.
"""

import html

from relaybot.control.api import StatusReport
from relaybot.gateway.activity_log import LogEntry
from relaybot.gateway.session import PairingKind


_STYLES = """
body { font-family: system-ui, sans-serif; margin: 2em; color: #222; }
h1 { font-size: 1.4em; }
section { margin-bottom: 1.5em; }
.status { font-weight: bold; }
.status.open { color: #1a7f37; }
.status.degraded, .status.closed { color: #cf222e; }
.pairing { font-family: monospace; background: #f6f8fa; padding: 0.5em; }
form { margin: 0.5em 0; }
input, textarea { margin: 0.2em 0; }
table { border-collapse: collapse; }
td, th { border-bottom: 1px solid #ddd; padding: 0.3em 0.6em; }
th { text-align: left; }
.in { color: #0969da; }
.out { color: #8250df; }
.ok { color: #1a7f37; }
.error { color: #cf222e; }
"""

_PIN_FIELD = (
    '<input type="password" name="pin" placeholder="Operator PIN" required>'
)


def _page(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html>\n"
        '<html><head><meta charset="utf-8">'
        f"<title>{html.escape(title)}</title>"
        f"<style>{_STYLES}</style></head>"
        f"<body><h1>{html.escape(title)}</h1>{body}</body></html>"
    )


def render_pairing(report: StatusReport, reveal: bool = False) -> str:
    """Render the pending pairing artifact, or an empty string.

    Unless ``reveal`` is set only the kind of artifact is shown.
    """
    if report.pairing is None:
        return ""
    if report.pairing.kind is PairingKind.PAIR_CODE:
        label = "Pairing code (enter it on the phone)"
    else:
        label = "QR payload (render and scan it with the phone)"
    if not reveal:
        return f"<p>{label} pending.</p>"
    value = html.escape(report.pairing.value)
    return f'<p>{label}:</p><div class="pairing">{value}</div>'


def render_pairing_page(report: StatusReport) -> str:
    """Render the pairing artifact for an authenticated operator."""
    body = render_pairing(report, reveal=True) or "<p>No pairing pending</p>"
    return _page("Pairing", body + '<p><a href="/">Back</a></p>')


def render_dashboard(report: StatusReport, controls_enabled: bool) -> str:
    """Render the dashboard page.

    Args:
        report: Current session status.
        controls_enabled: Whether an operator PIN is configured.  When
            False the mutating forms are replaced by a notice.
    """
    status = report.status.value
    status_html = (
        f'<section><p>Status: <span class="status {status}">'
        f"{html.escape(status)}</span></p>"
        f"<p>{html.escape(report.message)}</p>"
        f"{render_pairing(report)}</section>"
    )
    if not controls_enabled:
        return _page(
            "Relaybot",
            status_html
            + '<p class="error">Controls are disabled: no operator PIN '
            "is configured.</p>",
        )

    pairing_form = ""
    if report.pairing is not None:
        pairing_form = (
            f'<form method="post" action="/pairing">{_PIN_FIELD}'
            '<button type="submit">Show pairing</button></form>'
        )
    controls = (
        "<section><h2>Bot</h2>"
        f'<form method="post" action="/start">{_PIN_FIELD}'
        '<button type="submit">Start</button></form>'
        f'<form method="post" action="/stop">{_PIN_FIELD}'
        '<button type="submit">Stop</button></form></section>'
        "<section><h2>Broadcast</h2>"
        f'<form method="post" action="/broadcast">{_PIN_FIELD}<br>'
        '<textarea name="message" rows="4" cols="60" required></textarea><br>'
        '<button type="submit">Send to everyone</button></form></section>'
        "<section><h2>Direct message</h2>"
        f'<form method="post" action="/send">{_PIN_FIELD}<br>'
        '<input type="text" name="to" placeholder="Conversation ID" '
        "required><br>"
        '<textarea name="text" rows="3" cols="60" required></textarea><br>'
        '<button type="submit">Send</button></form></section>'
        "<section><h2>Activity</h2>"
        f'<form method="post" action="/logs">{_PIN_FIELD}'
        '<input type="number" name="limit" value="50" min="1">'
        '<button type="submit">View log</button></form>'
        f'<form method="post" action="/logs/clear">{_PIN_FIELD}'
        '<button type="submit">Clear log</button></form></section>'
    )
    return _page("Relaybot", status_html + pairing_form + controls)


def render_log_page(entries: list[LogEntry]) -> str:
    """Render activity log entries as a table, newest first."""
    if not entries:
        rows = '<tr><td colspan="4">No activity recorded</td></tr>'
    else:
        rows = "".join(
            f'<tr class="{entry.direction.value}">'
            f"<td>{html.escape(entry.time)}</td>"
            f"<td>{html.escape(entry.direction.value)}</td>"
            f"<td>{html.escape(entry.conversation_id)}</td>"
            f"<td>{html.escape(entry.text)}</td></tr>"
            for entry in reversed(entries)
        )
    return _page(
        "Activity log",
        '<p><a href="/">Back</a></p>'
        "<table><tr><th>Time</th><th>Dir</th><th>Conversation</th>"
        f"<th>Text</th></tr>{rows}</table>",
    )


def render_result_page(message: str, ok: bool = True) -> str:
    """Render the outcome of a dashboard form submission."""
    css = "ok" if ok else "error"
    return _page(
        "Relaybot",
        f'<p class="{css}">{html.escape(message)}</p>'
        '<p><a href="/">Back</a></p>',
    )
