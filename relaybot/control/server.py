# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Control HTTP server.

Provides a WSGI application exposing the ``ControlAPI`` to operators:
an HTML dashboard plus JSON endpoints.

Mutating and log-reading endpoints require the operator PIN, given
either as an ``X-Operator-Pin`` header or as a ``pin`` (or ``password``)
form/JSON field, and are rate limited per client address.  Without a
configured PIN those endpoints are disabled.  The value of a pending
pairing artifact (QR payload or pairing code) is also PIN protected;
``/status`` reports only its kind unless a valid PIN header is sent.
"""

import json
import logging
import threading
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from werkzeug.wrappers.response import StartResponse

from werkzeug.exceptions import MethodNotAllowed, NotFound
from werkzeug.routing import Map, Rule
from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

from relaybot.control import views
from relaybot.control.api import BotNotRunningError, ControlAPI
from relaybot.control.auth import RateLimiter, verify_pin


logger = logging.getLogger(__name__)

_FORM_MIMETYPES = frozenset(
    {"application/x-www-form-urlencoded", "multipart/form-data"}
)

_DEFAULT_LOG_LIMIT = 50


class ControlServer:
    """WSGI control server.

    Runs in a background thread.

    Args:
        api: Control operations.
        host: Host to bind to.
        port: Port to bind to.
        pin_hash: Encoded operator PIN hash.  None disables protected
            endpoints.
        rate_limiter: Limiter for protected endpoints.  Defaults to 30
            requests per minute per client.
    """

    def __init__(
        self,
        api: ControlAPI,
        host: str = "127.0.0.1",
        port: int = 4000,
        pin_hash: str | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.api = api
        self.host = host
        self.port = port
        self._pin_hash = pin_hash
        self._limiter = rate_limiter or RateLimiter(30, 60.0)
        self._server: Any = None
        self._thread: threading.Thread | None = None

        self._url_map = Map(
            [
                Rule("/", endpoint="index", methods=["GET"]),
                Rule("/health", endpoint="health", methods=["GET"]),
                Rule("/status", endpoint="status", methods=["GET"]),
                Rule("/pairing", endpoint="pairing", methods=["GET", "POST"]),
                Rule("/start", endpoint="start", methods=["GET", "POST"]),
                Rule("/stop", endpoint="stop", methods=["GET", "POST"]),
                Rule("/logs", endpoint="logs", methods=["GET", "POST"]),
                Rule("/logs/clear", endpoint="logs_clear", methods=["POST"]),
                Rule("/broadcast", endpoint="broadcast", methods=["POST"]),
                Rule("/send", endpoint="send", methods=["POST"]),
            ]
        )

        self._endpoint_handlers = {
            "index": self.handle_index,
            "health": self.handle_health,
            "status": self.handle_status,
            "pairing": self.handle_pairing,
            "start": self.handle_start,
            "stop": self.handle_stop,
            "logs": self.handle_logs,
            "logs_clear": self.handle_logs_clear,
            "broadcast": self.handle_broadcast,
            "send": self.handle_send,
        }

    def start(self) -> None:
        """Start the control server in a background thread."""
        self._server = make_server(
            self.host,
            self.port,
            self._wsgi_app,
            threaded=True,
        )
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="ControlServer",
        )
        self._thread.start()
        logger.info(
            "Control server started at http://%s:%d/",
            self.host,
            self.port,
        )

    def stop(self) -> None:
        """Stop the control server."""
        if self._server:
            self._server.shutdown()
            self._server = None
            logger.info("Control server stopped")

    def _wsgi_app(
        self,
        environ: dict[str, Any],
        start_response: "StartResponse",
    ) -> Iterable[bytes]:
        """WSGI application entry point."""
        request = Request(environ)
        response = self._dispatch(request)
        return response(environ, start_response)

    def _dispatch(self, request: Request) -> Response:
        """Route request to the appropriate handler."""
        adapter = self._url_map.bind_to_environ(request.environ)
        try:
            endpoint, values = adapter.match()
            handler = self._endpoint_handlers[endpoint]
            return handler(request, **values)
        except NotFound:
            return Response("Not Found", status=404)
        except MethodNotAllowed:
            return Response("Method Not Allowed", status=405)
        except Exception:
            logger.exception("Error handling request %s", request.path)
            return Response("Internal Server Error", status=500)

    # -- Helpers -------------------------------------------------------------

    @staticmethod
    def _wants_html(request: Request) -> bool:
        """Whether the request is a dashboard form submission."""
        return request.method == "POST" and request.mimetype in _FORM_MIMETYPES

    @staticmethod
    def _field(request: Request, name: str) -> str:
        if request.is_json:
            data = request.get_json(silent=True)
            if not isinstance(data, dict):
                return ""
            value = data.get(name)
            return "" if value is None else str(value)
        return request.form.get(name, "")

    def _respond(
        self,
        request: Request,
        data: dict[str, Any],
        message: str,
        status: int = 200,
    ) -> Response:
        """Return an HTML result page for forms, JSON otherwise."""
        if self._wants_html(request):
            return Response(
                views.render_result_page(message, ok=status < 400),
                status=status,
                content_type="text/html; charset=utf-8",
            )
        return Response(
            json.dumps(data),
            status=status,
            content_type="application/json",
        )

    def _error(self, request: Request, status: int, message: str) -> Response:
        return self._respond(request, {"error": message}, message, status)

    def _authorize(self, request: Request) -> Response | None:
        """Check the operator PIN and rate limit.

        Returns:
            An error response, or None if the request may proceed.
        """
        if self._pin_hash is None:
            return self._error(
                request, 403, "Controls are disabled: no operator PIN"
            )
        client = request.remote_addr or "unknown"
        if not self._limiter.allow(client):
            logger.warning("Control rate limit exceeded by %s", client)
            return self._error(request, 429, "Too many requests")
        pin = (
            request.headers.get("X-Operator-Pin")
            or self._field(request, "pin")
            or self._field(request, "password")
        )
        if not verify_pin(pin, self._pin_hash):
            logger.warning(
                "Rejected control request %s from %s: bad PIN",
                request.path,
                client,
            )
            return self._error(request, 401, "Invalid PIN")
        return None

    # -- Handlers ------------------------------------------------------------

    def handle_index(self, request: Request) -> Response:
        return Response(
            views.render_dashboard(
                self.api.status(),
                controls_enabled=self._pin_hash is not None,
            ),
            content_type="text/html; charset=utf-8",
        )

    def handle_health(self, request: Request) -> Response:
        report = self.api.status()
        return Response(
            json.dumps({"status": "ok", "session": report.status.value}),
            content_type="application/json",
        )

    def handle_status(self, request: Request) -> Response:
        # The pairing value is enough to take over the account
        reveal = False
        if request.headers.get("X-Operator-Pin"):
            if denied := self._authorize(request):
                return denied
            reveal = True
        return Response(
            json.dumps(self.api.status().to_dict(reveal_pairing=reveal)),
            content_type="application/json",
        )

    def handle_pairing(self, request: Request) -> Response:
        if denied := self._authorize(request):
            return denied
        report = self.api.status()
        if self._wants_html(request):
            return Response(
                views.render_pairing_page(report),
                content_type="text/html; charset=utf-8",
            )
        return Response(
            json.dumps({"pairing": report.to_dict()["pairing"]}),
            content_type="application/json",
        )

    def handle_start(self, request: Request) -> Response:
        if denied := self._authorize(request):
            return denied
        started = self.api.start_bot()
        return self._respond(
            request,
            {"started": started, "status": self.api.status().to_dict()},
            "Bot started" if started else "Bot is already running",
        )

    def handle_stop(self, request: Request) -> Response:
        if denied := self._authorize(request):
            return denied
        stopped = self.api.stop_bot()
        return self._respond(
            request,
            {"stopped": stopped, "status": self.api.status().to_dict()},
            "Bot stopped" if stopped else "Bot was not running",
        )

    def handle_logs(self, request: Request) -> Response:
        if denied := self._authorize(request):
            return denied
        raw_limit = request.args.get("limit") or self._field(request, "limit")
        try:
            limit = int(raw_limit) if raw_limit else _DEFAULT_LOG_LIMIT
        except ValueError:
            return self._error(request, 400, f"Invalid limit: {raw_limit!r}")

        entries = self.api.list_recent_log(limit)
        if self._wants_html(request):
            return Response(
                views.render_log_page(entries),
                content_type="text/html; charset=utf-8",
            )
        return Response(
            json.dumps({"entries": [entry.to_dict() for entry in entries]}),
            content_type="application/json",
        )

    def handle_logs_clear(self, request: Request) -> Response:
        if denied := self._authorize(request):
            return denied
        removed = self.api.clear_log()
        return self._respond(
            request,
            {"removed": removed},
            f"Cleared {removed} log entries",
        )

    def handle_broadcast(self, request: Request) -> Response:
        if denied := self._authorize(request):
            return denied
        message = self._field(request, "message")
        try:
            sent = self.api.broadcast(message)
        except ValueError as e:
            return self._error(request, 400, str(e))
        except BotNotRunningError as e:
            return self._error(request, 503, str(e))
        return self._respond(
            request,
            {"sent": sent},
            f"Broadcast sent to {sent} conversation(s)",
        )

    def handle_send(self, request: Request) -> Response:
        if denied := self._authorize(request):
            return denied
        to = self._field(request, "to")
        text = self._field(request, "text")
        try:
            delivered = self.api.send_direct(to, text)
        except ValueError as e:
            return self._error(request, 400, str(e))
        except BotNotRunningError as e:
            return self._error(request, 503, str(e))
        if not delivered:
            return self._error(request, 502, f"Delivery to {to} failed")
        return self._respond(request, {"sent": True}, f"Message sent to {to}")
