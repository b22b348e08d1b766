from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import asdict
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest

from targetconfig.src.operator_client import OperatorCondition

StatusProvider = Callable[[], OperatorCondition | None]


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness, metrics, and the last published condition."""

    ready_event: threading.Event
    status_provider: StatusProvider

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            # Ready once the first reconcile cycle has finished, whatever its outcome.
            if self.ready_event.is_set():
                self._respond(200, b"synced=true")
            else:
                self._respond(503, b"synced=false")
        elif self.path == "/statusz":
            condition = self.status_provider()
            payload = {"condition": asdict(condition) if condition is not None else None}
            self._respond(200, json.dumps(payload, sort_keys=True).encode(), "application/json")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("targetconfig.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event,
    status_provider: StatusProvider,
) -> type[_HealthHandler]:
    """Bind state onto a handler class.

    The stdlib server instantiates handlers without arguments.
    """


    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    _BoundHealthHandler.status_provider = staticmethod(status_provider)  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    status_provider: StatusProvider = lambda: None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, status_provider)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
