from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _HealthHandler(BaseHTTPRequestHandler):
    """Liveness, readiness, leadership and Prometheus endpoints.

    ``/readyz`` reports whether every watch cache finished its initial list.
    Standby replicas are ready too; ``/leadz`` tells them apart.
    """

    ready_check: Callable[[], bool]
    leader_check: Callable[[], bool] | None

    def _is_leader(self) -> bool:
        return self.leader_check is None or self.leader_check()

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
            if self.ready_check():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/leadz":
            if self._is_leader():
                self._respond(200, b"leader=true")
            else:
                self._respond(503, b"leader=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    ready: Callable[[], bool], leader: Callable[[], bool] | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given checks.

    The stdlib server instantiates handlers itself, so the checks are bound
    as class attributes.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_check = staticmethod(ready)
        leader_check = staticmethod(leader) if leader is not None else None

    return _BoundHealthHandler


def start_health_server(
    ready: Callable[[], bool], port: int, leader: Callable[[], bool] | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, leader=leader)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", port)
    return server
