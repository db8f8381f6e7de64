from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthState:
    """Signals the probes report on.

    ``ready`` is set once both watches have listed; ``leader`` is ``None``
    when leader election is disabled (every replica counts as leader).
    ``queue_depth`` reports pending namespaces in the readiness body.
    """

    ready: threading.Event
    leader: threading.Event | None = None
    queue_depth: Callable[[], int] | None = None

    def is_leader(self) -> bool:
        return self.leader is None or self.leader.is_set()


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and Prometheus ``/metrics``."""

    state: HealthState

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness(self) -> tuple[int, bytes]:
        ready = self.state.ready.is_set()
        leader = self.state.is_leader()
        parts = [f"ready={str(ready).lower()}", f"leader={str(leader).lower()}"]
        if self.state.queue_depth is not None:
            parts.append(f"queue={self.state.queue_depth()}")
        return (200 if ready and leader else 503), " ".join(parts).encode()

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/leadz":
            if self.state.is_leader():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif self.path == "/readyz":
            self._respond(*self._readiness())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(
    state: HealthState, port: int, host: str = "0.0.0.0"  # noqa: S104
) -> ThreadingHTTPServer:
    """Start the probe/metrics server on a daemon thread and return it for shutdown."""
    handler_class = type("_BoundHealthHandler", (_HealthHandler,), {"state": state})
    server = ThreadingHTTPServer((host, port), handler_class)
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="bundlesync-health", daemon=True).start()
    LOGGER.info("Health server listening on %s:%d", host, server.server_address[1])
    return server
