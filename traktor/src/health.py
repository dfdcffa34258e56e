from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics``.

    ``/readyz`` reports ready only once the Secret cache is seeded *and*
    this replica leads (or leader election is disabled), so standby
    replicas stay out of rotation.
    """

    ready_event: threading.Event
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _reply(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _healthz(self) -> None:
        self._reply(200, b"ok")

    def _leadz(self) -> None:
        if self._is_leader():
            self._reply(200, b"ok")
        else:
            self._reply(503, b"not leader")

    def _readyz(self) -> None:
        cache_synced = self.ready_event.is_set()
        leading = self._is_leader()
        body = f"synced={str(cache_synced).lower()} leader={str(leading).lower()}".encode()
        self._reply(200 if cache_synced and leading else 503, body)

    def _metrics(self) -> None:
        self._reply(200, generate_latest(), CONTENT_TYPE_LATEST)

    def do_GET(self) -> None:
        routes = {
            "/healthz": self._healthz,
            "/leadz": self._leadz,
            "/readyz": self._readyz,
            "/metrics": self._metrics,
        }
        route = routes.get(self.path.split("?", 1)[0])
        if route is None:
            self._reply(404, b"not found")
            return
        route()

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_probe_handler(
    ready: threading.Event, leader: threading.Event | None = None
) -> type[_ProbeHandler]:
    """Return a handler class with the readiness and leadership events bound.

    ``ThreadingHTTPServer`` instantiates handlers itself, so the events are
    attached as class attributes of a per-server subclass.
    """
    return type(
        "_BoundProbeHandler",
        (_ProbeHandler,),
        {"ready_event": ready, "leader_event": leader},
    )


def start_health_server(
    ready: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Serve probes and metrics from a daemon thread and return the server."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_probe_handler(ready, leader))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
