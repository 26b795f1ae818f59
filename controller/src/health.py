from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, ClassVar

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeState:
    """Events the probes report on.

    ``synced`` is set once the controller has listed every ``TracingConfig``
    and started its workers.  ``leader`` is ``None`` when leader election is
    disabled, in which case this replica always counts as leader.
    """

    synced: threading.Event
    leader: threading.Event | None = None

    @property
    def is_leader(self) -> bool:
        return self.leader is None or self.leader.is_set()

    @property
    def is_synced(self) -> bool:
        return self.synced.is_set()


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics``."""

    state: ClassVar[ProbeState]
    routes: ClassVar[dict[str, str]] = {
        "/healthz": "_healthz",
        "/readyz": "_readyz",
        "/leadz": "_leadz",
        "/metrics": "_metrics",
    }

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        route = self.routes.get(self.path.split("?", 1)[0])
        if route is None:
            self._respond(404)
            return
        getattr(self, route)()

    def _healthz(self) -> None:
        self._respond(200, b"ok")

    def _readyz(self) -> None:
        synced = self.state.is_synced
        leader = self.state.is_leader
        body = f"synced={str(synced).lower()} leader={str(leader).lower()}".encode()
        self._respond(200 if synced and leader else 503, body)

    def _leadz(self) -> None:
        if self.state.is_leader:
            self._respond(200, b"ok")
        else:
            self._respond(503, b"not leader")

    def _metrics(self) -> None:
        self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_probe_handler(state: ProbeState) -> type[_ProbeHandler]:
    """Return a handler class bound to *state*.

    ``ThreadingHTTPServer`` instantiates handlers without extra arguments,
    so the state is attached as a class attribute.
    """
    return type("BoundProbeHandler", (_ProbeHandler,), {"state": state})


def start_health_server(
    synced: threading.Event,
    port: int,
    leader: threading.Event | None = None,
    host: str = "0.0.0.0",  # noqa: S104
) -> ThreadingHTTPServer:
    """Serve the probes from a daemon thread and return the running server.

    Each request runs on its own thread, so a slow ``/metrics`` scrape never
    delays a liveness probe.
    """
    server = ThreadingHTTPServer((host, port), make_probe_handler(ProbeState(synced, leader)))
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on %s:%d", host, server.server_address[1])
    return server
