from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubernetes.client import CoordinationV1Api

from controller.src.config import ConfigError, load_config
from controller.src.controller import TracingController, build_controller
from controller.src.health import start_health_server
from controller.src.kube import KubeResourceStore, build_clients, load_kube_configuration
from controller.src.leader import LeaseLeaderElector
from controller.src.metrics import METRICS

LOGGER = logging.getLogger("controller.src.main")

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)"
            r"([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    """Mask credentials that may leak into log lines, such as exporter auth headers."""
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def set_log_level(level: str) -> None:
    logging.root.setLevel(getattr(logging, level.strip().upper(), logging.INFO))


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    set_log_level(level)


class LeaderControlledRunner:
    """Runs the controller loop on a thread only while this replica leads.

    ``on_started_leading`` and ``on_stopped_leading`` are the elector
    callbacks.  A controller thread that outlives ``stop_timeout_seconds``
    after losing leadership, or that exits on its own, sets
    ``shutdown_event`` so the process restarts rather than running two
    loops at once.
    """

    def __init__(
        self,
        controller: TracingController,
        shutdown_event: threading.Event,
        stop_timeout_seconds: float,
        leader_ready: threading.Event | None = None,
    ) -> None:
        self.controller = controller
        self.shutdown_event = shutdown_event
        self.stop_timeout_seconds = stop_timeout_seconds
        self.leader_ready = leader_ready
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._lock = threading.Lock()

    def _run_controller(self, stop: threading.Event) -> None:
        unexpected_exit = False
        try:
            self.controller.run_forever(shutdown_event=stop)
            unexpected_exit = not stop.is_set() and not self.shutdown_event.is_set()
            if unexpected_exit:
                LOGGER.error("Controller loop exited without a stop signal; terminating process")
        except Exception:
            unexpected_exit = True
            LOGGER.exception("Controller loop crashed")
        finally:
            if unexpected_exit:
                self.shutdown_event.set()

    def on_started_leading(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                LOGGER.error(
                    "Refusing to start the controller loop while the previous one is still running"
                )
                self.shutdown_event.set()
                return

            self._stop = threading.Event()
            if self.leader_ready is not None:
                self.leader_ready.set()
            self._thread = threading.Thread(
                target=self._run_controller,
                args=(self._stop,),
                name="controller-loop",
                daemon=True,
            )
            self._thread.start()

    def on_stopped_leading(self) -> None:
        with self._lock:
            if self.leader_ready is not None:
                self.leader_ready.clear()

            self.controller.request_stop()
            self._stop.set()
            if self._thread is None:
                return

            self._thread.join(timeout=self.stop_timeout_seconds)
            if self._thread.is_alive():
                LOGGER.error(
                    "Controller loop did not stop within %ss after losing leadership; "
                    "forcing process shutdown",
                    self.stop_timeout_seconds,
                )
                self.shutdown_event.set()
                return
            self._thread = None


def main() -> None:
    """Controller entrypoint: load config, start probes, and run the reconcile loop."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    try:
        settings = load_config()
    except ConfigError as exc:
        LOGGER.error("Invalid controller configuration: %s", exc)
        raise SystemExit(2) from exc
    set_log_level(settings.log_level)

    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    clients = build_clients()
    store = KubeResourceStore(
        core_api=clients.core,
        apps_api=clients.apps,
        custom_api=clients.custom,
        request_timeout_seconds=settings.request_timeout_seconds,
    )
    controller = build_controller(settings, store)

    election = settings.leader_election
    leader_ready = threading.Event() if election is not None else None
    health_server = start_health_server(
        synced=controller.ready,
        port=settings.health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    LOGGER.info(
        "Starting tracing controller (scope=%s, workers=%d, resync=%.0fs, leader election=%s)",
        controller.scope,
        settings.workers,
        settings.resync_seconds,
        "enabled" if election is not None else "disabled",
    )

    if election is not None:
        runner = LeaderControlledRunner(
            controller=controller,
            shutdown_event=shutdown_event,
            stop_timeout_seconds=election.controller_stop_timeout_seconds,
            leader_ready=leader_ready,
        )
        elector = LeaseLeaderElector.from_config(CoordinationV1Api(), election)
        elector.run(
            on_started_leading=runner.on_started_leading,
            on_stopped_leading=runner.on_stopped_leading,
            stop_event=shutdown_event,
        )
        runner.on_stopped_leading()
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
