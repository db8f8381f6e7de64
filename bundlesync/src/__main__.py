from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from bundlesync.src.config import load_config
from bundlesync.src.controller import NamespaceController, build_controller
from bundlesync.src.health import HealthState, start_health_server
from bundlesync.src.kube import build_clients, load_kube_configuration
from bundlesync.src.leader import LeaseLeaderElector
from bundlesync.src.metrics import METRICS
from bundlesync.src.provider import directory_data_provider

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(-----BEGIN [A-Z ]*PRIVATE KEY-----)[\s\S]*?(-----END [A-Z ]*PRIVATE KEY-----)"
        ),
        r"\1[REDACTED]\2",
    ),
)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects.

    A ``namespace`` passed through ``extra=`` becomes a top-level field so
    log queries can filter one namespace's reconcile history.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        namespace = getattr(record, "namespace", None)
        if namespace:
            log_entry["namespace"] = namespace
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


def run_with_leader_election(
    controller: NamespaceController,
    elector: LeaseLeaderElector,
    shutdown_event: threading.Event,
    leader_ready: threading.Event,
    stop_timeout_seconds: float,
) -> None:
    """Run the controller loops only while this replica holds the lease.

    Each acquisition starts a fresh :meth:`NamespaceController.run_forever`
    on a worker thread (which repeats the startup sync); each loss stops it
    and waits for in-flight reconciliations to finish. A controller thread
    that exits on its own (e.g. RBAC denial) or cannot be stopped in time
    shuts the process down so the pod restarts cleanly.
    """
    state_lock = threading.Lock()
    controller_thread: threading.Thread | None = None
    controller_stop = threading.Event()

    def _run_controller(stop: threading.Event) -> None:
        try:
            controller.run_forever(shutdown_event=stop)
        except Exception:
            LOGGER.exception("Controller thread crashed")
            shutdown_event.set()
            return
        if not stop.is_set() and not shutdown_event.is_set():
            LOGGER.error("Controller thread exited without a stop signal; terminating process")
            shutdown_event.set()

    def on_started_leading() -> None:
        nonlocal controller_thread, controller_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error("Previous controller run is still active; refusing to start another")
                shutdown_event.set()
                return
            controller_stop = threading.Event()
            leader_ready.set()
            controller_thread = threading.Thread(
                target=_run_controller,
                args=(controller_stop,),
                name="bundlesync-controller",
                daemon=True,
            )
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            leader_ready.clear()
            controller_stop.set()
            controller.request_stop()
            if controller_thread is None:
                return
            controller_thread.join(timeout=stop_timeout_seconds)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller did not stop within %ss after losing leadership; shutting down",
                    stop_timeout_seconds,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> None:
    """Controller entrypoint: configure logging, build the controller and run it until signalled."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    config = load_config()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, coordination_api = build_clients()
    controller = build_controller(
        config=config,
        core_api=core_api,
        desired_data=directory_data_provider(config.bundle_source_dir),
    )

    election = config.leader_election
    leader_ready = threading.Event() if election.enabled else None
    health_server = start_health_server(
        HealthState(
            ready=controller.ready,
            leader=leader_ready,
            queue_depth=lambda: len(controller.queue),
        ),
        port=config.health_port,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        if leader_ready is not None:
            run_with_leader_election(
                controller=controller,
                elector=LeaseLeaderElector.from_config(coordination_api, election),
                shutdown_event=shutdown_event,
                leader_ready=leader_ready,
                stop_timeout_seconds=controller.stop_timeout_seconds,
            )
        else:
            controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
