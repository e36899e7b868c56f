from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import threading
from collections.abc import Sequence

from kubernetes.client import CoordinationV1Api

from dnssync.src.config import ControllerConfig, build_config_from_env
from dnssync.src.controller import build_controller
from dnssync.src.health import start_health_server
from dnssync.src.kube import KubernetesResourceClient, build_clients, load_kube_configuration
from dnssync.src.leader import LeadershipGate, LeaseLeaderElector, StaticLeadership, default_identity
from dnssync.src.metrics import METRICS
from dnssync.src.preflight import PreflightChecker, has_errors
from dnssync.src.reconciler import IngressDNSReconciler
from dnssync.src.retry import CleanupError

LOGGER = logging.getLogger(__name__)

RUNTIME_VERSION = "0.1.0"
MODES = ("controller", "cleanup", "preflight")
CONTROLLER_STOP_TIMEOUT_SECONDS = 45

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.handlers = [log_handler]
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="dnssync",
        description="Keep CoreDNS rewrite rules in sync with Ingress hosts.",
    )
    parser.add_argument(
        "--mode",
        choices=MODES,
        default=os.getenv("MODE", "controller").strip() or "controller",
        help="controller (default), cleanup (remove installed wiring) or preflight checks",
    )
    return parser.parse_args(argv)


def run_cleanup(resources: KubernetesResourceClient, config: ControllerConfig) -> int:
    LOGGER.info("Running cleanup of CoreDNS wiring in namespace %s", config.coredns.namespace)
    reconciler = IngressDNSReconciler(resources, config, StaticLeadership(True))
    try:
        reconciler.cleanup()
    except CleanupError as exc:
        LOGGER.error("Cleanup incomplete: %s", exc)
        return 1
    return 0


def run_preflight(resources: KubernetesResourceClient, config: ControllerConfig) -> int:
    checker = PreflightChecker(resources, config)
    results = checker.run_checks()
    checker.log_results(results)
    return 1 if has_errors(results) else 0


def run_controller(resources: KubernetesResourceClient, config: ControllerConfig) -> int:
    """Run watchers, the reconcile worker and (optionally) leader election until signalled."""
    elector: LeaseLeaderElector | None = None
    leadership: LeadershipGate
    if config.leader_election.enabled:
        elector = LeaseLeaderElector.from_config(CoordinationV1Api(), config.leader_election)
        leadership = elector
    else:
        LOGGER.info("Leader election disabled; this replica always reconciles")
        leadership = StaticLeadership(True)

    controller = build_controller(resources, config, leadership)
    health_server = start_health_server(
        ready=lambda: controller.ready,
        port=config.health_port,
        leader=(lambda: leadership.is_leader) if elector is not None else None,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        if elector is None:
            controller.run_forever(shutdown_event=shutdown_event)
        else:

            def _run_controller() -> None:
                try:
                    controller.run_forever(shutdown_event=shutdown_event)
                except Exception:
                    LOGGER.exception("Controller thread crashed")
                finally:
                    if not shutdown_event.is_set():
                        LOGGER.error("Controller loop exited without a stop signal; shutting down")
                        shutdown_event.set()

            controller_thread = threading.Thread(
                target=_run_controller, name="controller", daemon=True
            )
            controller_thread.start()
            elector.run(
                on_started_leading=controller.on_started_leading,
                on_stopped_leading=controller.on_stopped_leading,
                stop_event=shutdown_event,
            )
            controller.request_stop()
            controller_thread.join(timeout=CONTROLLER_STOP_TIMEOUT_SECONDS)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller thread did not stop within %ss", CONTROLLER_STOP_TIMEOUT_SECONDS
                )
    finally:
        health_server.shutdown()

    if controller.failed:
        LOGGER.error("Controller stopped after a watch authorization failure")
        return 1
    LOGGER.info("Controller stopped")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point: configure logging, load configuration and dispatch on ``--mode``."""
    args = parse_args(argv)
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
            "mode": args.mode,
        }
    )

    config = build_config_from_env(default_identity=default_identity())
    load_kube_configuration()
    resources = build_clients()

    if args.mode == "cleanup":
        return run_cleanup(resources, config)
    if args.mode == "preflight":
        return run_preflight(resources, config)
    return run_controller(resources, config)


if __name__ == "__main__":
    raise SystemExit(main())
