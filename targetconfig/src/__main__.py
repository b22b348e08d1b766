from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from targetconfig.src.controller import build_controller_from_env, build_watchers, env_int
from targetconfig.src.health import start_health_server
from targetconfig.src.kube import build_clients, load_kube_configuration
from targetconfig.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|tls\.key)\b"
            r"\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
            re.DOTALL,
        ),
        "[REDACTED PRIVATE KEY]",
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
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, start watches and health server, run the worker."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("OPERATOR_IMAGE_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, custom_api = build_clients()

    controller = build_controller_from_env(core_api=core_api, custom_api=custom_api)
    workers = env_int("WORKERS", 1, minimum=1)
    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    watch_stop_timeout_seconds = env_int("WATCH_STOP_TIMEOUT_SECONDS", 10, minimum=1)
    health_server = start_health_server(
        ready=controller.ready,
        port=health_port,
        status_provider=lambda: controller.last_condition,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    watchers = build_watchers(controller.queue, core_api, controller.operator_client)
    watch_threads: list[threading.Thread] = []
    for watcher in watchers:
        thread = threading.Thread(
            target=watcher.run_forever,
            kwargs={"shutdown_event": shutdown_event},
            name=f"watch-{watcher.source}",
            daemon=True,
        )
        thread.start()
        watch_threads.append(thread)

    try:
        controller.run_forever(shutdown_event=shutdown_event, workers=workers)
    finally:
        for watcher in watchers:
            watcher.request_stop()
        for thread in watch_threads:
            thread.join(timeout=watch_stop_timeout_seconds)
            if thread.is_alive():
                logger.warning(
                    "Watch thread %s did not stop within %ss",
                    thread.name,
                    watch_stop_timeout_seconds,
                )
        health_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
