# =============================================================================
# Telemetry - Named Pipeline Events
# =============================================================================
#
# The pipeline reports noteworthy moments as named events with a flat dict
# of metadata. The names and fields are a stable contract for monitoring;
# how they are shipped (StatsD, OpenTelemetry, log scraping) is up to the
# handlers attached at startup.
#
# EVENTS:
#   retry.attempt           unit_id, type, attempt, delay_ms
#   retry.exhausted         unit_id, type, attempts
#   task.crashed            unit_id, supervisor, reason
#   job.completed           job_id, queue, worker, attempt, duration_ms
#   job.retry               job_id, queue, worker, attempt, delay_ms, error
#   job.discarded           job_id, queue, worker, attempt, error
#   circuit_breaker.*       name (+ reason on failure)
#   health_check.completed  check, ok, duration_ms
#   health_check.all_completed  total, healthy, unhealthy
#   sweeper.completed       orphaned_directories, stale_documents, dry_run
#
# Every event is also written to the module logger at DEBUG.
# =============================================================================

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict[str, Any]], None]

RETRY_ATTEMPT = "retry.attempt"
RETRY_EXHAUSTED = "retry.exhausted"
TASK_CRASHED = "task.crashed"

_handlers: dict[str, Handler] = {}
_lock = threading.Lock()


def attach(handler_id: str, handler: Handler) -> None:
    """Register `handler(event, metadata)`; replaces any handler with the same id."""
    with _lock:
        _handlers[handler_id] = handler


def detach(handler_id: str) -> None:
    with _lock:
        _handlers.pop(handler_id, None)


def emit(event: str, **metadata: Any) -> None:
    """
    Publish `event` to every attached handler.

    A failing handler is logged and skipped; telemetry never breaks the
    caller.
    """
    logger.debug("telemetry %s %s", event, metadata)
    with _lock:
        handlers = list(_handlers.items())
    for handler_id, handler in handlers:
        try:
            handler(event, metadata)
        except Exception:
            logger.exception("Telemetry handler %s failed for %s", handler_id, event)


class EventRecorder:
    """
    Collects events in memory. Handy as a handler in tests and scripts:

        recorder = EventRecorder()
        telemetry.attach("test", recorder)
        ...
        assert recorder.names() == ["retry.attempt", ...]
    """

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def __call__(self, event: str, metadata: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((event, dict(metadata)))

    def names(self) -> list[str]:
        with self._lock:
            return [name for name, _ in self.events]

    def of(self, event: str) -> list[dict[str, Any]]:
        with self._lock:
            return [meta for name, meta in self.events if name == event]
