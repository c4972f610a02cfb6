# =============================================================================
# Health Check - Dependency Probes and Breaker Auto-Reset
# =============================================================================
#
# CHECKS:
#   llm         llm_api breaker open → unhealthy without calling the service;
#               otherwise the AI client's liveness probe
#   embedding   same, through the embedding_api breaker
#   database    SELECT 1
#   filesystem  uploads directory exists and accepts a test file
#
# Each check is timed and emits `health_check.completed {check, ok,
# duration_ms}`; a run emits `health_check.all_completed {total, healthy,
# unhealthy}`. A check never raises: failures become CheckResult(ok=False).
#
# HealthMonitor keeps the last report. When the LLM check goes from failing
# to healthy it resets both breakers, so queued work does not wait out the
# rest of an open window after the service is back.
# =============================================================================

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import text

from docpipe.db.engine import get_sync_session
from docpipe.models.reports import CheckResult, HealthReport
from docpipe.resilience.circuit_breaker import EMBEDDING_API, LLM_API, CircuitMode
from docpipe.resilience.errors import describe
from docpipe.services import telemetry
from docpipe.services.context import PipelineContext

logger = logging.getLogger(__name__)

LLM_CHECK = "llm"
EMBEDDING_CHECK = "embedding"
DATABASE_CHECK = "database"
FILESYSTEM_CHECK = "filesystem"


class HealthChecker:
    """Runs the individual dependency checks against one pipeline context."""

    def __init__(self, context: PipelineContext):
        self.context = context

    def check_all(self) -> HealthReport:
        checks = {
            LLM_CHECK: self.check_llm(),
            EMBEDDING_CHECK: self.check_embedding(),
            DATABASE_CHECK: self.check_database(),
            FILESYSTEM_CHECK: self.check_filesystem(),
        }
        healthy = sum(1 for result in checks.values() if result.ok)
        telemetry.emit(
            "health_check.all_completed",
            total=len(checks), healthy=healthy, unhealthy=len(checks) - healthy,
        )
        return HealthReport(
            checked_at=datetime.now(timezone.utc),
            healthy=healthy == len(checks),
            checks=checks,
        )

    def check_llm(self) -> CheckResult:
        return self._timed(LLM_CHECK, lambda: self._probe_service(LLM_API))

    def check_embedding(self) -> CheckResult:
        return self._timed(EMBEDDING_CHECK, lambda: self._probe_service(EMBEDDING_API))

    def check_database(self) -> CheckResult:
        def probe():
            with get_sync_session() as session:
                session.execute(text("SELECT 1"))
            return True, None, {}

        return self._timed(DATABASE_CHECK, probe)

    def check_filesystem(self) -> CheckResult:
        def probe():
            root = self.context.storage.root
            if not root.is_dir():
                return False, f"Uploads directory does not exist: {root}", {}
            probe_file = root / f".health_check_{time.time_ns()}"
            try:
                probe_file.write_text("health check")
            except OSError as e:
                return False, f"Cannot write to uploads directory: {e}", {}
            probe_file.unlink(missing_ok=True)
            return True, None, {"path": str(root)}

        return self._timed(FILESYSTEM_CHECK, probe)

    def _probe_service(self, breaker: str):
        self.context.breakers.get(breaker).refresh()
        status = self.context.breakers.status(breaker)
        data = {"circuit": status.mode.value}
        if status.mode == CircuitMode.OPEN:
            return False, "circuit_open", data
        if not self.context.ai_client.available():
            return False, "service not available", data
        return True, None, data

    @staticmethod
    def _timed(name: str, probe: Callable[[], tuple[bool, str | None, dict[str, Any]]]) -> CheckResult:
        started = time.monotonic()
        try:
            ok, detail, data = probe()
        except Exception as e:
            ok, detail, data = False, describe(e), {}
        duration_ms = round((time.monotonic() - started) * 1000, 1)
        telemetry.emit("health_check.completed", check=name, ok=ok, duration_ms=duration_ms)
        if ok:
            logger.debug("Health check passed: %s (%.0fms)", name, duration_ms)
        else:
            logger.warning("Health check failed: %s - %s", name, detail)
        return CheckResult(name=name, ok=ok, duration_ms=duration_ms, detail=detail, data=data)


class HealthMonitor:
    """Runs checks, remembers the last report, auto-resets breakers on recovery."""

    def __init__(self, context: PipelineContext, auto_reset_circuits: bool = True):
        self.context = context
        self.checker = HealthChecker(context)
        self.auto_reset_circuits = auto_reset_circuits
        self.last_report: HealthReport | None = None
        self.check_count = 0
        self._lock = threading.Lock()

    def run(self) -> HealthReport:
        report = self.checker.check_all()
        with self._lock:
            previous = self.last_report
            self.last_report = report
            self.check_count += 1
        if self.auto_reset_circuits:
            self._maybe_reset_circuits(previous, report)
        return report

    def _maybe_reset_circuits(self, previous: HealthReport | None, current: HealthReport) -> None:
        if previous is None:
            return
        was_failing = not previous.checks[LLM_CHECK].ok
        if was_failing and current.checks[LLM_CHECK].ok:
            logger.info("LLM service recovered, resetting circuit breakers")
            self.context.breakers.reset(LLM_API)
            self.context.breakers.reset(EMBEDDING_API)

    def status(self) -> dict[str, Any]:
        with self._lock:
            report = self.last_report
            count = self.check_count
        return {
            "auto_reset_circuits": self.auto_reset_circuits,
            "last_check": report.checked_at if report else None,
            "last_results": report.model_dump() if report else None,
            "check_count": count,
            "circuit_breakers": {
                name: status.as_dict()
                for name, status in self.context.breakers.status_all().items()
            },
        }


_monitor: HealthMonitor | None = None


def get_health_monitor(context: PipelineContext) -> HealthMonitor:
    """Process-wide monitor; rebuilt when a different context is passed."""
    global _monitor
    if _monitor is None or _monitor.context is not context:
        from docpipe.config import settings

        _monitor = HealthMonitor(context, settings.health_check_auto_reset_circuits)
    return _monitor
