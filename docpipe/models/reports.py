# =============================================================================
# Report Models - Pydantic V2 Schemas
# =============================================================================
#
# Structured results returned by maintenance and inspection operations
# (health checks, sweeps, queue drains, document progress). They are what
# Celery tasks return (via model_dump) and what scripts print.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class CheckResult(BaseModel):
    """Outcome of one health check."""

    name: str
    ok: bool
    duration_ms: float
    detail: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class HealthReport(BaseModel):
    checked_at: datetime
    healthy: bool
    checks: dict[str, CheckResult]

    @property
    def unhealthy(self) -> list[str]:
        return [name for name, result in self.checks.items() if not result.ok]


class SweepResult(BaseModel):
    orphaned_directories: int = 0
    stale_documents: int = 0
    dry_run: bool = False


class DrainResult(BaseModel):
    """Counts from JobQueue.drain(): one entry per executed job."""

    success: int = 0
    failure: int = 0
    discard: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failure + self.discard


class DocumentProgress(BaseModel):
    document_id: str
    status: str
    display_status: str
    total_pages: int
    progress: float = Field(ge=0.0, le=100.0)
    extraction: dict[str, int]
    translation: dict[str, int]
    embedding: dict[str, int]
