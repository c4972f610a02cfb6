# =============================================================================
# Pipeline Context - Collaborators Injected into Stage Jobs
# =============================================================================
#
# Stage jobs never reach for globals: everything with side effects outside
# the database (AI service, rasteriser, converter, filesystem, breakers,
# retry sleep, embedding supervisor) arrives through a PipelineContext.
#
#   Celery worker process → build_context(settings) once, at process init
#   Tests                 → PipelineContext(ai_client=FakeAIClient(), ...)
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from docpipe.config import Settings
from docpipe.resilience.backoff import RetryPolicy
from docpipe.resilience.circuit_breaker import BreakerRegistry, BreakerStore, MemoryBreakerStore
from docpipe.services.ai_client import AIClient, create_ai_client
from docpipe.services.converter import DocumentConverter, LibreOfficeConverter
from docpipe.services.pdf_extractor import PdfExtractor, PyMuPDFExtractor
from docpipe.services.storage import ArtifactStore

if TYPE_CHECKING:
    from docpipe.workers.supervisor import TaskSupervisor

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    ai_client: AIClient
    storage: ArtifactStore
    breakers: BreakerRegistry
    pdf_extractor: PdfExtractor = field(default_factory=PyMuPDFExtractor)
    converter: DocumentConverter = field(default_factory=LibreOfficeConverter)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    # Set once the embedding supervisor is running; None means embeddings
    # after translation go through the durable queue instead.
    supervisor: TaskSupervisor | None = None


def build_breaker_store(settings: Settings) -> BreakerStore:
    if settings.breaker_store == "memory":
        return MemoryBreakerStore()
    if settings.breaker_store != "database":
        raise ValueError(f"Unknown breaker_store: {settings.breaker_store!r}")
    from docpipe.resilience.breaker_store import DatabaseBreakerStore

    return DatabaseBreakerStore()


def build_context(settings: Settings) -> PipelineContext:
    return PipelineContext(
        ai_client=create_ai_client(settings.ai_client),
        storage=ArtifactStore(settings.uploads_dir),
        breakers=BreakerRegistry.from_settings(settings, store=build_breaker_store(settings)),
        pdf_extractor=PyMuPDFExtractor(dpi=settings.pdf_dpi),
        converter=LibreOfficeConverter(settings.soffice_path, settings.conversion_timeout_seconds),
        retry=RetryPolicy.from_settings(settings),
    )


_context: PipelineContext | None = None


def get_context() -> PipelineContext:
    """Lazy singleton built from the global settings."""
    global _context
    if _context is None:
        from docpipe.config import settings

        _context = build_context(settings)
        logger.info("Pipeline context built (ai_client=%s)", settings.ai_client)
    return _context


def set_context(context: PipelineContext | None) -> None:
    """Install (or clear, with None) the process-wide context."""
    global _context
    _context = context
