# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# Database tests run against a throwaway SQLite file (configure_engine +
# create_all), never PostgreSQL. The pipeline context uses FakeAIClient and
# a zero-delay retry policy; the job queue runs in-process with no Celery
# notifier, so tests drive it with drain().
# =============================================================================

from pathlib import Path

import fitz
import pytest

from docpipe.config import settings
from docpipe.db.engine import configure_engine, create_all, dispose_engine
from docpipe.jobs.queue import JobQueue, set_job_queue
from docpipe.resilience.backoff import RetryPolicy
from docpipe.resilience.circuit_breaker import BreakerRegistry
from docpipe.services import telemetry
from docpipe.services.ai_client import FakeAIClient
from docpipe.services.context import PipelineContext, set_context
from docpipe.services.pdf_extractor import PyMuPDFExtractor
from docpipe.services.storage import ArtifactStore


def make_pdf(path: Path, pages: int = 3) -> Path:
    """Write a small PDF with one line of German text per page."""
    doc = fitz.open()
    for number in range(1, pages + 1):
        page = doc.new_page()
        page.insert_text((72, 72), f"Seite {number}: Guten Tag", fontsize=14)
    path.parent.mkdir(parents=True, exist_ok=True)
    doc.save(str(path))
    doc.close()
    return path


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db(tmp_path):
    configure_engine(f"sqlite:///{tmp_path / 'test.db'}")
    create_all()
    yield
    dispose_engine()


@pytest.fixture
def ai_client():
    return FakeAIClient()


@pytest.fixture
def ctx(tmp_path, ai_client):
    context = PipelineContext(
        ai_client=ai_client,
        storage=ArtifactStore(tmp_path / "uploads"),
        breakers=BreakerRegistry.from_settings(settings),
        pdf_extractor=PyMuPDFExtractor(dpi=72),
        retry=RetryPolicy.no_delay(),
    )
    set_context(context)
    yield context
    set_context(None)


@pytest.fixture
def job_queue(db, ctx):
    queue = JobQueue(settings, context=ctx)
    set_job_queue(queue)
    yield queue
    set_job_queue(None)


@pytest.fixture
def events():
    recorder = telemetry.EventRecorder()
    telemetry.attach("test-recorder", recorder)
    yield recorder
    telemetry.detach("test-recorder")


@pytest.fixture
def sample_pdf(tmp_path):
    return make_pdf(tmp_path / "incoming" / "sample.pdf", pages=3)
