# =============================================================================
# End-to-End Tests - Upload to Embeddings
# =============================================================================
#
# A three-page PDF goes through every stage: extraction job, one LLM job per
# page, and embeddings either through the durable queue or through the
# embedding supervisor's pool.
# =============================================================================

from docpipe.config import settings
from docpipe.db.models import DocumentStatus, JobState, StageStatus
from docpipe.resilience.errors import ServiceTimeoutError
from docpipe.services import documents
from docpipe.workers.supervisor import embedding_supervisor


def _assert_fully_processed(document_id):
    document = documents.get_document(document_id)
    assert document.status == DocumentStatus.COMPLETED
    assert document.error_message is None
    pages = documents.list_pages(document_id)
    assert len(pages) == 3
    for page in pages:
        assert page.extraction_status == StageStatus.COMPLETED
        assert page.translation_status == StageStatus.COMPLETED
        assert page.embedding_status == StageStatus.COMPLETED
        assert page.translated_text.startswith("[en] ")
        assert len(page.embedding) == settings.embedding_dimensions


class TestPipeline:
    """Whole-pipeline runs."""

    def test_embeddings_through_queue(self, job_queue, ctx, sample_pdf):
        document = documents.upload_document(sample_pdf, "sample.pdf", store=ctx.storage)
        result = job_queue.drain()

        # 1 extraction + 3 LLM + 3 embedding jobs
        assert result.success == 7
        assert result.failure == result.discard == 0
        _assert_fully_processed(document.id)
        assert job_queue.counts()["completed"] == 7

    def test_embeddings_through_supervisor(self, job_queue, ctx, sample_pdf):
        supervisor = embedding_supervisor(ctx, max_workers=1)
        supervisor.start()
        ctx.supervisor = supervisor
        try:
            document = documents.upload_document(sample_pdf, "sample.pdf", store=ctx.storage)
            assert job_queue.drain().success == 4
            assert supervisor.wait_idle(timeout=30)
            stats = supervisor.stats()
        finally:
            supervisor.stop(timeout=30)

        assert (stats.submitted, stats.succeeded) == (3, 3)
        _assert_fully_processed(document.id)
        assert job_queue.list_jobs(states=[JobState.AVAILABLE]) == []

    def test_transient_outage_is_absorbed(self, job_queue, ctx, ai_client, sample_pdf, events):
        ai_client.fail_next("translate", ServiceTimeoutError(), times=2)
        ai_client.fail_next("embed", ServiceTimeoutError(), times=1)
        document = documents.upload_document(sample_pdf, "sample.pdf", store=ctx.storage)
        job_queue.drain()

        _assert_fully_processed(document.id)
        assert len(events.of("retry.attempt")) == 3
        assert events.of("retry.exhausted") == []
