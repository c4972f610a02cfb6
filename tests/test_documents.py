# =============================================================================
# Integration Tests - Document Flows
# =============================================================================
#
# Upload, delete, explicit re-runs, progress and startup recovery, driven
# through the documents service and the in-process job queue.
# =============================================================================

import pytest

from docpipe.config import EMBEDDING_QUEUE, LLM_PROCESSING_QUEUE, PDF_EXTRACTION_QUEUE
from docpipe.db.models import DocumentStatus, JobState, StageStatus
from docpipe.resilience.errors import ServiceError, ValidationError
from docpipe.services import documents
from docpipe.services.state_machine import Stage


def _processed(job_queue, ctx, sample_pdf):
    """Upload the sample and run extraction plus LLM processing."""
    document = documents.upload_document(sample_pdf, "sample.pdf", store=ctx.storage)
    job_queue.drain(PDF_EXTRACTION_QUEUE)
    job_queue.drain(LLM_PROCESSING_QUEUE, with_scheduled=True)
    return document


class TestUpload:
    """Tests for upload_document()."""

    def test_stores_file_and_enqueues_extraction(self, job_queue, ctx, sample_pdf):
        document = documents.upload_document(sample_pdf, "sample.pdf", store=ctx.storage)
        assert document.title == "sample"
        assert document.status == DocumentStatus.QUEUED
        assert (ctx.storage.document_dir(document.id) / "original.pdf").is_file()
        (job,) = job_queue.list_jobs(PDF_EXTRACTION_QUEUE)
        assert job.worker == "DocumentExtractionJob"
        assert job.args["document_id"] == str(document.id)

    def test_accepts_raw_bytes(self, job_queue, ctx, sample_pdf):
        document = documents.upload_document(
            sample_pdf.read_bytes(), "Handbuch.PDF", title="Handbuch", target_language="fr",
            store=ctx.storage,
        )
        assert document.target_language == "fr"
        assert (ctx.storage.document_dir(document.id) / "original.pdf").is_file()

    def test_rejects_unsupported_format(self, job_queue, ctx):
        with pytest.raises(ValidationError):
            documents.upload_document(b"hello", "notes.txt", store=ctx.storage)
        assert documents.list_documents() == []


class TestDelete:
    """Tests for delete_document()."""

    def test_removes_rows_files_and_pending_jobs(self, job_queue, ctx, sample_pdf):
        document = documents.upload_document(sample_pdf, "sample.pdf", store=ctx.storage)
        job_queue.drain(PDF_EXTRACTION_QUEUE)
        assert job_queue.counts(LLM_PROCESSING_QUEUE)["available"] == 3

        assert documents.delete_document(document.id, store=ctx.storage) is True
        assert documents.get_document(document.id) is None
        assert documents.count_pages(document.id) == 0
        assert not ctx.storage.document_dir(document.id).exists()
        assert job_queue.counts(LLM_PROCESSING_QUEUE)["cancelled"] == 3

    def test_missing_document(self, job_queue, ctx):
        import uuid

        assert documents.delete_document(uuid.uuid4(), store=ctx.storage) is False


class TestRerun:
    """Tests for rerun_page()."""

    def test_rerun_failed_translation_reopens_document(self, job_queue, ctx, ai_client, sample_pdf):
        ai_client.fail_next("translate", ServiceError("bad request", 400))
        document = _processed(job_queue, ctx, sample_pdf)
        failed = [
            p for p in documents.list_pages(document.id)
            if p.translation_status == StageStatus.ERROR
        ]
        assert len(failed) == 1
        assert documents.get_document(document.id).status == DocumentStatus.PROCESSING

        documents.rerun_page(failed[0].id, [Stage.TRANSLATION])
        job_queue.drain(LLM_PROCESSING_QUEUE)

        page = documents.get_page(failed[0].id)
        assert page.translation_status == StageStatus.COMPLETED
        assert page.error_message is None
        assert documents.get_document(document.id).status == DocumentStatus.COMPLETED

    def test_rerun_extraction_on_completed_document(self, job_queue, ctx, ai_client, sample_pdf):
        document = _processed(job_queue, ctx, sample_pdf)
        assert documents.get_document(document.id).status == DocumentStatus.COMPLETED
        page = documents.list_pages(document.id)[0]

        documents.rerun_page(page.id, ["extraction"], {"extraction_model": "vision-x"})
        assert documents.get_document(document.id).status == DocumentStatus.PROCESSING
        job_queue.drain(LLM_PROCESSING_QUEUE)

        assert ("extract", "vision-x") in ai_client.models
        assert documents.get_document(document.id).status == DocumentStatus.COMPLETED

    def test_rerun_embedding_enqueues_embedding_job(self, job_queue, ctx, ai_client, sample_pdf):
        document = _processed(job_queue, ctx, sample_pdf)
        page = documents.list_pages(document.id)[0]
        job_queue.drain(EMBEDDING_QUEUE)

        documents.rerun_page(page.id, [Stage.EMBEDDING])
        assert documents.get_page(page.id).embedding is None
        assert job_queue.drain(EMBEDDING_QUEUE).success == 1
        assert documents.get_page(page.id).embedding_status == StageStatus.COMPLETED

    def test_needs_a_stage(self, job_queue, ctx, sample_pdf):
        document = _processed(job_queue, ctx, sample_pdf)
        page = documents.list_pages(document.id)[0]
        with pytest.raises(ValueError):
            documents.rerun_page(page.id, [])


class TestProgress:
    """Tests for document_progress()."""

    def test_progress_while_processing(self, job_queue, ctx, sample_pdf):
        document = documents.upload_document(sample_pdf, "sample.pdf", store=ctx.storage)
        job_queue.drain(PDF_EXTRACTION_QUEUE)
        progress = documents.document_progress(document.id)
        assert progress.total_pages == 3
        assert progress.progress == 0.0
        assert progress.display_status == "extracting"
        assert progress.extraction["pending"] == 3

    def test_progress_when_done(self, job_queue, ctx, sample_pdf):
        document = _processed(job_queue, ctx, sample_pdf)
        progress = documents.document_progress(document.id)
        assert progress.status == "completed"
        assert progress.progress == 100.0
        assert progress.translation == {"pending": 0, "processing": 0, "completed": 3, "error": 0}


class TestRecovery:
    """Tests for recover_incomplete_documents()."""

    def test_requeues_lost_jobs(self, job_queue, ctx, sample_pdf):
        first = documents.upload_document(sample_pdf, "sample.pdf", store=ctx.storage)
        second = documents.upload_document(sample_pdf, "second.pdf", store=ctx.storage)
        job_queue.drain(PDF_EXTRACTION_QUEUE)
        documents.upload_document(sample_pdf, "third.pdf", store=ctx.storage)

        # Simulate a restart that lost every queued job
        for job in job_queue.list_jobs(states=[JobState.AVAILABLE]):
            job_queue.cancel(job.id)

        recovered = documents.recover_incomplete_documents()
        assert len(recovered) == 3
        assert first.id in recovered and second.id in recovered
        assert job_queue.counts(PDF_EXTRACTION_QUEUE)["available"] == 1
        assert job_queue.counts(LLM_PROCESSING_QUEUE)["available"] == 6

    def test_pending_jobs_are_not_duplicated(self, job_queue, ctx, sample_pdf):
        documents.upload_document(sample_pdf, "sample.pdf", store=ctx.storage)
        job_queue.drain(PDF_EXTRACTION_QUEUE)
        documents.recover_incomplete_documents()
        assert job_queue.counts(LLM_PROCESSING_QUEUE)["available"] == 3

    def test_finished_documents_are_skipped(self, job_queue, ctx, sample_pdf):
        _processed(job_queue, ctx, sample_pdf)
        assert documents.recover_incomplete_documents() == []

    def test_requeues_only_unfinished_pages(self, job_queue, ctx, ai_client, sample_pdf):
        document = documents.upload_document(sample_pdf, "sample.pdf", store=ctx.storage)
        job_queue.drain(PDF_EXTRACTION_QUEUE)

        # One page translated, one with a terminal translation error
        assert job_queue.execute(job_queue.fetch_next(LLM_PROCESSING_QUEUE)) == "success"
        ai_client.fail_next("translate", ServiceError("bad request", 400))
        assert job_queue.execute(job_queue.fetch_next(LLM_PROCESSING_QUEUE)) == "discard"
        for job in job_queue.list_jobs(LLM_PROCESSING_QUEUE, states=[JobState.AVAILABLE]):
            job_queue.cancel(job.id)

        assert documents.recover_incomplete_documents() == [document.id]
        assert documents.recover_incomplete_documents() == [document.id]

        (job,) = job_queue.list_jobs(LLM_PROCESSING_QUEUE, states=[JobState.AVAILABLE])
        untouched = [
            page for page in documents.list_pages(document.id)
            if page.translation_status == StageStatus.PENDING
        ]
        assert [str(page.id) for page in untouched] == [job.args["page_id"]]

    def test_document_with_only_finished_pages_is_completed(self, job_queue, ctx):
        document = documents.create_document("Handbuch", "handbuch.pdf")
        documents.set_document_status(document.id, DocumentStatus.QUEUED)
        documents.set_document_status(document.id, DocumentStatus.EXTRACTING)
        (page,) = documents.create_pages(document.id, [f"documents/{document.id}/pages/page-001.png"])
        documents.update_page_stage(page.id, Stage.EXTRACTION, StageStatus.PROCESSING)
        documents.update_page_stage(page.id, Stage.EXTRACTION, StageStatus.ERROR)

        assert documents.recover_incomplete_documents() == []
        assert documents.get_document(document.id).status == DocumentStatus.COMPLETED
        assert job_queue.list_jobs(LLM_PROCESSING_QUEUE) == []
