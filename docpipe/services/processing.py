# =============================================================================
# Stage Processing - Document Extraction and Per-Page LLM Work
# =============================================================================
#
# DOCUMENT EXTRACTION (DocumentExtractionJob / PageExtractionJob):
#   1. Resolve the source file (explicit path, else original.pdf, else
#      original<ext of the uploaded filename>)
#   2. Convert .docx/.doc/.odt/.rtf to PDF (LibreOffice)
#   3. Rasterise every page to pages/page-NNN.png
#   4. Create one Page row per image (idempotent)
#   5. Enqueue one LlmProcessingJob per unfinished page (unique)
#
# PAGE PROCESSING (LlmProcessingJob):
#   extraction   runs when extraction_status is pending
#   translation  runs when extraction completed and translation pending
#   After translation completes, the page is handed to the embedding
#   supervisor and the document completion check runs.
#
#   Each AI call goes through the llm_api breaker and call_with_retry. A
#   stage that fails is marked error first, then StageFailedError is raised
#   so the queue discards the job instead of re-running a terminal stage.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from pathlib import Path

from docpipe.db.models import DocumentStatus, Page, StageStatus
from docpipe.models.jobs import LlmOptions
from docpipe.resilience.circuit_breaker import LLM_API
from docpipe.resilience.errors import (
    DocumentNotFoundError,
    PageNotFoundError,
    SourceFileNotFoundError,
    StageFailedError,
)
from docpipe.resilience.retry import call_with_retry
from docpipe.services import documents, state_machine
from docpipe.services.context import PipelineContext
from docpipe.services.converter import ensure_supported, needs_conversion
from docpipe.services.state_machine import Stage

logger = logging.getLogger(__name__)

# Stage resumable by a rescued job: pending, or left processing by a dead worker
_RUNNABLE = (StageStatus.PENDING, StageStatus.PROCESSING)


# ---------------------------------------------------------------------------
# Document extraction
# ---------------------------------------------------------------------------


def resolve_source(ctx: PipelineContext, document_id: uuid.UUID, file_path: str | None) -> Path:
    """
    Find the file to extract.

    Raises:
        DocumentNotFoundError: no such document.
        SourceFileNotFoundError: nothing usable on disk.
    """
    document = documents.get_document(document_id)
    if document is None:
        raise DocumentNotFoundError(document_id)

    if file_path:
        path = Path(file_path)
        if not path.is_file():
            raise SourceFileNotFoundError(document_id, str(path))
        return path

    path = ctx.storage.find_source(document_id, document.original_filename)
    if path is None:
        raise SourceFileNotFoundError(document_id)
    logger.info("Document %s: no file_path given, using stored %s", document_id, path.name)
    return path


def extract_document(
    ctx: PipelineContext, document_id: uuid.UUID | str, file_path: str | None = None
) -> list[Page]:
    """
    Turn an uploaded document into page rows and enqueue their LLM jobs.

    Returns the document's pages. A finished (completed/error) document is
    left alone and an empty list is returned.
    """
    document_id = documents.as_uuid(document_id)
    document = documents.require_document(document_id)
    if document.status in state_machine.TERMINAL_DOCUMENT_STATUSES:
        logger.info("Document %s already %s, skipping extraction", document_id, document.status.value)
        return []

    _begin_extraction(document_id, document.status)
    if documents.count_pages(document_id) > 0:
        return rasterize_document(ctx, document_id, None)

    source = resolve_source(ctx, document_id, file_path)
    ensure_supported(source)
    if needs_conversion(source):
        source = ctx.converter.convert_to_pdf(source, ctx.storage.document_dir(document_id))

    return rasterize_document(ctx, document_id, source)


def rasterize_document(
    ctx: PipelineContext, document_id: uuid.UUID | str, pdf_path: str | Path | None
) -> list[Page]:
    """
    Rasterise a PDF into page rows and enqueue one LLM job per unfinished page.

    When the document already has pages nothing is rasterised (and
    `pdf_path` may be None); only the missing LLM jobs are enqueued.
    """
    from docpipe.jobs.workers import enqueue_llm_processing

    document_id = documents.as_uuid(document_id)
    document = documents.require_document(document_id)
    _begin_extraction(document_id, document.status)

    if documents.count_pages(document_id) > 0:
        logger.info("Document %s already has pages, not rasterising again", document_id)
        pages = documents.list_pages(document_id)
    else:
        if pdf_path is None:
            raise SourceFileNotFoundError(document_id)
        ensure_supported(pdf_path)
        page_count = ctx.pdf_extractor.rasterize(pdf_path, ctx.storage.pages_dir(document_id))
        image_paths = [
            ctx.storage.page_image_relpath(document_id, number)
            for number in range(1, page_count + 1)
        ]
        pages = documents.create_pages(document_id, image_paths)

    pending = documents.pages_needing_llm(document_id)
    for page in pending:
        enqueue_llm_processing(page.id)
    logger.info(
        "Document %s: %d pages, %d LLM jobs enqueued", document_id, len(pages), len(pending)
    )
    return pages


def _begin_extraction(document_id: uuid.UUID, status: DocumentStatus) -> None:
    if status == DocumentStatus.UPLOADING:
        documents.set_document_status(document_id, DocumentStatus.QUEUED)
        status = DocumentStatus.QUEUED
    if status == DocumentStatus.QUEUED:
        documents.set_document_status(document_id, DocumentStatus.EXTRACTING)


# ---------------------------------------------------------------------------
# Page processing
# ---------------------------------------------------------------------------


def process_page(
    ctx: PipelineContext, page_id: uuid.UUID | str, opts: LlmOptions | None = None
) -> None:
    """
    Run the LLM stages a page still needs.

    Raises:
        PageNotFoundError: the page does not exist.
        StageFailedError: a stage ended in error (already recorded).
    """
    opts = opts or LlmOptions()
    page = documents.get_page(page_id)
    if page is None:
        raise PageNotFoundError(page_id)

    if page.extraction_status in _RUNNABLE:
        _extract_page(ctx, page, opts)
        page = documents.require_page(page.id)
    else:
        logger.debug(
            "Skipping extraction for page %d, status is %s",
            page.page_number, page.extraction_status.value,
        )

    if page.extraction_status == StageStatus.COMPLETED and page.translation_status in _RUNNABLE:
        _translate_page(ctx, page, opts)


def _extract_page(ctx: PipelineContext, page: Page, opts: LlmOptions) -> None:
    logger.info("Extracting text for page %d of document %s", page.page_number, page.document_id)
    documents.mark_document_processing(page.document_id)
    documents.update_page_stage(page.id, Stage.EXTRACTION, StageStatus.PROCESSING)

    image_path = ctx.storage.absolute(page.image_path)
    try:
        text = call_with_retry(
            lambda: ctx.ai_client.extract(image_path, model=opts.extraction_model),
            breakers=ctx.breakers,
            breaker=LLM_API,
            policy=ctx.retry,
            unit_id=page.id,
            kind="extraction",
        )
    except Exception as e:
        raise _stage_failed(page, Stage.EXTRACTION, e) from e

    documents.update_page_stage(
        page.id, Stage.EXTRACTION, StageStatus.COMPLETED, original_text=text
    )


def _translate_page(ctx: PipelineContext, page: Page, opts: LlmOptions) -> None:
    if not page.original_text or not page.original_text.strip():
        logger.warning(
            "Page %d has no content to translate, marking as completed", page.page_number
        )
        documents.update_page_stage(page.id, Stage.TRANSLATION, StageStatus.PROCESSING)
        documents.update_page_stage(
            page.id, Stage.TRANSLATION, StageStatus.COMPLETED, translated_text=""
        )
        documents.check_document_completion(page.document_id)
        return

    logger.info("Translating page %d of document %s", page.page_number, page.document_id)
    document = documents.require_document(page.document_id)
    documents.update_page_stage(page.id, Stage.TRANSLATION, StageStatus.PROCESSING)
    try:
        translated = call_with_retry(
            lambda: ctx.ai_client.translate(
                page.original_text, document.target_language, model=opts.translation_model
            ),
            breakers=ctx.breakers,
            breaker=LLM_API,
            policy=ctx.retry,
            unit_id=page.id,
            kind="translation",
        )
    except Exception as e:
        raise _stage_failed(page, Stage.TRANSLATION, e) from e

    documents.update_page_stage(
        page.id, Stage.TRANSLATION, StageStatus.COMPLETED, translated_text=translated
    )
    _request_embedding(ctx, page.id)
    documents.check_document_completion(page.document_id)


def _stage_failed(page: Page, stage: Stage, cause: BaseException) -> StageFailedError:
    """Record the stage as error and return the error for the caller to raise."""
    error = StageFailedError(page.id, stage.value, page.page_number, cause)
    logger.error("%s", error)
    documents.update_page_stage(page.id, stage, StageStatus.ERROR, error_message=str(error))
    if stage == Stage.EXTRACTION:
        # A failed extraction counts as a finished page for completion.
        documents.check_document_completion(page.document_id)
    return error


def _request_embedding(ctx: PipelineContext, page_id: uuid.UUID) -> None:
    if ctx.supervisor is not None and ctx.supervisor.running:
        ctx.supervisor.submit(page_id)
        return
    from docpipe.jobs.workers import enqueue_embedding

    enqueue_embedding(page_id)

