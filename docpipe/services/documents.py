# =============================================================================
# Documents Service - Persistence for Documents and Pages
# =============================================================================
#
# Every function opens its own short session (get_sync_session) and returns
# detached ORM objects. No session is ever held across an external AI call.
#
# Status changes go through services/state_machine.py, under a row lock on
# PostgreSQL (SELECT ... FOR UPDATE) so concurrent page jobs cannot race on
# the document status.
#
# FLOWS (supplementing the stage jobs):
#   upload_document()               create record → store file → enqueue
#   delete_document()               cancel jobs → delete rows → delete files
#   rerun_page()                    reset stages → re-enqueue
#   recover_incomplete_documents()  re-enqueue pending pages after a restart
# =============================================================================

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete, func, select

from docpipe.config import settings
from docpipe.db.engine import get_sync_session
from docpipe.db.models import Document, DocumentStatus, Page, StageStatus
from docpipe.models.reports import DocumentProgress
from docpipe.resilience.errors import DocumentNotFoundError, PageNotFoundError
from docpipe.services import state_machine
from docpipe.services.state_machine import Stage
from docpipe.services.converter import ensure_supported
from docpipe.services.storage import ArtifactStore

logger = logging.getLogger(__name__)


def as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def get_document(document_id: uuid.UUID | str) -> Document | None:
    with get_sync_session() as session:
        return session.get(Document, as_uuid(document_id))


def require_document(document_id: uuid.UUID | str) -> Document:
    document = get_document(document_id)
    if document is None:
        raise DocumentNotFoundError(document_id)
    return document


def list_documents(statuses: Iterable[DocumentStatus] | None = None) -> list[Document]:
    with get_sync_session() as session:
        stmt = select(Document).order_by(Document.created_at)
        if statuses is not None:
            stmt = stmt.where(Document.status.in_(list(statuses)))
        return list(session.scalars(stmt))


def list_document_ids() -> set[str]:
    with get_sync_session() as session:
        return {str(doc_id) for doc_id in session.scalars(select(Document.id))}


def create_document(
    title: str,
    original_filename: str | None = None,
    target_language: str | None = None,
    source_language: str | None = None,
) -> Document:
    with get_sync_session() as session:
        document = Document(
            title=title,
            original_filename=original_filename,
            target_language=target_language or settings.default_target_language,
            source_language=source_language,
            status=DocumentStatus.UPLOADING,
        )
        session.add(document)
        session.flush()
        logger.info("Created document %s (%s)", document.id, title)
        return document


def set_document_status(
    document_id: uuid.UUID | str,
    target: DocumentStatus,
    error_message: str | None = None,
    *,
    reopen: bool = False,
) -> Document | None:
    """
    Apply a validated status transition. Returns None if the document is gone.

    Raises:
        InvalidTransitionError: the move is not allowed from the current status.
    """
    with get_sync_session() as session:
        document = session.get(Document, as_uuid(document_id), with_for_update=True)
        if document is None:
            logger.warning("Status update for missing document %s ignored", document_id)
            return None
        if state_machine.transition_document(document, target, error_message, reopen=reopen):
            logger.info("Document %s -> %s", document_id, target.value)
        return document


def mark_document_processing(document_id: uuid.UUID | str) -> bool:
    """Move to processing if the document is still before that point."""
    with get_sync_session() as session:
        document = session.get(Document, as_uuid(document_id), with_for_update=True)
        if document is None or document.status not in state_machine.PRE_PROCESSING_STATUSES:
            return False
        state_machine.transition_document(document, DocumentStatus.PROCESSING)
        logger.info("Document %s -> processing", document_id)
        return True


def mark_document_error(document_id: uuid.UUID | str, message: str) -> bool:
    """Record a terminal error unless the document already finished."""
    with get_sync_session() as session:
        document = session.get(Document, as_uuid(document_id), with_for_update=True)
        if document is None or document.status in state_machine.TERMINAL_DOCUMENT_STATUSES:
            return False
        state_machine.transition_document(document, DocumentStatus.ERROR, message)
        logger.error("Document %s -> error: %s", document_id, message)
        return True


def check_document_completion(document_id: uuid.UUID | str) -> bool:
    """
    Mark the document completed once every page is done (translated, or
    extraction failed). Returns True if the document is completed.
    """
    with get_sync_session() as session:
        document = session.get(Document, as_uuid(document_id), with_for_update=True)
        if document is None:
            return False
        if document.status == DocumentStatus.COMPLETED:
            return True
        pages = list(session.scalars(select(Page).where(Page.document_id == document.id)))
        if not state_machine.all_pages_done(pages):
            logger.debug("Document %s not yet complete", document_id)
            return False
        if document.status in state_machine.PRE_PROCESSING_STATUSES:
            state_machine.transition_document(document, DocumentStatus.PROCESSING)
        if document.status != DocumentStatus.PROCESSING:
            return False
        state_machine.transition_document(document, DocumentStatus.COMPLETED)
        logger.info("Document %s fully processed", document_id)
        return True


def document_progress(document_id: uuid.UUID | str) -> DocumentProgress:
    document = require_document(document_id)
    pages = list_pages(document.id)
    return DocumentProgress(
        document_id=str(document.id),
        status=document.status.value,
        display_status=state_machine.display_status(document, pages),
        total_pages=document.total_pages or 0,
        progress=state_machine.calculate_progress(document.total_pages, pages),
        extraction=state_machine.stage_counts(pages, Stage.EXTRACTION),
        translation=state_machine.stage_counts(pages, Stage.TRANSLATION),
        embedding=state_machine.stage_counts(pages, Stage.EMBEDDING),
    )


def list_stale_documents(statuses: Iterable[str], older_than: datetime) -> list[Document]:
    """Documents stuck in one of `statuses` since before `older_than`."""
    wanted = [DocumentStatus(s) for s in statuses]
    with get_sync_session() as session:
        stmt = (
            select(Document)
            .where(Document.status.in_(wanted))
            .where(Document.updated_at < older_than)
            .order_by(Document.updated_at)
        )
        return list(session.scalars(stmt))


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------


def get_page(page_id: uuid.UUID | str) -> Page | None:
    with get_sync_session() as session:
        return session.get(Page, as_uuid(page_id))


def require_page(page_id: uuid.UUID | str) -> Page:
    page = get_page(page_id)
    if page is None:
        raise PageNotFoundError(page_id)
    return page


def list_pages(document_id: uuid.UUID | str) -> list[Page]:
    with get_sync_session() as session:
        stmt = select(Page).where(Page.document_id == as_uuid(document_id)).order_by(Page.page_number)
        return list(session.scalars(stmt))


def count_pages(document_id: uuid.UUID | str) -> int:
    with get_sync_session() as session:
        stmt = select(func.count()).select_from(Page).where(Page.document_id == as_uuid(document_id))
        return session.scalar(stmt) or 0


def create_pages(document_id: uuid.UUID | str, image_paths: list[str]) -> list[Page]:
    """
    Create one page per image (page_number = position + 1).

    Idempotent: page numbers that already exist are left untouched, so a
    retried extraction never duplicates pages. Returns every page of the
    document, ordered by page number.
    """
    doc_id = as_uuid(document_id)
    with get_sync_session() as session:
        document = session.get(Document, doc_id, with_for_update=True)
        if document is None:
            raise DocumentNotFoundError(document_id)
        existing = set(session.scalars(select(Page.page_number).where(Page.document_id == doc_id)))
        created = 0
        for number, image_path in enumerate(image_paths, start=1):
            if number in existing:
                continue
            session.add(Page(document_id=doc_id, page_number=number, image_path=image_path))
            created += 1
        document.total_pages = max(len(image_paths), len(existing))
        session.flush()
        logger.info(
            "Document %s: %d pages created, %d already present", document_id, created, len(existing)
        )
        stmt = select(Page).where(Page.document_id == doc_id).order_by(Page.page_number)
        return list(session.scalars(stmt))


def update_page_stage(
    page_id: uuid.UUID | str,
    stage: Stage,
    status: StageStatus,
    **fields,
) -> Page:
    """
    Transition one page stage and set extra columns in the same commit,
    e.g. update_page_stage(id, Stage.EXTRACTION, COMPLETED, original_text=md).

    Raises:
        PageNotFoundError: the page was deleted meanwhile.
        InvalidTransitionError: the stage cannot move to `status`.
    """
    with get_sync_session() as session:
        page = session.get(Page, as_uuid(page_id), with_for_update=True)
        if page is None:
            raise PageNotFoundError(page_id)
        state_machine.transition_stage(page, stage, status)
        for name, value in fields.items():
            setattr(page, name, value)
        return page


def reset_page_stages(page_id: uuid.UUID | str, stages: Iterable[Stage]) -> Page:
    with get_sync_session() as session:
        page = session.get(Page, as_uuid(page_id), with_for_update=True)
        if page is None:
            raise PageNotFoundError(page_id)
        for stage in stages:
            state_machine.reset_stage(page, Stage(stage))
        return page


def pages_needing_llm(document_id: uuid.UUID | str) -> list[Page]:
    """Pages with extraction or translation still to run."""
    return [
        page
        for page in list_pages(document_id)
        if not state_machine.is_page_done(page)
        and page.translation_status != StageStatus.ERROR
    ]


def pages_missing_embeddings(limit: int | None = None) -> list[Page]:
    """Pages with extracted text but no embedding yet (backfill candidates)."""
    with get_sync_session() as session:
        stmt = (
            select(Page)
            .where(Page.extraction_status == StageStatus.COMPLETED)
            .where(Page.embedding_status.in_([StageStatus.PENDING, StageStatus.ERROR]))
            .order_by(Page.created_at)
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt))


# ---------------------------------------------------------------------------
# Flows
# ---------------------------------------------------------------------------


def upload_document(
    source: str | Path | bytes,
    filename: str,
    *,
    title: str | None = None,
    target_language: str | None = None,
    store: ArtifactStore | None = None,
) -> Document:
    """
    Create a document, store its file and enqueue extraction.

    Status: uploading → queued. A failure while storing marks the document
    as error and re-raises.
    """
    from docpipe.jobs.workers import enqueue_document_extraction
    from docpipe.services.context import get_context

    extension = ensure_supported(filename)
    store = store or get_context().storage
    document = create_document(title or Path(filename).stem, filename, target_language)
    try:
        path = store.store_upload(document.id, source, extension)
    except OSError as e:
        mark_document_error(document.id, f"Failed to store upload: {e}")
        raise

    # Queued before the job exists: a fast worker moves it on to extracting.
    document = set_document_status(document.id, DocumentStatus.QUEUED)
    enqueue_document_extraction(document.id, str(path))
    return document


def delete_document(
    document_id: uuid.UUID | str,
    *,
    store: ArtifactStore | None = None,
    queue=None,
) -> bool:
    """
    Delete a document with its pages and files, cancelling its still
    available jobs. Returns False if there was no such record.
    """
    from docpipe.jobs.queue import get_job_queue
    from docpipe.services.context import get_context

    doc_id = as_uuid(document_id)
    store = store or get_context().storage
    queue = queue or get_job_queue()

    page_ids = [page.id for page in list_pages(doc_id)]
    cancelled = queue.cancel_for_document(doc_id, page_ids)

    with get_sync_session() as session:
        document = session.get(Document, doc_id)
        found = document is not None
        if found:
            session.delete(document)
        else:
            session.execute(delete(Page).where(Page.document_id == doc_id))

    removed = store.delete_document_dir(doc_id)
    logger.info(
        "Deleted document %s (record=%s, files=%s, cancelled_jobs=%d)",
        doc_id, found, removed, cancelled,
    )
    return found


def rerun_page(
    page_id: uuid.UUID | str,
    stages: Iterable[Stage | str],
    opts: dict | None = None,
) -> Page:
    """
    Explicit re-run of page stages (the only way out of a stage error).

    Resets the stages (and the stages that depend on them) to pending,
    reopens a finished document when extraction or translation re-runs,
    and enqueues the matching job.
    """
    from docpipe.jobs.workers import enqueue_embedding, enqueue_llm_processing

    stages = {Stage(s) for s in stages}
    if not stages:
        raise ValueError("rerun_page needs at least one stage")
    page = reset_page_stages(page_id, stages)
    llm_rerun = bool(stages & {Stage.EXTRACTION, Stage.TRANSLATION})

    if llm_rerun:
        document = require_document(page.document_id)
        if document.status in state_machine.TERMINAL_DOCUMENT_STATUSES:
            set_document_status(document.id, DocumentStatus.PROCESSING, reopen=True)
        enqueue_llm_processing(page.id, opts)
    else:
        enqueue_embedding(page.id)

    logger.info("Re-running %s for page %s", sorted(s.value for s in stages), page.id)
    return page


def recover_incomplete_documents() -> list[uuid.UUID]:
    """
    Re-enqueue work for documents interrupted by a restart.

    Queued/extracting documents without pages get their extraction job back;
    documents with pages get an LLM job per unfinished page. Enqueues are
    unique, so jobs still in the queue are not duplicated.
    """
    from docpipe.jobs.workers import enqueue_document_extraction, enqueue_llm_processing

    recovered: list[uuid.UUID] = []
    documents = list_documents(
        [DocumentStatus.QUEUED, DocumentStatus.EXTRACTING, DocumentStatus.PROCESSING]
    )
    for document in documents:
        if count_pages(document.id) == 0:
            if document.status == DocumentStatus.PROCESSING:
                continue
            enqueue_document_extraction(document.id)
        else:
            pending = pages_needing_llm(document.id)
            for page in pending:
                enqueue_llm_processing(page.id)
            if not pending:
                check_document_completion(document.id)
                continue
        recovered.append(document.id)

    if recovered:
        logger.info("Recovered %d incomplete documents", len(recovered))
    else:
        logger.info("No incomplete documents to recover")
    return recovered
