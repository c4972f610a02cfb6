# =============================================================================
# Job Workers - What Each Queue Runs
# =============================================================================
#
# A worker class names a queue, an attempt ceiling and a pydantic args model.
# The queue stores the class name in `jobs.worker` and looks it up here when
# the job runs.
#
#   Worker                    Queue                 Does
#   ─────────────────────────────────────────────────────────────────────────
#   DocumentExtractionJob     pdf_extraction        convert → rasterise → pages
#   PageExtractionJob         pdf_extraction        rasterise an existing PDF
#   LlmProcessingJob          llm_processing        vision extraction, translation
#   EmbeddingGenerationJob    embedding_generation  backfills / explicit re-runs
#   HealthCheckJob            health_check          probe dependencies
#   SweepJob                  maintenance           orphan + stale sweep
#
# perform() raising means failure; the queue classifies the error and either
# reschedules the job or discards it. on_discard() runs once, after discard,
# and surfaces the terminal error on the document or page.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from typing import ClassVar

from pydantic import ValidationError as PydanticValidationError

from docpipe.config import (
    EMBEDDING_QUEUE,
    HEALTH_CHECK_QUEUE,
    LLM_PROCESSING_QUEUE,
    MAINTENANCE_QUEUE,
    PDF_EXTRACTION_QUEUE,
)
from docpipe.db.models import Job, StageStatus
from docpipe.jobs.queue import get_job_queue
from docpipe.models.jobs import (
    DocumentExtractionArgs,
    EmbeddingArgs,
    JobArgs,
    LlmOptions,
    LlmProcessingArgs,
    PageExtractionArgs,
    SweepArgs,
)
from docpipe.resilience.errors import PermanentError, ValidationError
from docpipe.services import documents, processing
from docpipe.services.context import PipelineContext
from docpipe.services.embeddings import EmbeddingOutcome, embed_page
from docpipe.services.state_machine import Stage

logger = logging.getLogger(__name__)


class Worker:
    """Base class for job workers."""

    queue: ClassVar[str]
    args_model: ClassVar[type[JobArgs]]
    max_attempts: ClassVar[int | None] = None
    unique: ClassVar[bool] = True

    @classmethod
    def name(cls) -> str:
        return cls.__name__

    def parse_args(self, raw: dict) -> JobArgs:
        try:
            return self.args_model.model_validate(raw or {})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid args for {self.name()}: {e}") from e

    def perform(self, args: JobArgs, ctx: PipelineContext) -> None:
        raise NotImplementedError

    def on_discard(self, args: JobArgs, message: str, ctx: PipelineContext) -> None:
        """Called once after the job was discarded."""

    @classmethod
    def enqueue(cls, args: JobArgs, *, schedule_in: float | None = None) -> Job:
        return get_job_queue().enqueue(
            cls.queue,
            cls.name(),
            args.to_json(),
            max_attempts=cls.max_attempts,
            schedule_in=schedule_in,
            unique=cls.unique,
        )


_REGISTRY: dict[str, Worker] = {}


def register(cls: type[Worker]) -> type[Worker]:
    """Class decorator adding a worker to the registry under its class name."""
    _REGISTRY[cls.name()] = cls()
    return cls


def get_worker(name: str) -> Worker | None:
    return _REGISTRY.get(name)


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------


@register
class DocumentExtractionJob(Worker):
    queue = PDF_EXTRACTION_QUEUE
    args_model = DocumentExtractionArgs

    def perform(self, args: DocumentExtractionArgs, ctx: PipelineContext) -> None:
        processing.extract_document(ctx, args.document_id, args.file_path)

    def on_discard(self, args: DocumentExtractionArgs, message: str, ctx: PipelineContext) -> None:
        documents.mark_document_error(args.document_id, message)


@register
class PageExtractionJob(Worker):
    queue = PDF_EXTRACTION_QUEUE
    args_model = PageExtractionArgs

    def perform(self, args: PageExtractionArgs, ctx: PipelineContext) -> None:
        processing.rasterize_document(ctx, args.document_id, args.pdf_path)

    def on_discard(self, args: PageExtractionArgs, message: str, ctx: PipelineContext) -> None:
        documents.mark_document_error(args.document_id, message)


@register
class LlmProcessingJob(Worker):
    queue = LLM_PROCESSING_QUEUE
    args_model = LlmProcessingArgs

    def perform(self, args: LlmProcessingArgs, ctx: PipelineContext) -> None:
        processing.process_page(ctx, args.page_id, args.opts)

    def on_discard(self, args: LlmProcessingArgs, message: str, ctx: PipelineContext) -> None:
        # Stages that already failed recorded their own error; this catches
        # a stage left processing by an unexpected failure.
        page = documents.get_page(args.page_id)
        if page is None:
            return
        for stage in (Stage.EXTRACTION, Stage.TRANSLATION):
            if getattr(page, stage.field) == StageStatus.PROCESSING:
                documents.update_page_stage(
                    page.id, stage, StageStatus.ERROR,
                    error_message=f"Page {page.page_number} {stage.value} failed: {message}",
                )
                if stage == Stage.EXTRACTION:
                    documents.check_document_completion(page.document_id)


@register
class EmbeddingGenerationJob(Worker):
    queue = EMBEDDING_QUEUE
    args_model = EmbeddingArgs

    def perform(self, args: EmbeddingArgs, ctx: PipelineContext) -> None:
        outcome = embed_page(ctx, args.page_id)
        if outcome is EmbeddingOutcome.FAILED:
            # Status already recorded; nothing left for the queue to retry.
            raise PermanentError(f"Embedding failed for page {args.page_id}")

    def on_discard(self, args: EmbeddingArgs, message: str, ctx: PipelineContext) -> None:
        page = documents.get_page(args.page_id)
        if page is not None and page.embedding_status == StageStatus.PROCESSING:
            documents.update_page_stage(
                page.id, Stage.EMBEDDING, StageStatus.ERROR,
                error_message=f"Page {page.page_number} embedding failed: {message}",
            )


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@register
class HealthCheckJob(Worker):
    queue = HEALTH_CHECK_QUEUE
    args_model = JobArgs
    max_attempts = 1

    def perform(self, args: JobArgs, ctx: PipelineContext) -> None:
        from docpipe.resilience.health_check import get_health_monitor

        report = get_health_monitor(ctx).run()
        if not report.healthy:
            logger.warning("Health check: unhealthy %s", ", ".join(report.unhealthy))


@register
class SweepJob(Worker):
    queue = MAINTENANCE_QUEUE
    args_model = SweepArgs
    max_attempts = 1

    def perform(self, args: SweepArgs, ctx: PipelineContext) -> None:
        from docpipe.services import sweeper

        sweeper.sweep_all(
            storage=ctx.storage,
            dry_run=args.dry_run,
            grace_period_hours=args.grace_period_hours,
        )


# ---------------------------------------------------------------------------
# Enqueue helpers
# ---------------------------------------------------------------------------


def enqueue_document_extraction(document_id: uuid.UUID | str, file_path: str | None = None) -> Job:
    return DocumentExtractionJob.enqueue(
        DocumentExtractionArgs(document_id=document_id, file_path=file_path)
    )


def enqueue_page_extraction(document_id: uuid.UUID | str, pdf_path: str) -> Job:
    return PageExtractionJob.enqueue(PageExtractionArgs(document_id=document_id, pdf_path=pdf_path))


def enqueue_llm_processing(page_id: uuid.UUID | str, opts: LlmOptions | dict | None = None) -> Job:
    if isinstance(opts, dict):
        opts = LlmOptions.model_validate(opts)
    return LlmProcessingJob.enqueue(LlmProcessingArgs(page_id=page_id, opts=opts or LlmOptions()))


def enqueue_embedding(page_id: uuid.UUID | str) -> Job:
    return EmbeddingGenerationJob.enqueue(EmbeddingArgs(page_id=page_id))


def enqueue_health_check() -> Job:
    return HealthCheckJob.enqueue(JobArgs())


def enqueue_sweep(dry_run: bool = False, grace_period_hours: int | None = None) -> Job:
    return SweepJob.enqueue(SweepArgs(dry_run=dry_run, grace_period_hours=grace_period_hours))
