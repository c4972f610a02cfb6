# =============================================================================
# Embedding Generation - One Page → One Vector
# =============================================================================
#
# Runs inside the embedding supervisor's pool (after a page's translation
# completes) and inside EmbeddingGenerationJob (backfills, explicit re-runs).
#
#   extraction not completed, or no text   → SKIPPED (no-op, success)
#   embedding already completed / error    → SKIPPED (error is terminal
#                                            until an explicit re-run)
#   vector stored                          → COMPLETED
#   retries exhausted / permanent / open   → FAILED, embedding_status=error
#   wrong dimension count                  → FAILED (permanent, not retried)
#   vector could not be stored             → FAILED, embedding_status=error
#
# The text embedded is the extracted original, which is language-agnostic
# for search; pages without it fall back to the translation.
# =============================================================================

from __future__ import annotations

import enum
import logging
import uuid

from docpipe.config import settings
from docpipe.db.models import StageStatus
from docpipe.resilience.circuit_breaker import EMBEDDING_API
from docpipe.resilience.errors import PageNotFoundError, ValidationError, describe
from docpipe.resilience.retry import call_with_retry
from docpipe.services import documents
from docpipe.services.context import PipelineContext
from docpipe.services.state_machine import Stage

logger = logging.getLogger(__name__)


class EmbeddingOutcome(str, enum.Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def ok(self) -> bool:
        return self is not EmbeddingOutcome.FAILED


def embed_page(ctx: PipelineContext, page_id: uuid.UUID | str) -> EmbeddingOutcome:
    """
    Generate and store the embedding for one page.

    Raises:
        PageNotFoundError: the page does not exist.
    """
    page = documents.get_page(page_id)
    if page is None:
        raise PageNotFoundError(page_id)

    if page.extraction_status != StageStatus.COMPLETED:
        logger.debug("Page %s extraction not completed, skipping embedding", page.id)
        return EmbeddingOutcome.SKIPPED
    if page.embedding_status in (StageStatus.COMPLETED, StageStatus.ERROR):
        logger.debug("Page %s embedding already %s", page.id, page.embedding_status.value)
        return EmbeddingOutcome.SKIPPED

    text = page.original_text or page.translated_text
    if not text or not text.strip():
        logger.debug("Page %s has no text, skipping embedding", page.id)
        return EmbeddingOutcome.SKIPPED

    documents.update_page_stage(page.id, Stage.EMBEDDING, StageStatus.PROCESSING)
    try:
        vector = call_with_retry(
            lambda: _embed_checked(ctx, text),
            breakers=ctx.breakers,
            breaker=EMBEDDING_API,
            policy=ctx.retry,
            unit_id=page.id,
            kind="embedding",
        )
    except Exception as e:
        logger.error("Embedding generation failed for page %s: %s", page.id, describe(e))
        documents.update_page_stage(
            page.id,
            Stage.EMBEDDING,
            StageStatus.ERROR,
            error_message=f"Page {page.page_number} embedding failed: {describe(e)}",
        )
        return EmbeddingOutcome.FAILED

    try:
        documents.update_page_stage(
            page.id, Stage.EMBEDDING, StageStatus.COMPLETED, embedding=vector
        )
    except Exception as e:
        logger.error("Storing embedding failed for page %s: %s", page.id, describe(e))
        documents.update_page_stage(
            page.id,
            Stage.EMBEDDING,
            StageStatus.ERROR,
            error_message=f"Page {page.page_number} embedding could not be stored: {describe(e)}",
        )
        return EmbeddingOutcome.FAILED

    logger.info("Generated embedding for page %s (%d dims)", page.id, len(vector))
    return EmbeddingOutcome.COMPLETED


def _embed_checked(ctx: PipelineContext, text: str) -> list[float]:
    vector = ctx.ai_client.embed(text)
    if not vector:
        raise ValidationError("Embedding service returned an empty vector")
    if len(vector) != settings.embedding_dimensions:
        raise ValidationError(
            f"Embedding has {len(vector)} dimensions, expected {settings.embedding_dimensions}"
        )
    return [float(v) for v in vector]
