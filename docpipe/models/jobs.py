# =============================================================================
# Job Argument Models - Pydantic V2 Schemas
# =============================================================================
#
# Job args are stored as JSON in the `jobs` table and validated against these
# models right before a job runs. A payload that fails validation can never
# succeed on retry, so the worker raises a permanent ValidationError and the
# queue discards the job.
#
# UUIDs are stored as strings in JSON; pydantic parses them back.
# =============================================================================

import uuid

from pydantic import BaseModel, ConfigDict, Field


class JobArgs(BaseModel):
    """Base for all job payloads: unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    def to_json(self) -> dict:
        """Plain JSON-safe dict for the `jobs.args` column."""
        return self.model_dump(mode="json", exclude_none=True)


class DocumentExtractionArgs(JobArgs):
    document_id: uuid.UUID
    file_path: str | None = Field(
        default=None,
        description="Source file; defaults to original.<ext> in the document directory",
    )


class PageExtractionArgs(JobArgs):
    """Rasterise a file that is already a PDF."""

    document_id: uuid.UUID
    pdf_path: str


class LlmOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    extraction_model: str | None = None
    translation_model: str | None = None


class LlmProcessingArgs(JobArgs):
    page_id: uuid.UUID
    opts: LlmOptions = Field(default_factory=LlmOptions)


class EmbeddingArgs(JobArgs):
    page_id: uuid.UUID


class SweepArgs(JobArgs):
    dry_run: bool = False
    grace_period_hours: int | None = Field(default=None, ge=0)
