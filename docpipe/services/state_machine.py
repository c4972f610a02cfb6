# =============================================================================
# Document / Page State Machine
# =============================================================================
#
# DOCUMENT:
#
#   uploading ─▶ queued ─▶ extracting ─▶ processing ─▶ completed
#       │          │  └──────────────────────▲ │
#       └──────────┴──────────┴──────────────┴─┴────▶ error
#
#   - error is reachable from every non-terminal state
#   - queued → processing covers page jobs that start before the extraction
#     job reports (startup recovery, explicit page re-runs)
#   - completed and error are terminal; only an explicit re-run reopens them
#   - a self-transition is a no-op, never an error
#
# PAGE STAGES (extraction, translation, embedding), each independently:
#
#   pending ─▶ processing ─▶ completed
#                  │
#                  └──────▶ error        (terminal until reset_stage())
#
#   processing → processing is allowed: a job rescued after its worker died
#   resumes a stage that was left in processing.
#
# These functions only validate and mutate ORM objects; persistence is the
# caller's job (services/documents.py).
# =============================================================================

from __future__ import annotations

import enum
from collections import Counter
from collections.abc import Iterable

from docpipe.db.models import Document, DocumentStatus, Page, StageStatus
from docpipe.resilience.errors import InvalidTransitionError


class Stage(str, enum.Enum):
    EXTRACTION = "extraction"
    TRANSLATION = "translation"
    EMBEDDING = "embedding"

    @property
    def field(self) -> str:
        return f"{self.value}_status"


# Stages that must re-run when a given stage is reset
DOWNSTREAM = {
    Stage.EXTRACTION: (Stage.EXTRACTION, Stage.TRANSLATION, Stage.EMBEDDING),
    Stage.TRANSLATION: (Stage.TRANSLATION, Stage.EMBEDDING),
    Stage.EMBEDDING: (Stage.EMBEDDING,),
}

_DS = DocumentStatus

DOCUMENT_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    _DS.UPLOADING: frozenset({_DS.QUEUED, _DS.ERROR}),
    _DS.QUEUED: frozenset({_DS.EXTRACTING, _DS.PROCESSING, _DS.ERROR}),
    _DS.EXTRACTING: frozenset({_DS.PROCESSING, _DS.ERROR}),
    _DS.PROCESSING: frozenset({_DS.COMPLETED, _DS.ERROR}),
    _DS.COMPLETED: frozenset(),
    _DS.ERROR: frozenset(),
}

# Only used by explicit re-runs (rerun_page, re-extraction)
REOPEN_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    _DS.COMPLETED: frozenset({_DS.QUEUED, _DS.PROCESSING}),
    _DS.ERROR: frozenset({_DS.QUEUED, _DS.PROCESSING}),
}

TERMINAL_DOCUMENT_STATUSES = frozenset({_DS.COMPLETED, _DS.ERROR})

# States a document may be pulled into "processing" from when a page starts
PRE_PROCESSING_STATUSES = frozenset({_DS.UPLOADING, _DS.QUEUED, _DS.EXTRACTING})

_SS = StageStatus

STAGE_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    _SS.PENDING: frozenset({_SS.PROCESSING}),
    _SS.PROCESSING: frozenset({_SS.PROCESSING, _SS.COMPLETED, _SS.ERROR}),
    _SS.COMPLETED: frozenset(),
    _SS.ERROR: frozenset(),
}


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


def can_transition_document(
    current: DocumentStatus, target: DocumentStatus, *, reopen: bool = False
) -> bool:
    if current == target:
        return True
    if target in DOCUMENT_TRANSITIONS[current]:
        return True
    return reopen and target in REOPEN_TRANSITIONS.get(current, frozenset())


def transition_document(
    document: Document,
    target: DocumentStatus,
    error_message: str | None = None,
    *,
    reopen: bool = False,
) -> bool:
    """
    Move `document` to `target`.

    Returns False for a no-op self-transition, True when the status changed.

    Raises:
        InvalidTransitionError: the move is not in the transition table.
    """
    current = DocumentStatus(document.status)
    if current == target:
        return False
    if not can_transition_document(current, target, reopen=reopen):
        raise InvalidTransitionError("document", current.value, target.value)
    document.status = target
    if target == DocumentStatus.ERROR:
        document.error_message = error_message
    else:
        document.error_message = None
    return True


# ---------------------------------------------------------------------------
# Page stages
# ---------------------------------------------------------------------------


def stage_status(page: Page, stage: Stage) -> StageStatus:
    return StageStatus(getattr(page, stage.field))


def can_transition_stage(current: StageStatus, target: StageStatus) -> bool:
    return current == target or target in STAGE_TRANSITIONS[current]


def transition_stage(page: Page, stage: Stage, target: StageStatus) -> bool:
    """
    Move one stage of `page` to `target`.

    Returns False for a no-op self-transition.

    Raises:
        InvalidTransitionError: e.g. error → processing without a reset.
    """
    current = stage_status(page, stage)
    if current == target and current != StageStatus.PROCESSING:
        return False
    if target not in STAGE_TRANSITIONS[current]:
        raise InvalidTransitionError(f"page {stage.value}", current.value, target.value)
    setattr(page, stage.field, target)
    return current != target


def reset_stage(page: Page, stage: Stage) -> list[Stage]:
    """
    Explicit re-run: put `stage` and every stage depending on it back to
    pending and clear their outputs. Returns the stages that were reset.
    """
    reset = list(DOWNSTREAM[stage])
    for s in reset:
        setattr(page, s.field, StageStatus.PENDING)
    if Stage.EXTRACTION in reset:
        page.original_text = None
    if Stage.TRANSLATION in reset:
        page.translated_text = None
    if Stage.EMBEDDING in reset:
        page.embedding = None
    page.error_message = None
    return reset


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


def is_page_done(page: Page) -> bool:
    """A page needs no more LLM work: translated, or extraction failed."""
    return (
        stage_status(page, Stage.TRANSLATION) == StageStatus.COMPLETED
        or stage_status(page, Stage.EXTRACTION) == StageStatus.ERROR
    )


def all_pages_done(pages: Iterable[Page]) -> bool:
    pages = list(pages)
    return bool(pages) and all(is_page_done(p) for p in pages)


def stage_counts(pages: Iterable[Page], stage: Stage) -> dict[str, int]:
    counts = Counter(stage_status(p, stage).value for p in pages)
    return {status.value: counts.get(status.value, 0) for status in StageStatus}


def calculate_progress(total_pages: int | None, pages: Iterable[Page]) -> float:
    """
    Percentage (0-100) of finished extraction + translation steps.

    Each page contributes two steps. Missing or zero total_pages gives 0.0.
    """
    pages = list(pages)
    if not pages or not total_pages:
        return 0.0
    done = sum(
        (stage_status(p, Stage.EXTRACTION) == StageStatus.COMPLETED)
        + (stage_status(p, Stage.TRANSLATION) == StageStatus.COMPLETED)
        for p in pages
    )
    return min(100.0, done / (total_pages * 2) * 100.0)


def display_status(document: Document, pages: Iterable[Page]) -> str:
    """
    Status shown to users: the document field, refined by the pages.

    - error / completed are shown as-is
    - any page stage in progress (or any finished step) shows "processing"
      even before the document field catches up
    - every page done shows "completed" before the completion check runs
    """
    status = DocumentStatus(document.status)
    if status in TERMINAL_DOCUMENT_STATUSES:
        return status.value
    pages = list(pages)
    if not pages:
        return status.value
    if all_pages_done(pages):
        return DocumentStatus.COMPLETED.value
    started = any(
        stage_status(p, s) != StageStatus.PENDING
        for p in pages
        for s in (Stage.EXTRACTION, Stage.TRANSLATION)
    )
    if started:
        return DocumentStatus.PROCESSING.value
    return status.value
