# =============================================================================
# Unit Tests - Document / Page State Machine
# =============================================================================
#
# Works on transient ORM objects; nothing is persisted.
# =============================================================================

import pytest

from docpipe.db.models import Document, DocumentStatus, Page, StageStatus
from docpipe.resilience.errors import InvalidTransitionError
from docpipe.services import state_machine
from docpipe.services.state_machine import Stage

DS = DocumentStatus
SS = StageStatus


def _document(status: DocumentStatus = DS.UPLOADING, total_pages: int | None = None) -> Document:
    return Document(title="Manual", status=status, total_pages=total_pages)


def _page(
    extraction: StageStatus = SS.PENDING,
    translation: StageStatus = SS.PENDING,
    embedding: StageStatus = SS.PENDING,
) -> Page:
    return Page(
        page_number=1,
        image_path="documents/x/pages/page-001.png",
        extraction_status=extraction,
        translation_status=translation,
        embedding_status=embedding,
    )


class TestDocumentTransitions:
    """Tests for transition_document()."""

    def test_happy_path(self):
        document = _document()
        for target in (DS.QUEUED, DS.EXTRACTING, DS.PROCESSING, DS.COMPLETED):
            assert state_machine.transition_document(document, target) is True
        assert document.status == DS.COMPLETED

    def test_self_transition_is_noop(self):
        document = _document(DS.PROCESSING)
        assert state_machine.transition_document(document, DS.PROCESSING) is False

    @pytest.mark.parametrize("status", [DS.UPLOADING, DS.QUEUED, DS.EXTRACTING, DS.PROCESSING])
    def test_error_reachable_from_non_terminal(self, status):
        document = _document(status)
        state_machine.transition_document(document, DS.ERROR, "broken")
        assert document.status == DS.ERROR
        assert document.error_message == "broken"

    def test_queued_may_skip_to_processing(self):
        document = _document(DS.QUEUED)
        state_machine.transition_document(document, DS.PROCESSING)
        assert document.status == DS.PROCESSING

    @pytest.mark.parametrize(
        "current,target",
        [
            (DS.UPLOADING, DS.PROCESSING),
            (DS.EXTRACTING, DS.QUEUED),
            (DS.COMPLETED, DS.PROCESSING),
            (DS.ERROR, DS.QUEUED),
            (DS.COMPLETED, DS.ERROR),
        ],
    )
    def test_invalid_moves_raise(self, current, target):
        with pytest.raises(InvalidTransitionError):
            state_machine.transition_document(_document(current), target)

    def test_reopen_allows_leaving_terminal(self):
        document = _document(DS.ERROR)
        document.error_message = "old failure"
        state_machine.transition_document(document, DS.PROCESSING, reopen=True)
        assert document.status == DS.PROCESSING
        assert document.error_message is None


class TestStageTransitions:
    """Tests for transition_stage() and reset_stage()."""

    def test_pending_to_completed_via_processing(self):
        page = _page()
        state_machine.transition_stage(page, Stage.EXTRACTION, SS.PROCESSING)
        state_machine.transition_stage(page, Stage.EXTRACTION, SS.COMPLETED)
        assert page.extraction_status == SS.COMPLETED

    def test_pending_cannot_jump_to_completed(self):
        with pytest.raises(InvalidTransitionError):
            state_machine.transition_stage(_page(), Stage.TRANSLATION, SS.COMPLETED)

    def test_error_is_terminal(self):
        page = _page(extraction=SS.ERROR)
        with pytest.raises(InvalidTransitionError):
            state_machine.transition_stage(page, Stage.EXTRACTION, SS.PROCESSING)

    def test_processing_may_resume(self):
        page = _page(extraction=SS.PROCESSING)
        assert state_machine.transition_stage(page, Stage.EXTRACTION, SS.PROCESSING) is False
        assert page.extraction_status == SS.PROCESSING

    def test_completed_self_transition_is_noop(self):
        page = _page(extraction=SS.COMPLETED)
        assert state_machine.transition_stage(page, Stage.EXTRACTION, SS.COMPLETED) is False

    def test_reset_extraction_resets_downstream(self):
        page = _page(SS.COMPLETED, SS.ERROR, SS.COMPLETED)
        page.original_text = "text"
        page.translated_text = "partial"
        page.embedding = [0.1]
        page.error_message = "Page 1 translation failed: boom"

        reset = state_machine.reset_stage(page, Stage.EXTRACTION)
        assert reset == [Stage.EXTRACTION, Stage.TRANSLATION, Stage.EMBEDDING]
        assert (page.extraction_status, page.translation_status, page.embedding_status) == (
            SS.PENDING, SS.PENDING, SS.PENDING,
        )
        assert page.original_text is None and page.embedding is None
        assert page.error_message is None

    def test_reset_embedding_only(self):
        page = _page(SS.COMPLETED, SS.COMPLETED, SS.ERROR)
        page.original_text = "text"
        state_machine.reset_stage(page, Stage.EMBEDDING)
        assert page.embedding_status == SS.PENDING
        assert page.translation_status == SS.COMPLETED
        assert page.original_text == "text"


class TestAggregates:
    """Completion, progress and display status."""

    def test_page_done_when_translated_or_extraction_failed(self):
        assert state_machine.is_page_done(_page(SS.COMPLETED, SS.COMPLETED))
        assert state_machine.is_page_done(_page(SS.ERROR))
        assert not state_machine.is_page_done(_page(SS.COMPLETED, SS.ERROR))
        assert not state_machine.is_page_done(_page(SS.COMPLETED, SS.PROCESSING))

    def test_no_pages_is_not_done(self):
        assert state_machine.all_pages_done([]) is False

    def test_progress(self):
        pages = [_page(SS.COMPLETED, SS.COMPLETED), _page(SS.COMPLETED), _page()]
        assert state_machine.calculate_progress(3, pages) == pytest.approx(50.0)

    def test_progress_without_total(self):
        assert state_machine.calculate_progress(None, [_page(SS.COMPLETED)]) == 0.0
        assert state_machine.calculate_progress(0, [_page(SS.COMPLETED)]) == 0.0

    def test_progress_capped(self):
        pages = [_page(SS.COMPLETED, SS.COMPLETED)] * 3
        assert state_machine.calculate_progress(1, pages) == 100.0

    def test_stage_counts(self):
        pages = [_page(SS.COMPLETED), _page(SS.ERROR), _page()]
        assert state_machine.stage_counts(pages, Stage.EXTRACTION) == {
            "pending": 1, "processing": 0, "completed": 1, "error": 1,
        }

    def test_display_status(self):
        extracting = _document(DS.EXTRACTING)
        assert state_machine.display_status(extracting, []) == "extracting"
        assert state_machine.display_status(extracting, [_page()]) == "extracting"
        assert state_machine.display_status(extracting, [_page(SS.PROCESSING)]) == "processing"
        assert state_machine.display_status(
            _document(DS.PROCESSING), [_page(SS.COMPLETED, SS.COMPLETED)]
        ) == "completed"
        assert state_machine.display_status(_document(DS.ERROR), [_page(SS.PROCESSING)]) == "error"
