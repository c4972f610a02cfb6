# =============================================================================
# PDF Rasteriser - PDF Pages → PNG Images (PyMuPDF)
# =============================================================================
#
# Renders every page of a PDF to <output_dir>/page-NNN.png (1-based,
# zero-padded to three digits) and returns the page count.
#
# The pipeline only depends on the contract:
#   rasterize(pdf_path, output_dir) -> page_count
#   raises SourceFileNotFoundError if the file is missing,
#          ValidationError if it is not a readable PDF.
#
# Both failures are permanent: re-running the job cannot fix the input.
# =============================================================================

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import fitz  # PyMuPDF

from docpipe.resilience.errors import SourceFileNotFoundError, ValidationError

logger = logging.getLogger(__name__)


def page_filename(page_number: int) -> str:
    return f"page-{page_number:03d}.png"


class PdfExtractor(Protocol):
    def rasterize(self, pdf_path: str | Path, output_dir: str | Path) -> int:
        """Render each page to output_dir and return the number of pages."""
        ...


class PyMuPDFExtractor:
    """Rasterise with PyMuPDF at a fixed DPI."""

    def __init__(self, dpi: int = 200) -> None:
        self.dpi = dpi

    def rasterize(self, pdf_path: str | Path, output_dir: str | Path) -> int:
        pdf_path = Path(pdf_path)
        output_dir = Path(output_dir)
        if not pdf_path.is_file():
            raise SourceFileNotFoundError(path=str(pdf_path))

        try:
            doc = fitz.open(pdf_path)
        except Exception as e:
            raise ValidationError(f"Failed to open PDF {pdf_path.name}: {e}") from e

        output_dir.mkdir(parents=True, exist_ok=True)
        matrix = fitz.Matrix(self.dpi / 72, self.dpi / 72)

        with doc:
            if not doc.is_pdf:
                raise ValidationError(f"{pdf_path.name} is not a PDF")
            page_count = doc.page_count
            if page_count == 0:
                raise ValidationError(f"{pdf_path.name} has no pages")

            logger.info("Rasterising %d pages from %s (dpi=%d)", page_count, pdf_path, self.dpi)
            for index, page in enumerate(doc):
                pix = page.get_pixmap(matrix=matrix)
                pix.save(str(output_dir / page_filename(index + 1)))

        return page_count
