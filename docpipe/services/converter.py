# =============================================================================
# Format Converter - Office Documents → PDF (LibreOffice)
# =============================================================================
#
# Word-processor uploads are converted to PDF before rasterisation:
#
#   soffice --headless --convert-to pdf --outdir <dir> <source>
#
# LibreOffice writes <dir>/<source stem>.pdf.
#
# FAILURE MODES:
#   source missing        → SourceFileNotFoundError   (permanent)
#   unsupported extension → ValidationError           (permanent)
#   soffice not installed → PermanentError            (permanent)
#   timeout               → TransientError
#   non-zero exit         → ConversionError           (classified by message)
# =============================================================================

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from docpipe.resilience.errors import (
    PermanentError,
    PipelineError,
    SourceFileNotFoundError,
    TransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)

CONVERTIBLE_EXTENSIONS = frozenset({".docx", ".doc", ".odt", ".rtf"})
SUPPORTED_EXTENSIONS = CONVERTIBLE_EXTENSIONS | {".pdf"}


class ConversionError(PipelineError):
    """LibreOffice ran but did not produce a PDF."""


def needs_conversion(path: str | Path) -> bool:
    return Path(path).suffix.lower() in CONVERTIBLE_EXTENSIONS


def ensure_supported(path: str | Path) -> str:
    """Return the lower-cased extension, or raise ValidationError."""
    ext = Path(path).suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValidationError(
            f"Unsupported file format '{ext or Path(path).name}'. "
            f"Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )
    return ext


class DocumentConverter(Protocol):
    def convert_to_pdf(self, source_path: str | Path, output_dir: str | Path) -> Path: ...

    def available(self) -> bool: ...


class LibreOfficeConverter:
    """Headless LibreOffice conversion with a wall-clock timeout."""

    def __init__(self, soffice_path: str = "soffice", timeout_seconds: float = 120) -> None:
        self.soffice_path = soffice_path
        self.timeout_seconds = timeout_seconds

    def available(self) -> bool:
        return shutil.which(self.soffice_path) is not None or Path(self.soffice_path).is_file()

    def convert_to_pdf(self, source_path: str | Path, output_dir: str | Path) -> Path:
        source_path = Path(source_path)
        output_dir = Path(output_dir)
        if not source_path.is_file():
            raise SourceFileNotFoundError(path=str(source_path))
        ext = ensure_supported(source_path)
        if ext == ".pdf":
            return source_path

        output_dir.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.soffice_path,
            "--headless",
            "--convert-to",
            "pdf",
            "--outdir",
            str(output_dir),
            str(source_path),
        ]
        logger.info("Converting %s to PDF in %s", source_path, output_dir)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                env={"PATH": os.environ.get("PATH", ""), "HOME": os.environ.get("HOME", "/tmp")},
            )
        except FileNotFoundError as e:
            raise PermanentError(f"LibreOffice not found at '{self.soffice_path}'") from e
        except subprocess.TimeoutExpired as e:
            logger.error("LibreOffice conversion timed out after %ss", self.timeout_seconds)
            raise TransientError("Document conversion timed out") from e

        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            logger.error("LibreOffice exited with %d: %s", result.returncode, output)
            raise ConversionError(f"Document conversion failed: {output}")

        pdf_path = output_dir / f"{source_path.stem}.pdf"
        if not pdf_path.is_file():
            raise ConversionError("Conversion completed but PDF file not found")

        logger.info("Converted %s to %s", source_path.name, pdf_path)
        return pdf_path
