# =============================================================================
# Artifact Store - On-Disk Document Directories
# =============================================================================
#
# LAYOUT:
#   <uploads_dir>/
#   └── documents/
#       └── <document_id>/
#           ├── original.<ext>        the upload as received
#           ├── original.pdf          converted copy (non-PDF uploads)
#           └── pages/
#               ├── page-001.png
#               └── page-002.png
#
# Paths stored in the database (Page.image_path) are relative to
# <uploads_dir> so the uploads root can move without a data migration.
#
# A directory's existence is independent of its database row. The sweeper
# reconciles the two.
# =============================================================================

from __future__ import annotations

import logging
import os
import shutil
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

DOCUMENTS_DIRNAME = "documents"
PAGES_DIRNAME = "pages"


class ArtifactStore:
    """Filesystem collaborator for document uploads and page images."""

    def __init__(self, uploads_dir: str | Path) -> None:
        self.root = Path(uploads_dir)

    @property
    def documents_root(self) -> Path:
        return self.root / DOCUMENTS_DIRNAME

    def document_dir(self, document_id: uuid.UUID | str) -> Path:
        return self.documents_root / str(document_id)

    def pages_dir(self, document_id: uuid.UUID | str) -> Path:
        return self.document_dir(document_id) / PAGES_DIRNAME

    def ensure_document_dirs(self, document_id: uuid.UUID | str) -> Path:
        self.pages_dir(document_id).mkdir(parents=True, exist_ok=True)
        return self.document_dir(document_id)

    # -------------------------------------------------------------------------
    # Uploads
    # -------------------------------------------------------------------------

    def store_upload(self, document_id: uuid.UUID | str, source: str | Path | bytes, extension: str) -> Path:
        """
        Save the upload as original<extension> and return its absolute path.

        `source` is either the raw bytes or a path to copy from.
        """
        extension = normalise_extension(extension)
        target = self.ensure_document_dirs(document_id) / f"original{extension}"
        if isinstance(source, bytes):
            target.write_bytes(source)
        else:
            shutil.copyfile(source, target)
        logger.info("Stored upload for document %s at %s", document_id, target)
        return target

    def find_source(self, document_id: uuid.UUID | str, original_filename: str | None) -> Path | None:
        """
        Locate the stored upload when no explicit path was given.

        Looks for original.pdf first, then original<ext of original_filename>.
        """
        doc_dir = self.document_dir(document_id)
        candidates = [doc_dir / "original.pdf"]
        if original_filename:
            ext = Path(original_filename).suffix.lower()
            if ext and ext != ".pdf":
                candidates.append(doc_dir / f"original{ext}")
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    # -------------------------------------------------------------------------
    # Pages
    # -------------------------------------------------------------------------

    def page_image_relpath(self, document_id: uuid.UUID | str, page_number: int) -> str:
        return f"{DOCUMENTS_DIRNAME}/{document_id}/{PAGES_DIRNAME}/page-{page_number:03d}.png"

    def absolute(self, relative_path: str) -> Path:
        return self.root / relative_path

    def relative(self, path: str | Path) -> str:
        return Path(path).resolve().relative_to(self.root.resolve()).as_posix()

    # -------------------------------------------------------------------------
    # Directories as a whole
    # -------------------------------------------------------------------------

    def list_document_dirs(self) -> list[Path]:
        """Immediate subdirectories of documents/; files are ignored."""
        if not self.documents_root.is_dir():
            return []
        return sorted(p for p in self.documents_root.iterdir() if p.is_dir())

    def delete_document_dir(self, document_id: uuid.UUID | str) -> bool:
        return self.delete_dir(self.document_dir(document_id))

    def delete_dir(self, path: Path) -> bool:
        """Remove a directory tree. Returns False if it did not exist."""
        if not path.exists():
            return False
        shutil.rmtree(path)
        logger.info("Deleted directory %s", path)
        return True

    def is_writable(self) -> bool:
        """True when the uploads root exists (or can be created) and accepts writes."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self.root, os.W_OK)


def normalise_extension(extension: str) -> str:
    extension = extension.lower().strip()
    if extension and not extension.startswith("."):
        extension = f".{extension}"
    return extension
