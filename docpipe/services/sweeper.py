# =============================================================================
# Sweeper - Reconcile Disk and Database
# =============================================================================
#
# Document directories and document rows can drift apart: a delete that
# removed the row but crashed before removing the files, an upload that
# died half-way, manual database surgery. The sweeper cleans up both ways:
#
#   ORPHANED DIRECTORIES   <uploads>/documents/<name>/ where <name> is not a
#                          document id and the directory is older than the
#                          grace period (0 = immediately eligible)
#   STALE DOCUMENTS        rows stuck in uploading/extracting for longer than
#                          `stale_document_hours`, deleted with their files
#
# A directory that has a backing record is never removed. Scheduled every
# `sweeper_interval_hours` on the low-priority maintenance queue (SweepJob).
# =============================================================================

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path

from docpipe.config import settings
from docpipe.db.models import Document, utcnow
from docpipe.models.reports import SweepResult
from docpipe.services import documents, telemetry
from docpipe.services.storage import ArtifactStore

logger = logging.getLogger(__name__)


def _store(storage: ArtifactStore | None) -> ArtifactStore:
    if storage is not None:
        return storage
    from docpipe.services.context import get_context

    return get_context().storage


# ---------------------------------------------------------------------------
# Orphaned directories
# ---------------------------------------------------------------------------


def find_orphaned_directories(
    grace_period_hours: float = 24, *, storage: ArtifactStore | None = None
) -> list[Path]:
    """Document directories with no matching record, older than the grace period."""
    store = _store(storage)
    directories = store.list_document_dirs()
    if not directories:
        logger.info("No document directories under %s", store.documents_root)
        return []

    valid_ids = documents.list_document_ids()
    cutoff = time.time() - grace_period_hours * 3600
    orphaned = []
    for path in directories:
        if path.name in valid_ids:
            continue
        if grace_period_hours > 0 and path.stat().st_mtime > cutoff:
            logger.debug("Orphan candidate %s is inside the grace period", path)
            continue
        orphaned.append(path)
    return orphaned


def sweep(
    dry_run: bool = False,
    grace_period_hours: float = 24,
    *,
    storage: ArtifactStore | None = None,
) -> int:
    """
    Delete orphaned directories (or only count them with `dry_run`).

    Returns the number of directories deleted, or that would be deleted.
    """
    store = _store(storage)
    orphaned = find_orphaned_directories(grace_period_hours, storage=store)
    if not orphaned:
        logger.info("No orphaned directories found")
        return 0

    logger.info("Found %d orphaned directories", len(orphaned))
    # Re-read the ids right before deleting: a document created meanwhile
    # may own one of the candidates now.
    valid_ids = documents.list_document_ids()
    count = 0
    for path in orphaned:
        if path.name in valid_ids:
            logger.info("Skipping %s, a document record appeared", path)
            continue
        if dry_run:
            logger.info("[DRY RUN] Would delete: %s", path)
            count += 1
            continue
        try:
            store.delete_dir(path)
        except OSError as e:
            logger.error("Failed to delete %s: %s", path, e)
            continue
        logger.info("Deleted orphaned directory: %s", path)
        count += 1
    return count


# ---------------------------------------------------------------------------
# Stale documents
# ---------------------------------------------------------------------------


def find_stale_documents(
    max_age_hours: float | None = None, statuses: Iterable[str] | None = None
) -> list[Document]:
    max_age_hours = settings.stale_document_hours if max_age_hours is None else max_age_hours
    statuses = list(statuses) if statuses is not None else settings.stale_statuses
    cutoff = utcnow() - timedelta(hours=max_age_hours)
    return documents.list_stale_documents(statuses, cutoff)


def sweep_stale_documents(
    dry_run: bool = False,
    max_age_hours: float | None = None,
    statuses: Iterable[str] | None = None,
    *,
    storage: ArtifactStore | None = None,
) -> int:
    """Delete documents stuck in a transient status, with their files."""
    store = _store(storage)
    stale = find_stale_documents(max_age_hours, statuses)
    if not stale:
        logger.info("No stale documents found")
        return 0

    logger.info("Found %d stale documents", len(stale))
    count = 0
    for document in stale:
        if dry_run:
            logger.info("[DRY RUN] Would delete stale document: %s (%s)", document.id, document.title)
            count += 1
            continue
        try:
            documents.delete_document(document.id, store=store)
        except Exception:
            logger.exception("Failed to delete stale document %s", document.id)
            continue
        logger.info("Deleted stale document: %s (%s)", document.id, document.title)
        count += 1
    return count


# ---------------------------------------------------------------------------
# Both
# ---------------------------------------------------------------------------


def sweep_all(
    *,
    storage: ArtifactStore | None = None,
    dry_run: bool = False,
    grace_period_hours: float | None = None,
    max_age_hours: float | None = None,
    statuses: Iterable[str] | None = None,
) -> SweepResult:
    logger.info("Starting document sweep%s", " (dry run)" if dry_run else "")
    grace = settings.sweeper_grace_period_hours if grace_period_hours is None else grace_period_hours
    store = _store(storage)

    result = SweepResult(
        orphaned_directories=sweep(dry_run, grace, storage=store),
        stale_documents=sweep_stale_documents(dry_run, max_age_hours, statuses, storage=store),
        dry_run=dry_run,
    )
    logger.info(
        "Sweep complete: %d orphaned directories, %d stale documents removed",
        result.orphaned_directories, result.stale_documents,
    )
    telemetry.emit("sweeper.completed", **result.model_dump())
    return result
