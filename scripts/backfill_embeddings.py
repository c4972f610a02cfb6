#!/usr/bin/env python3
"""
Generate embeddings for pages that have extracted text but no embedding.

By default one EmbeddingGenerationJob is enqueued per page (picked up by the
embedding_generation workers). With --inline the embeddings are generated in
this process, one page at a time.

Usage:
    python scripts/backfill_embeddings.py [--inline] [--limit N] [--retry-errors]
"""

import argparse
import logging

from docpipe.config import settings
from docpipe.db.models import StageStatus
from docpipe.jobs.workers import enqueue_embedding
from docpipe.services import documents
from docpipe.services.context import get_context
from docpipe.services.embeddings import EmbeddingOutcome, embed_page
from docpipe.services.state_machine import Stage
from docpipe.workers.tasks import install_notifier

logger = logging.getLogger("backfill_embeddings")


def main():
    parser = argparse.ArgumentParser(description="Backfill page embeddings")
    parser.add_argument("--inline", action="store_true", help="generate in this process")
    parser.add_argument("--limit", type=int, default=None, help="maximum pages to handle")
    parser.add_argument(
        "--retry-errors",
        action="store_true",
        help="also reset and retry pages whose embedding is in error",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    pages = documents.pages_missing_embeddings(args.limit)
    if not args.retry_errors:
        pages = [p for p in pages if p.embedding_status != StageStatus.ERROR]
    total = len(pages)
    logger.info("Found %d pages needing embeddings", total)
    if not args.inline:
        install_notifier()

    counts = {outcome: 0 for outcome in EmbeddingOutcome}
    for index, page in enumerate(pages, start=1):
        if page.embedding_status == StageStatus.ERROR:
            documents.reset_page_stages(page.id, [Stage.EMBEDDING])

        if not args.inline:
            enqueue_embedding(page.id)
            continue

        logger.info("Processing page %d/%d (ID: %s)", index, total, page.id)
        outcome = embed_page(get_context(), page.id)
        counts[outcome] += 1

    if args.inline:
        logger.info(
            "Embedding backfill complete: %s",
            ", ".join(f"{outcome.value}={n}" for outcome, n in counts.items()),
        )
    else:
        logger.info("Enqueued %d embedding jobs", total)


if __name__ == "__main__":
    main()
