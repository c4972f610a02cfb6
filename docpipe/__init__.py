# =============================================================================
# docpipe - Resilient Document Translation Pipeline
# =============================================================================
# Turns uploaded documents into per-page extracted Markdown, translations
# and embeddings, driven by a durable database-backed job queue.
#
#   upload → convert → rasterise → per page: vision extraction →
#   translation → embedding
#
# Package structure:
#   docpipe/
#   ├── db/          → SQLAlchemy engine, sessions and ORM models
#   ├── jobs/        → Durable job queue and the stage job workers
#   ├── models/      → Pydantic V2 job payloads and report schemas
#   ├── resilience/  → Error classifier, backoff, retry loop, circuit
#   │                   breakers, health checks
#   ├── services/    → Business logic (documents, processing, embeddings,
#   │                   AI client, storage, conversion, sweeper)
#   └── workers/     → Celery app, slot tasks and the task supervisor
# =============================================================================
