# =============================================================================
# Database Models - SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────┐       ┌──────────────────────────────────────┐
# │  documents       │       │  pages                               │
# ├──────────────────┤       ├──────────────────────────────────────┤
# │ id (UUID PK)     │──1:N─▶│ id (UUID PK)                         │
# │ title            │       │ document_id (FK → documents.id)      │
# │ original_filename│       │ page_number (unique per document)    │
# │ total_pages      │       │ image_path (relative to uploads dir) │
# │ source_language  │       │ original_text / translated_text      │
# │ target_language  │       │ extraction_status                    │
# │ status           │       │ translation_status                   │
# │ error_message    │       │ embedding_status                     │
# │ created_at       │       │ embedding (vector(1024))             │
# │ updated_at       │       │ error_message, timestamps            │
# └──────────────────┘       └──────────────────────────────────────┘
#
# ┌───────────────────────────────────────────────────────────────────┐
# │  jobs - durable job queue records                                 │
# ├───────────────────────────────────────────────────────────────────┤
# │ id, queue, worker, args (json), state, attempt, max_attempts,     │
# │ scheduled_at, errors (json list), unique_key, inserted_at,        │
# │ attempted_at, heartbeat_at, completed_at, discarded_at,           │
# │ cancelled_at                                                      │
# └───────────────────────────────────────────────────────────────────┘
#
# ┌───────────────────────────────────────────────────────────────────┐
# │  circuit_breakers - one row per guarded dependency, shared by     │
# │  every worker process                                             │
# ├───────────────────────────────────────────────────────────────────┤
# │ name (PK), mode, failure_count, opened_at, probe_in_flight,       │
# │ probe_started_at, updated_at                                      │
# └───────────────────────────────────────────────────────────────────┘
#
# Timestamps are always timezone-aware UTC in Python. SQLite drops the
# offset on the way in, so UTCDateTime re-attaches it on the way out.
# =============================================================================

import enum
import uuid
from datetime import datetime, timezone

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from docpipe.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime(timezone=True) that always hands back aware UTC datetimes."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class DocumentStatus(str, enum.Enum):
    """
    Document lifecycle.

        UPLOADING → QUEUED → EXTRACTING → PROCESSING → COMPLETED
             └─────────┴──────────┴────────────┴──────▶ ERROR

    Transitions are validated in services/state_machine.py.
    """

    UPLOADING = "uploading"      # Record created, file being stored
    QUEUED = "queued"            # Extraction job enqueued
    EXTRACTING = "extracting"    # Converting / rasterising pages
    PROCESSING = "processing"    # Page jobs running
    COMPLETED = "completed"      # Every page translated (or failed extraction)
    ERROR = "error"              # See error_message


class StageStatus(str, enum.Enum):
    """Per-page stage status, shared by extraction, translation and embedding."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class JobState(str, enum.Enum):
    AVAILABLE = "available"
    EXECUTING = "executing"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    CANCELLED = "cancelled"


# One PostgreSQL enum type shared by the three page stage columns.
_stage_status = Enum(StageStatus, name="stage_status")


class Document(Base):
    """An uploaded multi-page document and its overall pipeline status."""

    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    original_filename: Mapped[str | None] = mapped_column(String(500), nullable=True)
    total_pages: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source_language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    target_language: Mapped[str] = mapped_column(
        String(16), nullable=False, default=lambda: settings.default_target_language
    )

    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus),
        nullable=False,
        default=DocumentStatus.UPLOADING,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Deleting a document deletes its pages (ORM cascade + ON DELETE CASCADE).
    pages: Mapped[list["Page"]] = relationship(
        "Page",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="Page.page_number",
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, title='{self.title}', status={self.status})>"


class Page(Base):
    """One rasterised page and its per-stage progress."""

    __tablename__ = "pages"
    __table_args__ = (
        UniqueConstraint("document_id", "page_number", name="uq_pages_document_page_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    # 1-based and dense within a document
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # Relative to settings.uploads_dir, e.g. documents/<id>/pages/page-001.png
    image_path: Mapped[str] = mapped_column(String(1000), nullable=False)

    original_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    translated_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    extraction_status: Mapped[StageStatus] = mapped_column(
        _stage_status, nullable=False, default=StageStatus.PENDING
    )
    translation_status: Mapped[StageStatus] = mapped_column(
        _stage_status, nullable=False, default=StageStatus.PENDING
    )
    embedding_status: Mapped[StageStatus] = mapped_column(
        _stage_status, nullable=False, default=StageStatus.PENDING
    )

    # pgvector column on PostgreSQL; a JSON list in SQLite tests
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions).with_variant(JSON(), "sqlite"),
        nullable=True,
    )

    # Last terminal stage error, human readable
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    document: Mapped["Document"] = relationship("Document", back_populates="pages")

    def __repr__(self) -> str:
        return (
            f"<Page(id={self.id}, doc_id={self.document_id}, number={self.page_number}, "
            f"extraction={self.extraction_status}, translation={self.translation_status}, "
            f"embedding={self.embedding_status})>"
        )


class Job(Base):
    """
    A durable job record.

    The Celery message that wakes a queue slot carries nothing but the queue
    name; everything needed to run (and retry) the job lives in this row.
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue: Mapped[str] = mapped_column(String(100), nullable=False)
    worker: Mapped[str] = mapped_column(String(200), nullable=False)
    args: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    state: Mapped[JobState] = mapped_column(
        Enum(JobState), nullable=False, default=JobState.AVAILABLE
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    # [{"attempt": 1, "at": "...", "error": "..."}]
    errors: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # sha256 of worker + canonical args; set only for unique enqueues
    unique_key: Mapped[str | None] = mapped_column(String(64), nullable=True)

    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    inserted_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    attempted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Refreshed by the executing slot while the job runs
    heartbeat_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    discarded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Job(id={self.id}, queue='{self.queue}', worker='{self.worker}', "
            f"state={self.state}, attempt={self.attempt}/{self.max_attempts})>"
        )


class CircuitBreakerState(Base):
    """
    Shared state of one circuit breaker.

    Every worker process reads and updates this row (row-locked on
    PostgreSQL), so all slots observe the same mode for a dependency.
    Timestamps are epoch seconds from the breaker clock.
    """

    __tablename__ = "circuit_breakers"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default="closed")
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opened_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    probe_in_flight: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    probe_started_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<CircuitBreakerState(name='{self.name}', mode={self.mode}, failures={self.failure_count})>"


# =============================================================================
# Indexes
# =============================================================================

# Claim path: WHERE queue = ? AND state = 'available' ORDER BY scheduled_at, id
job_fetch_idx = Index("idx_jobs_queue_state_scheduled", Job.queue, Job.state, Job.scheduled_at)

job_unique_idx = Index("idx_jobs_unique_key", Job.unique_key)

page_document_idx = Index("idx_pages_document_id", Page.document_id)

# HNSW index for similarity search over page embeddings (PostgreSQL only)
page_embedding_idx = Index(
    "idx_page_embedding_hnsw",
    Page.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
).ddl_if(dialect="postgresql")
