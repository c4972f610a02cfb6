# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Every consumer in this project is synchronous (Celery workers, the
# supervisor's thread pool, scripts), so there is a single sync engine.
#
# SESSION LIFECYCLE:
#   with get_sync_session() as session:
#       ...                      # work
#   # commit on clean exit, rollback on exception, always close
#
# Sessions are short: stage jobs open one per status update and never hold
# a session (or a row lock) across an external AI call.
#
# TESTS:
#   configure_engine("sqlite:///<tmp>/test.db") swaps the engine and session
#   factory; create_all() builds the schema.
# =============================================================================

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from docpipe.config import settings

_sync_engine: Engine | None = None
_sync_session_factory: sessionmaker | None = None


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # No pool sizing for SQLite; threads share the file through the
        # default pool. Foreign keys are off by default in SQLite.
        engine = create_engine(
            url,
            echo=settings.debug,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        url,
        echo=settings.debug,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def get_engine() -> Engine:
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = _build_engine(settings.database_url)
    return _sync_engine


def _get_sync_session_factory() -> sessionmaker:
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=get_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


def configure_engine(url: str) -> Engine:
    """
    Point the module at a different database (tests, scripts).

    Disposes the previous engine, if any.
    """
    global _sync_engine, _sync_session_factory
    if _sync_engine is not None:
        _sync_engine.dispose()
    _sync_engine = _build_engine(url)
    _sync_session_factory = None
    return _sync_engine


def dispose_engine() -> None:
    global _sync_engine, _sync_session_factory
    if _sync_engine is not None:
        _sync_engine.dispose()
    _sync_engine = None
    _sync_session_factory = None


def create_all() -> None:
    """Create every table (and the pgvector extension on PostgreSQL)."""
    from docpipe.db.models import Base

    engine = get_engine()
    if engine.dialect.name == "postgresql":
        from sqlalchemy import text

        with engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
    Base.metadata.create_all(engine)


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a database session.

    Usage:
        with get_sync_session() as session:
            page = session.get(Page, page_id)
            page.extraction_status = StageStatus.COMPLETED
            # Auto-commits on exit, auto-rollbacks on exception
    """
    factory = _get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
