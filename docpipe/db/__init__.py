# =============================================================================
# Database Package
# =============================================================================
# Provides the sync SQLAlchemy engine, session management, and ORM models.
#
# Key exports:
#   - get_sync_session: short-lived session context manager
#   - configure_engine / create_all: point at a database and build the schema
#   - Document, Page, Job: ORM models
# =============================================================================
