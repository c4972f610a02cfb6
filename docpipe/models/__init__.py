# =============================================================================
# Models Package - Pydantic V2 Schemas
# =============================================================================
# Defines job payloads (jobs.py) and report schemas (reports.py).
# These are SEPARATE from the database models (docpipe/db/models.py):
# job args are validated right before a job runs, reports are what
# maintenance tasks return and scripts print.
# =============================================================================
