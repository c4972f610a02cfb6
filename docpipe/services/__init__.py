# =============================================================================
# Services Package - Business Logic
# =============================================================================
# Contains the pipeline logic, separated from the queue and Celery layers:
#   - documents.py: document/page persistence and flows (upload, delete,
#     re-run, startup recovery)
#   - state_machine.py: document and page stage transitions, progress
#   - processing.py: document extraction and per-page LLM stages
#   - embeddings.py: one page → one embedding vector
#   - ai_client.py: AI service protocol (OpenAI-compatible, fake)
#   - pdf_extractor.py / converter.py: rasterisation, LibreOffice conversion
#   - storage.py: on-disk document directories
#   - sweeper.py: orphaned directory and stale document cleanup
#   - context.py: collaborators injected into stage jobs
#   - telemetry.py: named pipeline events
# =============================================================================
