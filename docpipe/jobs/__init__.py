# =============================================================================
# Jobs Package - Durable Job Queue
# =============================================================================
#   - queue.py: JobQueue (enqueue, claim, execute, retry/discard, prune,
#     rescue, cancel) over the `jobs` table
#   - workers.py: worker classes per queue and the enqueue helpers
# =============================================================================
