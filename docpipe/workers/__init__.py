# =============================================================================
# Workers Package - Celery Runtime
# =============================================================================
#   - celery_app.py: Celery application, routing and beat schedule
#   - tasks.py: queue slot task, periodic control tasks, process lifecycle
#   - supervisor.py: coordinator + thread pool for fire-and-forget
#     embedding work
# =============================================================================
