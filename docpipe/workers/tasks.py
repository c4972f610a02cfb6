# =============================================================================
# Celery Task Definitions - Queue Slots and Periodic Control Tasks
# =============================================================================
#
# The tasks here never carry job data. `jobs.run_queue(queue)` is a slot: it
# claims and executes rows from the jobs table until none are eligible (or
# its batch is used up). Everything else is periodic housekeeping driven by
# celery beat.
#
# PROCESS LIFECYCLE (per worker child process):
#   worker_process_init      fresh DB pool, pipeline context, breaker
#                            refresher, embedding supervisor, queue notifier
#   worker_process_shutdown  stop supervisor (waits for in-flight embeddings)
#                            and refresher
#   worker_ready             (main process, once) re-enqueue work of
#                            documents interrupted by a restart
#
# IMPORTANT: Celery workers are SYNCHRONOUS. Everything below uses the sync
# SQLAlchemy engine and blocking AI client calls.
# =============================================================================

import logging
import time

from celery.signals import worker_process_init, worker_process_shutdown, worker_ready

from docpipe.config import settings
from docpipe.db.engine import dispose_engine
from docpipe.jobs.queue import get_job_queue
from docpipe.jobs.workers import enqueue_health_check as _enqueue_health_check
from docpipe.jobs.workers import enqueue_sweep as _enqueue_sweep
from docpipe.services.context import get_context
from docpipe.workers.celery_app import celery_app
from docpipe.workers.supervisor import embedding_supervisor

logger = logging.getLogger(__name__)

# Upper bound on jobs per run_queue message. The time budget below usually
# ends a batch first for the AI queues.
RUN_QUEUE_BATCH = 25


# ---------------------------------------------------------------------------
# Queue notifier
# ---------------------------------------------------------------------------


def wake_queue(queue: str, delay_seconds: float = 0.0) -> None:
    """Send a run_queue message to the Celery queue of the same name."""
    run_queue.apply_async(args=(queue,), queue=queue, countdown=max(delay_seconds, 0.0))


def install_notifier() -> None:
    """Make enqueues in this process wake Celery immediately."""
    get_job_queue().notifier = wake_queue


# ---------------------------------------------------------------------------
# Worker process lifecycle
# ---------------------------------------------------------------------------


@worker_process_init.connect
def _init_worker_process(**_kwargs) -> None:
    # Connections inherited from the parent process must not be reused.
    dispose_engine()

    ctx = get_context()
    ctx.breakers.start_refresher(settings.breaker_refresh_seconds)
    supervisor = embedding_supervisor(ctx, settings.embedding_supervisor_workers)
    supervisor.start()
    ctx.supervisor = supervisor
    install_notifier()
    logger.info("Worker process initialised")


@worker_process_shutdown.connect
def _shutdown_worker_process(**_kwargs) -> None:
    ctx = get_context()
    if ctx.supervisor is not None:
        ctx.supervisor.stop()
        ctx.supervisor = None
    ctx.breakers.stop_refresher()
    logger.info("Worker process shut down")


@worker_ready.connect
def _recover_on_startup(**_kwargs) -> None:
    from docpipe.services.documents import recover_incomplete_documents

    install_notifier()
    try:
        recover_incomplete_documents()
    except Exception:
        logger.exception("Startup recovery failed")


# ---------------------------------------------------------------------------
# Queue slot
# ---------------------------------------------------------------------------


@celery_app.task(name="jobs.run_queue")
def run_queue(queue: str, max_jobs: int = RUN_QUEUE_BATCH) -> dict:
    """
    Claim and execute jobs of `queue` until none are eligible, `max_jobs`
    ran, or the next job might not finish inside the soft time limit.
    Returns the outcome counts.

    The first job always runs; later ones only start while
    `elapsed + job_max_runtime_seconds(queue)` stays within the limit.
    """
    job_queue = get_job_queue()
    counts = {"success": 0, "failure": 0, "discard": 0}
    budget = settings.run_queue_soft_limit_seconds - settings.job_max_runtime_seconds(queue)
    started = time.monotonic()
    drained = False

    for index in range(max_jobs):
        if index and time.monotonic() - started > budget:
            break
        job = job_queue.fetch_next(queue)
        if job is None:
            drained = True
            break
        counts[job_queue.execute(job)] += 1

    # Batch or time budget used up; hand the slot to a fresh message.
    if not drained and queue in job_queue.queues_with_work():
        wake_queue(queue)

    if any(counts.values()):
        logger.info("run_queue %s: %s", queue, counts)
    return counts


# ---------------------------------------------------------------------------
# Periodic control tasks
# ---------------------------------------------------------------------------


@celery_app.task(name="jobs.dispatch")
def dispatch() -> list[str]:
    """Wake every queue holding due jobs (scheduled retries, missed wake-ups)."""
    queues = get_job_queue().queues_with_work()
    for queue in queues:
        wake_queue(queue)
    return queues


@celery_app.task(name="jobs.enqueue_health_check")
def enqueue_health_check() -> int:
    install_notifier()
    return _enqueue_health_check().id


@celery_app.task(name="jobs.enqueue_sweep")
def enqueue_sweep() -> int:
    install_notifier()
    return _enqueue_sweep().id


@celery_app.task(name="jobs.maintenance")
def maintenance() -> dict:
    """Prune finished jobs past retention and rescue orphaned executing jobs."""
    job_queue = get_job_queue()
    result = {
        "pruned": job_queue.prune(),
        "rescued": job_queue.rescue_orphaned(),
    }
    logger.info("Job maintenance: %s", result)
    return result
