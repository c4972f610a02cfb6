# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery is the runtime that wakes up queue slots. It does NOT hold the jobs:
# job records live in PostgreSQL (docpipe/jobs/queue.py), so a Redis flush or
# a lost message never loses work.
#
# ARCHITECTURE:
# ┌───────────┐ enqueue  ┌────────────┐
# │ producer  │────────▶ │ jobs table │◀──────────────┐
# └─────┬─────┘          └────────────┘               │ fetch_next / execute
#       │ run_queue(q)   ┌───────┐     ┌──────────────┴──┐
#       └──────────────▶ │ Redis │───▶ │ Celery worker    │ -Q pdf_extraction,
#   beat: dispatch ─────▶│(broker)│    │ (run_queue loop) │    llm_processing, ...
#                        └───────┘     └──────────────────┘
#
# Workers are started per queue with a concurrency matching the queue limit:
#   celery -A docpipe.workers.celery_app worker -Q llm_processing -c 10
# The same limit is also enforced when a job is claimed, so over-provisioned
# workers simply find nothing to do.
#
# BEAT SCHEDULE:
#   jobs.dispatch              every job_poll_interval_seconds
#   jobs.enqueue_health_check  every minute
#   jobs.maintenance           hourly (prune finished jobs, rescue orphans)
#   jobs.enqueue_sweep         every sweeper_interval_hours
# =============================================================================

from celery import Celery

from docpipe.config import MAINTENANCE_QUEUE, settings

CONTROL_QUEUE = "control"

# ---------------------------------------------------------------------------
# Create Celery Application
# ---------------------------------------------------------------------------
celery_app = Celery(
    "docpipe.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# ---------------------------------------------------------------------------
# Celery Configuration
# ---------------------------------------------------------------------------
celery_app.conf.update(
    # --- Serialization ---
    # JSON only: messages carry a queue name and nothing else.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Ack after the slot loop finishes so a killed worker's message is
    # redelivered. The job row itself is rescued by jobs.maintenance.
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # One message at a time per process: a slot loop can run for minutes.
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # A slot loop runs several jobs and only starts one whose worst-case
    # runtime fits in what is left of the soft limit (workers/tasks.py), so
    # SoftTimeLimitExceeded means a job overran its own bounds.
    task_soft_time_limit=settings.run_queue_soft_limit_seconds,
    task_time_limit=settings.run_queue_soft_limit_seconds + 300,

    # --- Results ---
    result_expires=3600,

    # --- Routing ---
    # run_queue is sent explicitly to the queue it serves; the periodic
    # control tasks share a small control queue.
    task_default_queue=CONTROL_QUEUE,
    task_routes={
        "jobs.dispatch": {"queue": CONTROL_QUEUE},
        "jobs.enqueue_health_check": {"queue": CONTROL_QUEUE},
        "jobs.enqueue_sweep": {"queue": CONTROL_QUEUE},
        "jobs.maintenance": {"queue": MAINTENANCE_QUEUE},
    },

    # --- Task Discovery ---
    include=["docpipe.workers.tasks"],
)

# ---------------------------------------------------------------------------
# Beat Schedule
# ---------------------------------------------------------------------------
beat_schedule = {
    "dispatch-queues": {
        "task": "jobs.dispatch",
        "schedule": settings.job_poll_interval_seconds,
    },
    "job-maintenance": {
        "task": "jobs.maintenance",
        "schedule": 3600.0,
    },
}
if settings.health_check_enabled:
    beat_schedule["health-check"] = {
        "task": "jobs.enqueue_health_check",
        "schedule": 60.0,
    }
if settings.sweeper_enabled:
    beat_schedule["orphan-sweep"] = {
        "task": "jobs.enqueue_sweep",
        "schedule": settings.sweeper_interval_hours * 3600.0,
    }

celery_app.conf.beat_schedule = beat_schedule
