# =============================================================================
# Durable Job Queue - Job Records in the Relational Database
# =============================================================================
#
# Jobs are rows in the `jobs` table, so they survive restarts of every
# process. Celery only delivers wake-up messages ("queue X has work"); the
# row is the source of truth for state, attempts and errors.
#
# LIFECYCLE:
#   enqueue() ──▶ available ──fetch_next()──▶ executing ──▶ completed
#                     ▲                           │
#                     └── failure, attempts left ─┤ (scheduled_at += backoff)
#                                                 └──▶ discarded
#                                                      (permanent error, or
#                                                       attempt >= max_attempts)
#   cancel(): available ──▶ cancelled
#
# CLAIMING:
#   fetch_next() takes the oldest eligible job (scheduled_at, then id) only
#   while fewer than `settings.queue_limit(queue)` jobs of that queue are
#   executing. On PostgreSQL the claim is serialised per queue with
#   pg_advisory_xact_lock and the candidate row is read FOR UPDATE SKIP
#   LOCKED. The state change is a conditional UPDATE, so two claimers can
#   never both win the same row on any dialect.
#
# HEARTBEAT:
#   The claim stamps heartbeat_at, and while `perform` runs a side thread
#   refreshes it every `settings.job_heartbeat_seconds`. rescue_orphaned()
#   only returns jobs whose heartbeat went stale (the slot process died),
#   so a long-running job is never claimed twice.
#
# NOTIFICATION:
#   After a commit that makes work available, `notifier(queue, delay_s)` is
#   called. The Celery layer installs a notifier that sends `jobs.run_queue`
#   with a countdown; without one, the beat `jobs.dispatch` tick picks the
#   work up.
# =============================================================================

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from docpipe.config import Settings
from docpipe.db.engine import get_sync_session
from docpipe.db.models import Job, JobState, utcnow
from docpipe.models.reports import DrainResult
from docpipe.resilience.backoff import backoff
from docpipe.resilience.errors import describe, is_permanent
from docpipe.services import telemetry
from docpipe.services.context import PipelineContext, get_context

logger = logging.getLogger(__name__)

Notifier = Callable[[str, float], None]

SUCCESS = "success"
FAILURE = "failure"
DISCARD = "discard"

_FINISHED_STATES = (JobState.COMPLETED, JobState.DISCARDED, JobState.CANCELLED)
_PENDING_STATES = (JobState.AVAILABLE, JobState.EXECUTING)

# Far enough ahead that every scheduled job counts as due.
_DRAIN_HORIZON = timedelta(days=365 * 100)


def unique_key(worker: str, args: dict) -> str:
    """sha256 of the worker name and its canonical (sorted-key) args."""
    payload = json.dumps({"worker": worker, "args": args}, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _advisory_lock(session: Session, name: str) -> None:
    """Transaction-scoped advisory lock on PostgreSQL; no-op elsewhere."""
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(select(func.pg_advisory_xact_lock(func.hashtext(name))))


class JobQueue:
    """
    Persistent job queue with per-queue concurrency limits.

    Args:
        settings: Source of queue limits, attempt ceiling and backoff numbers.
        context: Collaborators handed to workers; defaults to get_context().
        notifier: Called as notifier(queue, delay_seconds) after new or
            rescheduled work is committed.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        context: PipelineContext | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if settings is None:
            from docpipe.config import settings as global_settings

            settings = global_settings
        self.settings = settings
        self.notifier = notifier
        self._context = context
        self._clock = clock

    @property
    def context(self) -> PipelineContext:
        return self._context or get_context()

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        queue: str,
        worker: str,
        args: dict | None = None,
        *,
        max_attempts: int | None = None,
        schedule_in: float | None = None,
        unique: bool = False,
    ) -> Job:
        """
        Persist a job and return it once committed.

        Args:
            queue: Queue name (see docpipe.config for the known queues).
            worker: Registered worker class name.
            args: JSON-serialisable payload.
            max_attempts: Attempt ceiling; defaults to settings.job_max_attempts.
            schedule_in: Seconds before the job becomes eligible.
            unique: Return the existing available/executing job with the same
                worker and args instead of inserting a duplicate.
        """
        args = dict(args or {})
        now = self._clock()
        delay = max(schedule_in or 0.0, 0.0)
        key = unique_key(worker, args) if unique else None

        with get_sync_session() as session:
            if key is not None:
                _advisory_lock(session, f"jobs:unique:{key}")
                existing = session.scalars(
                    select(Job)
                    .where(Job.unique_key == key, Job.state.in_(_PENDING_STATES))
                    .order_by(Job.id)
                    .limit(1)
                ).first()
                if existing is not None:
                    logger.debug("Unique %s job already queued as #%d", worker, existing.id)
                    return existing

            job = Job(
                queue=queue,
                worker=worker,
                args=args,
                state=JobState.AVAILABLE,
                attempt=0,
                max_attempts=max_attempts or self.settings.job_max_attempts,
                errors=[],
                unique_key=key,
                scheduled_at=now + timedelta(seconds=delay),
                inserted_at=now,
            )
            session.add(job)
            session.flush()
            logger.info("Enqueued %s #%d on %s", worker, job.id, queue)

        self._notify(queue, delay)
        return job

    # -------------------------------------------------------------------------
    # Claim & execute
    # -------------------------------------------------------------------------

    def fetch_next(self, queue: str, now: datetime | None = None) -> Job | None:
        """
        Claim the oldest eligible job of `queue`, or None.

        None also means the queue is at its concurrency limit.
        """
        now = now or self._clock()
        limit = self.settings.queue_limit(queue)

        with get_sync_session() as session:
            _advisory_lock(session, f"jobs:queue:{queue}")
            executing = session.scalar(
                select(func.count())
                .select_from(Job)
                .where(Job.queue == queue, Job.state == JobState.EXECUTING)
            ) or 0
            if executing >= limit:
                logger.debug("Queue %s at its limit (%d executing)", queue, executing)
                return None

            stmt = (
                select(Job.id)
                .where(
                    Job.queue == queue,
                    Job.state == JobState.AVAILABLE,
                    Job.scheduled_at <= now,
                )
                .order_by(Job.scheduled_at, Job.id)
                .limit(1)
            )
            if session.get_bind().dialect.name == "postgresql":
                stmt = stmt.with_for_update(skip_locked=True)
            job_id = session.scalar(stmt)
            if job_id is None:
                return None

            claimed = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.AVAILABLE)
                .values(
                    state=JobState.EXECUTING,
                    attempt=Job.attempt + 1,
                    attempted_at=now,
                    heartbeat_at=now,
                )
            )
            if claimed.rowcount == 0:
                return None
            session.expire_all()
            return session.get(Job, job_id)

    def execute(self, job: Job) -> str:
        """
        Run a claimed job and record its outcome.

        Returns "success", "failure" (rescheduled) or "discard". Exceptions
        raised by the worker never escape.
        """
        from docpipe.jobs.workers import get_worker

        started = time.monotonic()
        worker = get_worker(job.worker)
        if worker is None:
            logger.error("Job #%d has unknown worker %r, discarding", job.id, job.worker)
            self._discard(job, f"Unknown worker: {job.worker}")
            return DISCARD

        args = None
        try:
            args = worker.parse_args(job.args)
            with _Heartbeat(self, job.id, self.settings.job_heartbeat_seconds):
                worker.perform(args, self.context)
        except Exception as e:
            return self._handle_failure(job, worker, args, e)

        duration_ms = round((time.monotonic() - started) * 1000, 1)
        with get_sync_session() as session:
            row = session.get(Job, job.id)
            if row is not None:
                row.state = JobState.COMPLETED
                row.completed_at = self._clock()
        logger.info("Job #%d %s completed in %.0fms", job.id, job.worker, duration_ms)
        telemetry.emit(
            "job.completed",
            job_id=job.id, queue=job.queue, worker=job.worker,
            attempt=job.attempt, duration_ms=duration_ms,
        )
        return SUCCESS

    def heartbeat(self, job_id: int) -> bool:
        """Mark an executing job as alive. False once it left executing."""
        with get_sync_session() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.EXECUTING)
                .values(heartbeat_at=self._clock())
            )
            return result.rowcount > 0

    def _handle_failure(self, job: Job, worker, args, error: Exception) -> str:
        message = describe(error)
        if is_permanent(error) or job.attempt >= job.max_attempts:
            logger.error(
                "Job #%d %s discarded after attempt %d/%d: %s",
                job.id, job.worker, job.attempt, job.max_attempts, message,
            )
            self._discard(job, message)
            if args is not None:
                self._run_discard_hook(worker, args, message)
            return DISCARD

        delay_ms = backoff(
            job.attempt - 1, self.settings.job_backoff_base_ms, self.settings.job_backoff_max_ms
        )
        now = self._clock()
        with get_sync_session() as session:
            row = session.get(Job, job.id)
            if row is not None:
                row.state = JobState.AVAILABLE
                row.scheduled_at = now + timedelta(milliseconds=delay_ms)
                row.errors = [*row.errors, self._error_entry(job.attempt, now, message)]
        logger.warning(
            "Job #%d %s failed (attempt %d/%d), retrying in %dms: %s",
            job.id, job.worker, job.attempt, job.max_attempts, delay_ms, message,
        )
        telemetry.emit(
            "job.retry",
            job_id=job.id, queue=job.queue, worker=job.worker,
            attempt=job.attempt, delay_ms=delay_ms, error=message,
        )
        self._notify(job.queue, delay_ms / 1000.0)
        return FAILURE

    def _discard(self, job: Job, message: str) -> None:
        now = self._clock()
        with get_sync_session() as session:
            row = session.get(Job, job.id)
            if row is not None:
                row.state = JobState.DISCARDED
                row.discarded_at = now
                row.errors = [*row.errors, self._error_entry(job.attempt, now, message)]
        telemetry.emit(
            "job.discarded",
            job_id=job.id, queue=job.queue, worker=job.worker,
            attempt=job.attempt, error=message,
        )

    def _run_discard_hook(self, worker, args, message: str) -> None:
        try:
            worker.on_discard(args, message, self.context)
        except Exception:
            logger.exception("on_discard hook of %s failed", type(worker).__name__)

    @staticmethod
    def _error_entry(attempt: int, at: datetime, message: str) -> dict:
        return {"attempt": attempt, "at": at.isoformat(), "error": message}

    # -------------------------------------------------------------------------
    # Slot loops
    # -------------------------------------------------------------------------

    def run(self, queue: str) -> DrainResult:
        """Claim and execute jobs of `queue` until nothing is eligible."""
        result = DrainResult()
        while (job := self.fetch_next(queue)) is not None:
            self._count(result, self.execute(job))
        return result

    def drain(self, queue: str | None = None, *, with_scheduled: bool = False) -> DrainResult:
        """
        Run jobs in-process, one at a time, until none are eligible.

        With `queue=None` every queue that has jobs is drained, repeatedly,
        until a full pass runs nothing (jobs enqueue follow-up jobs on other
        queues). `with_scheduled=True` treats future jobs as due, which runs
        retries to completion without waiting for their backoff.
        """
        result = DrainResult()
        while True:
            ran = 0
            queues = [queue] if queue is not None else self.known_queues()
            for name in queues:
                while True:
                    now = self._clock() + _DRAIN_HORIZON if with_scheduled else None
                    job = self.fetch_next(name, now=now)
                    if job is None:
                        break
                    self._count(result, self.execute(job))
                    ran += 1
            if ran == 0 or queue is not None:
                return result

    @staticmethod
    def _count(result: DrainResult, outcome: str) -> None:
        setattr(result, outcome, getattr(result, outcome) + 1)

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def known_queues(self) -> list[str]:
        with get_sync_session() as session:
            return sorted(session.scalars(select(Job.queue).distinct()))

    def queues_with_work(self) -> list[str]:
        """Queues holding at least one available job that is due now."""
        now = self._clock()
        with get_sync_session() as session:
            stmt = (
                select(Job.queue)
                .where(Job.state == JobState.AVAILABLE, Job.scheduled_at <= now)
                .distinct()
            )
            return sorted(session.scalars(stmt))

    def counts(self, queue: str | None = None) -> dict[str, int]:
        """Number of jobs per state, optionally for one queue."""
        with get_sync_session() as session:
            stmt = select(Job.state, func.count()).group_by(Job.state)
            if queue is not None:
                stmt = stmt.where(Job.queue == queue)
            found = {state: count for state, count in session.execute(stmt)}
        return {state.value: found.get(state, 0) for state in JobState}

    def get(self, job_id: int) -> Job | None:
        with get_sync_session() as session:
            return session.get(Job, job_id)

    def list_jobs(
        self, queue: str | None = None, states: Iterable[JobState] | None = None
    ) -> list[Job]:
        with get_sync_session() as session:
            stmt = select(Job).order_by(Job.id)
            if queue is not None:
                stmt = stmt.where(Job.queue == queue)
            if states is not None:
                stmt = stmt.where(Job.state.in_(list(states)))
            return list(session.scalars(stmt))

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def prune(self, max_age: timedelta | None = None) -> int:
        """Delete finished jobs older than `max_age` (default: retention setting)."""
        max_age = max_age if max_age is not None else timedelta(hours=self.settings.job_retention_hours)
        cutoff = self._clock() - max_age
        with get_sync_session() as session:
            jobs = session.scalars(
                select(Job)
                .where(Job.state.in_(_FINISHED_STATES))
                .where(
                    or_(
                        Job.completed_at < cutoff,
                        Job.discarded_at < cutoff,
                        Job.cancelled_at < cutoff,
                    )
                )
            ).all()
            for job in jobs:
                session.delete(job)
            pruned = len(jobs)
        if pruned:
            logger.info("Pruned %d finished jobs older than %s", pruned, max_age)
        return pruned

    def rescue_orphaned(self, stale_after: timedelta | None = None) -> int:
        """
        Return executing jobs whose heartbeat went stale (their worker
        died) to the queue.

        Jobs out of attempts are discarded instead and their worker's
        on_discard hook runs. Returns the number of jobs touched.
        """
        from docpipe.jobs.workers import get_worker

        stale_after = (
            stale_after
            if stale_after is not None
            else timedelta(minutes=self.settings.job_rescue_after_minutes)
        )
        now = self._clock()
        cutoff = now - stale_after
        discarded: list[Job] = []
        queues: set[str] = set()
        message = f"Job orphaned: no heartbeat for {stale_after}"

        with get_sync_session() as session:
            jobs = session.scalars(
                select(Job)
                .where(
                    Job.state == JobState.EXECUTING,
                    func.coalesce(Job.heartbeat_at, Job.attempted_at) < cutoff,
                )
                .with_for_update()
            ).all()
            for job in jobs:
                job.errors = [*job.errors, self._error_entry(job.attempt, now, message)]
                if job.attempt >= job.max_attempts:
                    job.state = JobState.DISCARDED
                    job.discarded_at = now
                    discarded.append(job)
                else:
                    job.state = JobState.AVAILABLE
                    job.scheduled_at = now
                    queues.add(job.queue)
            rescued = len(jobs)

        for job in discarded:
            logger.error("Orphaned job #%d %s discarded (out of attempts)", job.id, job.worker)
            telemetry.emit(
                "job.discarded",
                job_id=job.id, queue=job.queue, worker=job.worker,
                attempt=job.attempt, error=message,
            )
            worker = get_worker(job.worker)
            if worker is None:
                continue
            try:
                args = worker.parse_args(job.args)
            except Exception as e:
                logger.warning("Orphaned job #%d has invalid args: %s", job.id, describe(e))
                continue
            self._run_discard_hook(worker, args, message)

        for queue in sorted(queues):
            self._notify(queue, 0.0)
        if rescued:
            logger.warning("Rescued %d orphaned jobs (%d discarded)", rescued, len(discarded))
        return rescued

    def cancel(self, job_id: int) -> bool:
        """Cancel an available job. Executing and finished jobs are left alone."""
        with get_sync_session() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.AVAILABLE)
                .values(state=JobState.CANCELLED, cancelled_at=self._clock())
            )
            cancelled = result.rowcount > 0
        if cancelled:
            logger.info("Cancelled job #%d", job_id)
        return cancelled

    def cancel_for_document(self, document_id, page_ids: Iterable = ()) -> int:
        """
        Cancel the available jobs that reference a document or its pages.

        Returns the number of jobs cancelled.
        """
        targets = {str(page_id) for page_id in page_ids}
        document_key = str(document_id)
        now = self._clock()
        cancelled = 0
        with get_sync_session() as session:
            jobs = session.scalars(
                select(Job).where(Job.state == JobState.AVAILABLE).with_for_update()
            ).all()
            for job in jobs:
                args = job.args or {}
                if args.get("document_id") == document_key or args.get("page_id") in targets:
                    job.state = JobState.CANCELLED
                    job.cancelled_at = now
                    cancelled += 1
        if cancelled:
            logger.info("Cancelled %d jobs for document %s", cancelled, document_id)
        return cancelled

    # -------------------------------------------------------------------------
    # Notification
    # -------------------------------------------------------------------------

    def _notify(self, queue: str, delay_seconds: float) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(queue, delay_seconds)
        except Exception:
            # The beat dispatch tick still finds the job.
            logger.exception("Failed to notify queue %s", queue)


class _Heartbeat:
    """Refreshes a job's heartbeat from a side thread while it executes."""

    def __init__(self, queue: JobQueue, job_id: int, interval_seconds: float):
        self._queue = queue
        self._job_id = job_id
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> _Heartbeat:
        if self._interval > 0:
            self._thread = threading.Thread(
                target=self._run, name=f"job-heartbeat-{self._job_id}", daemon=True
            )
            self._thread.start()
        return self

    def __exit__(self, *_exc) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                if not self._queue.heartbeat(self._job_id):
                    return
            except Exception:
                # Next tick retries; a long DB outage ends in a rescue.
                logger.exception("Heartbeat for job #%d failed", self._job_id)


_job_queue: JobQueue | None = None


def get_job_queue() -> JobQueue:
    """Lazy process-wide queue built from the global settings."""
    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue()
    return _job_queue


def set_job_queue(queue: JobQueue | None) -> None:
    global _job_queue
    _job_queue = queue
