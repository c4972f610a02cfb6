# =============================================================================
# Unit Tests - Durable Job Queue
# =============================================================================
#
# Runs the queue against SQLite with a test-only worker whose failures are
# scripted through its args. The queue clock is fixed and moved by hand, so
# backoff schedules and retention windows are exact.
# =============================================================================

import threading
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from docpipe.config import LLM_PROCESSING_QUEUE, settings
from docpipe.db.models import JobState
from docpipe.jobs.queue import JobQueue, unique_key
from docpipe.jobs.workers import (
    Worker,
    enqueue_document_extraction,
    enqueue_llm_processing,
    register,
)
from docpipe.models.jobs import JobArgs
from docpipe.resilience.errors import ServiceError, ValidationError

ECHO_QUEUE = "echo"

calls: list[str] = []
discarded: list[tuple[str, str]] = []
heartbeat_seen = threading.Event()


class EchoArgs(JobArgs):
    key: str
    fail_times: int = 0
    permanent: bool = False
    await_heartbeat: bool = False


@register
class EchoWorker(Worker):
    queue = ECHO_QUEUE
    args_model = EchoArgs
    unique = False

    def perform(self, args, ctx):
        calls.append(args.key)
        if args.await_heartbeat:
            assert heartbeat_seen.wait(5), "no heartbeat while executing"
        if calls.count(args.key) <= args.fail_times:
            if args.permanent:
                raise ValidationError("bad payload")
            raise ServiceError("boom", 503)

    def on_discard(self, args, message, ctx):
        discarded.append((args.key, message))


class FixedClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _reset_echo():
    calls.clear()
    discarded.clear()
    heartbeat_seen.clear()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def queue(db, ctx, clock):
    return JobQueue(settings, context=ctx, clock=clock)


def _echo(queue, key, **kwargs):
    max_attempts = kwargs.pop("max_attempts", None)
    schedule_in = kwargs.pop("schedule_in", None)
    return queue.enqueue(
        ECHO_QUEUE,
        "EchoWorker",
        {"key": key, **kwargs},
        max_attempts=max_attempts,
        schedule_in=schedule_in,
    )


class TestEnqueue:
    """Tests for JobQueue.enqueue()."""

    def test_new_job_is_available(self, queue, clock):
        job = _echo(queue, "a")
        assert job.state == JobState.AVAILABLE
        assert job.attempt == 0
        assert job.max_attempts == settings.job_max_attempts
        assert job.errors == []
        assert job.scheduled_at == clock.now

    def test_schedule_in_delays_eligibility(self, queue, clock):
        job = _echo(queue, "a", schedule_in=60)
        assert job.scheduled_at == clock.now + timedelta(seconds=60)
        assert queue.fetch_next(ECHO_QUEUE) is None
        clock.advance(seconds=60)
        assert queue.fetch_next(ECHO_QUEUE).id == job.id

    def test_unique_returns_pending_job(self, queue):
        first = queue.enqueue(ECHO_QUEUE, "EchoWorker", {"key": "u"}, unique=True)
        second = queue.enqueue(ECHO_QUEUE, "EchoWorker", {"key": "u"}, unique=True)
        assert first.id == second.id
        assert queue.counts(ECHO_QUEUE)["available"] == 1

    def test_unique_allows_new_job_after_completion(self, queue):
        first = queue.enqueue(ECHO_QUEUE, "EchoWorker", {"key": "u"}, unique=True)
        queue.drain(ECHO_QUEUE)
        second = queue.enqueue(ECHO_QUEUE, "EchoWorker", {"key": "u"}, unique=True)
        assert second.id != first.id

    def test_unique_key_ignores_arg_order(self):
        assert unique_key("W", {"a": 1, "b": 2}) == unique_key("W", {"b": 2, "a": 1})
        assert unique_key("W", {"a": 1}) != unique_key("X", {"a": 1})

    def test_notifier_called_with_delay(self, db, ctx, clock):
        notified = []
        queue = JobQueue(settings, context=ctx, clock=clock, notifier=lambda q, d: notified.append((q, d)))
        _echo(queue, "a")
        _echo(queue, "b", schedule_in=30)
        assert notified == [(ECHO_QUEUE, 0.0), (ECHO_QUEUE, 30)]

    def test_failing_notifier_does_not_break_enqueue(self, db, ctx, clock):
        def broken(_queue, _delay):
            raise ConnectionError("broker down")

        queue = JobQueue(settings, context=ctx, clock=clock, notifier=broken)
        job = _echo(queue, "a")
        assert queue.get(job.id).state == JobState.AVAILABLE


class TestFetchNext:
    """Claiming, ordering and the per-queue limit."""

    def test_claim_marks_executing(self, queue, clock):
        job = _echo(queue, "a")
        claimed = queue.fetch_next(ECHO_QUEUE)
        assert claimed.id == job.id
        assert claimed.state == JobState.EXECUTING
        assert claimed.attempt == 1
        assert claimed.attempted_at == clock.now

    def test_fifo_order(self, queue):
        for key in ("first", "second", "third"):
            _echo(queue, key)
        queue.drain(ECHO_QUEUE)
        assert calls == ["first", "second", "third"]

    def test_earlier_schedule_runs_first(self, queue, clock):
        _echo(queue, "later", schedule_in=10)
        _echo(queue, "sooner", schedule_in=5)
        clock.advance(seconds=10)
        queue.drain(ECHO_QUEUE)
        assert calls == ["sooner", "later"]

    def test_queue_limit_blocks_claims(self, queue):
        # Unknown queues get a single slot
        assert settings.queue_limit(ECHO_QUEUE) == 1
        _echo(queue, "a")
        _echo(queue, "b")
        first = queue.fetch_next(ECHO_QUEUE)
        assert queue.fetch_next(ECHO_QUEUE) is None
        queue.execute(first)
        assert queue.fetch_next(ECHO_QUEUE) is not None

    def test_empty_queue(self, queue):
        assert queue.fetch_next(ECHO_QUEUE) is None


class TestExecute:
    """Outcomes recorded by JobQueue.execute()."""

    def test_success(self, queue, clock, events):
        job = _echo(queue, "a")
        assert queue.execute(queue.fetch_next(ECHO_QUEUE)) == "success"
        stored = queue.get(job.id)
        assert stored.state == JobState.COMPLETED
        assert stored.completed_at == clock.now
        completed = events.of("job.completed")
        assert completed[0]["job_id"] == job.id
        assert completed[0]["worker"] == "EchoWorker"

    def test_transient_failure_reschedules_with_backoff(self, queue, clock, events):
        job = _echo(queue, "a", fail_times=1)
        assert queue.execute(queue.fetch_next(ECHO_QUEUE)) == "failure"
        stored = queue.get(job.id)
        assert stored.state == JobState.AVAILABLE
        assert stored.scheduled_at == clock.now + timedelta(milliseconds=settings.job_backoff_base_ms)
        assert stored.errors[0]["attempt"] == 1
        assert stored.errors[0]["error"] == "boom"
        retry = events.of("job.retry")[0]
        assert retry["delay_ms"] == settings.job_backoff_base_ms
        assert retry["attempt"] == 1

    def test_transient_failures_exhaust_attempts(self, queue, events):
        job = _echo(queue, "a", fail_times=10)
        result = queue.drain(ECHO_QUEUE, with_scheduled=True)
        assert (result.failure, result.discard) == (2, 1)
        stored = queue.get(job.id)
        assert stored.state == JobState.DISCARDED
        assert stored.attempt == 3
        assert [e["attempt"] for e in stored.errors] == [1, 2, 3]
        assert discarded == [("a", "boom")]
        delays = [e["delay_ms"] for e in events.of("job.retry")]
        assert delays == [settings.job_backoff_base_ms, settings.job_backoff_base_ms * 2]

    def test_permanent_failure_discarded_at_once(self, queue):
        job = _echo(queue, "a", fail_times=1, permanent=True)
        result = queue.drain(ECHO_QUEUE, with_scheduled=True)
        assert result.discard == 1 and result.failure == 0
        stored = queue.get(job.id)
        assert stored.state == JobState.DISCARDED
        assert stored.attempt == 1
        assert len(stored.errors) == 1
        assert discarded == [("a", "bad payload")]

    def test_max_attempts_override(self, queue):
        job = _echo(queue, "a", fail_times=10, max_attempts=1)
        queue.drain(ECHO_QUEUE, with_scheduled=True)
        assert queue.get(job.id).state == JobState.DISCARDED
        assert calls == ["a"]

    def test_invalid_args_discarded_without_hook(self, queue):
        job = queue.enqueue(ECHO_QUEUE, "EchoWorker", {"unexpected": True})
        assert queue.drain(ECHO_QUEUE).discard == 1
        assert queue.get(job.id).state == JobState.DISCARDED
        assert calls == []
        assert discarded == []

    def test_unknown_worker_discarded(self, queue):
        job = queue.enqueue(ECHO_QUEUE, "NoSuchWorker", {})
        assert queue.drain(ECHO_QUEUE).discard == 1
        stored = queue.get(job.id)
        assert stored.state == JobState.DISCARDED
        assert "Unknown worker" in stored.errors[0]["error"]

    def test_failing_discard_hook_is_contained(self, queue):
        job = _echo(queue, "a", fail_times=1, permanent=True)
        with patch.object(EchoWorker, "on_discard", side_effect=RuntimeError("hook broke")) as hook:
            assert queue.drain(ECHO_QUEUE).discard == 1
        hook.assert_called_once()
        assert queue.get(job.id).state == JobState.DISCARDED


class TestDrain:
    """Tests for JobQueue.drain()."""

    def test_scheduled_jobs_need_flag(self, queue):
        _echo(queue, "a", schedule_in=3600)
        assert queue.drain().total == 0
        assert queue.drain(with_scheduled=True).success == 1

    def test_all_queues(self, queue):
        _echo(queue, "a")
        queue.enqueue("other", "EchoWorker", {"key": "b"})
        result = queue.drain()
        assert result.success == 2
        assert sorted(calls) == ["a", "b"]

    def test_counts(self, queue):
        _echo(queue, "a")
        _echo(queue, "b", fail_times=1, permanent=True)
        _echo(queue, "c", schedule_in=60)
        queue.drain(ECHO_QUEUE)
        counts = queue.counts(ECHO_QUEUE)
        assert counts["completed"] == 1
        assert counts["discarded"] == 1
        assert counts["available"] == 1
        assert counts["executing"] == 0


class TestMaintenance:
    """Prune, rescue and cancellation."""

    def test_prune_removes_old_finished_jobs(self, queue, clock):
        done = _echo(queue, "done")
        queue.drain(ECHO_QUEUE)
        pending = _echo(queue, "pending", schedule_in=3600 * 200)
        clock.advance(hours=settings.job_retention_hours + 1)
        assert queue.prune() == 1
        assert queue.get(done.id) is None
        assert queue.get(pending.id) is not None

    def test_prune_keeps_recent_jobs(self, queue, clock):
        _echo(queue, "done")
        queue.drain(ECHO_QUEUE)
        clock.advance(hours=1)
        assert queue.prune() == 0

    def test_rescue_returns_stuck_job_to_queue(self, queue, clock):
        job = _echo(queue, "a")
        queue.fetch_next(ECHO_QUEUE)
        clock.advance(minutes=settings.job_rescue_after_minutes + 1)
        assert queue.rescue_orphaned() == 1
        stored = queue.get(job.id)
        assert stored.state == JobState.AVAILABLE
        assert "orphaned" in stored.errors[0]["error"]
        assert queue.drain(ECHO_QUEUE).success == 1

    def test_rescue_discards_job_out_of_attempts(self, queue, clock):
        job = _echo(queue, "a", max_attempts=1)
        queue.fetch_next(ECHO_QUEUE)
        clock.advance(hours=1)
        assert queue.rescue_orphaned() == 1
        assert queue.get(job.id).state == JobState.DISCARDED
        assert [key for key, _ in discarded] == ["a"]

    def test_rescue_ignores_recent_executions(self, queue, clock):
        _echo(queue, "a")
        queue.fetch_next(ECHO_QUEUE)
        clock.advance(minutes=1)
        assert queue.rescue_orphaned() == 0

    def test_long_job_with_heartbeat_is_never_rescued(self, queue, clock):
        job = _echo(queue, "slow")
        queue.fetch_next(ECHO_QUEUE)
        worst_case = timedelta(seconds=settings.job_max_runtime_seconds(LLM_PROCESSING_QUEUE))
        assert worst_case > timedelta(minutes=settings.job_rescue_after_minutes)

        elapsed = timedelta()
        while elapsed <= worst_case:
            clock.advance(seconds=settings.job_heartbeat_seconds)
            elapsed += timedelta(seconds=settings.job_heartbeat_seconds)
            assert queue.heartbeat(job.id) is True
            assert queue.rescue_orphaned() == 0

        stored = queue.get(job.id)
        assert stored.state == JobState.EXECUTING
        assert stored.attempt == 1
        assert stored.errors == []

    def test_rescue_after_heartbeat_stops(self, queue, clock):
        job = _echo(queue, "a")
        queue.fetch_next(ECHO_QUEUE)
        clock.advance(minutes=30)
        queue.heartbeat(job.id)
        clock.advance(minutes=settings.job_rescue_after_minutes - 1)
        assert queue.rescue_orphaned() == 0
        clock.advance(minutes=2)
        assert queue.rescue_orphaned() == 1

    def test_heartbeat_ignores_finished_job(self, queue):
        job = _echo(queue, "a")
        queue.drain(ECHO_QUEUE)
        assert queue.heartbeat(job.id) is False

    def test_executing_job_sends_heartbeats(self, db, ctx, clock):
        fast = JobQueue(
            settings.model_copy(update={"job_heartbeat_seconds": 0.01}), context=ctx, clock=clock
        )
        beat = fast.heartbeat

        def heartbeat(job_id):
            clock.advance(minutes=1)
            alive = beat(job_id)
            heartbeat_seen.set()
            return alive

        job = fast.enqueue(ECHO_QUEUE, "EchoWorker", {"key": "slow", "await_heartbeat": True})
        with patch.object(fast, "heartbeat", side_effect=heartbeat):
            assert fast.execute(fast.fetch_next(ECHO_QUEUE)) == "success"

        stored = fast.get(job.id)
        assert stored.heartbeat_at > stored.attempted_at

    def test_cancel_available_job(self, queue):
        job = _echo(queue, "a")
        assert queue.cancel(job.id) is True
        assert queue.get(job.id).state == JobState.CANCELLED
        assert queue.cancel(job.id) is False
        assert queue.drain().total == 0

    def test_cancel_leaves_executing_job(self, queue):
        job = _echo(queue, "a")
        queue.fetch_next(ECHO_QUEUE)
        assert queue.cancel(job.id) is False
        assert queue.get(job.id).state == JobState.EXECUTING

    def test_cancel_for_document(self, job_queue):
        document_id = uuid.uuid4()
        page_id = uuid.uuid4()
        extraction = enqueue_document_extraction(document_id)
        llm = enqueue_llm_processing(page_id)
        unrelated = enqueue_llm_processing(uuid.uuid4())

        assert job_queue.cancel_for_document(document_id, [page_id]) == 2
        assert job_queue.get(extraction.id).state == JobState.CANCELLED
        assert job_queue.get(llm.id).state == JobState.CANCELLED
        assert job_queue.get(unrelated.id).state == JobState.AVAILABLE
