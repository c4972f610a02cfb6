"""
Tests for the Celery queue slot and periodic control tasks.

The tasks are called directly (`task.run(...)`), so no broker is needed.
"""

from unittest.mock import MagicMock, patch

from docpipe.workers import tasks


def _queue_with(jobs: list, outcomes: list, queues_with_work: list | None = None) -> MagicMock:
    job_queue = MagicMock()
    job_queue.fetch_next.side_effect = jobs + [None]
    job_queue.execute.side_effect = outcomes
    job_queue.queues_with_work.return_value = queues_with_work or []
    return job_queue


class TestRunQueue:
    def test_runs_until_queue_empty(self):
        job_queue = _queue_with([object(), object(), object()], ["success", "failure", "discard"])

        with patch.object(tasks, "get_job_queue", return_value=job_queue), \
             patch.object(tasks, "wake_queue") as wake:
            counts = tasks.run_queue.run("pdf_extraction")

        assert counts == {"success": 1, "failure": 1, "discard": 1}
        wake.assert_not_called()

    def test_batch_used_up_hands_over_when_work_remains(self):
        job_queue = _queue_with(
            [object(), object()], ["success", "success"], queues_with_work=["llm_processing"]
        )

        with patch.object(tasks, "get_job_queue", return_value=job_queue), \
             patch.object(tasks, "wake_queue") as wake:
            counts = tasks.run_queue.run("llm_processing", max_jobs=2)

        assert counts["success"] == 2
        wake.assert_called_once_with("llm_processing")

    def test_batch_used_up_without_remaining_work(self):
        job_queue = _queue_with([object()], ["success"], queues_with_work=[])

        with patch.object(tasks, "get_job_queue", return_value=job_queue), \
             patch.object(tasks, "wake_queue") as wake:
            tasks.run_queue.run("llm_processing", max_jobs=1)

        wake.assert_not_called()

    def test_llm_slot_stops_before_a_job_that_could_overrun(self):
        # Worst-case LLM job leaves well under half the soft limit for others.
        job_queue = _queue_with(
            [object(), object()], ["success", "success"], queues_with_work=["llm_processing"]
        )
        clock = MagicMock()
        clock.monotonic.side_effect = [0.0, 1200.0]

        with patch.object(tasks, "get_job_queue", return_value=job_queue), \
             patch.object(tasks, "time", clock), \
             patch.object(tasks, "wake_queue") as wake:
            counts = tasks.run_queue.run("llm_processing")

        assert counts["success"] == 1
        assert job_queue.fetch_next.call_count == 1
        wake.assert_called_once_with("llm_processing")

    def test_short_jobs_keep_running_at_the_same_elapsed_time(self):
        job_queue = _queue_with([object(), object()], ["success", "success"])
        clock = MagicMock()
        clock.monotonic.side_effect = [0.0, 1200.0, 1300.0]

        with patch.object(tasks, "get_job_queue", return_value=job_queue), \
             patch.object(tasks, "time", clock), \
             patch.object(tasks, "wake_queue") as wake:
            counts = tasks.run_queue.run("pdf_extraction")

        assert counts["success"] == 2
        wake.assert_not_called()

    def test_first_job_always_runs(self):
        job_queue = _queue_with([object()], ["success"])
        clock = MagicMock()
        clock.monotonic.return_value = 0.0

        with patch.object(tasks, "get_job_queue", return_value=job_queue), \
             patch.object(tasks, "time", clock), \
             patch.object(tasks.settings, "run_queue_soft_limit_seconds", 60):
            counts = tasks.run_queue.run("llm_processing")

        assert counts["success"] == 1


class TestControlTasks:
    def test_dispatch_wakes_every_queue_with_work(self):
        job_queue = MagicMock()
        job_queue.queues_with_work.return_value = ["pdf_extraction", "embedding_generation"]

        with patch.object(tasks, "get_job_queue", return_value=job_queue), \
             patch.object(tasks, "wake_queue") as wake:
            woken = tasks.dispatch.run()

        assert woken == ["pdf_extraction", "embedding_generation"]
        assert wake.call_count == 2

    def test_maintenance_prunes_and_rescues(self):
        job_queue = MagicMock()
        job_queue.prune.return_value = 4
        job_queue.rescue_orphaned.return_value = 1

        with patch.object(tasks, "get_job_queue", return_value=job_queue):
            result = tasks.maintenance.run()

        assert result == {"pruned": 4, "rescued": 1}

    def test_wake_queue_routes_to_named_queue(self):
        with patch.object(tasks.run_queue, "apply_async") as apply_async:
            tasks.wake_queue("llm_processing", delay_seconds=-3)

        apply_async.assert_called_once_with(
            args=("llm_processing",), queue="llm_processing", countdown=0.0
        )

    def test_install_notifier(self):
        job_queue = MagicMock()
        with patch.object(tasks, "get_job_queue", return_value=job_queue):
            tasks.install_notifier()

        assert job_queue.notifier is tasks.wake_queue
