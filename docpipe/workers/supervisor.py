# =============================================================================
# Task Supervisor - Crash-Isolated Background Work
# =============================================================================
#
# Runs fire-and-forget units of work (embedding generation after a page's
# translation completes) on a thread pool, so the LLM job that asked for
# the embedding does not wait for it.
#
# ARCHITECTURE:
#
#   submit(unit_id) ──▶ ┌──────────┐      ┌─────────────────────┐
#   future done ──────▶ │  inbox   │ ───▶ │ coordinator thread  │
#   stats() ──────────▶ │ (Queue)  │      │ owns {future: unit} │
#                       └──────────┘      └──────────┬──────────┘
#                                                    │ spawn
#                                         ┌──────────▼──────────┐
#                                         │ ThreadPoolExecutor  │
#                                         │ work(unit_id)->bool │
#                                         └─────────────────────┘
#
#   - submit() only posts a message and returns
#   - the coordinator is the only reader and writer of the future map;
#     pool threads report back through the inbox via done-callbacks
#   - work returning True/False → success/failure counted
#   - work raising → a crash: logged, `task.crashed` emitted, counted,
#     never retried (the unit's own status field carries the outcome)
# =============================================================================

from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from docpipe.resilience.errors import describe
from docpipe.services import telemetry

logger = logging.getLogger(__name__)

_SUBMIT = "submit"
_DONE = "done"
_STATS = "stats"
_STOP = "stop"


@dataclass(frozen=True)
class SupervisorStats:
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    crashed: int = 0
    in_flight: int = 0

    @property
    def finished(self) -> int:
        return self.succeeded + self.failed + self.crashed


class TaskSupervisor:
    """
    Coordinator thread plus a bounded pool.

    Args:
        work: Called with a unit id on a pool thread; returns True on success.
        max_workers: Pool size.
        name: Label for logs, thread names and telemetry.
    """

    def __init__(self, work: Callable[[Any], bool], max_workers: int = 4, name: str = "supervisor"):
        self._work = work
        self._max_workers = max_workers
        self.name = name
        self._inbox: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        # Units submitted but not yet finished (guarded by _pending_cond)
        self._pending = 0
        self._pending_cond = threading.Condition()

        # Coordinator-owned state
        self._futures: dict[Future, Any] = {}
        self._submitted = 0
        self._succeeded = 0
        self._failed = 0
        self._crashed = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix=f"{self.name}-worker"
        )
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Supervisor %s started with %d workers", self.name, self._max_workers)

    def stop(self, timeout: float | None = 30.0) -> None:
        """Stop accepting work, wait for running units, shut the pool down."""
        if not self.running:
            return
        self._inbox.put((_STOP, None))
        self._thread.join(timeout)
        self._thread = None
        logger.info("Supervisor %s stopped", self.name)

    # -------------------------------------------------------------------------
    # Client API (any thread)
    # -------------------------------------------------------------------------

    def submit(self, unit_id: Any) -> None:
        """Hand a unit to the coordinator. Never blocks on the work itself."""
        if not self.running:
            raise RuntimeError(f"Supervisor {self.name} is not running")
        with self._pending_cond:
            self._pending += 1
        self._inbox.put((_SUBMIT, unit_id))

    def stats(self, timeout: float = 5.0) -> SupervisorStats:
        if not self.running:
            return self._snapshot()
        reply: queue.Queue = queue.Queue(maxsize=1)
        self._inbox.put((_STATS, reply))
        return reply.get(timeout=timeout)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued or in flight. Returns False on timeout."""
        with self._pending_cond:
            return self._pending_cond.wait_for(lambda: self._pending == 0, timeout)

    def _settle(self) -> None:
        with self._pending_cond:
            self._pending -= 1
            if self._pending == 0:
                self._pending_cond.notify_all()

    # -------------------------------------------------------------------------
    # Coordinator loop
    # -------------------------------------------------------------------------

    def _loop(self) -> None:
        stopping = False
        while True:
            kind, payload = self._inbox.get()
            if kind == _SUBMIT:
                if stopping:
                    logger.warning("Supervisor %s stopping, dropped unit %s", self.name, payload)
                    self._settle()
                else:
                    self._spawn(payload)
            elif kind == _DONE:
                self._finish(payload)
            elif kind == _STATS:
                payload.put(self._snapshot())
            elif kind == _STOP:
                stopping = True

            if stopping and not self._futures:
                break

        self._executor.shutdown(wait=True)
        self._executor = None
        self._drop_leftovers()

    def _drop_leftovers(self) -> None:
        while True:
            try:
                kind, payload = self._inbox.get_nowait()
            except queue.Empty:
                return
            if kind == _SUBMIT:
                logger.warning("Supervisor %s stopped, dropped unit %s", self.name, payload)
                self._settle()
            elif kind == _STATS:
                payload.put(self._snapshot())

    def _spawn(self, unit_id: Any) -> None:
        try:
            future = self._executor.submit(self._work, unit_id)
        except RuntimeError as e:
            logger.error("Supervisor %s could not start unit %s: %s", self.name, unit_id, e)
            self._settle()
            return
        self._futures[future] = unit_id
        self._submitted += 1
        future.add_done_callback(lambda f: self._inbox.put((_DONE, f)))

    def _finish(self, future: Future) -> None:
        unit_id = self._futures.pop(future, None)
        try:
            self._record(unit_id, future)
        finally:
            self._settle()

    def _record(self, unit_id: Any, future: Future) -> None:
        error = future.exception()
        if error is not None:
            self._crashed += 1
            reason = describe(error)
            logger.error(
                "Supervisor %s: task for %s crashed: %s",
                self.name, unit_id, reason, exc_info=error,
            )
            telemetry.emit(
                telemetry.TASK_CRASHED,
                unit_id=str(unit_id), supervisor=self.name, reason=reason,
            )
        elif future.result():
            self._succeeded += 1
        else:
            self._failed += 1
            logger.warning("Supervisor %s: task for %s reported failure", self.name, unit_id)

    def _snapshot(self) -> SupervisorStats:
        return SupervisorStats(
            submitted=self._submitted,
            succeeded=self._succeeded,
            failed=self._failed,
            crashed=self._crashed,
            in_flight=len(self._futures),
        )


def embedding_supervisor(context, max_workers: int) -> TaskSupervisor:
    """Supervisor that runs embed_page for each submitted page id."""
    from docpipe.services.embeddings import embed_page

    def work(page_id: uuid.UUID) -> bool:
        return embed_page(context, page_id).ok

    return TaskSupervisor(work, max_workers=max_workers, name="embedding_supervisor")
