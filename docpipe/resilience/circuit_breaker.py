# =============================================================================
# Circuit Breaker - Per-Dependency Failure Isolation
# =============================================================================
#
# Wraps calls to the external AI services so a failing dependency is cut off
# instead of being hammered by every stage job.
#
# STATE MACHINE:
#
#   CLOSED ──(consecutive failures >= threshold)──▶ OPEN
#     ▲                                              │
#     │                               (reset_after elapsed, on the next call
#     │                                or on the background refresh tick)
#     │                                              ▼
#     └──────────────(probe succeeds)─────────── HALF_OPEN
#                                                    │
#                     OPEN (fresh timer) ◀──(probe fails)
#
# - OPEN rejects with CircuitOpenError; the wrapped function is not called.
# - HALF_OPEN admits exactly one probe; concurrent callers are rejected.
#   A probe that never reports back (its process died) frees the slot after
#   probe_timeout_seconds.
# - A rejection never touches the failure counter.
# - A success while CLOSED resets the counter.
#
# SHARED STATE:
#   The state of a breaker lives in a BreakerStore. Every transition is one
#   atomic read-modify-write through `store.update(name, change)`:
#     MemoryBreakerStore    one process (tests, scripts, single worker)
#     DatabaseBreakerStore  `circuit_breakers` table, row-locked on
#                           PostgreSQL; every Celery child process sees the
#                           same mode (docpipe/resilience/breaker_store.py)
#   The per-breaker lock serialises the threads of one process in front of
#   the store. No lock is held while the wrapped call runs. Timestamps come
#   from `clock` (wall-clock seconds by default so processes agree).
#
# BREAKERS:
#   llm_api        vision extraction + translation   5 failures / 60s
#   embedding_api  embedding generation              3 failures / 30s
# =============================================================================

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Protocol, TypeVar

from docpipe.resilience.errors import CircuitOpenError, describe
from docpipe.services import telemetry

logger = logging.getLogger(__name__)

T = TypeVar("T")

LLM_API = "llm_api"
EMBEDDING_API = "embedding_api"

# Longer than the slowest single AI call (300s generation timeout).
DEFAULT_PROBE_TIMEOUT_SECONDS = 600.0


class CircuitMode(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int
    reset_after_seconds: float


@dataclass(frozen=True)
class BreakerState:
    """The persisted part of a breaker."""

    mode: CircuitMode = CircuitMode.CLOSED
    failures: int = 0
    opened_at: float | None = None
    probe_in_flight: bool = False
    probe_started_at: float | None = None


StateChange = Callable[[BreakerState], BreakerState]


class BreakerStore(Protocol):
    def load(self, name: str) -> BreakerState: ...

    def update(self, name: str, change: StateChange) -> tuple[BreakerState, BreakerState]:
        """Atomically apply `change`; returns (before, after)."""
        ...


class MemoryBreakerStore:
    """Breaker state held in this process only."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, BreakerState] = {}

    def load(self, name: str) -> BreakerState:
        with self._lock:
            return self._states.get(name, BreakerState())

    def update(self, name: str, change: StateChange) -> tuple[BreakerState, BreakerState]:
        with self._lock:
            before = self._states.get(name, BreakerState())
            after = change(before)
            self._states[name] = after
            return before, after


@dataclass(frozen=True)
class BreakerStatus:
    """Point-in-time snapshot of one breaker, safe to hand out."""

    name: str
    mode: CircuitMode
    failure_count: int
    failure_threshold: int
    reset_after_seconds: float
    opened_at: float | None
    probe_in_flight: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "mode": self.mode.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "reset_after_seconds": self.reset_after_seconds,
            "opened_at": self.opened_at,
            "probe_in_flight": self.probe_in_flight,
        }


class CircuitBreaker:
    """
    One breaker guarding one dependency.

    `clock` returns seconds; tests pass a fake clock to move through the
    reset window without sleeping. Without a `store` the state is private to
    this instance.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int,
        reset_after_seconds: float,
        clock: Callable[[], float] = time.time,
        store: BreakerStore | None = None,
        probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_after_seconds = reset_after_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self._clock = clock
        self._store = store or MemoryBreakerStore()
        self._lock = threading.Lock()

    def _update(self, change: StateChange) -> tuple[BreakerState, BreakerState]:
        with self._lock:
            return self._store.update(self.name, change)

    # -------------------------------------------------------------------------
    # Call path
    # -------------------------------------------------------------------------

    def call(self, fn: Callable[[], T]) -> T:
        """
        Run `fn` if the breaker admits it.

        Returns fn's own result, re-raises fn's own exception (after counting
        it as a failure), or raises CircuitOpenError without calling fn.
        """
        probe = self._admit()
        try:
            result = fn()
        except Exception as exc:
            self._on_failure(probe, exc)
            raise
        self._on_success(probe)
        return result

    def _admit(self) -> bool:
        """Decide whether a call may proceed. Returns True for the half-open probe."""
        now = self._clock()
        took_probe = False

        def change(state: BreakerState) -> BreakerState:
            nonlocal took_probe
            took_probe = False
            state = self._expire(state, now)
            if state.mode is CircuitMode.HALF_OPEN and not state.probe_in_flight:
                took_probe = True
                return replace(state, probe_in_flight=True, probe_started_at=now)
            return state

        _before, after = self._update(change)
        if after.mode is CircuitMode.CLOSED:
            return False
        if took_probe:
            return True
        telemetry.emit("circuit_breaker.rejected", name=self.name)
        raise CircuitOpenError(self.name)

    def _on_success(self, probe: bool) -> None:
        def change(state: BreakerState) -> BreakerState:
            if probe and state.mode is CircuitMode.HALF_OPEN:
                return BreakerState()
            if state.mode is CircuitMode.CLOSED:
                return replace(state, failures=0)
            return state

        before, after = self._update(change)
        if before.mode is CircuitMode.HALF_OPEN and after.mode is CircuitMode.CLOSED:
            logger.info("Circuit %s closed after successful probe", self.name)
            telemetry.emit("circuit_breaker.closed", name=self.name)

    def _on_failure(self, probe: bool, exc: BaseException | str) -> None:
        now = self._clock()

        def change(state: BreakerState) -> BreakerState:
            if probe and state.mode is CircuitMode.HALF_OPEN:
                return self._opened(state, now)
            if state.mode is CircuitMode.CLOSED:
                state = replace(state, failures=state.failures + 1)
                if state.failures >= self.failure_threshold:
                    return self._opened(state, now)
            return state

        before, after = self._update(change)
        telemetry.emit("circuit_breaker.failure", name=self.name, reason=describe(exc))
        if before.mode is not CircuitMode.OPEN and after.mode is CircuitMode.OPEN:
            logger.warning(
                "Circuit %s opened after %d consecutive failures (last: %s)",
                self.name, after.failures, describe(exc),
            )
            telemetry.emit("circuit_breaker.opened", name=self.name)

    # -------------------------------------------------------------------------
    # Transitions (pure; applied inside store.update)
    # -------------------------------------------------------------------------

    @staticmethod
    def _opened(state: BreakerState, now: float) -> BreakerState:
        return BreakerState(mode=CircuitMode.OPEN, failures=state.failures, opened_at=now)

    def _expire(self, state: BreakerState, now: float) -> BreakerState:
        if state.mode is CircuitMode.OPEN and state.opened_at is not None:
            if now - state.opened_at >= self.reset_after_seconds:
                return replace(
                    state, mode=CircuitMode.HALF_OPEN, probe_in_flight=False, probe_started_at=None
                )
        if (
            state.mode is CircuitMode.HALF_OPEN
            and state.probe_in_flight
            and state.probe_started_at is not None
            and now - state.probe_started_at >= self.probe_timeout_seconds
        ):
            logger.warning("Circuit %s probe never reported back, admitting a new one", self.name)
            return replace(state, probe_in_flight=False, probe_started_at=None)
        return state

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    def refresh(self) -> bool:
        """Move an expired OPEN breaker to HALF_OPEN. Returns True if it moved."""
        now = self._clock()
        before, after = self._update(lambda state: self._expire(state, now))
        moved = before.mode is CircuitMode.OPEN and after.mode is CircuitMode.HALF_OPEN
        if moved:
            logger.info("Circuit %s half-open, next call is a probe", self.name)
            telemetry.emit("circuit_breaker.half_open", name=self.name)
        return moved

    def reset(self) -> None:
        self._update(lambda _state: BreakerState())
        logger.info("Circuit %s reset", self.name)
        telemetry.emit("circuit_breaker.reset", name=self.name)

    def record_failure(self, reason: str = "recorded") -> None:
        """Count a failure observed outside `call` (e.g. by a health check)."""
        self._on_failure(False, reason)

    def status(self) -> BreakerStatus:
        state = self._store.load(self.name)
        return BreakerStatus(
            name=self.name,
            mode=state.mode,
            failure_count=state.failures,
            failure_threshold=self.failure_threshold,
            reset_after_seconds=self.reset_after_seconds,
            opened_at=state.opened_at,
            probe_in_flight=state.probe_in_flight,
        )


class BreakerRegistry:
    """
    Owns one CircuitBreaker per dependency name.

    Names are fixed at construction; asking for an unknown name is a
    programming error and raises KeyError. All breakers of a registry share
    one store.
    """

    def __init__(
        self,
        configs: dict[str, BreakerConfig],
        clock: Callable[[], float] = time.time,
        store: BreakerStore | None = None,
        probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store or MemoryBreakerStore()
        self._breakers = {
            name: CircuitBreaker(
                name, cfg.failure_threshold, cfg.reset_after_seconds, clock, self.store,
                probe_timeout_seconds,
            )
            for name, cfg in configs.items()
        }
        self._refresher: threading.Thread | None = None
        self._stop = threading.Event()

    @classmethod
    def from_settings(
        cls,
        settings,
        clock: Callable[[], float] = time.time,
        store: BreakerStore | None = None,
    ) -> BreakerRegistry:
        return cls(
            {
                LLM_API: BreakerConfig(
                    settings.llm_breaker_threshold, settings.llm_breaker_reset_seconds
                ),
                EMBEDDING_API: BreakerConfig(
                    settings.embedding_breaker_threshold,
                    settings.embedding_breaker_reset_seconds,
                ),
            },
            clock=clock,
            store=store,
            probe_timeout_seconds=settings.breaker_probe_timeout_seconds,
        )

    def get(self, name: str) -> CircuitBreaker:
        return self._breakers[name]

    def names(self) -> list[str]:
        return list(self._breakers)

    def call(self, name: str, fn: Callable[[], T]) -> T:
        return self._breakers[name].call(fn)

    def status(self, name: str) -> BreakerStatus:
        return self._breakers[name].status()

    def status_all(self) -> dict[str, BreakerStatus]:
        return {name: breaker.status() for name, breaker in self._breakers.items()}

    def reset(self, name: str | None = None) -> None:
        """Reset one breaker, or every breaker when `name` is None."""
        targets = [self._breakers[name]] if name else list(self._breakers.values())
        for breaker in targets:
            breaker.reset()

    def record_failure(self, name: str, reason: str = "recorded") -> None:
        self._breakers[name].record_failure(reason)

    def refresh(self) -> list[str]:
        """Re-evaluate every breaker; returns the names that moved to half-open."""
        return [name for name, breaker in self._breakers.items() if breaker.refresh()]

    # -------------------------------------------------------------------------
    # Background refresh tick
    # -------------------------------------------------------------------------

    def start_refresher(self, interval_seconds: float) -> None:
        if self._refresher is not None and self._refresher.is_alive():
            return
        self._stop.clear()
        self._refresher = threading.Thread(
            target=self._refresh_loop,
            args=(interval_seconds,),
            name="breaker-refresher",
            daemon=True,
        )
        self._refresher.start()
        logger.info("Circuit breaker refresher started (every %.1fs)", interval_seconds)

    def stop_refresher(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._refresher is not None:
            self._refresher.join(timeout)
            self._refresher = None

    def _refresh_loop(self, interval_seconds: float) -> None:
        while not self._stop.wait(interval_seconds):
            try:
                self.refresh()
            except Exception:
                logger.exception("Circuit breaker refresh failed")
