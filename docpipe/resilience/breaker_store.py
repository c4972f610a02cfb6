# =============================================================================
# Breaker Store - Circuit State Shared Across Worker Processes
# =============================================================================
#
# Celery runs every queue in several child processes (`-c 10` for
# llm_processing). A breaker that lived in process memory would be ten
# independent breakers, and the health-check process would reset a copy no
# stage job ever reads. The `circuit_breakers` table holds one row per
# dependency instead:
#
#   update(name, change)
#     BEGIN
#       INSERT ... ON CONFLICT DO NOTHING      (first use of the name)
#       SELECT ... FOR UPDATE                  (PostgreSQL row lock)
#       after = change(before)                 (pure transition)
#       UPDATE when after != before
#     COMMIT
#
# SQLite has no row locks; its single writer serialises the same
# transaction, which is all the tests need.
# =============================================================================

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from docpipe.db.engine import get_sync_session
from docpipe.db.models import CircuitBreakerState
from docpipe.resilience.circuit_breaker import BreakerState, CircuitMode, StateChange

logger = logging.getLogger(__name__)

_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def _to_state(row: CircuitBreakerState | None) -> BreakerState:
    if row is None:
        return BreakerState()
    return BreakerState(
        mode=CircuitMode(row.mode),
        failures=row.failure_count,
        opened_at=row.opened_at,
        probe_in_flight=row.probe_in_flight,
        probe_started_at=row.probe_started_at,
    )


def _ensure_row(session: Session, name: str) -> None:
    insert = _INSERTS.get(session.get_bind().dialect.name)
    if insert is None:
        if session.get(CircuitBreakerState, name) is None:
            session.add(CircuitBreakerState(name=name))
            session.flush()
        return
    session.execute(
        insert(CircuitBreakerState)
        .values(name=name, mode=CircuitMode.CLOSED.value, failure_count=0, probe_in_flight=False)
        .on_conflict_do_nothing(index_elements=["name"])
    )


class DatabaseBreakerStore:
    """BreakerStore backed by the `circuit_breakers` table."""

    def load(self, name: str) -> BreakerState:
        with get_sync_session() as session:
            return _to_state(session.get(CircuitBreakerState, name))

    def update(self, name: str, change: StateChange) -> tuple[BreakerState, BreakerState]:
        with get_sync_session() as session:
            _ensure_row(session, name)
            row = session.scalars(
                select(CircuitBreakerState)
                .where(CircuitBreakerState.name == name)
                .with_for_update()
            ).one()
            before = _to_state(row)
            after = change(before)
            if after != before:
                row.mode = after.mode.value
                row.failure_count = after.failures
                row.opened_at = after.opened_at
                row.probe_in_flight = after.probe_in_flight
                row.probe_started_at = after.probe_started_at
            return before, after
