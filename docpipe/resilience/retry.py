# =============================================================================
# In-Job Retry Loop
# =============================================================================
#
# Stage jobs call the AI service through `call_with_retry`, a tenacity
# `Retrying` loop whose waits come from the job's RetryPolicy:
#
#   attempt 1 ──fail(transient)──▶ sleep backoff(0) ──▶ attempt 2 ── ...
#       │                                                     │
#       ├── CircuitOpenError  → re-raised at once (terminal for this run)
#       ├── permanent error   → re-raised at once
#       └── transient error after `policy.max_attempts` retries
#                             → retry.exhausted, last error re-raised
#
# The loop holds no lock and no DB session while sleeping. The caller owns
# the status bookkeeping: on any exception it marks its stage as error.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from docpipe.resilience.backoff import RetryPolicy
from docpipe.resilience.circuit_breaker import BreakerRegistry
from docpipe.resilience.errors import CircuitOpenError, ErrorClass, classify, describe
from docpipe.services import telemetry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, CircuitOpenError):
        return False
    return classify(exc) is ErrorClass.TRANSIENT


def call_with_retry(
    fn: Callable[[], T],
    *,
    breakers: BreakerRegistry,
    breaker: str,
    policy: RetryPolicy,
    unit_id: Any,
    kind: str,
) -> T:
    """
    Run `fn` through the named breaker, retrying transient failures.

    `unit_id` and `kind` ("extraction", "translation", "embedding") only
    label the log lines and retry telemetry.
    """

    def wait(state: RetryCallState) -> float:
        return policy.delay_for(state.attempt_number - 1) / 1000.0

    def before_sleep(state: RetryCallState) -> None:
        delay = policy.delay_for(state.attempt_number - 1)
        logger.warning(
            "%s failed for %s, retrying in %dms (%d/%d): %s",
            kind.capitalize(), unit_id, delay, state.attempt_number, policy.max_attempts,
            describe(state.outcome.exception()),
        )
        telemetry.emit(
            telemetry.RETRY_ATTEMPT,
            unit_id=str(unit_id), type=kind, attempt=state.attempt_number, delay_ms=delay,
        )

    def exhausted(state: RetryCallState) -> T:
        logger.error(
            "%s failed for %s after %d retries: %s",
            kind.capitalize(), unit_id, policy.max_attempts, describe(state.outcome.exception()),
        )
        telemetry.emit(
            telemetry.RETRY_EXHAUSTED,
            unit_id=str(unit_id), type=kind, attempts=state.attempt_number,
        )
        # Re-raises the last error
        return state.outcome.result()

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts + 1),
        wait=wait,
        retry=retry_if_exception(_is_retryable),
        sleep=lambda seconds: policy.sleep(round(seconds * 1000)),
        before_sleep=before_sleep,
        retry_error_callback=exhausted,
    )

    try:
        return retrying(breakers.call, breaker, fn)
    except CircuitOpenError:
        logger.error("Circuit %s open, not retrying %s for %s", breaker, kind, unit_id)
        raise
    except Exception as exc:
        if classify(exc) is ErrorClass.PERMANENT:
            logger.error("Permanent %s error for %s, not retrying: %s", kind, unit_id, describe(exc))
        raise
