"""
Retry logic with exponential backoff for transient failures.

Two kinds of contention are retried here:
- SQLite lock contention on the shared database file
- Optimistic-locking conflicts on budget and workflow streams, where the
  whole decision (reload, decide, append) is recomputed on every attempt
"""

import sqlite3
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from trackify_engine.kernel.errors import ConcurrencyConflict, StreamVersionConflict
from trackify_engine.kernel.logging import get_logger
from trackify_engine.kernel.metrics import stream_version_conflicts_total

logger = get_logger(__name__)

T = TypeVar("T")

# ============================================================================
# Retry Decorators
# ============================================================================


def retry_on_sqlite_lock(
    max_attempts: int = 5,
    min_wait_ms: int = 50,
    max_wait_ms: int = 1000,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for SQLite lock contention (OperationalError).

    SQLite uses file-based locking and can report "database is locked"
    when many writers compete past the busy timeout.

    Args:
        max_attempts: Maximum number of attempts (default: 5)
        min_wait_ms: Minimum wait time in milliseconds (default: 50)
        max_wait_ms: Maximum wait time in milliseconds (default: 1000)

    Returns:
        Decorated function that retries on sqlite3.OperationalError
    """
    return retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=lambda retry_state: logger.warning(
            "SQLite lock detected, retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )


# ============================================================================
# Optimistic Locking Retry
# ============================================================================


def run_with_conflict_retry(
    operation: str,
    func: Callable[[], T],
    *,
    max_attempts: int,
    min_wait_ms: int = 5,
    max_wait_ms: int = 200,
) -> T:
    """
    Run a reload-decide-append function, retrying on stream version conflicts.

    Jittered backoff keeps competing writers from retrying in lockstep.

    Args:
        operation: Operation name for logs and metrics
        func: Zero-argument callable that performs one full attempt
        max_attempts: Attempts before giving up
        min_wait_ms: Backoff base in milliseconds
        max_wait_ms: Backoff ceiling in milliseconds

    Returns:
        Result of the first successful attempt

    Raises:
        ConcurrencyConflict: If every attempt hit a version conflict
    """

    def _log_conflict(retry_state: RetryCallState) -> None:
        stream_version_conflicts_total.labels(operation=operation).inc()
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Stream version conflict, retrying",
            operation=operation,
            attempt=retry_state.attempt_number,
            stream_id=getattr(exception, "stream_id", None),
        )

    retrying = Retrying(
        retry=retry_if_exception_type(StreamVersionConflict),
        stop=stop_after_attempt(max_attempts),
        wait=wait_random_exponential(
            multiplier=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=_log_conflict,
        reraise=True,
    )

    try:
        return retrying(func)
    except StreamVersionConflict as e:
        stream_version_conflicts_total.labels(operation=operation).inc()
        logger.error(
            "Optimistic locking retries exhausted",
            operation=operation,
            attempts=max_attempts,
            stream_id=e.stream_id,
        )
        raise ConcurrencyConflict(operation, max_attempts, e.stream_id) from e
