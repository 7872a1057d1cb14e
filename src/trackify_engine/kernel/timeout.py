"""
Timeout handling for long-running operations.

The escalation sweep runs each workflow in a worker thread and waits a
bounded time for it. A slow approver lookup is abandoned instead of stalling
the rest of the sweep.
"""

import concurrent.futures
import contextvars
from collections.abc import Callable
from typing import TypeVar

from trackify_engine.kernel.errors import OperationTimeout
from trackify_engine.kernel.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

ESCALATION_ATTEMPT_TIMEOUT = 10.0  # seconds


def submit_in_context(
    executor: concurrent.futures.Executor, func: Callable[[], T]
) -> concurrent.futures.Future:
    """Submit func with a copy of the caller's context variables (correlation id)"""
    context = contextvars.copy_context()
    return executor.submit(context.run, func)


def wait_with_timeout(
    future: concurrent.futures.Future,
    seconds: float = ESCALATION_ATTEMPT_TIMEOUT,
    operation_name: str = "operation",
) -> T:
    """
    Wait at most `seconds` for an already submitted call.

    On timeout the worker is left to finish in the background; its outcome
    is ignored. A call still queued behind busy workers is cancelled.

    Raises:
        OperationTimeout: If the call does not finish in time
    """
    try:
        return future.result(timeout=seconds)
    except concurrent.futures.TimeoutError as e:
        future.cancel()
        logger.error(
            "Operation exceeded timeout",
            operation=operation_name,
            timeout_seconds=seconds,
        )
        raise OperationTimeout(operation_name, seconds) from e


def run_with_timeout(
    executor: concurrent.futures.Executor,
    func: Callable[[], T],
    seconds: float = ESCALATION_ATTEMPT_TIMEOUT,
    operation_name: str = "operation",
) -> T:
    """
    Run func on executor and wait at most `seconds` for its result.

    Args:
        executor: Pool that runs the call
        func: Zero-argument callable
        seconds: Maximum seconds to wait
        operation_name: Name of operation for logging

    Raises:
        OperationTimeout: If the call does not finish in time
    """
    return wait_with_timeout(submit_in_context(executor, func), seconds, operation_name)
