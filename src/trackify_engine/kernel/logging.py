"""
Structured logging for the Trackify engine

Every engine operation logs through structlog. A correlation id ties the
lines of one request or one escalation sweep together, including lines
written from scanner worker threads. People and money never reach the log
in clear: user ids are pseudonymized and amounts are masked.
"""

import contextvars
import hashlib
import logging
import os
import secrets
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from trackify_engine.kernel.errors import TrackifyError

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)

# Context keys holding user ids; logged as stable pseudonyms
USER_FIELDS = frozenset(
    {
        "actor_id",
        "approver_id",
        "submitted_by",
        "author_id",
        "admin_id",
        "escalated_to",
        "recipient",
    }
)

# Context keys holding money or secrets; never logged
MASKED_FIELDS = frozenset(
    {"amount", "expense_amount", "total_amount", "password", "token", "api_key"}
)

MASK = "***REDACTED***"


def get_correlation_id() -> str:
    """Current correlation id; one is generated on first use in a context"""
    cid = correlation_id_var.get()
    if not cid:
        cid = secrets.token_urlsafe(16)
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Use correlation_id for every line logged inside the block"""
    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)


def add_correlation_id(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def pseudonymize(user_id: Any) -> Any:
    """Stable short hash of a user id, so lines stay joinable without naming anyone"""
    if not isinstance(user_id, str) or not user_id:
        return user_id
    return "u-" + hashlib.sha256(user_id.encode()).hexdigest()[:10]


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """
    Pseudonymize user ids and mask amounts in a log context

    Example:
        >>> redact_context({"amount": "19.99", "workflow_id": "workflow-exp-1"})
        {'amount': '***REDACTED***', 'workflow_id': 'workflow-exp-1'}
    """
    redacted = {}
    for key, value in context.items():
        if key in MASKED_FIELDS:
            redacted[key] = MASK
        elif key in USER_FIELDS:
            redacted[key] = pseudonymize(value)
        else:
            redacted[key] = value
    return redacted


def configure_logging(*, json_output: bool = False, log_level: str = "INFO") -> None:
    """
    Configure structlog over the standard logging module

    Logs go to stderr so CLI output on stdout stays machine-readable.

    Args:
        json_output: JSON lines (servers) instead of console rendering (CLI)
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
    )
    # Flask's request log is noise next to the engine's own lines
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors += [
            structlog.processors.ExceptionRenderer(),
            structlog.dev.ConsoleRenderer(colors=False),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def is_production() -> bool:
    return os.getenv("ENVIRONMENT", "development").lower() == "production"


class LogOperation:
    """
    Log the start, end and duration of one engine operation

    A TrackifyError is a refused command (wrong approver, finalized
    workflow, inactive budget) and is logged as a warning without a stack
    trace. Anything else is an error; stack traces are kept out of
    production logs.
    """

    def __init__(
        self,
        logger: structlog.stdlib.BoundLogger,
        operation: str,
        **context: Any,
    ):
        self.logger = logger
        self.operation = operation
        self.context = redact_context(context)
        self.start_time: float = 0.0

    def __enter__(self) -> "LogOperation":
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", operation=self.operation, **self.context)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        duration_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
        fields = {"operation": self.operation, "duration_ms": duration_ms, **self.context}

        if exc_type is None:
            self.logger.info(f"{self.operation} completed", **fields)
        elif issubclass(exc_type, TrackifyError):
            self.logger.warning(
                f"{self.operation} refused",
                error=str(exc_val),
                error_type=exc_type.__name__,
                **fields,
            )
        else:
            self.logger.error(
                f"{self.operation} failed",
                error=str(exc_val),
                error_type=exc_type.__name__,
                exc_info=not is_production(),
                **fields,
            )
