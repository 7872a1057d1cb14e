"""
Prometheus metrics collection for the Trackify engine.

Provides observability into approvals, ledger mutations, escalation sweeps
and optimistic-locking contention.
"""

import time
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Histogram, start_http_server

# ============================================================================
# Event Store Metrics
# ============================================================================

events_appended_total = Counter(
    "trackify_events_appended_total",
    "Total number of events appended to the event store",
    ["stream_type", "event_type"],
)

stream_version_conflicts_total = Counter(
    "trackify_stream_version_conflicts_total",
    "Total number of optimistic locking version conflicts",
    ["operation"],
)

# ============================================================================
# Command Processing Metrics
# ============================================================================

command_duration_seconds = Histogram(
    "trackify_command_duration_seconds",
    "Duration of command processing in seconds",
    ["command_type"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

commands_processed_total = Counter(
    "trackify_commands_processed_total",
    "Total number of commands processed",
    ["command_type", "status"],  # status: success, failure
)

# ============================================================================
# Approval Workflow Metrics
# ============================================================================

workflow_transitions_total = Counter(
    "trackify_workflow_transitions_total",
    "Total number of committed workflow events",
    ["event_type"],
)

# ============================================================================
# Budget Ledger Metrics
# ============================================================================

ledger_mutations_total = Counter(
    "trackify_ledger_mutations_total",
    "Total number of committed budget ledger events",
    ["event_type"],
)

ledger_underflow_total = Counter(
    "trackify_ledger_underflow_total",
    "Credits clamped to the expense debit (data-integrity warnings)",
)

budget_alerts_total = Counter(
    "trackify_budget_alerts_total",
    "Budget alerts raised after ledger mutations",
    ["level"],
)

# ============================================================================
# Escalation Scanner Metrics
# ============================================================================

escalation_sweep_duration_seconds = Histogram(
    "trackify_escalation_sweep_duration_seconds",
    "Duration of an escalation sweep in seconds",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

escalation_outcomes_total = Counter(
    "trackify_escalation_outcomes_total",
    "Per-workflow outcomes of escalation sweeps",
    ["outcome"],  # escalated, reminded, exhausted, auto_rejected, failed, timeout
)

# ============================================================================
# Collaborator Metrics
# ============================================================================

collaborator_failures_total = Counter(
    "trackify_collaborator_failures_total",
    "Best-effort collaborator calls that failed",
    ["collaborator"],  # notifier, audit
)

# ============================================================================
# Helper Functions
# ============================================================================

P = ParamSpec("P")
R = TypeVar("R")


def track_command_duration(command_type: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator to track command processing duration.

    Args:
        command_type: Type of command being processed

    Returns:
        Decorated function that tracks duration
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            status = "success"
            try:
                return func(*args, **kwargs)
            except Exception:
                status = "failure"
                raise
            finally:
                duration = time.perf_counter() - start
                command_duration_seconds.labels(command_type=command_type).observe(duration)
                commands_processed_total.labels(
                    command_type=command_type, status=status
                ).inc()

        return wrapper

    return decorator


def record_committed_events(stream_type: str, event_types: list[str]) -> None:
    """Count committed events per aggregate type."""
    for event_type in event_types:
        events_appended_total.labels(stream_type=stream_type, event_type=event_type).inc()
        if stream_type == "workflow":
            workflow_transitions_total.labels(event_type=event_type).inc()
        elif stream_type == "budget":
            ledger_mutations_total.labels(event_type=event_type).inc()


def start_metrics_server(port: int = 9090) -> None:
    """
    Start Prometheus metrics HTTP server.

    Args:
        port: Port to listen on (default: 9090)
    """
    start_http_server(port)
