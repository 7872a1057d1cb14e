"""
Test infrastructure components: logging, metrics, retry, timeout, bus.

These tests verify the production hardening infrastructure works correctly.
"""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from trackify_engine.engine import TrackifyEngine
from trackify_engine.kernel.bus import ALL_EVENTS, InProcessBus
from trackify_engine.kernel.errors import (
    ConcurrencyConflict,
    OperationTimeout,
    StreamVersionConflict,
)
from trackify_engine.kernel.logging import (
    LogOperation,
    configure_logging,
    correlation_scope,
    get_correlation_id,
    get_logger,
    pseudonymize,
    redact_context,
    set_correlation_id,
)
from trackify_engine.kernel.metrics import (
    collaborator_failures_total,
    commands_processed_total,
    events_appended_total,
    ledger_mutations_total,
    track_command_duration,
)
from trackify_engine.kernel.retry import retry_on_sqlite_lock, run_with_conflict_retry
from trackify_engine.kernel.timeout import run_with_timeout, submit_in_context, wait_with_timeout


class TestLoggingFramework:
    """Test structured logging framework."""

    def test_configure_logging_console(self) -> None:
        configure_logging(json_output=False, log_level="INFO")
        assert get_logger(__name__) is not None

    def test_configure_logging_json(self) -> None:
        configure_logging(json_output=True, log_level="DEBUG")
        assert get_logger(__name__) is not None

    def test_correlation_id(self) -> None:
        cid = get_correlation_id()
        assert cid

        set_correlation_id("test-correlation-123")
        assert get_correlation_id() == "test-correlation-123"

    def test_redact_context_hides_people_and_amounts(self) -> None:
        redacted = redact_context(
            {"approver_id": "alice", "amount": "19.99", "workflow_id": "workflow-exp-1"}
        )
        assert redacted["approver_id"] == pseudonymize("alice")
        assert redacted["approver_id"].startswith("u-")
        assert redacted["amount"] == "***REDACTED***"
        assert redacted["workflow_id"] == "workflow-exp-1"

    def test_log_operation_context_manager(self) -> None:
        logger = get_logger(__name__)
        with LogOperation(logger, "test_operation", workflow_id="workflow-1"):
            pass

    def test_log_operation_with_exception(self) -> None:
        logger = get_logger(__name__)
        with pytest.raises(ValueError):
            with LogOperation(logger, "failing_operation"):
                raise ValueError("Test error")

    def test_log_operation_with_refused_command(self) -> None:
        logger = get_logger(__name__)
        with pytest.raises(StreamVersionConflict):
            with LogOperation(logger, "approve_expense", approver_id="bob"):
                raise StreamVersionConflict("workflow-exp-1", 1, 2)

    def test_correlation_scope_restores_previous_id(self) -> None:
        set_correlation_id("outer")
        with correlation_scope("scan-1"):
            assert get_correlation_id() == "scan-1"
        assert get_correlation_id() == "outer"

    def test_pseudonyms_are_stable(self) -> None:
        assert pseudonymize("alice") == pseudonymize("alice")
        assert pseudonymize("alice") != pseudonymize("bob")
        assert pseudonymize(None) is None


class TestMetrics:
    """Test Prometheus metrics collection."""

    def test_committed_events_are_counted(self, engine: TrackifyEngine) -> None:
        before = events_appended_total.labels(
            stream_type="budget", event_type="BudgetCreated"
        )._value.get()
        mutations_before = ledger_mutations_total.labels(event_type="BudgetCreated")._value.get()

        engine.create_budget(
            name="Metrics",
            total_amount="100",
            owner_id="alice",
            start_date="2025-01-01",
            end_date="2025-12-31",
        )

        after = events_appended_total.labels(
            stream_type="budget", event_type="BudgetCreated"
        )._value.get()
        assert after == before + 1
        assert (
            ledger_mutations_total.labels(event_type="BudgetCreated")._value.get()
            == mutations_before + 1
        )

    def test_track_command_duration_counts_failures(self) -> None:
        @track_command_duration("metrics_test_command")
        def failing() -> None:
            raise RuntimeError("boom")

        before = commands_processed_total.labels(
            command_type="metrics_test_command", status="failure"
        )._value.get()
        with pytest.raises(RuntimeError):
            failing()
        after = commands_processed_total.labels(
            command_type="metrics_test_command", status="failure"
        )._value.get()
        assert after == before + 1


class TestRetry:
    """Test retry helpers."""

    def test_retry_on_sqlite_lock_recovers(self) -> None:
        calls = {"count": 0}

        @retry_on_sqlite_lock(max_attempts=3, min_wait_ms=1, max_wait_ms=2)
        def flaky() -> str:
            calls["count"] += 1
            if calls["count"] < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        assert flaky() == "ok"
        assert calls["count"] == 3

    def test_conflict_retry_reruns_whole_attempt(self) -> None:
        attempts: list[int] = []

        def attempt() -> int:
            attempts.append(len(attempts) + 1)
            if len(attempts) < 3:
                raise StreamVersionConflict("budget-1", 1, 2)
            return len(attempts)

        result = run_with_conflict_retry(
            "test_op", attempt, max_attempts=5, min_wait_ms=0, max_wait_ms=1
        )
        assert result == 3

    def test_conflict_retry_exhaustion_raises_concurrency_conflict(self) -> None:
        def always_conflicts() -> None:
            raise StreamVersionConflict("budget-1", 1, 2)

        with pytest.raises(ConcurrencyConflict) as exc_info:
            run_with_conflict_retry(
                "test_op", always_conflicts, max_attempts=3, min_wait_ms=0, max_wait_ms=1
            )
        assert exc_info.value.attempts == 3
        assert exc_info.value.stream_id == "budget-1"

    def test_other_errors_are_not_retried(self) -> None:
        calls = {"count": 0}

        def fails() -> None:
            calls["count"] += 1
            raise ValueError("not a conflict")

        with pytest.raises(ValueError):
            run_with_conflict_retry("test_op", fails, max_attempts=5, min_wait_ms=0)
        assert calls["count"] == 1


class TestTimeout:
    """Test bounded waits."""

    def test_result_within_limit(self) -> None:
        with ThreadPoolExecutor(max_workers=1) as executor:
            assert run_with_timeout(executor, lambda: 42, seconds=1.0) == 42

    def test_slow_call_times_out(self) -> None:
        release = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            with pytest.raises(OperationTimeout) as exc_info:
                run_with_timeout(
                    executor, lambda: release.wait(5), seconds=0.05, operation_name="slow"
                )
            assert exc_info.value.operation == "slow"
        finally:
            release.set()
            executor.shutdown(wait=True)

    def test_queued_call_is_cancelled_on_timeout(self) -> None:
        release = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            busy = submit_in_context(executor, lambda: release.wait(5))
            queued = submit_in_context(executor, lambda: 42)
            with pytest.raises(OperationTimeout):
                wait_with_timeout(queued, seconds=0.05, operation_name="queued")
            assert queued.cancelled()
            assert not busy.done()
        finally:
            release.set()
            executor.shutdown(wait=True)

    def test_correlation_id_travels_to_worker(self) -> None:
        set_correlation_id("sweep-42")
        with ThreadPoolExecutor(max_workers=1) as executor:
            assert run_with_timeout(executor, get_correlation_id, seconds=1.0) == "sweep-42"


class TestEventBus:
    """Test in-process bus isolation."""

    def test_failing_handler_does_not_stop_others(self, engine: TrackifyEngine) -> None:
        bus = InProcessBus()
        seen: list[str] = []

        def broken(event) -> None:
            raise RuntimeError("subscriber down")

        bus.register_event_handler("BudgetCreated", broken)
        bus.register_event_handler(ALL_EVENTS, lambda event: seen.append(event.event_type))

        before = collaborator_failures_total.labels(collaborator="bus_handler")._value.get()
        engine.repository.bus = bus
        engine.create_budget(
            name="Bus",
            total_amount="100",
            owner_id="alice",
            start_date="2025-01-01",
            end_date="2025-12-31",
        )

        assert seen == ["BudgetCreated"]
        failures = collaborator_failures_total.labels(collaborator="bus_handler")._value.get()
        assert failures == before + 1
