"""
Pytest configuration and shared fixtures

Fun fact: The name "conftest" comes from pytest's configuration testing
framework. Files named conftest.py are automatically discovered and their
fixtures are available to all tests in the same directory and subdirectories!
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from trackify_engine.collaborators.audit import InMemoryAuditLog
from trackify_engine.collaborators.directory import StaticApproverDirectory
from trackify_engine.collaborators.notifications import InMemoryNotifier
from trackify_engine.engine import TrackifyEngine
from trackify_engine.kernel.event_store import SQLiteEventStore
from trackify_engine.kernel.policy import EnginePolicy
from trackify_engine.kernel.time import TestTimeProvider


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a temporary database file that's cleaned up after test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # Cleanup
    if db_path.exists():
        db_path.unlink()


@pytest.fixture
def event_store(temp_db: Path) -> SQLiteEventStore:
    """Provide a fresh event store for each test"""
    return SQLiteEventStore(temp_db)


@pytest.fixture
def test_time() -> TestTimeProvider:
    """
    Provide a controllable time provider for deterministic tests

    Default time: 2025-01-15 12:00:00 UTC, a Wednesday in the middle of
    the first quarter, well inside the budgets created by the fixtures.
    """
    return TestTimeProvider(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy() -> EnginePolicy:
    """
    Default policy with fast conflict retries and an admin

    Fun fact: Most expense policies settle on a 72-hour approval window;
    three business days is about how long a receipt stays findable!
    """
    return EnginePolicy(
        admin_ids=["admin"],
        conflict_retry_min_wait_ms=0,
        conflict_retry_max_wait_ms=5,
        max_conflict_retries=50,
    )


@pytest.fixture
def directory() -> StaticApproverDirectory:
    """
    Two teams: engineering with a two-level chain and one escalation step,
    sales with a single approver and no escalation chain
    """
    return StaticApproverDirectory.from_dict(
        {
            "teams": {
                "team-eng": {"approvers": ["lead", "director"], "escalation": ["vp"]},
                "team-sales": {"approvers": ["sales-lead"], "escalation": []},
            },
            "admins": ["admin"],
            "fallback_admin": "admin",
        }
    )


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def engine(
    temp_db: Path,
    policy: EnginePolicy,
    test_time: TestTimeProvider,
    directory: StaticApproverDirectory,
    notifier: InMemoryNotifier,
    audit_log: InMemoryAuditLog,
) -> TrackifyEngine:
    """Fully wired engine on a temporary database"""
    return TrackifyEngine(
        temp_db,
        policy=policy,
        time_provider=test_time,
        directory=directory,
        notifier=notifier,
        audit_log=audit_log,
    )


@pytest.fixture
def team_budget(engine: TrackifyEngine) -> dict:
    """Engineering budget of 1000 USD covering 2025"""
    return engine.create_budget(
        name="Engineering 2025",
        total_amount="1000",
        team_id="team-eng",
        start_date="2025-01-01",
        end_date="2025-12-31",
    )
