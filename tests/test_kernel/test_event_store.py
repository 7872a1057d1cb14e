"""
Tests for SQLite Event Store

Verifies core event sourcing properties:
- Append-only semantics
- Idempotency via command_id
- Optimistic locking via stream versioning
- Atomic multi-stream appends

Fun fact: Event sourcing tests are like archaeology - we're verifying
that the historical record is complete, immutable, and replayable!
"""

from datetime import datetime, timezone

import pytest

from trackify_engine.kernel.errors import (
    CommandIdempotencyViolation,
    EventStoreError,
    StreamVersionConflict,
)
from trackify_engine.kernel.event_store import SQLiteEventStore
from trackify_engine.kernel.events import Event
from trackify_engine.kernel.ids import generate_id


def make_event(
    stream_id: str,
    version: int,
    command_id: str | None = None,
    stream_type: str = "budget",
    event_type: str = "TestEvent",
    payload: dict | None = None,
) -> Event:
    return Event(
        event_id=generate_id(),
        stream_id=stream_id,
        stream_type=stream_type,
        event_type=event_type,
        occurred_at=datetime.now(timezone.utc),
        actor_id="test-actor",
        command_id=command_id or generate_id(),
        payload=payload or {},
        version=version,
    )


def test_append_and_load_single_event(event_store: SQLiteEventStore) -> None:
    """Test appending and loading a single event"""
    event = make_event("budget-1", 1, payload={"amount": "19.99"})

    appended = event_store.append("budget-1", 0, [event])
    assert len(appended) == 1
    assert appended[0].event_id == event.event_id

    loaded = event_store.load_stream("budget-1")
    assert len(loaded) == 1
    assert loaded[0].event_id == event.event_id
    assert loaded[0].payload == {"amount": "19.99"}
    assert loaded[0].actor_id == "test-actor"


def test_stream_versioning(event_store: SQLiteEventStore) -> None:
    """Test that stream versioning works correctly"""
    event_store.append("budget-2", 0, [make_event("budget-2", 1)])
    assert event_store.get_stream_version("budget-2") == 1

    event_store.append("budget-2", 1, [make_event("budget-2", 2)])
    assert event_store.get_stream_version("budget-2") == 2

    events = event_store.load_stream("budget-2")
    assert [e.version for e in events] == [1, 2]


def test_unknown_stream_is_empty(event_store: SQLiteEventStore) -> None:
    assert event_store.load_stream("nope") == []
    assert event_store.get_stream_version("nope") == 0


def test_optimistic_locking_conflict(event_store: SQLiteEventStore) -> None:
    """Test that concurrent modifications are detected"""
    event_store.append("budget-3", 0, [make_event("budget-3", 1)])

    with pytest.raises(StreamVersionConflict) as exc_info:
        event_store.append("budget-3", 0, [make_event("budget-3", 1)])

    assert exc_info.value.expected_version == 0
    assert exc_info.value.actual_version == 1
    assert len(event_store.load_stream("budget-3")) == 1


def test_command_idempotency(event_store: SQLiteEventStore) -> None:
    """Test that same command_id doesn't create duplicate events"""
    command_id = generate_id()
    first = make_event("budget-4", 1, command_id=command_id, payload={"attempt": 1})
    event_store.append("budget-4", 0, [first])

    # Same command again, decided against the newer version
    second = make_event("budget-4", 2, command_id=command_id, payload={"attempt": 2})
    result = event_store.append("budget-4", 1, [second])

    assert len(result) == 1
    assert result[0].event_id == first.event_id
    assert result[0].payload["attempt"] == 1
    assert len(event_store.load_stream("budget-4")) == 1


def test_command_id_reused_for_other_stream_is_rejected(event_store: SQLiteEventStore) -> None:
    command_id = generate_id()
    event_store.append("budget-5", 0, [make_event("budget-5", 1, command_id=command_id)])

    with pytest.raises(CommandIdempotencyViolation) as exc_info:
        event_store.append("budget-6", 0, [make_event("budget-6", 1, command_id=command_id)])

    assert exc_info.value.command_id == command_id
    assert event_store.load_stream("budget-6") == []


def test_append_streams_commits_all_streams(event_store: SQLiteEventStore) -> None:
    """Workflow and budget events land together"""
    command_id = generate_id()
    event_store.append("budget-7", 0, [make_event("budget-7", 1)])

    committed = event_store.append_streams(
        {"workflow-exp-1": 0, "budget-7": 1},
        [
            make_event("workflow-exp-1", 1, command_id, stream_type="workflow"),
            make_event("budget-7", 2, command_id),
        ],
    )

    assert len(committed) == 2
    assert event_store.get_stream_version("workflow-exp-1") == 1
    assert event_store.get_stream_version("budget-7") == 2


def test_append_streams_is_all_or_nothing(event_store: SQLiteEventStore) -> None:
    """A stale budget version keeps the workflow event out as well"""
    event_store.append("budget-8", 0, [make_event("budget-8", 1)])
    event_store.append("budget-8", 1, [make_event("budget-8", 2)])

    command_id = generate_id()
    with pytest.raises(StreamVersionConflict) as exc_info:
        event_store.append_streams(
            {"workflow-exp-2": 0, "budget-8": 1},
            [
                make_event("workflow-exp-2", 1, command_id, stream_type="workflow"),
                make_event("budget-8", 2, command_id),
            ],
        )

    assert exc_info.value.stream_id == "budget-8"
    assert event_store.load_stream("workflow-exp-2") == []
    assert event_store.get_stream_version("budget-8") == 2


def test_append_streams_replays_repeated_command(event_store: SQLiteEventStore) -> None:
    command_id = generate_id()
    events = [
        make_event("workflow-exp-3", 1, command_id, stream_type="workflow"),
        make_event("budget-9", 1, command_id),
    ]
    first = event_store.append_streams({"workflow-exp-3": 0, "budget-9": 0}, events)

    again = event_store.append_streams(
        {"workflow-exp-3": 1, "budget-9": 1},
        [
            make_event("workflow-exp-3", 2, command_id, stream_type="workflow"),
            make_event("budget-9", 2, command_id),
        ],
    )

    assert [e.event_id for e in again] == [e.event_id for e in first]
    assert event_store.count_events() == 2


def test_batch_with_version_gap_is_rejected(event_store: SQLiteEventStore) -> None:
    with pytest.raises(EventStoreError):
        event_store.append("budget-10", 0, [make_event("budget-10", 2)])


def test_batch_for_undeclared_stream_is_rejected(event_store: SQLiteEventStore) -> None:
    with pytest.raises(EventStoreError):
        event_store.append_streams({"budget-11": 0}, [make_event("budget-12", 1)])


def test_append_empty_events_list(event_store: SQLiteEventStore) -> None:
    assert event_store.append("budget-13", 0, []) == []


def test_load_all_events_in_commit_order(event_store: SQLiteEventStore) -> None:
    event_store.append("budget-a", 0, [make_event("budget-a", 1)])
    event_store.append("workflow-a", 0, [make_event("workflow-a", 1, stream_type="workflow")])
    event_store.append("budget-a", 1, [make_event("budget-a", 2)])

    all_events = event_store.load_all_events()
    assert [(e.stream_id, e.version) for e in all_events] == [
        ("budget-a", 1),
        ("workflow-a", 1),
        ("budget-a", 2),
    ]
    assert len(event_store.load_all_events(stream_type="workflow")) == 1


def test_count_operations(event_store: SQLiteEventStore) -> None:
    assert event_store.count_events() == 0
    assert event_store.count_streams() == 0

    for stream_num in range(2):
        for version in range(1, 4):
            event_store.append(
                f"budget-c{stream_num}", version - 1, [make_event(f"budget-c{stream_num}", version)]
            )
    event_store.append("workflow-c", 0, [make_event("workflow-c", 1, stream_type="workflow")])

    assert event_store.count_events() == 7
    assert event_store.count_streams() == 3
    assert event_store.count_streams(stream_type="budget") == 2


def test_events_survive_reopen(temp_db) -> None:
    SQLiteEventStore(temp_db).append("budget-r", 0, [make_event("budget-r", 1)])

    reopened = SQLiteEventStore(temp_db)
    assert reopened.get_stream_version("budget-r") == 1
