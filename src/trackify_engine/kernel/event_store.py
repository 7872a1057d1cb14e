"""
SQLite Event Store - Append-only event log with idempotency

The event store is the source of truth for every budget and every approval
workflow. It provides:
- Append-only semantics (events never modified or deleted)
- Idempotency via command_id (same command = same events)
- Optimistic locking via per-stream versions
- Atomic appends spanning several streams, so a workflow's terminal
  transition and the matching budget debit commit together or not at all
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from trackify_engine.kernel.errors import (
    CommandIdempotencyViolation,
    EventStoreError,
    StreamVersionConflict,
)
from trackify_engine.kernel.events import Event, group_by_stream
from trackify_engine.kernel.logging import get_logger
from trackify_engine.kernel.retry import retry_on_sqlite_lock

logger = get_logger(__name__)

_EVENT_COLUMNS = """
    event_id, stream_id, stream_type, version,
    command_id, event_type, occurred_at, actor_id, payload_json
"""


class SQLiteEventStore:
    """
    SQLite-based event store with append-only semantics

    Uses WAL mode for crash safety and concurrent readers. Writers open a
    BEGIN IMMEDIATE transaction, so version checks and inserts from
    competing threads are serialized by SQLite's write lock.

    Schema:
    - events table: append-only event log
    - Unique constraint: (stream_id, version)
    - Indices: stream_id, event_type, command_id
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 30.0) -> None:
        """
        Initialize event store with SQLite database

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds a writer waits for the database lock
        """
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        """Create tables and indices if they don't exist"""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    event_id TEXT PRIMARY KEY,
                    stream_id TEXT NOT NULL,
                    stream_type TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    command_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    occurred_at TEXT NOT NULL,
                    actor_id TEXT,
                    payload_json TEXT NOT NULL,

                    UNIQUE(stream_id, version)
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_stream ON events(stream_id, version)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_command ON events(command_id)"
            )

            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database connections

        One connection per call keeps the store safe to share across threads.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def append(
        self,
        stream_id: str,
        expected_version: int,
        events: list[Event],
    ) -> list[Event]:
        """
        Append events to a single stream with optimistic locking

        Args:
            stream_id: Aggregate root identifier
            expected_version: Expected current stream version
            events: Events to append (sequential versions)

        Returns:
            The appended events (or the events of a previous execution of
            the same command)

        Raises:
            StreamVersionConflict: If stream version doesn't match expected
            EventStoreError: On other database errors
        """
        return self.append_streams({stream_id: expected_version}, events)

    @retry_on_sqlite_lock()
    def append_streams(
        self,
        expected_versions: dict[str, int],
        events: list[Event],
    ) -> list[Event]:
        """
        Atomically append events to one or more streams

        Every stream in expected_versions is checked inside the same write
        transaction before any event is inserted. Either all events commit
        or none do.

        Args:
            expected_versions: stream_id -> expected current version
            events: Events to append; each stream's events must continue
                its version sequence

        Returns:
            The appended events (or previously committed events for a
            repeated command_id)

        Raises:
            StreamVersionConflict: If any stream moved since it was read
            CommandIdempotencyViolation: If command_id was used for other streams
            EventStoreError: On malformed batches or database errors
        """
        if not events:
            return []

        self._validate_batch(expected_versions, events)

        # Repeated command: return what was committed the first time
        command_id = events[0].command_id
        previous = self.load_command(command_id)
        existing = [e for e in previous if e.stream_id in expected_versions]
        if previous and not existing:
            raise CommandIdempotencyViolation(
                command_id,
                f"Command {command_id} already committed to streams "
                f"{sorted({e.stream_id for e in previous})}",
            )
        if existing:
            logger.debug(
                "Command already committed, returning existing events",
                command_id=command_id,
                event_count=len(existing),
            )
            return existing

        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")

                for stream_id, expected_version in expected_versions.items():
                    current_version = self._get_stream_version(conn, stream_id)
                    if current_version != expected_version:
                        raise StreamVersionConflict(
                            stream_id, expected_version, current_version
                        )

                for event in events:
                    conn.execute(
                        f"INSERT INTO events ({_EVENT_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            event.event_id,
                            event.stream_id,
                            event.stream_type,
                            event.version,
                            event.command_id,
                            event.event_type,
                            event.occurred_at.isoformat(),
                            event.actor_id,
                            json.dumps(event.payload),
                        ),
                    )

                conn.commit()
                return events

            except StreamVersionConflict:
                conn.rollback()
                raise

            except sqlite3.IntegrityError as e:
                conn.rollback()
                error_msg = str(e).lower()
                if "stream_id" in error_msg and "version" in error_msg:
                    stream_id = next(iter(expected_versions))
                    raise StreamVersionConflict(
                        stream_id,
                        expected_versions[stream_id],
                        self.get_stream_version(stream_id),
                    ) from e
                raise EventStoreError(f"Failed to append events: {e}") from e

            except sqlite3.OperationalError:
                # Lock contention - retried by the decorator
                conn.rollback()
                raise

            except Exception as e:
                conn.rollback()
                raise EventStoreError(f"Unexpected error appending events: {e}") from e

    def _validate_batch(self, expected_versions: dict[str, int], events: list[Event]) -> None:
        """Check that every stream's events continue its expected version"""
        for stream_id, stream_events in group_by_stream(events).items():
            if stream_id not in expected_versions:
                raise EventStoreError(
                    f"Event for stream {stream_id} has no expected version"
                )
            expected = expected_versions[stream_id]
            versions = [e.version for e in stream_events]
            if versions != list(range(expected + 1, expected + 1 + len(versions))):
                raise EventStoreError(
                    f"Events for stream {stream_id} have versions {versions}, "
                    f"expected a sequence starting at {expected + 1}"
                )

    def load_stream(self, stream_id: str) -> list[Event]:
        """
        Load all events for a stream in version order

        Args:
            stream_id: Aggregate root identifier

        Returns:
            List of events in version order (empty if stream doesn't exist)
        """
        with self._connect() as conn:
            cursor = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events "
                "WHERE stream_id = ? ORDER BY version ASC",
                (stream_id,),
            )
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def load_all_events(self, stream_type: str | None = None) -> list[Event]:
        """
        Load events in commit order (for projection rebuilding)

        Commit order keeps every stream's events in version order even when
        many events share a timestamp.

        Args:
            stream_type: Only events of this aggregate type, or None for all
        """
        with self._connect() as conn:
            if stream_type:
                cursor = conn.execute(
                    f"SELECT {_EVENT_COLUMNS} FROM events "
                    "WHERE stream_type = ? ORDER BY rowid ASC",
                    (stream_type,),
                )
            else:
                cursor = conn.execute(
                    f"SELECT {_EVENT_COLUMNS} FROM events ORDER BY rowid ASC"
                )
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def get_stream_version(self, stream_id: str) -> int:
        """
        Get current version of a stream

        Returns:
            Current stream version (0 if stream doesn't exist)
        """
        with self._connect() as conn:
            return self._get_stream_version(conn, stream_id)

    def _get_stream_version(self, conn: sqlite3.Connection, stream_id: str) -> int:
        cursor = conn.execute(
            "SELECT MAX(version) FROM events WHERE stream_id = ?",
            (stream_id,),
        )
        row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    def load_command(self, command_id: str) -> list[Event]:
        """Events committed under command_id, in commit order"""
        with self._connect() as conn:
            cursor = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM events "
                "WHERE command_id = ? ORDER BY rowid ASC",
                (command_id,),
            )
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        """Convert SQLite row to Event object"""
        return Event(
            event_id=row["event_id"],
            stream_id=row["stream_id"],
            stream_type=row["stream_type"],
            version=row["version"],
            command_id=row["command_id"],
            event_type=row["event_type"],
            occurred_at=datetime.fromisoformat(row["occurred_at"]),
            actor_id=row["actor_id"],
            payload=json.loads(row["payload_json"]),
        )

    def count_events(self) -> int:
        """Get total number of events in store"""
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]

    def count_streams(self, stream_type: str | None = None) -> int:
        """Get number of distinct streams, optionally of one aggregate type"""
        with self._connect() as conn:
            if stream_type:
                cursor = conn.execute(
                    "SELECT COUNT(DISTINCT stream_id) FROM events WHERE stream_type = ?",
                    (stream_type,),
                )
            else:
                cursor = conn.execute("SELECT COUNT(DISTINCT stream_id) FROM events")
            return cursor.fetchone()[0]
