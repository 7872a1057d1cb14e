"""
Audit Log - Traceability record of every successful transition

Audit entries are written after commit. A failing audit write is logged and
counted but never undoes the business transition it describes.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Protocol

from pydantic import BaseModel, Field

from trackify_engine.kernel.ids import generate_id
from trackify_engine.kernel.logging import get_logger
from trackify_engine.kernel.metrics import collaborator_failures_total
from trackify_engine.kernel.retry import retry_on_sqlite_lock

logger = get_logger(__name__)


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    ESCALATE = "ESCALATE"
    CANCEL = "CANCEL"
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"
    DEACTIVATE = "DEACTIVATE"
    ACTIVATE = "ACTIVATE"
    COMMENT = "COMMENT"
    REVERSE = "REVERSE"


class AuditEntityType(str, Enum):
    BUDGET = "BUDGET"
    APPROVAL_WORKFLOW = "APPROVAL_WORKFLOW"


class AuditEntry(BaseModel):
    """One audit record"""

    audit_id: str = Field(default_factory=generate_id)
    action: AuditAction
    entity_type: AuditEntityType
    entity_id: str
    actor_id: str | None
    old_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuditLog(Protocol):
    """Audit sink"""

    def record(
        self,
        action: AuditAction,
        entity_type: AuditEntityType,
        entity_id: str,
        actor_id: str | None,
        old_value: dict[str, Any] | None,
        new_value: dict[str, Any] | None,
    ) -> None:
        ...


class InMemoryAuditLog:
    """Audit log kept in memory (tests)"""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []
        self._lock = threading.Lock()

    def record(
        self,
        action: AuditAction,
        entity_type: AuditEntityType,
        entity_id: str,
        actor_id: str | None,
        old_value: dict[str, Any] | None,
        new_value: dict[str, Any] | None,
    ) -> None:
        entry = AuditEntry(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            old_value=old_value,
            new_value=new_value,
        )
        with self._lock:
            self.entries.append(entry)

    def for_entity(self, entity_id: str) -> list[AuditEntry]:
        with self._lock:
            return [e for e in self.entries if e.entity_id == entity_id]


class SQLiteAuditLog:
    """
    Audit log stored in an audit_logs table

    Usually shares the event store's database file; audit rows are written
    in their own short transaction after the events committed.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    audit_id TEXT PRIMARY KEY,
                    action TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    actor_id TEXT,
                    old_value_json TEXT,
                    new_value_json TEXT,
                    recorded_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_logs(entity_id)"
            )
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @retry_on_sqlite_lock()
    def record(
        self,
        action: AuditAction,
        entity_type: AuditEntityType,
        entity_id: str,
        actor_id: str | None,
        old_value: dict[str, Any] | None,
        new_value: dict[str, Any] | None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO audit_logs (audit_id, action, entity_type, entity_id, "
                "actor_id, old_value_json, new_value_json, recorded_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    generate_id(),
                    action.value,
                    entity_type.value,
                    entity_id,
                    actor_id,
                    json.dumps(old_value, default=str) if old_value is not None else None,
                    json.dumps(new_value, default=str) if new_value is not None else None,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()

    def for_entity(self, entity_id: str) -> list[AuditEntry]:
        """Audit entries for one budget or workflow, oldest first"""
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM audit_logs WHERE entity_id = ? ORDER BY rowid ASC",
                (entity_id,),
            )
            return [
                AuditEntry(
                    audit_id=row["audit_id"],
                    action=AuditAction(row["action"]),
                    entity_type=AuditEntityType(row["entity_type"]),
                    entity_id=row["entity_id"],
                    actor_id=row["actor_id"],
                    old_value=json.loads(row["old_value_json"]) if row["old_value_json"] else None,
                    new_value=json.loads(row["new_value_json"]) if row["new_value_json"] else None,
                    recorded_at=datetime.fromisoformat(row["recorded_at"]),
                )
                for row in cursor.fetchall()
            ]

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM audit_logs").fetchone()[0]


def record_safely(
    audit_log: AuditLog,
    action: AuditAction,
    entity_type: AuditEntityType,
    entity_id: str,
    actor_id: str | None,
    old_value: dict[str, Any] | None = None,
    new_value: dict[str, Any] | None = None,
) -> None:
    """Write an audit entry; failures are logged and counted, never raised"""
    try:
        audit_log.record(action, entity_type, entity_id, actor_id, old_value, new_value)
    except Exception as e:
        collaborator_failures_total.labels(collaborator="audit").inc()
        logger.error(
            "Audit record failed",
            action=action.value,
            entity_type=entity_type.value,
            entity_id=entity_id,
            error=str(e),
            error_type=type(e).__name__,
        )
