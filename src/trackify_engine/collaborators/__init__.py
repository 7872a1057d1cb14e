"""
Collaborators - Interfaces to the world outside the engine

Notifications, audit records and approver resolution are supplied by the
surrounding backend. The engine depends only on the protocols here and
ships simple implementations for the CLI and for tests.
"""

from trackify_engine.collaborators.audit import (
    AuditAction,
    AuditEntityType,
    AuditLog,
    InMemoryAuditLog,
    SQLiteAuditLog,
)
from trackify_engine.collaborators.directory import ApproverDirectory, StaticApproverDirectory
from trackify_engine.collaborators.notifications import (
    InMemoryNotifier,
    LoggingNotifier,
    NotificationKind,
    Notifier,
)

__all__ = [
    "AuditAction",
    "AuditEntityType",
    "AuditLog",
    "InMemoryAuditLog",
    "SQLiteAuditLog",
    "ApproverDirectory",
    "StaticApproverDirectory",
    "InMemoryNotifier",
    "LoggingNotifier",
    "NotificationKind",
    "Notifier",
]
