"""
Tests for the approver directory, notifications and audit sinks

Collaborators are best-effort: a broken notifier or audit sink must never
undo a committed approval.
"""

import json

import pytest

from trackify_engine.collaborators.audit import (
    AuditAction,
    AuditEntityType,
    SQLiteAuditLog,
    record_safely,
)
from trackify_engine.collaborators.directory import StaticApproverDirectory
from trackify_engine.collaborators.notifications import (
    InMemoryNotifier,
    NotificationKind,
    deliver,
)
from trackify_engine.engine import TrackifyEngine
from trackify_engine.kernel.errors import ConfigurationError
from trackify_engine.kernel.metrics import collaborator_failures_total


class BrokenNotifier:
    def notify(self, user_id, kind, payload) -> None:
        raise ConnectionError("smtp down")


class BrokenAuditLog:
    def record(self, *args) -> None:
        raise OSError("disk full")


class TestDirectory:
    def test_approver_chain_by_level(self, directory: StaticApproverDirectory) -> None:
        assert directory.next_approver("team-eng", 0) == "lead"
        assert directory.next_approver("team-eng", 1) == "director"
        assert directory.next_approver("team-eng", 2) is None
        assert directory.next_approver(None, 0) is None

    def test_escalation_falls_back_to_admin_once(
        self, directory: StaticApproverDirectory
    ) -> None:
        assert directory.escalation_target("team-eng", 0) == "vp"
        assert directory.escalation_target("team-eng", 1) == "admin"
        assert directory.escalation_target("team-eng", 2) is None
        assert directory.escalation_target("team-unknown", 0) == "admin"

    def test_admins(self, directory: StaticApproverDirectory) -> None:
        assert directory.is_admin("admin")
        assert not directory.is_admin("lead")
        assert not directory.is_admin(None)
        assert directory.admin_ids() == ["admin"]

    def test_malformed_config(self) -> None:
        with pytest.raises(ConfigurationError):
            StaticApproverDirectory.from_dict({"teams": {"team-eng": {"approvers": "lead"}}})

    def test_from_file(self, tmp_path) -> None:
        path = tmp_path / "directory.json"
        path.write_text(json.dumps({"teams": {"ops": {"approvers": ["olga"]}}}))

        directory = StaticApproverDirectory.from_file(path)

        assert directory.next_approver("ops", 0) == "olga"

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            StaticApproverDirectory.from_file(tmp_path / "nope.json")


class TestNotifications:
    def test_deliver_skips_missing_recipient(self) -> None:
        notifier = InMemoryNotifier()

        assert deliver(notifier, None, NotificationKind.APPROVAL_REQUEST, {}) is False
        assert notifier.sent == []

    def test_failing_notifier_is_counted_not_raised(self) -> None:
        before = collaborator_failures_total.labels(collaborator="notifier")._value.get()

        delivered = deliver(BrokenNotifier(), "lead", NotificationKind.APPROVAL_REQUEST, {})

        assert delivered is False
        after = collaborator_failures_total.labels(collaborator="notifier")._value.get()
        assert after == before + 1

    def test_broken_notifier_does_not_block_approval(
        self, temp_db, policy, test_time, directory
    ) -> None:
        engine = TrackifyEngine(
            temp_db,
            policy=policy,
            time_provider=test_time,
            directory=directory,
            notifier=BrokenNotifier(),
        )
        engine.submit_expense("exp-1", "alice", "40", team_id="team-eng")

        workflow = engine.approve("workflow-exp-1", "lead")

        assert workflow["status"] == "PENDING"
        assert workflow["current_approver_id"] == "director"

    def test_comment_notifies_everyone_but_author(
        self, engine: TrackifyEngine, notifier: InMemoryNotifier
    ) -> None:
        engine.submit_expense("exp-1", "alice", "40", team_id="team-eng")

        engine.add_comment("workflow-exp-1", "lead", "Receipt please")

        comments = notifier.of_kind(NotificationKind.COMMENT_ADDED)
        assert [n.user_id for n in comments] == ["alice"]

    def test_cancellation_notifies_current_approver(
        self, engine: TrackifyEngine, notifier: InMemoryNotifier
    ) -> None:
        engine.submit_expense("exp-1", "alice", "40", team_id="team-eng")

        engine.cancel("workflow-exp-1", "alice")

        cancelled = notifier.of_kind(NotificationKind.EXPENSE_CANCELLED)
        assert [n.user_id for n in cancelled] == ["lead"]


class TestAudit:
    def test_sqlite_audit_log_round_trip(self, temp_db) -> None:
        audit_log = SQLiteAuditLog(temp_db)

        audit_log.record(
            AuditAction.APPROVE,
            AuditEntityType.APPROVAL_WORKFLOW,
            "workflow-exp-1",
            "lead",
            {"status": "PENDING"},
            {"status": "APPROVED"},
        )

        [entry] = audit_log.for_entity("workflow-exp-1")
        assert entry.action == AuditAction.APPROVE
        assert entry.old_value == {"status": "PENDING"}
        assert entry.new_value == {"status": "APPROVED"}
        assert audit_log.count() == 1

    def test_record_safely_swallows_failures(self) -> None:
        before = collaborator_failures_total.labels(collaborator="audit")._value.get()

        record_safely(
            BrokenAuditLog(), AuditAction.DEBIT, AuditEntityType.BUDGET, "budget-1", "lead"
        )

        assert collaborator_failures_total.labels(collaborator="audit")._value.get() == before + 1
