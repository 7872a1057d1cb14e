"""
Tests for the BudgetLedger service through the engine façade

Covers committed state, alert forwarding, audit records and the
maintenance sweep (roll-over, expiry, expiring warnings).
"""

from decimal import Decimal

import pytest

from trackify_engine.collaborators.audit import AuditAction, InMemoryAuditLog
from trackify_engine.collaborators.notifications import InMemoryNotifier, NotificationKind
from trackify_engine.engine import TrackifyEngine
from trackify_engine.kernel.errors import AlreadyDebited, BudgetInactive, BudgetNotFound
from trackify_engine.kernel.metrics import ledger_underflow_total
from trackify_engine.kernel.time import TestTimeProvider
from trackify_engine.ledger.models import AlertLevel


def test_create_budget_is_queryable(engine: TrackifyEngine, team_budget: dict) -> None:
    budget_id = team_budget["budget_id"]

    assert engine.get_budget(budget_id)["name"] == "Engineering 2025"
    assert [b["budget_id"] for b in engine.list_budgets(team_id="team-eng")] == [budget_id]
    assert engine.list_budgets(owner_id="nobody") == []

    status = engine.budget_status(budget_id)
    assert status.total_amount == Decimal("1000")
    assert status.remaining_amount == Decimal("1000")
    assert status.is_currently_active is True


def test_debit_and_credit_move_spent(engine: TrackifyEngine, team_budget: dict) -> None:
    budget_id = team_budget["budget_id"]

    engine.debit(budget_id, "exp-1", "19.99")
    assert engine.budget_status(budget_id).spent_amount == Decimal("19.99")

    engine.credit(budget_id, "exp-1", "19.99", reason="refund")
    status = engine.budget_status(budget_id)
    assert status.spent_amount == Decimal("0")
    assert status.debit_count == 0


def test_double_debit_is_rejected(engine: TrackifyEngine, team_budget: dict) -> None:
    engine.debit(team_budget["budget_id"], "exp-1", "10")
    with pytest.raises(AlreadyDebited):
        engine.debit(team_budget["budget_id"], "exp-1", "10")


def test_credit_never_exceeds_the_expense_debit(
    engine: TrackifyEngine, team_budget: dict
) -> None:
    budget_id = team_budget["budget_id"]
    engine.debit(budget_id, "exp-1", "100")
    engine.debit(budget_id, "exp-2", "50")
    underflows_before = ledger_underflow_total._value.get()

    engine.credit(budget_id, "exp-1", "120", reason="refund")

    budget = engine.get_budget(budget_id)
    assert Decimal(budget["spent_amount"]) == Decimal("50")
    assert list(budget["debits"]) == ["exp-2"]
    assert ledger_underflow_total._value.get() == underflows_before + 1


def test_partial_credit_blocks_a_second_debit(engine: TrackifyEngine, team_budget: dict) -> None:
    budget_id = team_budget["budget_id"]
    engine.debit(budget_id, "exp-1", "100")

    engine.credit(budget_id, "exp-1", "40", reason="partial refund")
    with pytest.raises(AlreadyDebited):
        engine.debit(budget_id, "exp-1", "100")

    budget = engine.get_budget(budget_id)
    assert Decimal(budget["spent_amount"]) == Decimal("60")
    assert sum(Decimal(v) for v in budget["debits"].values()) == Decimal("60")


def test_repeated_debit_command_is_idempotent(
    engine: TrackifyEngine, team_budget: dict, audit_log: InMemoryAuditLog
) -> None:
    budget_id = team_budget["budget_id"]
    command_id = engine.new_command_id()

    engine.debit(budget_id, "exp-1", "10", command_id=command_id)
    engine.debit(budget_id, "exp-1", "10", command_id=command_id)

    assert engine.budget_status(budget_id).spent_amount == Decimal("10")
    debits = [e for e in audit_log.for_entity(budget_id) if e.action == AuditAction.DEBIT]
    assert len(debits) == 1


def test_unknown_budget(engine: TrackifyEngine) -> None:
    with pytest.raises(BudgetNotFound):
        engine.debit("missing", "exp-1", "10")
    assert engine.get_budget("missing") is None


def test_debit_on_deactivated_budget(engine: TrackifyEngine, team_budget: dict) -> None:
    budget_id = team_budget["budget_id"]
    engine.deactivate_budget(budget_id, reason="frozen")

    with pytest.raises(BudgetInactive):
        engine.debit(budget_id, "exp-1", "10")

    engine.activate_budget(budget_id)
    engine.debit(budget_id, "exp-1", "10")
    assert engine.budget_status(budget_id).spent_amount == Decimal("10")


def test_threshold_alert_is_forwarded_to_owner(
    engine: TrackifyEngine, team_budget: dict, notifier: InMemoryNotifier
) -> None:
    budget_id = team_budget["budget_id"]

    engine.debit(budget_id, "exp-1", "500")
    assert notifier.of_kind(NotificationKind.BUDGET_WARNING) == []

    engine.debit(budget_id, "exp-2", "300")
    warnings = notifier.of_kind(NotificationKind.BUDGET_WARNING)
    assert len(warnings) == 1
    assert warnings[0].user_id == "team-eng"
    assert warnings[0].payload["budget_id"] == budget_id

    engine.debit(budget_id, "exp-3", "250")
    exceeded = notifier.of_kind(NotificationKind.BUDGET_EXCEEDED)
    assert len(exceeded) == 1
    assert exceeded[0].payload["message"] == "Budget exceeded"

    alert = engine.check_alert(budget_id)
    assert alert is not None
    assert alert.level == AlertLevel.DANGER


def test_adjust_total_reevaluates_status(engine: TrackifyEngine, team_budget: dict) -> None:
    budget_id = team_budget["budget_id"]
    engine.debit(budget_id, "exp-1", "300")

    engine.adjust_budget_total(budget_id, "250", reason="cut")

    status = engine.budget_status(budget_id)
    assert status.is_over_budget is True
    assert status.remaining_amount == Decimal("-50")


def test_mutations_are_audited(
    engine: TrackifyEngine, team_budget: dict, audit_log: InMemoryAuditLog
) -> None:
    budget_id = team_budget["budget_id"]
    engine.debit(budget_id, "exp-1", "40", actor_id="lead")
    engine.credit(budget_id, "exp-1", "40", actor_id="admin")

    actions = [e.action for e in audit_log.for_entity(budget_id)]
    assert actions == [AuditAction.CREATE, AuditAction.DEBIT, AuditAction.CREDIT]

    debit_entry = audit_log.for_entity(budget_id)[1]
    assert debit_entry.actor_id == "lead"
    assert debit_entry.old_value["spent_amount"] == "0"


def test_state_survives_restart(engine: TrackifyEngine, team_budget: dict, temp_db) -> None:
    budget_id = team_budget["budget_id"]
    engine.debit(budget_id, "exp-1", "75")

    reopened = TrackifyEngine(temp_db, policy=engine.policy, time_provider=engine.time_provider)
    assert Decimal(reopened.get_budget(budget_id)["spent_amount"]) == Decimal("75")
    assert reopened.budget_status(budget_id).debit_count == 1


class TestMaintenance:
    def test_recurring_budget_rolls_over(
        self, engine: TrackifyEngine, test_time: TestTimeProvider
    ) -> None:
        december = engine.create_budget(
            name="Cloud",
            total_amount="500",
            team_id="team-eng",
            start_date="2024-12-01",
            end_date="2024-12-31",
            is_recurring=True,
            recurrence_period="MONTHLY",
        )

        result = engine.run_budget_maintenance()

        new_id = result.rolled_over[december["budget_id"]]
        rolled = engine.get_budget(new_id)
        assert rolled["start_date"] == "2025-01-01"
        assert rolled["end_date"] == "2025-01-31"
        assert rolled["name"] == "Cloud (Recurring)"
        assert Decimal(rolled["spent_amount"]) == Decimal("0")
        assert engine.get_budget(december["budget_id"])["is_active"] is False
        assert december["budget_id"] not in result.deactivated

    def test_expired_budget_deactivated_after_grace(self, engine: TrackifyEngine) -> None:
        old = engine.create_budget(
            name="Last year",
            total_amount="100",
            owner_id="alice",
            start_date="2024-01-01",
            end_date="2024-11-30",
        )

        result = engine.run_budget_maintenance()

        assert result.deactivated == [old["budget_id"]]
        assert engine.get_budget(old["budget_id"])["is_active"] is False

    def test_expiring_budget_warns_owner(
        self, engine: TrackifyEngine, notifier: InMemoryNotifier
    ) -> None:
        engine.create_budget(
            name="January",
            total_amount="100",
            owner_id="alice",
            start_date="2025-01-01",
            end_date="2025-01-20",
        )

        result = engine.run_budget_maintenance()

        assert len(result.expiring_alerts) == 1
        expiring = notifier.of_kind(NotificationKind.BUDGET_EXPIRING)
        assert [n.user_id for n in expiring] == ["alice"]

    def test_maintenance_is_repeatable(self, engine: TrackifyEngine) -> None:
        engine.create_budget(
            name="Cloud",
            total_amount="500",
            team_id="team-eng",
            start_date="2024-12-01",
            end_date="2024-12-31",
            is_recurring=True,
            recurrence_period="MONTHLY",
        )

        first = engine.run_budget_maintenance()
        second = engine.run_budget_maintenance()

        assert len(first.rolled_over) == 1
        assert second.rolled_over == {}
        assert len(engine.list_budgets()) == 2
