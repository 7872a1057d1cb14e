"""
Budget Ledger Service - Versioned budget mutations with alerts

BudgetLedger runs the ledger handlers against freshly replayed budget state
and commits through the repository with optimistic locking. Concurrent
debits and credits on one budget serialize through the budget stream
version; a conflicting writer reloads and decides again.

After every committed debit or credit the budget is re-evaluated and any
alert is forwarded to the budget owner. The coordinator calls the same
after-commit hook for ledger events it commits together with workflow
events.
"""

from collections.abc import Callable
from datetime import date
from typing import Any

from pydantic import BaseModel, Field

from trackify_engine.collaborators.audit import (
    AuditAction,
    AuditEntityType,
    AuditLog,
    record_safely,
)
from trackify_engine.collaborators.notifications import NotificationKind, Notifier, deliver
from trackify_engine.kernel.errors import BudgetNotFound
from trackify_engine.kernel.events import Event
from trackify_engine.kernel.ids import generate_id
from trackify_engine.kernel.logging import LogOperation, get_logger
from trackify_engine.kernel.metrics import (
    budget_alerts_total,
    ledger_underflow_total,
    track_command_duration,
)
from trackify_engine.kernel.policy import EnginePolicy
from trackify_engine.kernel.retry import run_with_conflict_retry
from trackify_engine.kernel.time import TimeProvider, today
from trackify_engine.ledger.commands import (
    ActivateBudget,
    AdjustBudgetTotal,
    CreateBudget,
    CreditBudget,
    DeactivateBudget,
    DebitBudget,
    RollOverBudget,
)
from trackify_engine.ledger.handlers import LedgerCommandHandlers
from trackify_engine.ledger.invariants import require_budget
from trackify_engine.ledger.models import AlertLevel, Budget, BudgetAlert, BudgetStatus
from trackify_engine.ledger.projections import BudgetRegistry
from trackify_engine.ledger.triggers import (
    evaluate_budget_alert,
    find_expired_budgets,
    find_expiring_budgets,
    find_recurring_due,
)
from trackify_engine.repository import AggregateRepository, is_fresh

logger = get_logger(__name__)

LEDGER_AUDIT_ACTIONS = {
    "BudgetCreated": AuditAction.CREATE,
    "BudgetTotalAdjusted": AuditAction.UPDATE,
    "BudgetDeactivated": AuditAction.DEACTIVATE,
    "BudgetActivated": AuditAction.ACTIVATE,
    "BudgetDebited": AuditAction.DEBIT,
    "BudgetCredited": AuditAction.CREDIT,
}

ALERT_NOTIFICATIONS = {
    AlertLevel.WARNING: NotificationKind.BUDGET_WARNING,
    AlertLevel.DANGER: NotificationKind.BUDGET_EXCEEDED,
    AlertLevel.INFO: NotificationKind.BUDGET_EXPIRING,
}


def budget_summary(state: dict | None) -> dict[str, Any] | None:
    """Compact budget view for audit records"""
    if state is None:
        return None
    return {
        "total_amount": str(state["total_amount"]),
        "spent_amount": str(state["spent_amount"]),
        "is_active": state["is_active"],
        "version": state["version"],
    }


class MaintenanceResult(BaseModel):
    """Outcome of one budget maintenance sweep"""

    deactivated: list[str] = Field(default_factory=list)
    rolled_over: dict[str, str] = Field(default_factory=dict)
    expiring_alerts: list[BudgetAlert] = Field(default_factory=list)


class BudgetLedger:
    """
    Budget ledger service

    Owns every budget-only operation. Workflow-linked debits and credits go
    through the coordinator, which shares the after-commit hook.
    """

    def __init__(
        self,
        repository: AggregateRepository,
        handlers: LedgerCommandHandlers,
        notifier: Notifier,
        audit_log: AuditLog,
        time_provider: TimeProvider,
        policy: EnginePolicy,
    ) -> None:
        self.repository = repository
        self.handlers = handlers
        self.notifier = notifier
        self.audit_log = audit_log
        self.time_provider = time_provider
        self.policy = policy

    @property
    def registry(self) -> BudgetRegistry:
        return self.repository.budget_registry

    def _today(self) -> date:
        return today(self.time_provider)

    def _mutate(
        self,
        operation: str,
        budget_id: str,
        command_id: str,
        decide: Callable[[dict | None], list[Event]],
        actor_id: str | None,
    ) -> dict:
        """
        Reload, decide and commit one budget stream, retrying on conflicts

        A command_id already committed to this budget is not decided again.

        Returns:
            The budget state after the operation
        """

        def attempt() -> tuple[dict | None, list[Event]]:
            state, version = self.repository.load_budget(budget_id)
            if budget_id in self.repository.committed_streams(command_id):
                return state, []
            events = decide(state)
            committed = self.repository.commit({budget_id: version}, events)
            return state, committed if is_fresh(events, committed) else []

        before, committed = run_with_conflict_retry(
            operation,
            attempt,
            max_attempts=self.policy.max_conflict_retries,
            min_wait_ms=self.policy.conflict_retry_min_wait_ms,
            max_wait_ms=self.policy.conflict_retry_max_wait_ms,
        )
        self.after_commit(committed, actor_id, before)

        after, _ = self.repository.load_budget(budget_id)
        if after is None:
            raise BudgetNotFound(budget_id)
        return after

    # ========== Budget administration ==========

    @track_command_duration("create_budget")
    def create_budget(
        self,
        command: CreateBudget,
        actor_id: str | None = "system",
        command_id: str | None = None,
        budget_id: str | None = None,
    ) -> dict:
        """Create a budget and return its state"""
        budget_id = budget_id or generate_id()
        command_id = command_id or generate_id()
        with LogOperation(logger, "create_budget", budget_id=budget_id, actor_id=actor_id):
            return self._mutate(
                "create_budget",
                budget_id,
                command_id,
                lambda state: self.handlers.handle_create_budget(
                    command, command_id, actor_id, budget_id
                ),
                actor_id,
            )

    @track_command_duration("adjust_budget_total")
    def adjust_total(
        self,
        command: AdjustBudgetTotal,
        actor_id: str | None = "system",
        command_id: str | None = None,
    ) -> dict:
        """Change a budget's total; spent is untouched"""
        command_id = command_id or generate_id()
        with LogOperation(logger, "adjust_budget_total", budget_id=command.budget_id):
            return self._mutate(
                "adjust_budget_total",
                command.budget_id,
                command_id,
                lambda state: self.handlers.handle_adjust_total(
                    command, command_id, actor_id, state
                ),
                actor_id,
            )

    @track_command_duration("deactivate_budget")
    def deactivate(
        self,
        command: DeactivateBudget,
        actor_id: str | None = "system",
        command_id: str | None = None,
    ) -> dict:
        command_id = command_id or generate_id()
        with LogOperation(logger, "deactivate_budget", budget_id=command.budget_id):
            return self._mutate(
                "deactivate_budget",
                command.budget_id,
                command_id,
                lambda state: self.handlers.handle_deactivate_budget(
                    command, command_id, actor_id, state
                ),
                actor_id,
            )

    @track_command_duration("activate_budget")
    def activate(
        self,
        command: ActivateBudget,
        actor_id: str | None = "system",
        command_id: str | None = None,
    ) -> dict:
        command_id = command_id or generate_id()
        with LogOperation(logger, "activate_budget", budget_id=command.budget_id):
            return self._mutate(
                "activate_budget",
                command.budget_id,
                command_id,
                lambda state: self.handlers.handle_activate_budget(
                    command, command_id, actor_id, state
                ),
                actor_id,
            )

    # ========== Spend ledger ==========

    @track_command_duration("debit_budget")
    def debit(
        self,
        command: DebitBudget,
        actor_id: str | None = "system",
        command_id: str | None = None,
    ) -> dict:
        """
        Add an expense's amount to spent

        Raises:
            BudgetNotFound, InvalidAmount, AlreadyDebited, BudgetInactive
            ConcurrencyConflict: If conflict retries are exhausted
        """
        command_id = command_id or generate_id()
        with LogOperation(
            logger, "debit_budget", budget_id=command.budget_id, expense_id=command.expense_id
        ):
            return self._mutate(
                "debit_budget",
                command.budget_id,
                command_id,
                lambda state: self.handlers.handle_debit(command, command_id, actor_id, state),
                actor_id,
            )

    @track_command_duration("credit_budget")
    def credit(
        self,
        command: CreditBudget,
        actor_id: str | None = "system",
        command_id: str | None = None,
    ) -> dict:
        """
        Give a debited expense's amount back (never more than its debit)

        Raises:
            BudgetNotFound, InvalidAmount, NotDebited
            ConcurrencyConflict: If conflict retries are exhausted
        """
        command_id = command_id or generate_id()
        with LogOperation(
            logger, "credit_budget", budget_id=command.budget_id, expense_id=command.expense_id
        ):
            return self._mutate(
                "credit_budget",
                command.budget_id,
                command_id,
                lambda state: self.handlers.handle_credit(command, command_id, actor_id, state),
                actor_id,
            )

    # ========== Queries ==========

    def load(self, budget_id: str) -> Budget:
        """
        Authoritative budget model replayed from its stream

        Raises:
            BudgetNotFound: If budget doesn't exist
        """
        state, _ = self.repository.load_budget(budget_id)
        return require_budget(budget_id, state)

    def status(self, budget_id: str) -> BudgetStatus:
        """Derived status snapshot (no mutation)"""
        return self.load(budget_id).status(self._today())

    def check_alert(self, budget_id: str) -> BudgetAlert | None:
        """DANGER / WARNING alert for the budget, or None"""
        return evaluate_budget_alert(self.load(budget_id))

    def get(self, budget_id: str) -> dict | None:
        return self.registry.get(budget_id)

    def list_budgets(
        self,
        owner_id: str | None = None,
        team_id: str | None = None,
        active_only: bool = False,
    ) -> list[dict]:
        if owner_id:
            budgets = self.registry.list_by_owner(owner_id)
        elif team_id:
            budgets = self.registry.list_by_team(team_id)
        else:
            budgets = self.registry.list_all()
        if active_only:
            budgets = [b for b in budgets if b["is_active"]]
        return sorted(budgets, key=lambda b: (str(b["start_date"]), b["budget_id"]))

    def find_matching_budget(
        self,
        owner_id: str | None,
        team_id: str | None,
        category_id: str | None,
        on_date: date | None = None,
    ) -> dict | None:
        return self.registry.find_matching(
            owner_id=owner_id,
            team_id=team_id,
            category_id=category_id,
            on_date=on_date or self._today(),
        )

    # ========== After-commit hook ==========

    def after_commit(
        self,
        events: list[Event],
        actor_id: str | None,
        before: dict | None = None,
    ) -> list[BudgetAlert]:
        """
        React to committed ledger events

        Records audit entries, logs clamped credits as integrity warnings
        and re-evaluates alerts after every debit or credit.

        Returns:
            Alerts forwarded to the notifier
        """
        alerts: list[BudgetAlert] = []
        for event in events:
            if event.stream_type != "budget":
                continue

            action = LEDGER_AUDIT_ACTIONS.get(event.event_type)
            if action is not None:
                record_safely(
                    self.audit_log,
                    action,
                    AuditEntityType.BUDGET,
                    event.stream_id,
                    actor_id,
                    budget_summary(before) if before and before["budget_id"] == event.stream_id
                    else None,
                    event.payload,
                )

            if event.event_type == "BudgetCredited" and event.payload.get("clamped"):
                ledger_underflow_total.inc()
                logger.error(
                    "Ledger underflow: credit exceeded the expense debit, clamped",
                    budget_id=event.stream_id,
                    expense_id=event.payload["expense_id"],
                    spent_before=event.payload["spent_before"],
                    requested=event.payload["requested_amount"],
                    credited=event.payload["amount"],
                )

            if event.event_type in ("BudgetDebited", "BudgetCredited"):
                alert = self._forward_alert(event.stream_id)
                if alert is not None:
                    alerts.append(alert)
        return alerts

    def _forward_alert(self, budget_id: str) -> BudgetAlert | None:
        budget = self.load(budget_id)
        alert = evaluate_budget_alert(budget)
        if alert is None:
            return None

        budget_alerts_total.labels(level=alert.level.value).inc()
        logger.warning(
            "Budget alert",
            budget_id=budget_id,
            level=alert.level.value,
            used_percentage=str(alert.used_percentage),
        )
        deliver(
            self.notifier,
            budget.owner_id or budget.team_id,
            ALERT_NOTIFICATIONS[alert.level],
            alert.model_dump(mode="json"),
        )
        return alert

    # ========== Maintenance ==========

    def deactivate_expired_budgets(self, actor_id: str = "system") -> list[str]:
        """Deactivate non-recurring budgets past the expiry grace period"""
        candidates = [
            Budget.model_validate(b) for b in self.registry.list_active()
        ]
        expired = find_expired_budgets(
            candidates, self._today(), self.policy.expired_budget_grace_days
        )
        deactivated = []
        for budget in expired:
            self.deactivate(
                DeactivateBudget(budget_id=budget.budget_id, reason="expired"), actor_id
            )
            deactivated.append(budget.budget_id)
        if deactivated:
            logger.info("Expired budgets deactivated", count=len(deactivated))
        return deactivated

    def roll_over_recurring_budgets(self, actor_id: str = "system") -> dict[str, str]:
        """
        Start the next period of every recurring budget whose period ended

        The new budget and the old budget's deactivation commit together.

        Returns:
            old budget id -> new budget id
        """
        candidates = [Budget.model_validate(b) for b in self.registry.list_active()]
        rolled: dict[str, str] = {}
        for budget in find_recurring_due(candidates, self._today()):
            new_budget_id = self._roll_over(budget.budget_id, actor_id)
            if new_budget_id is not None:
                rolled[budget.budget_id] = new_budget_id
        if rolled:
            logger.info("Recurring budgets rolled over", count=len(rolled))
        return rolled

    def _roll_over(self, budget_id: str, actor_id: str) -> str | None:
        command_id = generate_id()

        def attempt() -> tuple[dict | None, list[Event]]:
            state, version = self.repository.load_budget(budget_id)
            if state is None or not state["is_active"]:
                return state, []
            events = self.handlers.handle_roll_over(
                RollOverBudget(budget_id=budget_id), command_id, actor_id, state
            )
            new_budget_id = events[0].stream_id
            committed = self.repository.commit(
                {new_budget_id: 0, budget_id: version}, events
            )
            return state, committed if is_fresh(events, committed) else []

        before, committed = run_with_conflict_retry(
            "roll_over_budget",
            attempt,
            max_attempts=self.policy.max_conflict_retries,
            min_wait_ms=self.policy.conflict_retry_min_wait_ms,
            max_wait_ms=self.policy.conflict_retry_max_wait_ms,
        )
        if not committed:
            return None
        self.after_commit(committed, actor_id, before)
        return committed[0].stream_id

    def notify_expiring_budgets(self) -> list[BudgetAlert]:
        """Send BUDGET_EXPIRING for active budgets ending within the warning window"""
        budgets = [Budget.model_validate(b) for b in self.registry.list_active()]
        by_id = {b.budget_id: b for b in budgets}
        alerts = find_expiring_budgets(
            budgets, self._today(), self.policy.expiring_budget_warning_days
        )
        for alert in alerts:
            budget = by_id[alert.budget_id]
            deliver(
                self.notifier,
                budget.owner_id or budget.team_id,
                NotificationKind.BUDGET_EXPIRING,
                alert.model_dump(mode="json"),
            )
        return alerts

    def run_maintenance(self, actor_id: str = "system") -> MaintenanceResult:
        """Roll over, deactivate and warn, in that order"""
        with LogOperation(logger, "budget_maintenance"):
            rolled_over = self.roll_over_recurring_budgets(actor_id)
            deactivated = self.deactivate_expired_budgets(actor_id)
            expiring = self.notify_expiring_budgets()
        return MaintenanceResult(
            deactivated=deactivated,
            rolled_over=rolled_over,
            expiring_alerts=expiring,
        )
