"""
TrackifyEngine - Main façade class

This is the primary interface for the approval and budget engine. It wires
the event store, handlers, registries, coordinator, ledger service, scanner
and collaborators together and exposes a plain keyword-argument API.

Example:
    >>> from trackify_engine import TrackifyEngine
    >>> engine = TrackifyEngine("trackify.db")
    >>> budget = engine.create_budget(
    ...     name="Team travel", total_amount="1000", team_id="team-eng",
    ...     start_date="2025-01-01", end_date="2025-12-31",
    ... )
    >>> wf = engine.submit_expense("exp-1", "alice", "300", approver_id="bob")
    >>> engine.approve(wf["workflow_id"], "bob")
    >>> engine.budget_status(budget["budget_id"]).used_percentage
    Decimal('30.00')
"""

from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from trackify_engine.approval.commands import SubmitExpense
from trackify_engine.approval.handlers import WorkflowCommandHandlers
from trackify_engine.approval.models import SYSTEM_ACTOR, ApprovalStatus, Comment, CommentType
from trackify_engine.approval.projections import CommentLog, WorkflowRegistry
from trackify_engine.collaborators.audit import AuditLog, SQLiteAuditLog
from trackify_engine.collaborators.directory import ApproverDirectory, StaticApproverDirectory
from trackify_engine.collaborators.notifications import (
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
)
from trackify_engine.coordinator import BudgetWorkflowCoordinator
from trackify_engine.kernel.bus import InProcessBus
from trackify_engine.kernel.event_store import SQLiteEventStore
from trackify_engine.kernel.ids import generate_id
from trackify_engine.kernel.policy import EnginePolicy
from trackify_engine.kernel.time import RealTimeProvider, TimeProvider
from trackify_engine.ledger.commands import (
    ActivateBudget,
    AdjustBudgetTotal,
    CreateBudget,
    CreditBudget,
    DeactivateBudget,
    DebitBudget,
)
from trackify_engine.ledger.handlers import LedgerCommandHandlers
from trackify_engine.ledger.ledger import BudgetLedger, MaintenanceResult
from trackify_engine.ledger.models import BudgetAlert, BudgetStatus, RecurrencePeriod
from trackify_engine.ledger.projections import BudgetRegistry
from trackify_engine.repository import AggregateRepository
from trackify_engine.scanner import EscalationScanner, ScanResult


class TrackifyEngine:
    """
    Trackify engine main façade

    Provides a unified API for:
    - Budget administration and the spend ledger
    - Expense approval workflows (submit, approve, reject, escalate, cancel)
    - Escalation sweeps and budget maintenance
    - Health counts for monitoring
    """

    def __init__(
        self,
        sqlite_path: str | Path,
        policy: EnginePolicy | None = None,
        time_provider: TimeProvider | None = None,
        directory: ApproverDirectory | None = None,
        notifier: Notifier | None = None,
        audit_log: AuditLog | None = None,
    ) -> None:
        """
        Initialize the engine

        Args:
            sqlite_path: Path to SQLite database
            policy: Engine policy (uses defaults if None)
            time_provider: Time provider (uses real time if None)
            directory: Approver directory (empty static directory if None)
            notifier: Notification sender (structured log if None)
            audit_log: Audit sink (audit_logs table in the same database if None)
        """
        self.sqlite_path = Path(sqlite_path)
        self.policy = policy or EnginePolicy()
        self.time_provider = time_provider or RealTimeProvider()
        self.directory = directory or StaticApproverDirectory()
        self.notifier = notifier or LoggingNotifier()

        # Initialize infrastructure
        self.event_store = SQLiteEventStore(self.sqlite_path)
        self.audit_log = audit_log or SQLiteAuditLog(self.sqlite_path)
        self.bus = InProcessBus()

        # Initialize projections
        self.budget_registry = BudgetRegistry()
        self.workflow_registry = WorkflowRegistry()
        self.comment_log = CommentLog()
        self.repository = AggregateRepository(
            self.event_store,
            self.bus,
            self.budget_registry,
            self.workflow_registry,
            self.comment_log,
        )

        # Initialize handlers and services
        self.ledger_handlers = LedgerCommandHandlers(self.time_provider, self.policy)
        self.workflow_handlers = WorkflowCommandHandlers(self.time_provider, self.policy)
        self.ledger = BudgetLedger(
            self.repository,
            self.ledger_handlers,
            self.notifier,
            self.audit_log,
            self.time_provider,
            self.policy,
        )
        self.coordinator = BudgetWorkflowCoordinator(
            self.repository,
            self.workflow_handlers,
            self.ledger_handlers,
            self.ledger,
            self.directory,
            self.audit_log,
            self.time_provider,
            self.policy,
        )
        self.scanner = EscalationScanner(
            self.coordinator,
            self.workflow_registry,
            self.directory,
            self.notifier,
            self.time_provider,
            self.policy,
        )

        NotificationDispatcher(
            self.notifier, self.policy.admin_ids + self.directory.admin_ids()
        ).register(self.bus)

        # Rebuild projections from event store
        self.repository.rebuild()

    # ========== Budgets ==========

    def create_budget(
        self,
        name: str,
        total_amount: Decimal | str | int,
        start_date: date | str,
        end_date: date | str,
        owner_id: str | None = None,
        team_id: str | None = None,
        category_id: str | None = None,
        currency: str | None = None,
        alert_threshold: Decimal | str | int | None = None,
        is_recurring: bool = False,
        recurrence_period: RecurrencePeriod | str | None = None,
        description: str = "",
        actor_id: str = SYSTEM_ACTOR,
    ) -> dict[str, Any]:
        """
        Create a budget

        Returns:
            Budget dict with budget_id

        Raises:
            pydantic.ValidationError: For malformed input (no owner, bad period)
        """
        command = CreateBudget(
            name=name,
            description=description,
            owner_id=owner_id,
            team_id=team_id,
            category_id=category_id,
            total_amount=total_amount,
            currency=currency,
            alert_threshold=alert_threshold,
            start_date=start_date,
            end_date=end_date,
            is_recurring=is_recurring,
            recurrence_period=recurrence_period,
        )
        return self.ledger.create_budget(command, actor_id)

    def adjust_budget_total(
        self,
        budget_id: str,
        new_total: Decimal | str | int,
        reason: str = "",
        actor_id: str = SYSTEM_ACTOR,
    ) -> dict[str, Any]:
        """Change a budget's total; spent stays as it is"""
        return self.ledger.adjust_total(
            AdjustBudgetTotal(budget_id=budget_id, new_total=new_total, reason=reason),
            actor_id,
        )

    def deactivate_budget(
        self, budget_id: str, reason: str = "deactivated", actor_id: str = SYSTEM_ACTOR
    ) -> dict[str, Any]:
        return self.ledger.deactivate(
            DeactivateBudget(budget_id=budget_id, reason=reason), actor_id
        )

    def activate_budget(self, budget_id: str, actor_id: str = SYSTEM_ACTOR) -> dict[str, Any]:
        return self.ledger.activate(ActivateBudget(budget_id=budget_id), actor_id)

    def debit(
        self,
        budget_id: str,
        expense_id: str,
        amount: Decimal | str | int,
        actor_id: str = SYSTEM_ACTOR,
        command_id: str | None = None,
    ) -> dict[str, Any]:
        """Direct ledger debit (workflow approvals debit through the coordinator)"""
        return self.ledger.debit(
            DebitBudget(budget_id=budget_id, expense_id=expense_id, amount=amount),
            actor_id,
            command_id,
        )

    def credit(
        self,
        budget_id: str,
        expense_id: str,
        amount: Decimal | str | int,
        reason: str = "",
        actor_id: str = SYSTEM_ACTOR,
        command_id: str | None = None,
    ) -> dict[str, Any]:
        """Direct ledger credit of a previous debit"""
        return self.ledger.credit(
            CreditBudget(budget_id=budget_id, expense_id=expense_id, amount=amount, reason=reason),
            actor_id,
            command_id,
        )

    def get_budget(self, budget_id: str) -> dict[str, Any] | None:
        return self.ledger.get(budget_id)

    def budget_status(self, budget_id: str) -> BudgetStatus:
        return self.ledger.status(budget_id)

    def check_alert(self, budget_id: str) -> BudgetAlert | None:
        return self.ledger.check_alert(budget_id)

    def list_budgets(
        self,
        owner_id: str | None = None,
        team_id: str | None = None,
        active_only: bool = False,
    ) -> list[dict[str, Any]]:
        return self.ledger.list_budgets(owner_id, team_id, active_only)

    def run_budget_maintenance(self, actor_id: str = SYSTEM_ACTOR) -> MaintenanceResult:
        """Roll over recurring budgets, deactivate expired ones, warn about expiring ones"""
        return self.ledger.run_maintenance(actor_id)

    # ========== Expense approval ==========

    def submit_expense(
        self,
        expense_id: str,
        submitted_by: str,
        amount: Decimal | str | int,
        approver_id: str | None = None,
        team_id: str | None = None,
        category_id: str | None = None,
        budget_id: str | None = None,
        currency: str | None = None,
        max_approval_level: int = 1,
        approval_required_amount: Decimal | str | int | None = None,
        auto_approve_enabled: bool = False,
        escalation_enabled: bool = True,
        deadline: datetime | None = None,
        priority: str = "MEDIUM",
        command_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Submit an expense for approval

        Returns:
            Workflow dict (already AUTO_APPROVED when eligible and the policy
            auto-approves on submit)
        """
        command = SubmitExpense(
            expense_id=expense_id,
            expense_amount=amount,
            currency=currency,
            current_approver_id=approver_id,
            max_approval_level=max_approval_level,
            approval_required_amount=approval_required_amount,
            auto_approve_enabled=auto_approve_enabled,
            escalation_enabled=escalation_enabled,
            team_id=team_id,
            category_id=category_id,
            budget_id=budget_id,
            deadline=deadline,
            priority=priority,
        )
        return self.coordinator.submit(command, submitted_by, command_id)

    def approve(
        self,
        workflow_id: str,
        approver_id: str,
        notes: str = "",
        command_id: str | None = None,
    ) -> dict[str, Any]:
        return self.coordinator.approve(workflow_id, approver_id, notes, command_id)

    def reject(
        self,
        workflow_id: str,
        approver_id: str,
        reason: str,
        command_id: str | None = None,
    ) -> dict[str, Any]:
        return self.coordinator.reject(workflow_id, approver_id, reason, command_id)

    def escalate(
        self,
        workflow_id: str,
        escalated_to: str | None = None,
        actor_id: str = SYSTEM_ACTOR,
        reason: str = "",
        command_id: str | None = None,
    ) -> dict[str, Any]:
        return self.coordinator.escalate(workflow_id, escalated_to, actor_id, reason, command_id)

    def auto_approve(self, workflow_id: str, command_id: str | None = None) -> dict[str, Any]:
        return self.coordinator.auto_approve(workflow_id, command_id)

    def cancel(
        self,
        workflow_id: str,
        actor_id: str,
        reason: str = "",
        command_id: str | None = None,
    ) -> dict[str, Any]:
        return self.coordinator.cancel(workflow_id, actor_id, reason, command_id)

    def add_comment(
        self,
        workflow_id: str,
        author_id: str,
        text: str,
        comment_type: CommentType | str = CommentType.GENERAL,
    ) -> dict[str, Any]:
        return self.coordinator.add_comment(workflow_id, author_id, text, CommentType(comment_type))

    def reverse_approval(self, workflow_id: str, admin_id: str, reason: str) -> dict[str, Any]:
        return self.coordinator.reverse_approval(workflow_id, admin_id, reason)

    def get_workflow(self, workflow_id: str) -> dict[str, Any] | None:
        return self.workflow_registry.get(workflow_id)

    def get_workflow_for_expense(self, expense_id: str) -> dict[str, Any] | None:
        return self.workflow_registry.get_by_expense(expense_id)

    def list_workflows(
        self,
        status: ApprovalStatus | str | None = None,
        approver_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        List workflows

        Args:
            status: Optional status filter
            approver_id: Only pending workflows waiting on this approver
        """
        if approver_id:
            return self.workflow_registry.list_for_approver(approver_id)
        if status:
            return self.workflow_registry.list_by_status(ApprovalStatus(status))
        return self.workflow_registry.list_all()

    def list_overdue(self) -> list[dict[str, Any]]:
        return [
            w.model_dump(mode="json")
            for w in self.workflow_registry.list_overdue(self.time_provider.now())
        ]

    def get_comments(self, workflow_id: str) -> list[Comment]:
        return self.comment_log.list_for(workflow_id)

    def linked_budget(self, workflow_id: str) -> dict[str, Any] | None:
        """Budget the workflow charges, or None when it is not linked"""
        budget = self.coordinator.linked_budget(workflow_id)
        return budget.model_dump(mode="json") if budget else None

    # ========== Scanner & health ==========

    def scan(self) -> ScanResult:
        """Run one escalation sweep"""
        return self.scanner.sweep()

    def health(self) -> dict[str, Any]:
        """Counts for monitoring"""
        return {
            "events": self.event_store.count_events(),
            "budgets": self.budget_registry.count(),
            "active_budgets": len(self.budget_registry.list_active()),
            "workflows": self.workflow_registry.count(),
            "workflows_by_status": self.workflow_registry.count_by_status(),
            "pending_workflows": len(self.workflow_registry.list_pending()),
            "overdue_workflows": len(
                self.workflow_registry.list_overdue(self.time_provider.now())
            ),
        }

    def new_command_id(self) -> str:
        return generate_id()
