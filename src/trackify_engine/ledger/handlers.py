"""
Budget Ledger Handlers - Command→Event transformation

Handlers are the decision-making layer of the ledger. They:
1. Receive current budget state (replayed from its stream)
2. Validate ledger invariants
3. Return events for the caller to append with the budget's version

They never touch storage, so the coordinator can combine their events with
workflow events in one atomic append.
"""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel

from trackify_engine.kernel.errors import ConfigurationError
from trackify_engine.kernel.events import Event, create_event
from trackify_engine.kernel.ids import generate_id
from trackify_engine.kernel.policy import EnginePolicy
from trackify_engine.kernel.time import TimeProvider, today
from trackify_engine.ledger.commands import (
    ActivateBudget,
    AdjustBudgetTotal,
    CreateBudget,
    CreditBudget,
    DeactivateBudget,
    DebitBudget,
    RegisterCharge,
    ReleaseCharge,
    RollOverBudget,
)
from trackify_engine.ledger.events import (
    BudgetActivated,
    BudgetCreated,
    BudgetCredited,
    BudgetDeactivated,
    BudgetDebited,
    BudgetTotalAdjusted,
    ChargeRegistered,
    ChargeReleased,
)
from trackify_engine.ledger.invariants import (
    require_budget,
    validate_budget_currently_active,
    validate_debited,
    validate_new_total,
    validate_not_debited,
    validate_positive_amount,
)

RECURRING_SUFFIX = " (Recurring)"


class LedgerCommandHandlers:
    """
    Command handlers for the budget ledger

    Each handler takes the budget's current state dict (or None) and returns
    the events to append. An empty list means "nothing to change".
    """

    def __init__(self, time_provider: TimeProvider, policy: EnginePolicy) -> None:
        """
        Args:
            time_provider: For timestamps and "today" (injectable for testing)
            policy: Engine policy (defaults for new budgets)
        """
        self.time_provider = time_provider
        self.policy = policy

    def _today(self) -> date:
        return today(self.time_provider)

    def _event(
        self,
        budget_id: str,
        event_type: str,
        payload: BaseModel,
        command_id: str,
        actor_id: str | None,
        version: int,
    ) -> Event:
        return create_event(
            event_id=generate_id(),
            stream_id=budget_id,
            stream_type="budget",
            event_type=event_type,
            occurred_at=self.time_provider.now(),
            command_id=command_id,
            actor_id=actor_id,
            payload=payload.model_dump(mode="json"),
            version=version,
        )

    def handle_create_budget(
        self,
        command: CreateBudget,
        command_id: str,
        actor_id: str | None,
        budget_id: str | None = None,
    ) -> list[Event]:
        """
        Handle CreateBudget command

        Args:
            command: CreateBudget command
            command_id: Idempotency key
            actor_id: Who issued the command
            budget_id: Explicit id (generated when None)

        Returns:
            [BudgetCreated]
        """
        now = self.time_provider.now()
        budget_id = budget_id or generate_id()

        payload = BudgetCreated(
            budget_id=budget_id,
            name=command.name,
            description=command.description,
            owner_id=command.owner_id,
            team_id=command.team_id,
            category_id=command.category_id,
            total_amount=command.total_amount,
            currency=command.currency or self.policy.default_currency,
            alert_threshold=(
                command.alert_threshold
                if command.alert_threshold is not None
                else self.policy.default_alert_threshold
            ),
            start_date=command.start_date,
            end_date=command.end_date,
            is_recurring=command.is_recurring,
            recurrence_period=command.recurrence_period,
            created_at=now,
            created_by=actor_id,
        )

        return [self._event(budget_id, "BudgetCreated", payload, command_id, actor_id, 1)]

    def handle_adjust_total(
        self,
        command: AdjustBudgetTotal,
        command_id: str,
        actor_id: str | None,
        budget_state: dict | None,
    ) -> list[Event]:
        """
        Handle AdjustBudgetTotal command

        Raises:
            BudgetNotFound: If budget doesn't exist
            InvalidAmount: If new total is negative
        """
        budget = require_budget(command.budget_id, budget_state)
        validate_new_total(command.new_total)

        if command.new_total == budget.total_amount:
            return []

        payload = BudgetTotalAdjusted(
            budget_id=budget.budget_id,
            old_total=budget.total_amount,
            new_total=command.new_total,
            reason=command.reason,
            adjusted_at=self.time_provider.now(),
            adjusted_by=actor_id,
        )
        return [
            self._event(
                budget.budget_id, "BudgetTotalAdjusted", payload, command_id, actor_id,
                budget.version + 1,
            )
        ]

    def handle_deactivate_budget(
        self,
        command: DeactivateBudget,
        command_id: str,
        actor_id: str | None,
        budget_state: dict | None,
    ) -> list[Event]:
        """Handle DeactivateBudget command (no-op when already inactive)"""
        budget = require_budget(command.budget_id, budget_state)
        if not budget.is_active:
            return []

        payload = BudgetDeactivated(
            budget_id=budget.budget_id,
            reason=command.reason,
            deactivated_at=self.time_provider.now(),
            deactivated_by=actor_id,
        )
        return [
            self._event(
                budget.budget_id, "BudgetDeactivated", payload, command_id, actor_id,
                budget.version + 1,
            )
        ]

    def handle_activate_budget(
        self,
        command: ActivateBudget,
        command_id: str,
        actor_id: str | None,
        budget_state: dict | None,
    ) -> list[Event]:
        """Handle ActivateBudget command (no-op when already active)"""
        budget = require_budget(command.budget_id, budget_state)
        if budget.is_active:
            return []

        payload = BudgetActivated(
            budget_id=budget.budget_id,
            activated_at=self.time_provider.now(),
            activated_by=actor_id,
        )
        return [
            self._event(
                budget.budget_id, "BudgetActivated", payload, command_id, actor_id,
                budget.version + 1,
            )
        ]

    def handle_register_charge(
        self,
        command: RegisterCharge,
        command_id: str,
        actor_id: str | None,
        budget_state: dict | None,
    ) -> list[Event]:
        """
        Handle RegisterCharge command

        Only currently active budgets accept provisional charges; for any
        other budget nothing is recorded.
        """
        budget = require_budget(command.budget_id, budget_state)
        validate_positive_amount("amount", command.amount)

        if not budget.is_currently_active(self._today()):
            return []
        if budget.has_pending_charge(command.expense_id) or budget.has_debit(command.expense_id):
            return []

        payload = ChargeRegistered(
            budget_id=budget.budget_id,
            expense_id=command.expense_id,
            workflow_id=command.workflow_id,
            amount=command.amount,
            registered_at=self.time_provider.now(),
        )
        return [
            self._event(
                budget.budget_id, "ChargeRegistered", payload, command_id, actor_id,
                budget.version + 1,
            )
        ]

    def handle_release_charge(
        self,
        command: ReleaseCharge,
        command_id: str,
        actor_id: str | None,
        budget_state: dict | None,
    ) -> list[Event]:
        """Handle ReleaseCharge command (no-op without a pending charge)"""
        budget = require_budget(command.budget_id, budget_state)
        if not budget.has_pending_charge(command.expense_id):
            return []

        payload = ChargeReleased(
            budget_id=budget.budget_id,
            expense_id=command.expense_id,
            amount=budget.pending_charges[command.expense_id],
            reason=command.reason,
            released_at=self.time_provider.now(),
        )
        return [
            self._event(
                budget.budget_id, "ChargeReleased", payload, command_id, actor_id,
                budget.version + 1,
            )
        ]

    def handle_debit(
        self,
        command: DebitBudget,
        command_id: str,
        actor_id: str | None,
        budget_state: dict | None,
    ) -> list[Event]:
        """
        Handle DebitBudget command

        Validates:
        - Amount is positive
        - Expense holds no debit yet
        - Budget is currently active

        Raises:
            BudgetNotFound, InvalidAmount, AlreadyDebited, BudgetInactive
        """
        budget = require_budget(command.budget_id, budget_state)
        validate_positive_amount("amount", command.amount)
        validate_not_debited(budget, command.expense_id)
        validate_budget_currently_active(budget, self._today())

        payload = BudgetDebited(
            budget_id=budget.budget_id,
            expense_id=command.expense_id,
            workflow_id=command.workflow_id,
            amount=command.amount,
            spent_before=budget.spent_amount,
            spent_after=budget.spent_amount + command.amount,
            debited_at=self.time_provider.now(),
        )
        return [
            self._event(
                budget.budget_id, "BudgetDebited", payload, command_id, actor_id,
                budget.version + 1,
            )
        ]

    def handle_credit(
        self,
        command: CreditBudget,
        command_id: str,
        actor_id: str | None,
        budget_state: dict | None,
    ) -> list[Event]:
        """
        Handle CreditBudget command

        Credits work on inactive budgets too: a reversal must always be able
        to give money back. At most the expense's own debit is credited; a
        smaller amount leaves the rest of the debit recorded, a larger one is
        clamped to the debit and flagged.

        Raises:
            BudgetNotFound, InvalidAmount, NotDebited
        """
        budget = require_budget(command.budget_id, budget_state)
        validate_positive_amount("amount", command.amount)
        validate_debited(budget, command.expense_id)

        debited = budget.debits[command.expense_id]
        credited = min(command.amount, debited)
        clamped = command.amount > debited

        payload = BudgetCredited(
            budget_id=budget.budget_id,
            expense_id=command.expense_id,
            amount=credited,
            requested_amount=command.amount,
            remaining_debit=debited - credited,
            spent_before=budget.spent_amount,
            spent_after=max(budget.spent_amount - credited, Decimal("0")),
            clamped=clamped,
            reason=command.reason,
            credited_at=self.time_provider.now(),
        )
        return [
            self._event(
                budget.budget_id, "BudgetCredited", payload, command_id, actor_id,
                budget.version + 1,
            )
        ]

    def handle_roll_over(
        self,
        command: RollOverBudget,
        command_id: str,
        actor_id: str | None,
        budget_state: dict | None,
    ) -> list[Event]:
        """
        Handle RollOverBudget command

        Emits the next-period BudgetCreated (new stream, spent zero) and
        deactivates the finished budget. The caller appends both streams
        atomically.

        Raises:
            BudgetNotFound: If budget doesn't exist
            ConfigurationError: If the budget is not recurring
        """
        budget = require_budget(command.budget_id, budget_state)
        if not budget.is_recurring or budget.recurrence_period is None:
            raise ConfigurationError(f"Budget {budget.budget_id} is not recurring")

        start, end = budget.recurrence_period.next_period(budget.end_date)
        name = budget.name
        if not name.endswith(RECURRING_SUFFIX):
            name += RECURRING_SUFFIX

        new_budget_id = generate_id()
        created = BudgetCreated(
            budget_id=new_budget_id,
            name=name,
            description=budget.description,
            owner_id=budget.owner_id,
            team_id=budget.team_id,
            category_id=budget.category_id,
            total_amount=budget.total_amount,
            currency=budget.currency,
            alert_threshold=budget.alert_threshold,
            start_date=start,
            end_date=end,
            is_recurring=True,
            recurrence_period=budget.recurrence_period,
            previous_budget_id=budget.budget_id,
            created_at=self.time_provider.now(),
            created_by=actor_id,
        )
        events = [
            self._event(new_budget_id, "BudgetCreated", created, command_id, actor_id, 1)
        ]
        events.extend(
            self.handle_deactivate_budget(
                DeactivateBudget(budget_id=budget.budget_id, reason="rolled over"),
                command_id,
                actor_id,
                budget_state,
            )
        )
        return events
