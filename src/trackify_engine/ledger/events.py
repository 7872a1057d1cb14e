"""
Budget Ledger Events - Domain events for budgets

Every change to a budget is one of these facts. Replaying them in version
order reproduces the budget, including its expense-keyed debit ledger.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from trackify_engine.ledger.models import RecurrencePeriod


class BudgetCreated(BaseModel):
    """A new budget was created (active from the start)"""

    budget_id: str
    name: str
    description: str
    owner_id: str | None
    team_id: str | None
    category_id: str | None
    total_amount: Decimal
    currency: str
    alert_threshold: Decimal
    start_date: date
    end_date: date
    is_recurring: bool
    recurrence_period: RecurrencePeriod | None
    previous_budget_id: str | None = None
    created_at: datetime
    created_by: str | None


class BudgetTotalAdjusted(BaseModel):
    """The budget total changed; spent amount is unaffected"""

    budget_id: str
    old_total: Decimal
    new_total: Decimal
    reason: str
    adjusted_at: datetime
    adjusted_by: str | None


class BudgetDeactivated(BaseModel):
    """The budget was soft-deactivated"""

    budget_id: str
    reason: str
    deactivated_at: datetime
    deactivated_by: str | None


class BudgetActivated(BaseModel):
    """A deactivated budget was re-activated"""

    budget_id: str
    activated_at: datetime
    activated_by: str | None


class ChargeRegistered(BaseModel):
    """A submitted expense was linked to the budget as a provisional charge"""

    budget_id: str
    expense_id: str
    workflow_id: str | None
    amount: Decimal
    registered_at: datetime


class ChargeReleased(BaseModel):
    """A provisional charge was dropped (expense rejected or cancelled)"""

    budget_id: str
    expense_id: str
    amount: Decimal
    reason: str
    released_at: datetime


class BudgetDebited(BaseModel):
    """An approved expense was added to spent"""

    budget_id: str
    expense_id: str
    workflow_id: str | None
    amount: Decimal
    spent_before: Decimal
    spent_after: Decimal
    debited_at: datetime


class BudgetCredited(BaseModel):
    """
    A debited expense was given back, fully or in part

    amount is what was actually credited, never more than the expense's
    debit. clamped is True when requested_amount exceeded that debit; the
    excess is dropped and indicates an upstream bug. remaining_debit is
    what stays recorded against the expense (zero removes the debit).
    """

    budget_id: str
    expense_id: str
    amount: Decimal
    requested_amount: Decimal
    remaining_debit: Decimal
    spent_before: Decimal
    spent_after: Decimal
    clamped: bool
    reason: str
    credited_at: datetime


# Event type registry for deserialization
LEDGER_EVENT_TYPES = {
    "BudgetCreated": BudgetCreated,
    "BudgetTotalAdjusted": BudgetTotalAdjusted,
    "BudgetDeactivated": BudgetDeactivated,
    "BudgetActivated": BudgetActivated,
    "ChargeRegistered": ChargeRegistered,
    "ChargeReleased": ChargeReleased,
    "BudgetDebited": BudgetDebited,
    "BudgetCredited": BudgetCredited,
}
