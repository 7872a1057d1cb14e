"""
Budget Ledger Commands - Intentions to change budget state

Commands are validated against ledger invariants and converted to events
by LedgerCommandHandlers.
"""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from trackify_engine.ledger.models import RecurrencePeriod


class CreateBudget(BaseModel):
    """
    Create a new budget

    Either an owner or a team must be given. Alert threshold and currency
    fall back to the engine policy when omitted.
    """

    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=1000)
    owner_id: str | None = None
    team_id: str | None = None
    category_id: str | None = None
    total_amount: Decimal = Field(..., ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    alert_threshold: Decimal | None = Field(default=None, ge=0, le=100)
    start_date: date
    end_date: date
    is_recurring: bool = False
    recurrence_period: RecurrencePeriod | None = None

    @model_validator(mode="after")
    def _check_owner(self) -> "CreateBudget":
        if self.owner_id is None and self.team_id is None:
            raise ValueError("a budget needs an owner_id or a team_id")
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.is_recurring and self.recurrence_period is None:
            raise ValueError("recurring budgets need a recurrence_period")
        return self


class AdjustBudgetTotal(BaseModel):
    """
    Change a budget's total amount

    Spent amount is never touched; only the ceiling moves.
    """

    budget_id: str
    new_total: Decimal
    reason: str = ""


class DeactivateBudget(BaseModel):
    """Soft-deactivate a budget (debits stay on record)"""

    budget_id: str
    reason: str = "deactivated"


class ActivateBudget(BaseModel):
    """Re-activate a deactivated budget"""

    budget_id: str


class RegisterCharge(BaseModel):
    """Record a provisional charge for a submitted expense"""

    budget_id: str
    expense_id: str
    workflow_id: str | None = None
    amount: Decimal


class ReleaseCharge(BaseModel):
    """Drop a provisional charge for an expense that will not be approved"""

    budget_id: str
    expense_id: str
    reason: str = ""


class DebitBudget(BaseModel):
    """Add an approved expense's amount to spent"""

    budget_id: str
    expense_id: str
    workflow_id: str | None = None
    amount: Decimal


class CreditBudget(BaseModel):
    """Give a previously debited expense's amount back to the budget"""

    budget_id: str
    expense_id: str
    amount: Decimal
    reason: str = ""


class RollOverBudget(BaseModel):
    """Start the next period of a recurring budget and close the current one"""

    budget_id: str
