"""
Budget Ledger Models - Budgets, derived status and alerts

A budget owns its spent amount exclusively. Spend moves only through debits
and credits keyed by expense id; everything else (remaining amount, used
percentage, over-budget and near-threshold flags) is derived on demand and
never stored.

Key concepts:
- Debit: an approved expense adds its amount to spent
- Credit: a reversed expense gives its amount back
- Pending charge: a submitted but not yet approved expense (provisional)
"""

import calendar
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, Field, model_validator

HUNDRED = Decimal("100")
RATIO_QUANTUM = Decimal("0.0001")


class RecurrencePeriod(str, Enum):
    """How often a recurring budget renews"""

    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"

    def months(self) -> int:
        return {
            RecurrencePeriod.MONTHLY: 1,
            RecurrencePeriod.QUARTERLY: 3,
            RecurrencePeriod.YEARLY: 12,
        }[self]

    def next_period(self, previous_end: date) -> tuple[date, date]:
        """
        Compute the period that follows one ending on previous_end

        The new period starts the day after previous_end and ends one day
        before the same calendar day a period later.
        """
        start = previous_end + timedelta(days=1)
        end = add_months(start, self.months()) - timedelta(days=1)
        return start, end


class AlertLevel(str, Enum):
    """
    Budget alert severity

    INFO: informational (budget expiring soon)
    WARNING: used percentage at or above the alert threshold
    DANGER: spent exceeds total
    """

    INFO = "INFO"
    WARNING = "WARNING"
    DANGER = "DANGER"


def add_months(day: date, months: int) -> date:
    """Add calendar months, clamping to the last day of the target month"""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def used_percentage(spent: Decimal, total: Decimal) -> Decimal:
    """
    Percentage of total that has been spent

    The ratio is rounded half-up to four places before scaling, so a
    percentage carries at most two decimals. Zero when total is zero.
    """
    if total == 0:
        return Decimal("0")
    ratio = (spent / total).quantize(RATIO_QUANTUM, rounding=ROUND_HALF_UP)
    return ratio * HUNDRED


class BudgetAlert(BaseModel):
    """Alert descriptor produced after a ledger mutation or by the maintenance sweep"""

    budget_id: str
    budget_name: str
    level: AlertLevel
    message: str
    used_percentage: Decimal
    alert_threshold: Decimal
    should_alert: bool = True


class BudgetStatus(BaseModel):
    """
    Derived snapshot of a budget

    Computed from the ledger without mutating it.
    """

    budget_id: str
    name: str
    currency: str
    total_amount: Decimal
    spent_amount: Decimal
    remaining_amount: Decimal
    pending_amount: Decimal
    used_percentage: Decimal
    alert_threshold: Decimal
    is_over_budget: bool
    is_near_threshold: bool
    is_expired: bool
    is_active: bool
    is_currently_active: bool
    debit_count: int
    as_of: date


class Budget(BaseModel):
    """
    Budget with an expense-keyed spend ledger

    Invariants:
    - spent_amount == sum(debits.values())
    - spent_amount >= 0
    - end_date >= start_date
    - recurring budgets carry a recurrence period

    Attributes:
        budget_id: Unique identifier
        name: Human-readable name
        owner_id: Owning user (optional when team-owned)
        team_id: Owning team (optional)
        category_id: Optional expense category scope
        total_amount: Budget total
        spent_amount: Sum of debited expenses
        currency: ISO currency code
        alert_threshold: Percent used that triggers a WARNING alert
        start_date/end_date: Inclusive budget period
        is_active: False once deactivated (expired or by hand)
        is_recurring: Whether a new period is created when this one ends
        recurrence_period: Renewal cadence for recurring budgets
        debits: expense_id -> debited amount
        pending_charges: expense_id -> provisional amount awaiting approval
        version: Stream version this state reflects
    """

    budget_id: str
    name: str
    description: str = ""
    owner_id: str | None = None
    team_id: str | None = None
    category_id: str | None = None
    total_amount: Decimal = Field(ge=0)
    spent_amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "USD"
    alert_threshold: Decimal = Field(default=Decimal("80"), ge=0, le=100)
    start_date: date
    end_date: date
    is_active: bool = True
    is_recurring: bool = False
    recurrence_period: RecurrencePeriod | None = None
    previous_budget_id: str | None = None
    debits: dict[str, Decimal] = Field(default_factory=dict)
    pending_charges: dict[str, Decimal] = Field(default_factory=dict)
    created_at: datetime
    created_by: str | None = None
    deactivated_at: datetime | None = None
    version: int = 0

    @model_validator(mode="after")
    def _check_period(self) -> "Budget":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.is_recurring and self.recurrence_period is None:
            raise ValueError("recurring budgets need a recurrence_period")
        return self

    def remaining_amount(self) -> Decimal:
        return self.total_amount - self.spent_amount

    def pending_amount(self) -> Decimal:
        return sum(self.pending_charges.values(), Decimal("0"))

    def used_percentage(self) -> Decimal:
        return used_percentage(self.spent_amount, self.total_amount)

    def is_over_budget(self) -> bool:
        return self.spent_amount > self.total_amount

    def is_near_threshold(self) -> bool:
        return self.used_percentage() >= self.alert_threshold

    def is_expired(self, today: date) -> bool:
        return today > self.end_date

    def is_currently_active(self, today: date) -> bool:
        """Active flag set and today inside the budget period"""
        return self.is_active and self.start_date <= today <= self.end_date

    def has_debit(self, expense_id: str) -> bool:
        return expense_id in self.debits

    def has_pending_charge(self, expense_id: str) -> bool:
        return expense_id in self.pending_charges

    def days_until_end(self, today: date) -> int:
        return (self.end_date - today).days

    def status(self, today: date) -> BudgetStatus:
        """Compute the derived status snapshot"""
        return BudgetStatus(
            budget_id=self.budget_id,
            name=self.name,
            currency=self.currency,
            total_amount=self.total_amount,
            spent_amount=self.spent_amount,
            remaining_amount=self.remaining_amount(),
            pending_amount=self.pending_amount(),
            used_percentage=self.used_percentage(),
            alert_threshold=self.alert_threshold,
            is_over_budget=self.is_over_budget(),
            is_near_threshold=self.is_near_threshold(),
            is_expired=self.is_expired(today),
            is_active=self.is_active,
            is_currently_active=self.is_currently_active(today),
            debit_count=len(self.debits),
            as_of=today,
        )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "budget_id": "budget-001",
                    "name": "Engineering Q1 Travel",
                    "team_id": "team-eng",
                    "total_amount": "1000.00",
                    "spent_amount": "300.00",
                    "currency": "USD",
                    "alert_threshold": "80",
                    "start_date": "2025-01-01",
                    "end_date": "2025-03-31",
                    "is_active": True,
                    "debits": {"exp-1": "300.00"},
                    "created_at": "2025-01-01T09:00:00Z",
                    "version": 3,
                }
            ]
        }
    }
