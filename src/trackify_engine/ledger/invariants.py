"""
Budget Ledger Invariants - Guards for every ledger mutation

Pure functions: they inspect state and raise a typed error, or return
quietly. Handlers call them before producing any event.
"""

from datetime import date
from decimal import Decimal

from trackify_engine.kernel.errors import (
    AlreadyDebited,
    BudgetInactive,
    BudgetNotFound,
    InvalidAmount,
    NotDebited,
)
from trackify_engine.ledger.models import Budget


def require_budget(budget_id: str, budget: dict | None) -> Budget:
    """
    Turn projection state into a Budget model

    Raises:
        BudgetNotFound: If no state exists for budget_id
    """
    if budget is None:
        raise BudgetNotFound(budget_id)
    return Budget.model_validate(budget)


def validate_positive_amount(field: str, amount: Decimal) -> None:
    """
    Ledger movements must be strictly positive

    Raises:
        InvalidAmount: If amount <= 0
    """
    if amount <= 0:
        raise InvalidAmount(field, amount)


def validate_new_total(new_total: Decimal) -> None:
    """
    A budget total can shrink below spent (the budget is then over budget)
    but never below zero

    Raises:
        InvalidAmount: If new_total < 0
    """
    if new_total < 0:
        raise InvalidAmount("new_total", new_total, "must not be negative")


def validate_budget_currently_active(budget: Budget, today: date) -> None:
    """
    Debits require an active budget whose period contains today

    Raises:
        BudgetInactive: If deactivated, not started or already ended
    """
    if not budget.is_active:
        raise BudgetInactive(budget.budget_id, "deactivated")
    if today < budget.start_date:
        raise BudgetInactive(budget.budget_id, f"period starts {budget.start_date}")
    if today > budget.end_date:
        raise BudgetInactive(budget.budget_id, f"period ended {budget.end_date}")


def validate_not_debited(budget: Budget, expense_id: str) -> None:
    """
    An expense debits a budget at most once

    Raises:
        AlreadyDebited: If the expense already holds a debit
    """
    if budget.has_debit(expense_id):
        raise AlreadyDebited(budget.budget_id, expense_id, budget.debits[expense_id])


def validate_debited(budget: Budget, expense_id: str) -> None:
    """
    Credits reverse an existing debit

    Raises:
        NotDebited: If no debit is recorded for the expense
    """
    if not budget.has_debit(expense_id):
        raise NotDebited(budget.budget_id, expense_id)
