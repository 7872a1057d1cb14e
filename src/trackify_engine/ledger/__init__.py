"""
Budget Ledger Module - Budgets and their expense-keyed spend

This module implements budget bookkeeping:
- Budgets with a total, an alert threshold and an inclusive period
- Debits and credits keyed by expense id (at most one debit per expense)
- Provisional charges for submitted, not yet approved expenses
- Derived status and threshold alerts
- Recurring budgets that roll over into the next period

Fun fact: The word "budget" comes from the old French "bougette", a small
leather purse. Chancellors of the Exchequer still carry a red box on
budget day!
"""

from trackify_engine.ledger.models import (
    AlertLevel,
    Budget,
    BudgetAlert,
    BudgetStatus,
    RecurrencePeriod,
)

__all__ = [
    "AlertLevel",
    "Budget",
    "BudgetAlert",
    "BudgetStatus",
    "RecurrencePeriod",
]
