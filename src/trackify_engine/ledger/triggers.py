"""
Budget Ledger Triggers - Automatic budget health evaluation

Pure evaluations over budget state. The ledger calls evaluate_budget_alert
after every debit and credit; the maintenance sweep uses the others to find
budgets to deactivate, roll over or warn about.
"""

from datetime import date, timedelta

from trackify_engine.ledger.models import AlertLevel, Budget, BudgetAlert


def evaluate_budget_alert(budget: Budget) -> BudgetAlert | None:
    """
    Check whether a budget needs an alert

    DANGER when spent exceeds total, WARNING when the used percentage
    reached the alert threshold, otherwise no alert.

    Args:
        budget: Budget to evaluate

    Returns:
        BudgetAlert, or None when the budget is on track
    """
    if budget.is_over_budget():
        level, message = AlertLevel.DANGER, "Budget exceeded"
    elif budget.is_near_threshold():
        level, message = AlertLevel.WARNING, "Budget nearing threshold"
    else:
        return None

    return BudgetAlert(
        budget_id=budget.budget_id,
        budget_name=budget.name,
        level=level,
        message=message,
        used_percentage=budget.used_percentage(),
        alert_threshold=budget.alert_threshold,
    )


def find_expired_budgets(
    budgets: list[Budget],
    today: date,
    grace_days: int,
) -> list[Budget]:
    """
    Active, non-recurring budgets whose period ended more than grace_days ago

    Recurring budgets are rolled over instead of simply deactivated.
    """
    cutoff = today - timedelta(days=grace_days)
    return [
        b
        for b in budgets
        if b.is_active and not b.is_recurring and b.end_date < cutoff
    ]


def find_recurring_due(budgets: list[Budget], today: date) -> list[Budget]:
    """Active recurring budgets whose period has ended"""
    return [b for b in budgets if b.is_active and b.is_recurring and b.is_expired(today)]


def find_expiring_budgets(
    budgets: list[Budget],
    today: date,
    window_days: int,
) -> list[BudgetAlert]:
    """
    INFO alerts for currently active budgets ending within window_days

    Args:
        budgets: Budgets to inspect
        today: Evaluation date
        window_days: Look-ahead window

    Returns:
        One INFO alert per expiring budget
    """
    alerts: list[BudgetAlert] = []
    for budget in budgets:
        if not budget.is_currently_active(today):
            continue
        days_left = budget.days_until_end(today)
        if 0 <= days_left <= window_days:
            alerts.append(
                BudgetAlert(
                    budget_id=budget.budget_id,
                    budget_name=budget.name,
                    level=AlertLevel.INFO,
                    message=f"Budget expires in {days_left} days",
                    used_percentage=budget.used_percentage(),
                    alert_threshold=budget.alert_threshold,
                )
            )
    return alerts
