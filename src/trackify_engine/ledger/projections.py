"""
Budget Ledger Projections - Budget state built from events

BudgetRegistry folds budget events into plain dicts (JSON-friendly, amounts
as strings). The same fold serves two purposes:
- replaying one budget stream to get the authoritative state for a decision
- keeping an in-memory read model of all budgets for queries
"""

import copy
import threading
from datetime import date
from decimal import Decimal

from trackify_engine.kernel.events import Event


class BudgetRegistry:
    """
    Budget projection - current state of all budgets

    Built from events: BudgetCreated, BudgetTotalAdjusted, BudgetDeactivated,
    BudgetActivated, ChargeRegistered, ChargeReleased, BudgetDebited,
    BudgetCredited

    Query methods: get, list_all, list_active, list_by_owner, find_matching
    """

    def __init__(self) -> None:
        self.budgets: dict[str, dict] = {}
        self._lock = threading.RLock()

    def apply_event(self, event: Event) -> None:
        """
        Apply an event to update the projection

        Args:
            event: Event to apply
        """
        handler = {
            "BudgetCreated": self._apply_budget_created,
            "BudgetTotalAdjusted": self._apply_total_adjusted,
            "BudgetDeactivated": self._apply_deactivated,
            "BudgetActivated": self._apply_activated,
            "ChargeRegistered": self._apply_charge_registered,
            "ChargeReleased": self._apply_charge_released,
            "BudgetDebited": self._apply_debited,
            "BudgetCredited": self._apply_credited,
        }.get(event.event_type)
        if handler is None:
            return
        with self._lock:
            handler(event)

    def upsert(self, state: dict) -> None:
        """
        Replace a budget's state if it is at least as new as the cached one

        Committers refresh the cache from a stream replay; with concurrent
        committers a late, older replay must not overwrite a newer one.
        """
        with self._lock:
            current = self.budgets.get(state["budget_id"])
            if current is None or state["version"] >= current["version"]:
                self.budgets[state["budget_id"]] = copy.deepcopy(state)

    def _apply_budget_created(self, event: Event) -> None:
        payload = event.payload
        self.budgets[payload["budget_id"]] = {
            "budget_id": payload["budget_id"],
            "name": payload["name"],
            "description": payload.get("description", ""),
            "owner_id": payload.get("owner_id"),
            "team_id": payload.get("team_id"),
            "category_id": payload.get("category_id"),
            "total_amount": payload["total_amount"],
            "spent_amount": "0",
            "currency": payload["currency"],
            "alert_threshold": payload["alert_threshold"],
            "start_date": payload["start_date"],
            "end_date": payload["end_date"],
            "is_active": True,
            "is_recurring": payload.get("is_recurring", False),
            "recurrence_period": payload.get("recurrence_period"),
            "previous_budget_id": payload.get("previous_budget_id"),
            "debits": {},
            "pending_charges": {},
            "created_at": payload["created_at"],
            "created_by": payload.get("created_by"),
            "deactivated_at": None,
            "version": event.version,
        }

    def _apply_total_adjusted(self, event: Event) -> None:
        budget = self.budgets.get(event.payload["budget_id"])
        if budget is None:
            return
        budget["total_amount"] = event.payload["new_total"]
        budget["version"] = event.version

    def _apply_deactivated(self, event: Event) -> None:
        budget = self.budgets.get(event.payload["budget_id"])
        if budget is None:
            return
        budget["is_active"] = False
        budget["deactivated_at"] = event.payload["deactivated_at"]
        budget["version"] = event.version

    def _apply_activated(self, event: Event) -> None:
        budget = self.budgets.get(event.payload["budget_id"])
        if budget is None:
            return
        budget["is_active"] = True
        budget["deactivated_at"] = None
        budget["version"] = event.version

    def _apply_charge_registered(self, event: Event) -> None:
        budget = self.budgets.get(event.payload["budget_id"])
        if budget is None:
            return
        budget["pending_charges"][event.payload["expense_id"]] = event.payload["amount"]
        budget["version"] = event.version

    def _apply_charge_released(self, event: Event) -> None:
        budget = self.budgets.get(event.payload["budget_id"])
        if budget is None:
            return
        budget["pending_charges"].pop(event.payload["expense_id"], None)
        budget["version"] = event.version

    def _apply_debited(self, event: Event) -> None:
        payload = event.payload
        budget = self.budgets.get(payload["budget_id"])
        if budget is None:
            return
        spent = Decimal(str(budget["spent_amount"])) + Decimal(str(payload["amount"]))
        budget["spent_amount"] = str(spent)
        budget["debits"][payload["expense_id"]] = payload["amount"]
        budget["pending_charges"].pop(payload["expense_id"], None)
        budget["version"] = event.version

    def _apply_credited(self, event: Event) -> None:
        payload = event.payload
        budget = self.budgets.get(payload["budget_id"])
        if budget is None:
            return
        spent = Decimal(str(budget["spent_amount"])) - Decimal(str(payload["amount"]))
        budget["spent_amount"] = str(max(spent, Decimal("0")))
        remaining = Decimal(str(payload["remaining_debit"]))
        if remaining > 0:
            budget["debits"][payload["expense_id"]] = str(remaining)
        else:
            budget["debits"].pop(payload["expense_id"], None)
        budget["version"] = event.version

    # ========== Query Methods ==========

    def get(self, budget_id: str) -> dict | None:
        """Get a copy of a budget's state"""
        with self._lock:
            budget = self.budgets.get(budget_id)
            return copy.deepcopy(budget) if budget is not None else None

    def list_all(self) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(b) for b in self.budgets.values()]

    def list_active(self) -> list[dict]:
        """Budgets whose active flag is set (period not checked)"""
        return [b for b in self.list_all() if b["is_active"]]

    def list_by_owner(self, owner_id: str) -> list[dict]:
        return [b for b in self.list_all() if b.get("owner_id") == owner_id]

    def list_by_team(self, team_id: str) -> list[dict]:
        return [b for b in self.list_all() if b.get("team_id") == team_id]

    def find_matching(
        self,
        *,
        owner_id: str | None,
        team_id: str | None,
        category_id: str | None,
        on_date: date,
    ) -> dict | None:
        """
        Find the active budget an expense should be charged to

        Candidates are active on on_date and owned by the submitter or their
        team. A category-scoped budget for the expense's category wins over
        an unscoped one; among equals the budget ending first wins.
        """
        candidates = []
        for budget in self.list_active():
            start = date.fromisoformat(str(budget["start_date"]))
            end = date.fromisoformat(str(budget["end_date"]))
            if not start <= on_date <= end:
                continue
            owned = (owner_id is not None and budget.get("owner_id") == owner_id) or (
                team_id is not None and budget.get("team_id") == team_id
            )
            if not owned:
                continue
            scope = budget.get("category_id")
            if scope is not None and scope != category_id:
                continue
            specificity = 0 if scope is not None else 1
            candidates.append((specificity, end, budget["budget_id"], budget))

        if not candidates:
            return None
        candidates.sort(key=lambda c: (c[0], c[1], c[2]))
        return candidates[0][3]

    def count(self) -> int:
        with self._lock:
            return len(self.budgets)


def replay_budget(events: list[Event]) -> dict | None:
    """
    Rebuild one budget's state from its stream

    Args:
        events: The budget stream in version order

    Returns:
        Budget state dict, or None for an empty stream
    """
    if not events:
        return None
    registry = BudgetRegistry()
    for event in events:
        registry.apply_event(event)
    return registry.budgets.get(events[0].stream_id)
