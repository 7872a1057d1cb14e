"""
Approval Workflow Projections - Workflow state and comments built from events

WorkflowRegistry folds workflow events into plain dicts, the same way the
budget registry does. CommentLog keeps the append-only comment thread of
every workflow.
"""

import copy
import threading
from datetime import datetime

from trackify_engine.approval.models import ApprovalStatus, ApprovalWorkflow, Comment, CommentType
from trackify_engine.kernel.events import Event


class WorkflowRegistry:
    """
    Workflow projection - current state of all approval workflows

    Built from events: ExpenseSubmitted, ApprovalLevelAdvanced,
    ExpenseApproved, ExpenseAutoApproved, ExpenseRejected, ExpenseEscalated,
    EscalationExhausted, ExpenseCancelled, CommentAdded

    Query methods: get, get_by_expense, list_pending, list_overdue,
    list_for_approver
    """

    def __init__(self) -> None:
        self.workflows: dict[str, dict] = {}
        self._lock = threading.RLock()

    def apply_event(self, event: Event) -> None:
        """
        Apply an event to update the projection

        Args:
            event: Event to apply
        """
        handler = {
            "ExpenseSubmitted": self._apply_submitted,
            "ApprovalLevelAdvanced": self._apply_level_advanced,
            "ExpenseApproved": self._apply_approved,
            "ExpenseAutoApproved": self._apply_auto_approved,
            "ExpenseRejected": self._apply_rejected,
            "ExpenseEscalated": self._apply_escalated,
            "EscalationExhausted": self._apply_escalation_exhausted,
            "ExpenseCancelled": self._apply_cancelled,
            "CommentAdded": self._apply_comment_added,
        }.get(event.event_type)
        if handler is None:
            return
        with self._lock:
            handler(event)

    def upsert(self, state: dict) -> None:
        """Replace a workflow's state if it is at least as new as the cached one"""
        with self._lock:
            current = self.workflows.get(state["workflow_id"])
            if current is None or state["version"] >= current["version"]:
                self.workflows[state["workflow_id"]] = copy.deepcopy(state)

    def _apply_submitted(self, event: Event) -> None:
        payload = event.payload
        self.workflows[payload["workflow_id"]] = {
            "workflow_id": payload["workflow_id"],
            "expense_id": payload["expense_id"],
            "submitted_by": payload["submitted_by"],
            "current_approver_id": payload["current_approver_id"],
            "status": ApprovalStatus.PENDING.value,
            "approval_level": 1,
            "max_approval_level": payload["max_approval_level"],
            "expense_amount": payload["expense_amount"],
            "currency": payload["currency"],
            "approval_required_amount": payload.get("approval_required_amount"),
            "auto_approve_enabled": payload["auto_approve_enabled"],
            "escalation_enabled": payload["escalation_enabled"],
            "escalation_level": 0,
            "escalated_to": None,
            "escalated_at": None,
            "awaiting_escalation_response": False,
            "fully_escalated": False,
            "team_id": payload.get("team_id"),
            "category_id": payload.get("category_id"),
            "budget_id": payload.get("budget_id"),
            "deadline": payload.get("deadline"),
            "priority": payload["priority"],
            "submitted_at": payload["submitted_at"],
            "approved_at": None,
            "rejected_at": None,
            "cancelled_at": None,
            "cancelled_by": None,
            "reversed_at": None,
            "final_approver_id": None,
            "rejection_reason": None,
            "approval_notes": None,
            "approval_history": [],
            "version": event.version,
        }

    def _apply_level_advanced(self, event: Event) -> None:
        workflow = self.workflows.get(event.payload["workflow_id"])
        if workflow is None:
            return
        payload = event.payload
        workflow["approval_history"].append(
            {
                "level": payload["approved_level"],
                "approver_id": payload["approver_id"],
                "notes": payload["notes"],
                "approved_at": payload["approved_at"],
            }
        )
        workflow["approval_level"] = payload["approval_level"]
        workflow["current_approver_id"] = payload["next_approver_id"]
        workflow["awaiting_escalation_response"] = False
        workflow["fully_escalated"] = False
        workflow["version"] = event.version

    def _apply_approved(self, event: Event) -> None:
        workflow = self.workflows.get(event.payload["workflow_id"])
        if workflow is None:
            return
        payload = event.payload
        workflow["approval_history"].append(
            {
                "level": payload["approval_level"],
                "approver_id": payload["approver_id"],
                "notes": payload["notes"],
                "approved_at": payload["approved_at"],
            }
        )
        workflow["status"] = ApprovalStatus.APPROVED.value
        workflow["final_approver_id"] = payload["approver_id"]
        workflow["approved_at"] = payload["approved_at"]
        workflow["approval_notes"] = payload["notes"]
        workflow["awaiting_escalation_response"] = False
        workflow["version"] = event.version

    def _apply_auto_approved(self, event: Event) -> None:
        workflow = self.workflows.get(event.payload["workflow_id"])
        if workflow is None:
            return
        workflow["status"] = ApprovalStatus.AUTO_APPROVED.value
        workflow["approved_at"] = event.payload["approved_at"]
        workflow["approval_notes"] = event.payload["notes"]
        workflow["version"] = event.version

    def _apply_rejected(self, event: Event) -> None:
        workflow = self.workflows.get(event.payload["workflow_id"])
        if workflow is None:
            return
        workflow["status"] = ApprovalStatus.REJECTED.value
        workflow["final_approver_id"] = event.payload["rejected_by"]
        workflow["rejected_at"] = event.payload["rejected_at"]
        workflow["rejection_reason"] = event.payload["reason"]
        workflow["awaiting_escalation_response"] = False
        workflow["version"] = event.version

    def _apply_escalated(self, event: Event) -> None:
        workflow = self.workflows.get(event.payload["workflow_id"])
        if workflow is None:
            return
        payload = event.payload
        # ESCALATED is transient: the reassigned workflow is PENDING again
        workflow["status"] = ApprovalStatus.PENDING.value
        workflow["escalation_level"] = payload["escalation_level"]
        workflow["escalated_to"] = payload["escalated_to"]
        workflow["escalated_at"] = payload["escalated_at"]
        workflow["current_approver_id"] = payload["escalated_to"]
        workflow["deadline"] = payload["new_deadline"]
        workflow["awaiting_escalation_response"] = True
        workflow["version"] = event.version

    def _apply_escalation_exhausted(self, event: Event) -> None:
        workflow = self.workflows.get(event.payload["workflow_id"])
        if workflow is None:
            return
        workflow["fully_escalated"] = True
        workflow["version"] = event.version

    def _apply_cancelled(self, event: Event) -> None:
        workflow = self.workflows.get(event.payload["workflow_id"])
        if workflow is None:
            return
        workflow["status"] = ApprovalStatus.CANCELLED.value
        workflow["cancelled_by"] = event.payload["cancelled_by"]
        workflow["cancelled_at"] = event.payload["cancelled_at"]
        workflow["awaiting_escalation_response"] = False
        workflow["version"] = event.version

    def _apply_comment_added(self, event: Event) -> None:
        workflow = self.workflows.get(event.payload["workflow_id"])
        if workflow is None:
            return
        if event.payload["comment_type"] == CommentType.REVERSAL.value:
            workflow["reversed_at"] = event.payload["created_at"]
        workflow["version"] = event.version

    # ========== Query Methods ==========

    def get(self, workflow_id: str) -> dict | None:
        """Get a copy of a workflow's state"""
        with self._lock:
            workflow = self.workflows.get(workflow_id)
            return copy.deepcopy(workflow) if workflow is not None else None

    def get_by_expense(self, expense_id: str) -> dict | None:
        with self._lock:
            for workflow in self.workflows.values():
                if workflow["expense_id"] == expense_id:
                    return copy.deepcopy(workflow)
        return None

    def list_all(self) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(w) for w in self.workflows.values()]

    def list_by_status(self, status: ApprovalStatus) -> list[dict]:
        return [w for w in self.list_all() if w["status"] == status.value]

    def list_pending(self) -> list[dict]:
        return self.list_by_status(ApprovalStatus.PENDING)

    def list_for_approver(self, approver_id: str) -> list[dict]:
        """Pending workflows waiting on approver_id"""
        return [w for w in self.list_pending() if w["current_approver_id"] == approver_id]

    def list_overdue(self, now: datetime) -> list[ApprovalWorkflow]:
        """Pending workflows past their deadline, oldest deadline first"""
        overdue = [
            workflow
            for workflow in (ApprovalWorkflow.model_validate(w) for w in self.list_pending())
            if workflow.is_overdue(now)
        ]
        return sorted(overdue, key=lambda w: (w.deadline, w.workflow_id))

    def count(self) -> int:
        with self._lock:
            return len(self.workflows)

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for workflow in self.workflows.values():
                counts[workflow["status"]] = counts.get(workflow["status"], 0) + 1
        return counts


class CommentLog:
    """
    Projection: comment threads per workflow

    Comments are keyed by id, so applying the same event twice (replay
    after an idempotent retry) keeps a single copy.
    """

    def __init__(self) -> None:
        self._comments: dict[str, dict[str, Comment]] = {}
        self._lock = threading.Lock()

    def apply_event(self, event: Event) -> None:
        if event.event_type != "CommentAdded":
            return
        payload = event.payload
        comment = Comment(
            comment_id=payload["comment_id"],
            workflow_id=payload["workflow_id"],
            author_id=payload["author_id"],
            text=payload["text"],
            comment_type=CommentType(payload["comment_type"]),
            is_system_generated=payload["is_system_generated"],
            created_at=payload["created_at"],
        )
        with self._lock:
            self._comments.setdefault(comment.workflow_id, {})[comment.comment_id] = comment

    def list_for(self, workflow_id: str) -> list[Comment]:
        """Comments on a workflow in creation order"""
        with self._lock:
            comments = list(self._comments.get(workflow_id, {}).values())
        return sorted(comments, key=lambda c: c.created_at)

    def count(self) -> int:
        with self._lock:
            return sum(len(thread) for thread in self._comments.values())


def replay_workflow(events: list[Event]) -> dict | None:
    """
    Rebuild one workflow's state from its stream

    Args:
        events: The workflow stream in version order

    Returns:
        Workflow state dict, or None for an empty stream
    """
    if not events:
        return None
    registry = WorkflowRegistry()
    for event in events:
        registry.apply_event(event)
    return registry.workflows.get(events[0].stream_id)


def fold_workflow(state: dict | None, events: list[Event]) -> dict | None:
    """
    Apply not-yet-committed events to a workflow state

    The coordinator uses this to see the outcome of a decision before it
    chooses the matching ledger effect.
    """
    registry = WorkflowRegistry()
    if state is not None:
        registry.workflows[state["workflow_id"]] = copy.deepcopy(state)
    for event in events:
        registry.apply_event(event)
    workflow_id = state["workflow_id"] if state is not None else events[0].stream_id
    return registry.workflows.get(workflow_id)
