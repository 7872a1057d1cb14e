"""
Approval Workflow Events - Domain events for workflows

Payloads repeat the expense id and submitter so that subscribers (the
notification dispatcher, audit) can react without loading the workflow.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from trackify_engine.approval.models import CommentType, Priority


class ExpenseSubmitted(BaseModel):
    """A workflow was opened for an expense (status PENDING, level 1)"""

    workflow_id: str
    expense_id: str
    submitted_by: str
    current_approver_id: str
    expense_amount: Decimal
    currency: str
    max_approval_level: int
    approval_required_amount: Decimal | None
    auto_approve_enabled: bool
    escalation_enabled: bool
    team_id: str | None
    category_id: str | None
    budget_id: str | None
    deadline: datetime | None
    priority: Priority
    submitted_at: datetime


class ApprovalLevelAdvanced(BaseModel):
    """One level approved; the next approver takes over"""

    workflow_id: str
    expense_id: str
    submitted_by: str
    approver_id: str
    notes: str
    approved_level: int
    approval_level: int
    next_approver_id: str
    approved_at: datetime


class ExpenseApproved(BaseModel):
    """The final level approved the expense"""

    workflow_id: str
    expense_id: str
    submitted_by: str
    approver_id: str
    notes: str
    approval_level: int
    budget_id: str | None
    expense_amount: Decimal
    approved_at: datetime


class ExpenseAutoApproved(BaseModel):
    """The expense was approved by rule"""

    workflow_id: str
    expense_id: str
    submitted_by: str
    notes: str
    budget_id: str | None
    expense_amount: Decimal
    approved_at: datetime


class ExpenseRejected(BaseModel):
    """The expense was rejected"""

    workflow_id: str
    expense_id: str
    submitted_by: str
    rejected_by: str
    reason: str
    rejected_at: datetime


class ExpenseEscalated(BaseModel):
    """The workflow was reassigned to a higher approver"""

    workflow_id: str
    expense_id: str
    submitted_by: str
    escalated_from: str
    escalated_to: str
    escalation_level: int
    reason: str
    new_deadline: datetime
    escalated_at: datetime


class EscalationExhausted(BaseModel):
    """Overdue with no escalation target left; stays PENDING"""

    workflow_id: str
    expense_id: str
    submitted_by: str
    current_approver_id: str
    escalation_level: int
    reason: str
    flagged_at: datetime


class ExpenseCancelled(BaseModel):
    """The expense was withdrawn"""

    workflow_id: str
    expense_id: str
    submitted_by: str
    current_approver_id: str
    cancelled_by: str
    reason: str
    cancelled_at: datetime


class CommentAdded(BaseModel):
    """A comment was appended (any status)"""

    comment_id: str
    workflow_id: str
    expense_id: str
    submitted_by: str
    current_approver_id: str
    author_id: str
    text: str
    comment_type: CommentType
    is_system_generated: bool
    created_at: datetime


# Event type registry for deserialization
WORKFLOW_EVENT_TYPES = {
    "ExpenseSubmitted": ExpenseSubmitted,
    "ApprovalLevelAdvanced": ApprovalLevelAdvanced,
    "ExpenseApproved": ExpenseApproved,
    "ExpenseAutoApproved": ExpenseAutoApproved,
    "ExpenseRejected": ExpenseRejected,
    "ExpenseEscalated": ExpenseEscalated,
    "EscalationExhausted": EscalationExhausted,
    "ExpenseCancelled": ExpenseCancelled,
    "CommentAdded": CommentAdded,
}
