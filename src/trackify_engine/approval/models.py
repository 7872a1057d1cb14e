"""
Approval Workflow Models - Per-expense approval state

A workflow follows one expense from submission to a terminal decision.
Status is a tagged enum; the approval level is a bounded counter that never
passes max_approval_level. Everything time-related (overdue, hours since
submission) is a query over the current state, never stored.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

SYSTEM_ACTOR = "system"


class ApprovalStatus(str, Enum):
    """
    Workflow lifecycle states

    PENDING → APPROVED | AUTO_APPROVED | REJECTED | CANCELLED
    PENDING → ESCALATED → PENDING (escalation reassigns and returns)
    """

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    AUTO_APPROVED = "AUTO_APPROVED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_successful(self) -> bool:
        return self in (ApprovalStatus.APPROVED, ApprovalStatus.AUTO_APPROVED)


TERMINAL_STATUSES = frozenset(
    {
        ApprovalStatus.APPROVED,
        ApprovalStatus.AUTO_APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.CANCELLED,
    }
)


class Priority(str, Enum):
    """Expense priority as chosen by the submitter"""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class CommentType(str, Enum):
    """Kind of workflow comment"""

    GENERAL = "GENERAL"
    APPROVAL = "APPROVAL"
    REJECTION = "REJECTION"
    ESCALATION = "ESCALATION"
    SYSTEM = "SYSTEM"
    REVERSAL = "REVERSAL"


class ApprovalStep(BaseModel):
    """One approved level in a multi-level workflow"""

    level: int
    approver_id: str
    notes: str = ""
    approved_at: datetime


class ApprovalWorkflow(BaseModel):
    """
    Approval workflow for a single expense

    Invariants:
    - 1 <= approval_level <= max_approval_level
    - terminal status never changes (only comments are appended)
    - escalation_level only grows

    Attributes:
        workflow_id: Unique identifier (derived from the expense id)
        expense_id: The expense under approval (1:1)
        submitted_by: Expense owner
        current_approver_id: Who must act next
        approval_level: Current level (starts at 1)
        max_approval_level: Level at which approve goes terminal
        approval_required_amount: Auto-approval ceiling (None = never)
        escalation_level: Number of escalations so far
        awaiting_escalation_response: Escalated, no approver action since
        fully_escalated: Overdue with no escalation target left
        budget_id: Budget linked at submission (None when unmatched)
        deadline: Approval deadline (overdue once passed while PENDING)
        approval_history: One entry per level approved
        version: Stream version this state reflects
    """

    workflow_id: str
    expense_id: str
    submitted_by: str
    current_approver_id: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    approval_level: int = Field(default=1, ge=1)
    max_approval_level: int = Field(default=1, ge=1)
    expense_amount: Decimal = Field(gt=0)
    currency: str = "USD"
    approval_required_amount: Decimal | None = None
    auto_approve_enabled: bool = False
    escalation_enabled: bool = True
    escalation_level: int = Field(default=0, ge=0)
    escalated_to: str | None = None
    escalated_at: datetime | None = None
    awaiting_escalation_response: bool = False
    fully_escalated: bool = False
    team_id: str | None = None
    category_id: str | None = None
    budget_id: str | None = None
    deadline: datetime | None = None
    priority: Priority = Priority.MEDIUM
    submitted_at: datetime
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    reversed_at: datetime | None = None
    final_approver_id: str | None = None
    rejection_reason: str | None = None
    approval_notes: str | None = None
    approval_history: list[ApprovalStep] = Field(default_factory=list)
    version: int = 0

    @model_validator(mode="after")
    def _check_level(self) -> "ApprovalWorkflow":
        if self.approval_level > self.max_approval_level:
            raise ValueError("approval_level must not exceed max_approval_level")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_successful(self) -> bool:
        return self.status.is_successful

    @property
    def is_at_max_approval_level(self) -> bool:
        return self.approval_level >= self.max_approval_level

    def finalized_by(self) -> str | None:
        """Actor who moved the workflow into its terminal status"""
        if self.status == ApprovalStatus.CANCELLED:
            return self.cancelled_by
        if self.status in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
            return self.final_approver_id
        return None

    def is_overdue(self, now: datetime) -> bool:
        return (
            self.deadline is not None
            and now > self.deadline
            and self.status == ApprovalStatus.PENDING
        )

    def hours_since_submission(self, now: datetime) -> float:
        return (now - self.submitted_at).total_seconds() / 3600

    def days_until_deadline(self, now: datetime) -> int | None:
        if self.deadline is None:
            return None
        return (self.deadline - now).days

    def requires_higher_approval(self, threshold: Decimal) -> bool:
        return self.expense_amount > threshold

    def can_auto_approve(self) -> bool:
        return (
            self.status == ApprovalStatus.PENDING
            and self.auto_approve_enabled
            and self.approval_required_amount is not None
            and self.expense_amount <= self.approval_required_amount
        )

    def can_escalate(self, now: datetime, max_level: int) -> bool:
        """
        Whether escalate would be accepted right now

        A workflow escalates once per cycle: after an escalation it waits for
        the escalated approver until the extended deadline passes.
        """
        if self.status != ApprovalStatus.PENDING or not self.escalation_enabled:
            return False
        if self.escalation_level >= max_level:
            return False
        return not self.awaiting_escalation_response or self.is_overdue(now)

    def summary(self) -> dict[str, Any]:
        """Compact view for audit records"""
        return {
            "status": self.status.value,
            "approval_level": self.approval_level,
            "current_approver_id": self.current_approver_id,
            "escalation_level": self.escalation_level,
            "fully_escalated": self.fully_escalated,
            "version": self.version,
        }

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "workflow_id": "workflow-exp-42",
                    "expense_id": "exp-42",
                    "submitted_by": "alice",
                    "current_approver_id": "manager-bob",
                    "status": "PENDING",
                    "approval_level": 1,
                    "max_approval_level": 2,
                    "expense_amount": "300.00",
                    "deadline": "2025-01-18T12:00:00Z",
                    "submitted_at": "2025-01-15T12:00:00Z",
                    "version": 1,
                }
            ]
        }
    }


class Comment(BaseModel):
    """Append-only note on a workflow; allowed in every status"""

    comment_id: str
    workflow_id: str
    author_id: str
    text: str
    comment_type: CommentType = CommentType.GENERAL
    is_system_generated: bool = False
    created_at: datetime
