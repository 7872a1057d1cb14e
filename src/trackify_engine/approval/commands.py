"""
Approval Workflow Commands - Intentions to move a workflow

The acting user is not part of the command; handlers receive it next to
the command so the same command can be retried by the same actor under the
same command_id.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from trackify_engine.approval.models import CommentType, Priority


class SubmitExpense(BaseModel):
    """
    Submit an expense for approval

    current_approver_id may be omitted; the approver directory then
    supplies the first approver for the team. budget_id may be omitted;
    a matching active budget is then looked up.
    """

    expense_id: str = Field(..., min_length=1)
    expense_amount: Decimal = Field(..., gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    current_approver_id: str | None = None
    max_approval_level: int = Field(default=1, ge=1, le=10)
    approval_required_amount: Decimal | None = Field(default=None, ge=0)
    auto_approve_enabled: bool = False
    escalation_enabled: bool = True
    team_id: str | None = None
    category_id: str | None = None
    budget_id: str | None = None
    deadline: datetime | None = None
    priority: Priority = Priority.MEDIUM

    @model_validator(mode="after")
    def _check_auto_approval(self) -> "SubmitExpense":
        if self.auto_approve_enabled and self.approval_required_amount is None:
            raise ValueError("auto_approve_enabled requires approval_required_amount")
        return self


class ApproveExpense(BaseModel):
    """Approve the current level"""

    workflow_id: str
    notes: str = ""


class RejectExpense(BaseModel):
    """Reject the expense"""

    workflow_id: str
    reason: str = Field(..., min_length=1, max_length=2000)


class EscalateWorkflow(BaseModel):
    """Hand the workflow to a higher approver"""

    workflow_id: str
    escalated_to: str = Field(..., min_length=1)
    reason: str = ""


class AutoApproveExpense(BaseModel):
    """Approve without a human decision (rule-based)"""

    workflow_id: str


class CancelWorkflow(BaseModel):
    """Withdraw the expense from approval"""

    workflow_id: str
    reason: str = ""


class AddComment(BaseModel):
    """Append a comment to a workflow"""

    workflow_id: str
    text: str = Field(..., min_length=1, max_length=5000)
    comment_type: CommentType = CommentType.GENERAL
    is_system_generated: bool = False


class FlagEscalationExhausted(BaseModel):
    """Mark an overdue workflow that has nobody left to escalate to"""

    workflow_id: str
    reason: str = "no escalation target available"


class ReverseApproval(BaseModel):
    """Administrative correction of an approved expense"""

    workflow_id: str
    reason: str = Field(..., min_length=1, max_length=2000)
