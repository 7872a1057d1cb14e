"""
Approval Workflow Invariants - Who may do what, and when

Pure guards used by WorkflowCommandHandlers. Each either returns quietly
or raises the typed error for the violated rule.
"""

from datetime import datetime

from trackify_engine.approval.models import SYSTEM_ACTOR, ApprovalStatus, ApprovalWorkflow
from trackify_engine.kernel.errors import (
    AlreadyEscalated,
    AlreadyFinalized,
    EscalationLimitReached,
    InvalidTransition,
    Unauthorized,
    WorkflowNotFound,
)

# Terminal status each finalizing operation produces
FINALIZING_OPERATIONS = {
    "approve": ApprovalStatus.APPROVED,
    "reject": ApprovalStatus.REJECTED,
    "cancel": ApprovalStatus.CANCELLED,
    "auto_approve": ApprovalStatus.AUTO_APPROVED,
}


def require_workflow(workflow_id: str, state: dict | None) -> ApprovalWorkflow:
    """
    Turn projection state into an ApprovalWorkflow model

    Raises:
        WorkflowNotFound: If no state exists for workflow_id
    """
    if state is None:
        raise WorkflowNotFound(workflow_id)
    return ApprovalWorkflow.model_validate(state)


def is_idempotent_retry(workflow: ApprovalWorkflow, operation: str, actor_id: str | None) -> bool:
    """
    Decide what a repeated operation on a terminal workflow means

    Returns:
        True when the same actor repeats the operation that finalized the
        workflow (caller returns without new events), False when the
        workflow is not terminal.

    Raises:
        AlreadyFinalized: Same operation, different actor
        InvalidTransition: Any other operation on a terminal workflow
    """
    if not workflow.is_terminal:
        return False

    if FINALIZING_OPERATIONS.get(operation) != workflow.status:
        raise InvalidTransition(
            workflow.workflow_id, workflow.status.value, operation, "workflow is finalized"
        )

    if operation == "auto_approve":
        return True

    finalized_by = workflow.finalized_by()
    if finalized_by != actor_id:
        raise AlreadyFinalized(
            workflow.workflow_id, workflow.status.value, finalized_by, actor_id
        )
    return True


def validate_pending(workflow: ApprovalWorkflow, operation: str) -> None:
    """
    Raises:
        InvalidTransition: If the workflow is not PENDING
    """
    if workflow.status != ApprovalStatus.PENDING:
        raise InvalidTransition(workflow.workflow_id, workflow.status.value, operation)


def validate_current_approver(
    workflow: ApprovalWorkflow,
    actor_id: str | None,
    operation: str,
    allow_system: bool = False,
) -> None:
    """
    Only the current approver decides (the system actor may reject)

    Raises:
        Unauthorized: If actor is not the current approver
    """
    if actor_id == workflow.current_approver_id:
        return
    if allow_system and actor_id == SYSTEM_ACTOR:
        return
    raise Unauthorized(workflow.workflow_id, actor_id, operation)


def validate_can_cancel(workflow: ApprovalWorkflow, actor_id: str | None, is_admin: bool) -> None:
    """
    Submitter or admin may cancel

    Raises:
        Unauthorized: For anybody else
    """
    if actor_id == workflow.submitted_by or is_admin:
        return
    raise Unauthorized(workflow.workflow_id, actor_id, "cancel")


def validate_escalation_allowed(
    workflow: ApprovalWorkflow,
    now: datetime,
    max_escalation_level: int,
) -> None:
    """
    Escalation needs escalation enabled, levels left and a finished cycle

    A cycle ends when an approver acts or the extended deadline passes.

    Raises:
        InvalidTransition: If escalation is disabled for the workflow
        EscalationLimitReached: If max_escalation_level is reached
        AlreadyEscalated: If still waiting on the escalated approver
    """
    if not workflow.escalation_enabled:
        raise InvalidTransition(
            workflow.workflow_id, workflow.status.value, "escalate", "escalation disabled"
        )
    if workflow.escalation_level >= max_escalation_level:
        raise EscalationLimitReached(
            workflow.workflow_id, workflow.escalation_level, max_escalation_level
        )
    if workflow.awaiting_escalation_response and not workflow.is_overdue(now):
        raise AlreadyEscalated(workflow.workflow_id, workflow.escalation_level)


def validate_auto_approve_eligible(workflow: ApprovalWorkflow) -> None:
    """
    Raises:
        InvalidTransition: If auto-approval is disabled or the amount is too high
    """
    if not workflow.auto_approve_enabled:
        raise InvalidTransition(
            workflow.workflow_id, workflow.status.value, "auto_approve",
            "auto-approval disabled",
        )
    if (
        workflow.approval_required_amount is None
        or workflow.expense_amount > workflow.approval_required_amount
    ):
        raise InvalidTransition(
            workflow.workflow_id, workflow.status.value, "auto_approve",
            f"amount {workflow.expense_amount} exceeds auto-approval limit "
            f"{workflow.approval_required_amount}",
        )
