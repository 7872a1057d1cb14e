"""
Approval Workflow Handlers - Command→Event transformation

Every workflow transition lives here. Handlers:
1. Receive the workflow's current state (replayed from its stream)
2. Resolve idempotent retries on terminal workflows
3. Validate preconditions (status, actor, escalation cycle)
4. Return events for the caller to append with the workflow's version

Handlers never touch storage or the ledger; the coordinator pairs their
events with budget events and appends both streams at once.
"""

from datetime import datetime, timedelta

from pydantic import BaseModel

from trackify_engine.approval.commands import (
    AddComment,
    ApproveExpense,
    AutoApproveExpense,
    CancelWorkflow,
    EscalateWorkflow,
    FlagEscalationExhausted,
    RejectExpense,
    ReverseApproval,
    SubmitExpense,
)
from trackify_engine.approval.events import (
    ApprovalLevelAdvanced,
    CommentAdded,
    EscalationExhausted,
    ExpenseApproved,
    ExpenseAutoApproved,
    ExpenseCancelled,
    ExpenseEscalated,
    ExpenseRejected,
    ExpenseSubmitted,
)
from trackify_engine.approval.invariants import (
    is_idempotent_retry,
    require_workflow,
    validate_auto_approve_eligible,
    validate_can_cancel,
    validate_current_approver,
    validate_escalation_allowed,
    validate_pending,
)
from trackify_engine.approval.models import ApprovalWorkflow, CommentType
from trackify_engine.kernel.errors import (
    ConfigurationError,
    InvalidTransition,
    Unauthorized,
    WorkflowAlreadyExists,
)
from trackify_engine.kernel.events import Event, create_event
from trackify_engine.kernel.ids import generate_id
from trackify_engine.kernel.policy import EnginePolicy
from trackify_engine.kernel.time import TimeProvider


def workflow_id_for(expense_id: str) -> str:
    """Workflow stream id for an expense (one workflow per expense)"""
    return f"workflow-{expense_id}"


class WorkflowCommandHandlers:
    """
    Command handlers for approval workflows

    Each handler takes the workflow's current state dict (or None) and
    returns the events to append. An empty list means the command was an
    idempotent retry and the existing state stands.
    """

    def __init__(self, time_provider: TimeProvider, policy: EnginePolicy) -> None:
        """
        Args:
            time_provider: For timestamps and deadline checks
            policy: Engine policy (deadlines, escalation limits)
        """
        self.time_provider = time_provider
        self.policy = policy

    def _event(
        self,
        workflow: ApprovalWorkflow,
        event_type: str,
        payload: BaseModel,
        command_id: str,
        actor_id: str | None,
    ) -> Event:
        return create_event(
            event_id=generate_id(),
            stream_id=workflow.workflow_id,
            stream_type="workflow",
            event_type=event_type,
            occurred_at=self.time_provider.now(),
            command_id=command_id,
            actor_id=actor_id,
            payload=payload.model_dump(mode="json"),
            version=workflow.version + 1,
        )

    def handle_submit(
        self,
        command: SubmitExpense,
        command_id: str,
        actor_id: str,
        workflow_state: dict | None,
    ) -> list[Event]:
        """
        Handle SubmitExpense command

        The submitter is the actor. The first approver must already be
        resolved (explicitly or through the approver directory).

        Raises:
            WorkflowAlreadyExists: If the expense already has a workflow
            ConfigurationError: If no approver is known
        """
        workflow_id = workflow_id_for(command.expense_id)
        if workflow_state is not None:
            raise WorkflowAlreadyExists(command.expense_id, workflow_id)
        if not command.current_approver_id:
            raise ConfigurationError(
                f"No approver configured for team {command.team_id!r}"
            )

        now = self.time_provider.now()
        deadline = command.deadline or now + timedelta(hours=self.policy.default_deadline_hours)

        payload = ExpenseSubmitted(
            workflow_id=workflow_id,
            expense_id=command.expense_id,
            submitted_by=actor_id,
            current_approver_id=command.current_approver_id,
            expense_amount=command.expense_amount,
            currency=command.currency or self.policy.default_currency,
            max_approval_level=command.max_approval_level,
            approval_required_amount=command.approval_required_amount,
            auto_approve_enabled=command.auto_approve_enabled,
            escalation_enabled=command.escalation_enabled,
            team_id=command.team_id,
            category_id=command.category_id,
            budget_id=command.budget_id,
            deadline=deadline,
            priority=command.priority,
            submitted_at=now,
        )
        return [
            create_event(
                event_id=generate_id(),
                stream_id=workflow_id,
                stream_type="workflow",
                event_type="ExpenseSubmitted",
                occurred_at=now,
                command_id=command_id,
                actor_id=actor_id,
                payload=payload.model_dump(mode="json"),
                version=1,
            )
        ]

    def handle_approve(
        self,
        command: ApproveExpense,
        command_id: str,
        actor_id: str,
        workflow_state: dict | None,
        next_approver_id: str | None = None,
    ) -> list[Event]:
        """
        Handle ApproveExpense command

        Below the maximum level the workflow advances to next_approver_id
        and stays PENDING; at the maximum level it becomes APPROVED.

        Raises:
            WorkflowNotFound: If workflow doesn't exist
            AlreadyFinalized: If approved by someone else already
            InvalidTransition: If the workflow is otherwise terminal
            Unauthorized: If actor is not the current approver
            ConfigurationError: If a further level has no approver
        """
        workflow = require_workflow(command.workflow_id, workflow_state)
        if is_idempotent_retry(workflow, "approve", actor_id):
            return []
        validate_pending(workflow, "approve")
        validate_current_approver(workflow, actor_id, "approve")

        now = self.time_provider.now()

        if not workflow.is_at_max_approval_level:
            if not next_approver_id:
                raise ConfigurationError(
                    f"No approver for level {workflow.approval_level + 1} "
                    f"of team {workflow.team_id!r}"
                )
            advanced = ApprovalLevelAdvanced(
                workflow_id=workflow.workflow_id,
                expense_id=workflow.expense_id,
                submitted_by=workflow.submitted_by,
                approver_id=actor_id,
                notes=command.notes,
                approved_level=workflow.approval_level,
                approval_level=workflow.approval_level + 1,
                next_approver_id=next_approver_id,
                approved_at=now,
            )
            return [self._event(workflow, "ApprovalLevelAdvanced", advanced, command_id, actor_id)]

        approved = ExpenseApproved(
            workflow_id=workflow.workflow_id,
            expense_id=workflow.expense_id,
            submitted_by=workflow.submitted_by,
            approver_id=actor_id,
            notes=command.notes,
            approval_level=workflow.approval_level,
            budget_id=workflow.budget_id,
            expense_amount=workflow.expense_amount,
            approved_at=now,
        )
        return [self._event(workflow, "ExpenseApproved", approved, command_id, actor_id)]

    def handle_reject(
        self,
        command: RejectExpense,
        command_id: str,
        actor_id: str,
        workflow_state: dict | None,
    ) -> list[Event]:
        """
        Handle RejectExpense command

        The current approver rejects; the escalation scanner rejects as the
        system actor when policy says exhausted workflows are rejected.
        """
        workflow = require_workflow(command.workflow_id, workflow_state)
        if is_idempotent_retry(workflow, "reject", actor_id):
            return []
        validate_pending(workflow, "reject")
        validate_current_approver(workflow, actor_id, "reject", allow_system=True)

        payload = ExpenseRejected(
            workflow_id=workflow.workflow_id,
            expense_id=workflow.expense_id,
            submitted_by=workflow.submitted_by,
            rejected_by=actor_id,
            reason=command.reason,
            rejected_at=self.time_provider.now(),
        )
        return [self._event(workflow, "ExpenseRejected", payload, command_id, actor_id)]

    def handle_escalate(
        self,
        command: EscalateWorkflow,
        command_id: str,
        actor_id: str | None,
        workflow_state: dict | None,
    ) -> list[Event]:
        """
        Handle EscalateWorkflow command

        Reassigns the workflow, raises escalation_level and gives the new
        approver a fresh deadline. Status is back to PENDING immediately.

        Raises:
            InvalidTransition: If not PENDING or escalation is disabled
            EscalationLimitReached: If no escalation levels are left
            AlreadyEscalated: If the current escalation cycle is still open
        """
        workflow = require_workflow(command.workflow_id, workflow_state)
        validate_pending(workflow, "escalate")

        now = self.time_provider.now()
        validate_escalation_allowed(workflow, now, self.policy.max_escalation_level)

        payload = ExpenseEscalated(
            workflow_id=workflow.workflow_id,
            expense_id=workflow.expense_id,
            submitted_by=workflow.submitted_by,
            escalated_from=workflow.current_approver_id,
            escalated_to=command.escalated_to,
            escalation_level=workflow.escalation_level + 1,
            reason=command.reason,
            new_deadline=now + timedelta(hours=self.policy.escalation_extension_hours),
            escalated_at=now,
        )
        return [self._event(workflow, "ExpenseEscalated", payload, command_id, actor_id)]

    def handle_auto_approve(
        self,
        command: AutoApproveExpense,
        command_id: str,
        actor_id: str | None,
        workflow_state: dict | None,
    ) -> list[Event]:
        """Handle AutoApproveExpense command (idempotent on AUTO_APPROVED)"""
        workflow = require_workflow(command.workflow_id, workflow_state)
        if is_idempotent_retry(workflow, "auto_approve", actor_id):
            return []
        validate_pending(workflow, "auto_approve")
        validate_auto_approve_eligible(workflow)

        payload = ExpenseAutoApproved(
            workflow_id=workflow.workflow_id,
            expense_id=workflow.expense_id,
            submitted_by=workflow.submitted_by,
            notes=self.policy.auto_approval_note,
            budget_id=workflow.budget_id,
            expense_amount=workflow.expense_amount,
            approved_at=self.time_provider.now(),
        )
        return [self._event(workflow, "ExpenseAutoApproved", payload, command_id, actor_id)]

    def handle_cancel(
        self,
        command: CancelWorkflow,
        command_id: str,
        actor_id: str,
        workflow_state: dict | None,
        is_admin: bool = False,
    ) -> list[Event]:
        """
        Handle CancelWorkflow command

        Raises:
            Unauthorized: If actor is neither submitter nor admin
        """
        workflow = require_workflow(command.workflow_id, workflow_state)
        if is_idempotent_retry(workflow, "cancel", actor_id):
            return []
        validate_pending(workflow, "cancel")
        validate_can_cancel(workflow, actor_id, is_admin)

        payload = ExpenseCancelled(
            workflow_id=workflow.workflow_id,
            expense_id=workflow.expense_id,
            submitted_by=workflow.submitted_by,
            current_approver_id=workflow.current_approver_id,
            cancelled_by=actor_id,
            reason=command.reason,
            cancelled_at=self.time_provider.now(),
        )
        return [self._event(workflow, "ExpenseCancelled", payload, command_id, actor_id)]

    def handle_flag_escalation_exhausted(
        self,
        command: FlagEscalationExhausted,
        command_id: str,
        actor_id: str | None,
        workflow_state: dict | None,
    ) -> list[Event]:
        """Mark an overdue workflow as fully escalated (no-op when already flagged)"""
        workflow = require_workflow(command.workflow_id, workflow_state)
        validate_pending(workflow, "flag_escalation_exhausted")
        if workflow.fully_escalated:
            return []

        payload = EscalationExhausted(
            workflow_id=workflow.workflow_id,
            expense_id=workflow.expense_id,
            submitted_by=workflow.submitted_by,
            current_approver_id=workflow.current_approver_id,
            escalation_level=workflow.escalation_level,
            reason=command.reason,
            flagged_at=self.time_provider.now(),
        )
        return [self._event(workflow, "EscalationExhausted", payload, command_id, actor_id)]

    def handle_add_comment(
        self,
        command: AddComment,
        command_id: str,
        actor_id: str,
        workflow_state: dict | None,
    ) -> list[Event]:
        """Append a comment; allowed in every status"""
        workflow = require_workflow(command.workflow_id, workflow_state)
        return [
            self._comment_event(
                workflow, command.text, command.comment_type,
                command.is_system_generated, command_id, actor_id,
            )
        ]

    def handle_reverse_approval(
        self,
        command: ReverseApproval,
        command_id: str,
        actor_id: str,
        workflow_state: dict | None,
        is_admin: bool = False,
    ) -> list[Event]:
        """
        Record an administrative reversal of an approved expense

        The workflow keeps its terminal status; the reversal is a REVERSAL
        comment that the coordinator pairs with a budget credit.

        Raises:
            Unauthorized: If actor is not an admin
            InvalidTransition: If not approved, or already reversed
        """
        workflow = require_workflow(command.workflow_id, workflow_state)
        if not is_admin:
            raise Unauthorized(workflow.workflow_id, actor_id, "reverse")
        if not workflow.is_successful:
            raise InvalidTransition(
                workflow.workflow_id, workflow.status.value, "reverse",
                "only approved expenses can be reversed",
            )
        if workflow.reversed_at is not None:
            raise InvalidTransition(
                workflow.workflow_id, workflow.status.value, "reverse", "already reversed"
            )

        return [
            self._comment_event(
                workflow, f"Approval reversed: {command.reason}", CommentType.REVERSAL,
                False, command_id, actor_id,
            )
        ]

    def _comment_event(
        self,
        workflow: ApprovalWorkflow,
        text: str,
        comment_type: CommentType,
        is_system_generated: bool,
        command_id: str,
        actor_id: str,
    ) -> Event:
        now: datetime = self.time_provider.now()
        payload = CommentAdded(
            comment_id=generate_id(),
            workflow_id=workflow.workflow_id,
            expense_id=workflow.expense_id,
            submitted_by=workflow.submitted_by,
            current_approver_id=workflow.current_approver_id,
            author_id=actor_id,
            text=text,
            comment_type=comment_type,
            is_system_generated=is_system_generated,
            created_at=now,
        )
        return self._event(workflow, "CommentAdded", payload, command_id, actor_id)
