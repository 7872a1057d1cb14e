"""
Budget-Workflow Coordinator - Workflow transitions with their ledger effects

Every workflow operation goes through here. One attempt:
1. Replays the workflow stream and decides the transition (handlers)
2. Folds the new events to see the outcome
3. Replays the linked budget and decides the ledger effect
   (pending charge, debit, credit or release)
4. Appends both streams in one transaction, each checked against the
   version it was read at

A version conflict on either stream discards the attempt and the whole
decision is recomputed. A failing ledger effect (BudgetInactive) vetoes the
transition: nothing is appended and the caller gets the ledger error.
Audit records, alerts and notifications follow only after commit.
"""

from collections.abc import Callable
from datetime import date

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
from trackify_engine.approval.handlers import WorkflowCommandHandlers, workflow_id_for
from trackify_engine.approval.models import (
    SYSTEM_ACTOR,
    ApprovalStatus,
    ApprovalWorkflow,
    CommentType,
)
from trackify_engine.approval.projections import fold_workflow
from trackify_engine.collaborators.audit import (
    AuditAction,
    AuditEntityType,
    AuditLog,
    record_safely,
)
from trackify_engine.collaborators.directory import ApproverDirectory
from trackify_engine.kernel.errors import (
    BudgetInactive,
    BudgetNotFound,
    ConfigurationError,
    WorkflowNotFound,
)
from trackify_engine.kernel.events import Event
from trackify_engine.kernel.ids import generate_id
from trackify_engine.kernel.logging import LogOperation, get_logger
from trackify_engine.kernel.metrics import track_command_duration
from trackify_engine.kernel.policy import EnginePolicy
from trackify_engine.kernel.retry import run_with_conflict_retry
from trackify_engine.kernel.time import TimeProvider, today
from trackify_engine.ledger.commands import CreditBudget, DebitBudget, RegisterCharge, ReleaseCharge
from trackify_engine.ledger.handlers import LedgerCommandHandlers
from trackify_engine.ledger.ledger import BudgetLedger
from trackify_engine.ledger.models import Budget
from trackify_engine.repository import AggregateRepository, is_fresh

logger = get_logger(__name__)

WORKFLOW_AUDIT_ACTIONS = {
    "ExpenseSubmitted": AuditAction.SUBMIT,
    "ApprovalLevelAdvanced": AuditAction.APPROVE,
    "ExpenseApproved": AuditAction.APPROVE,
    "ExpenseAutoApproved": AuditAction.APPROVE,
    "ExpenseRejected": AuditAction.REJECT,
    "ExpenseEscalated": AuditAction.ESCALATE,
    "EscalationExhausted": AuditAction.UPDATE,
    "ExpenseCancelled": AuditAction.CANCEL,
    "CommentAdded": AuditAction.COMMENT,
}


def workflow_summary(state: dict | None) -> dict | None:
    if state is None:
        return None
    return ApprovalWorkflow.model_validate(state).summary()


class BudgetWorkflowCoordinator:
    """
    Binds approval outcomes to budget ledger mutations

    The only component that commits a workflow transition together with a
    budget debit or credit.
    """

    def __init__(
        self,
        repository: AggregateRepository,
        workflow_handlers: WorkflowCommandHandlers,
        ledger_handlers: LedgerCommandHandlers,
        ledger: BudgetLedger,
        directory: ApproverDirectory,
        audit_log: AuditLog,
        time_provider: TimeProvider,
        policy: EnginePolicy,
    ) -> None:
        self.repository = repository
        self.workflow_handlers = workflow_handlers
        self.ledger_handlers = ledger_handlers
        self.ledger = ledger
        self.directory = directory
        self.audit_log = audit_log
        self.time_provider = time_provider
        self.policy = policy

    def _today(self) -> date:
        return today(self.time_provider)

    def is_admin(self, user_id: str | None) -> bool:
        return self.policy.is_admin(user_id) or self.directory.is_admin(user_id)

    # ========== Ledger effects ==========

    def on_submitted(
        self,
        workflow: ApprovalWorkflow,
        budget_state: dict | None,
        command_id: str,
        actor_id: str | None,
    ) -> list[Event]:
        """Register a provisional charge on the linked budget (never a debit)"""
        if budget_state is None:
            return []
        return self.ledger_handlers.handle_register_charge(
            RegisterCharge(
                budget_id=budget_state["budget_id"],
                expense_id=workflow.expense_id,
                workflow_id=workflow.workflow_id,
                amount=workflow.expense_amount,
            ),
            command_id,
            actor_id,
            budget_state,
        )

    def on_approved(
        self,
        workflow: ApprovalWorkflow,
        budget_state: dict | None,
        command_id: str,
        actor_id: str | None,
    ) -> list[Event]:
        """
        Debit the linked budget

        Raises:
            BudgetInactive: If the budget is no longer active (vetoes approval)
            AlreadyDebited: If the expense already holds a debit
        """
        if workflow.budget_id is None:
            return []
        return self.ledger_handlers.handle_debit(
            DebitBudget(
                budget_id=workflow.budget_id,
                expense_id=workflow.expense_id,
                workflow_id=workflow.workflow_id,
                amount=workflow.expense_amount,
            ),
            command_id,
            actor_id,
            budget_state,
        )

    def on_rejected_or_cancelled(
        self,
        workflow: ApprovalWorkflow,
        budget_state: dict | None,
        command_id: str,
        actor_id: str | None,
        reason: str,
    ) -> list[Event]:
        """Credit a prior debit, release a provisional charge, otherwise nothing"""
        if workflow.budget_id is None or budget_state is None:
            return []
        budget = Budget.model_validate(budget_state)
        if budget.has_debit(workflow.expense_id):
            return self.ledger_handlers.handle_credit(
                CreditBudget(
                    budget_id=budget.budget_id,
                    expense_id=workflow.expense_id,
                    amount=budget.debits[workflow.expense_id],
                    reason=reason,
                ),
                command_id,
                actor_id,
                budget_state,
            )
        if budget.has_pending_charge(workflow.expense_id):
            return self.ledger_handlers.handle_release_charge(
                ReleaseCharge(
                    budget_id=budget.budget_id, expense_id=workflow.expense_id, reason=reason
                ),
                command_id,
                actor_id,
                budget_state,
            )
        return []

    def _ledger_effect(
        self,
        before: dict | None,
        after: dict,
        command_id: str,
        actor_id: str | None,
    ) -> tuple[list[Event], dict[str, int]]:
        """
        Decide the ledger events implied by a workflow outcome

        Returns:
            (ledger events, expected versions of the budget streams touched)
        """
        budget_id = after.get("budget_id")
        if budget_id is None:
            return [], {}

        workflow = ApprovalWorkflow.model_validate(after)
        budget_state, budget_version = self.repository.load_budget(budget_id)

        if before is None:
            events = self.on_submitted(workflow, budget_state, command_id, actor_id)
        elif before["status"] == ApprovalStatus.PENDING.value and workflow.is_successful:
            events = self.on_approved(workflow, budget_state, command_id, actor_id)
        elif before["status"] == ApprovalStatus.PENDING.value and workflow.status in (
            ApprovalStatus.REJECTED,
            ApprovalStatus.CANCELLED,
        ):
            events = self.on_rejected_or_cancelled(
                workflow, budget_state, command_id, actor_id,
                reason=f"expense {workflow.status.value.lower()}",
            )
        elif before.get("reversed_at") is None and workflow.reversed_at is not None:
            events = self.on_rejected_or_cancelled(
                workflow, budget_state, command_id, actor_id, reason="approval reversed"
            )
        else:
            events = []

        if not events:
            return [], {}
        return events, {budget_id: budget_version}

    # ========== Transition runner ==========

    def _transition(
        self,
        operation: str,
        workflow_id: str,
        decide: Callable[[dict | None], list[Event]],
        actor_id: str | None,
        command_id: str | None,
    ) -> dict:
        """
        Run one workflow operation with its ledger effect, retrying on conflicts

        Args:
            operation: Name for logs and metrics
            workflow_id: Workflow stream
            decide: Callable(state) -> workflow events
            actor_id: Acting user
            command_id: Idempotency key (generated when None); a key already
                committed to this workflow returns its current state

        Returns:
            Workflow state after the operation
        """
        command_id = command_id or generate_id()

        def attempt() -> tuple[dict | None, list[Event]]:
            state, version = self.repository.load_workflow(workflow_id)
            if workflow_id in self.repository.committed_streams(command_id):
                return state, []
            workflow_events = decide(state)
            if not workflow_events:
                return state, []

            after = fold_workflow(state, workflow_events)
            ledger_events, budget_versions = self._ledger_effect(
                state, after, command_id, actor_id
            )
            events = workflow_events + ledger_events
            committed = self.repository.commit(
                {workflow_id: version, **budget_versions}, events
            )
            return state, committed if is_fresh(events, committed) else []

        before, committed = run_with_conflict_retry(
            operation,
            attempt,
            max_attempts=self.policy.max_conflict_retries,
            min_wait_ms=self.policy.conflict_retry_min_wait_ms,
            max_wait_ms=self.policy.conflict_retry_max_wait_ms,
        )

        after, _ = self.repository.load_workflow(workflow_id)
        if after is None:
            raise WorkflowNotFound(workflow_id)
        if committed:
            self._after_commit(committed, actor_id, before, after)
        return after

    def _after_commit(
        self,
        committed: list[Event],
        actor_id: str | None,
        before: dict | None,
        after: dict,
    ) -> None:
        """Audit the transition and hand ledger events to the ledger hook"""
        for event in committed:
            if event.stream_type != "workflow":
                continue
            action = WORKFLOW_AUDIT_ACTIONS[event.event_type]
            if (
                event.event_type == "CommentAdded"
                and event.payload["comment_type"] == CommentType.REVERSAL.value
            ):
                action = AuditAction.REVERSE
            record_safely(
                self.audit_log,
                action,
                AuditEntityType.APPROVAL_WORKFLOW,
                event.stream_id,
                actor_id,
                workflow_summary(before),
                workflow_summary(after),
            )

        budget_events = [e for e in committed if e.stream_type == "budget"]
        if budget_events:
            self.ledger.after_commit(budget_events, actor_id)

    # ========== Operations ==========

    @track_command_duration("submit_expense")
    def submit(
        self,
        command: SubmitExpense,
        submitted_by: str,
        command_id: str | None = None,
    ) -> dict:
        """
        Open an approval workflow for an expense

        Resolves the first approver (directory when not given) and the
        budget (explicit or best match). An inactive budget is not linked.
        Eligible workflows are auto-approved right away when the policy
        says so.

        Raises:
            WorkflowAlreadyExists: If the expense already has a workflow
            ConfigurationError: If no approver can be found
            BudgetNotFound: If an explicit budget_id does not exist
        """
        workflow_id = workflow_id_for(command.expense_id)
        cid = command_id or generate_id()
        with LogOperation(
            logger, "submit_expense", workflow_id=workflow_id, submitted_by=submitted_by
        ):
            approver_id = command.current_approver_id or self.directory.next_approver(
                command.team_id, 0
            )
            if approver_id is None:
                raise ConfigurationError(
                    f"No approver configured for team {command.team_id!r}"
                )
            resolved = command.model_copy(
                update={
                    "current_approver_id": approver_id,
                    "budget_id": self._resolve_budget(command, submitted_by),
                }
            )

            after = self._transition(
                "submit_expense",
                workflow_id,
                lambda state: self.workflow_handlers.handle_submit(
                    resolved, cid, submitted_by, state
                ),
                submitted_by,
                cid,
            )

        workflow = ApprovalWorkflow.model_validate(after)
        if self.policy.auto_approve_on_submit and workflow.can_auto_approve():
            try:
                after = self.auto_approve(workflow_id)
            except BudgetInactive as e:
                logger.warning(
                    "Auto-approval on submit vetoed by ledger",
                    workflow_id=workflow_id,
                    budget_id=e.budget_id,
                    reason=e.reason,
                )
        return after

    def _resolve_budget(self, command: SubmitExpense, submitted_by: str) -> str | None:
        if command.budget_id is not None:
            budget = self.ledger.load(command.budget_id)
            if not budget.is_currently_active(self._today()):
                logger.info(
                    "Budget not currently active, expense not linked",
                    budget_id=budget.budget_id,
                    expense_id=command.expense_id,
                )
                return None
            return budget.budget_id

        match = self.ledger.find_matching_budget(
            submitted_by, command.team_id, command.category_id, self._today()
        )
        return match["budget_id"] if match else None

    @track_command_duration("approve_expense")
    def approve(
        self,
        workflow_id: str,
        approver_id: str,
        notes: str = "",
        command_id: str | None = None,
    ) -> dict:
        """
        Approve the current level; the final level debits the budget

        Raises:
            WorkflowNotFound, Unauthorized, AlreadyFinalized, InvalidTransition
            ConfigurationError: If the next level has no approver
            BudgetInactive: If the linked budget can no longer be debited
        """
        command = ApproveExpense(workflow_id=workflow_id, notes=notes)
        cid = command_id or generate_id()

        def decide(state: dict | None) -> list[Event]:
            next_approver_id = None
            if state is not None:
                workflow = ApprovalWorkflow.model_validate(state)
                pending = workflow.status == ApprovalStatus.PENDING
                if pending and not workflow.is_at_max_approval_level:
                    next_approver_id = self.directory.next_approver(
                        workflow.team_id, workflow.approval_level
                    )
            return self.workflow_handlers.handle_approve(
                command, cid, approver_id, state, next_approver_id
            )

        with LogOperation(
            logger, "approve_expense", workflow_id=workflow_id, approver_id=approver_id
        ):
            return self._transition("approve_expense", workflow_id, decide, approver_id, cid)

    @track_command_duration("reject_expense")
    def reject(
        self,
        workflow_id: str,
        approver_id: str,
        reason: str,
        command_id: str | None = None,
    ) -> dict:
        """Reject the expense; a provisional charge is released"""
        command = RejectExpense(workflow_id=workflow_id, reason=reason)
        cid = command_id or generate_id()
        with LogOperation(
            logger, "reject_expense", workflow_id=workflow_id, approver_id=approver_id
        ):
            return self._transition(
                "reject_expense",
                workflow_id,
                lambda state: self.workflow_handlers.handle_reject(
                    command, cid, approver_id, state
                ),
                approver_id,
                cid,
            )

    @track_command_duration("escalate_workflow")
    def escalate(
        self,
        workflow_id: str,
        escalated_to: str | None = None,
        actor_id: str | None = SYSTEM_ACTOR,
        reason: str = "",
        command_id: str | None = None,
    ) -> dict:
        """
        Escalate to escalated_to, or to the directory's escalation target

        Raises:
            ConfigurationError: If no target is given and none is configured
            AlreadyEscalated, EscalationLimitReached, InvalidTransition
        """
        cid = command_id or generate_id()

        def decide(state: dict | None) -> list[Event]:
            if state is None:
                raise WorkflowNotFound(workflow_id)
            target = escalated_to
            if target is None:
                workflow = ApprovalWorkflow.model_validate(state)
                target = self.directory.escalation_target(
                    workflow.team_id, workflow.escalation_level
                )
                if target is None:
                    raise ConfigurationError(
                        f"No escalation target for team {workflow.team_id!r} "
                        f"at escalation level {workflow.escalation_level}"
                    )
            command = EscalateWorkflow(
                workflow_id=workflow_id, escalated_to=target, reason=reason
            )
            return self.workflow_handlers.handle_escalate(command, cid, actor_id, state)

        with LogOperation(logger, "escalate_workflow", workflow_id=workflow_id):
            return self._transition("escalate_workflow", workflow_id, decide, actor_id, cid)

    @track_command_duration("auto_approve_expense")
    def auto_approve(self, workflow_id: str, command_id: str | None = None) -> dict:
        """Rule-based approval; debits the budget like a final approval"""
        command = AutoApproveExpense(workflow_id=workflow_id)
        cid = command_id or generate_id()
        with LogOperation(logger, "auto_approve_expense", workflow_id=workflow_id):
            return self._transition(
                "auto_approve_expense",
                workflow_id,
                lambda state: self.workflow_handlers.handle_auto_approve(
                    command, cid, SYSTEM_ACTOR, state
                ),
                SYSTEM_ACTOR,
                cid,
            )

    @track_command_duration("cancel_workflow")
    def cancel(
        self,
        workflow_id: str,
        actor_id: str,
        reason: str = "",
        command_id: str | None = None,
    ) -> dict:
        """Withdraw the expense (submitter or admin)"""
        command = CancelWorkflow(workflow_id=workflow_id, reason=reason)
        cid = command_id or generate_id()
        is_admin = self.is_admin(actor_id)
        with LogOperation(
            logger, "cancel_workflow", workflow_id=workflow_id, actor_id=actor_id
        ):
            return self._transition(
                "cancel_workflow",
                workflow_id,
                lambda state: self.workflow_handlers.handle_cancel(
                    command, cid, actor_id, state, is_admin
                ),
                actor_id,
                cid,
            )

    @track_command_duration("add_comment")
    def add_comment(
        self,
        workflow_id: str,
        author_id: str,
        text: str,
        comment_type: CommentType = CommentType.GENERAL,
        is_system_generated: bool = False,
        command_id: str | None = None,
    ) -> dict:
        """Append a comment (any status)"""
        command = AddComment(
            workflow_id=workflow_id,
            text=text,
            comment_type=comment_type,
            is_system_generated=is_system_generated,
        )
        cid = command_id or generate_id()
        return self._transition(
            "add_comment",
            workflow_id,
            lambda state: self.workflow_handlers.handle_add_comment(
                command, cid, author_id, state
            ),
            author_id,
            cid,
        )

    @track_command_duration("flag_escalation_exhausted")
    def flag_escalation_exhausted(
        self,
        workflow_id: str,
        reason: str = "no escalation target available",
        command_id: str | None = None,
    ) -> dict:
        """Mark an overdue workflow as fully escalated; it stays PENDING"""
        command = FlagEscalationExhausted(workflow_id=workflow_id, reason=reason)
        cid = command_id or generate_id()
        return self._transition(
            "flag_escalation_exhausted",
            workflow_id,
            lambda state: self.workflow_handlers.handle_flag_escalation_exhausted(
                command, cid, SYSTEM_ACTOR, state
            ),
            SYSTEM_ACTOR,
            cid,
        )

    @track_command_duration("reverse_approval")
    def reverse_approval(
        self,
        workflow_id: str,
        admin_id: str,
        reason: str,
        command_id: str | None = None,
    ) -> dict:
        """
        Administrative correction: credit the budget back for an approved expense

        The workflow stays terminal; a REVERSAL comment and the credit
        commit together.

        Raises:
            Unauthorized: If admin_id is not an admin
            InvalidTransition: If not approved or already reversed
        """
        command = ReverseApproval(workflow_id=workflow_id, reason=reason)
        cid = command_id or generate_id()
        is_admin = self.is_admin(admin_id)
        with LogOperation(
            logger, "reverse_approval", workflow_id=workflow_id, actor_id=admin_id
        ):
            return self._transition(
                "reverse_approval",
                workflow_id,
                lambda state: self.workflow_handlers.handle_reverse_approval(
                    command, cid, admin_id, state, is_admin
                ),
                admin_id,
                cid,
            )

    # ========== Queries ==========

    def load(self, workflow_id: str) -> ApprovalWorkflow:
        """
        Authoritative workflow model replayed from its stream

        Raises:
            WorkflowNotFound: If workflow doesn't exist
        """
        state, _ = self.repository.load_workflow(workflow_id)
        if state is None:
            raise WorkflowNotFound(workflow_id)
        return ApprovalWorkflow.model_validate(state)

    def linked_budget(self, workflow_id: str) -> Budget | None:
        workflow = self.load(workflow_id)
        if workflow.budget_id is None:
            return None
        try:
            return self.ledger.load(workflow.budget_id)
        except BudgetNotFound:
            return None
