"""
Tests for Approval Workflow Command Handlers

Each test drives a workflow stream through the pure handlers and folds the
events with replay_workflow, without storage or ledger.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

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
from trackify_engine.approval.models import ApprovalStatus, ApprovalWorkflow, CommentType
from trackify_engine.approval.projections import fold_workflow, replay_workflow
from trackify_engine.kernel.errors import (
    AlreadyEscalated,
    AlreadyFinalized,
    ConfigurationError,
    EscalationLimitReached,
    InvalidTransition,
    Unauthorized,
    WorkflowAlreadyExists,
    WorkflowNotFound,
)
from trackify_engine.kernel.ids import generate_id
from trackify_engine.kernel.policy import EnginePolicy
from trackify_engine.kernel.time import TestTimeProvider

WORKFLOW_ID = workflow_id_for("exp-1")


@pytest.fixture
def handlers(test_time: TestTimeProvider, policy: EnginePolicy) -> WorkflowCommandHandlers:
    return WorkflowCommandHandlers(test_time, policy)


class WorkflowStream:
    """Accumulates one workflow stream the way the event store would"""

    def __init__(self, handlers: WorkflowCommandHandlers) -> None:
        self.handlers = handlers
        self.events = []

    @property
    def state(self):
        return replay_workflow(self.events)

    @property
    def workflow(self) -> ApprovalWorkflow:
        return ApprovalWorkflow.model_validate(self.state)

    def run(self, handler, command, actor_id, **kwargs):
        events = handler(command, generate_id(), actor_id, self.state, **kwargs)
        self.events.extend(events)
        return events


def submit(handlers: WorkflowCommandHandlers, **overrides) -> WorkflowStream:
    fields = {
        "expense_id": "exp-1",
        "expense_amount": Decimal("300"),
        "current_approver_id": "lead",
        "team_id": "team-eng",
    }
    fields.update(overrides)
    stream = WorkflowStream(handlers)
    stream.run(handlers.handle_submit, SubmitExpense(**fields), "alice")
    return stream


class TestSubmit:
    def test_submit_opens_pending_workflow(
        self, handlers: WorkflowCommandHandlers, test_time: TestTimeProvider
    ) -> None:
        stream = submit(handlers)
        workflow = stream.workflow

        assert workflow.workflow_id == "workflow-exp-1"
        assert workflow.status == ApprovalStatus.PENDING
        assert workflow.approval_level == 1
        assert workflow.submitted_by == "alice"
        assert workflow.currency == "USD"
        assert workflow.deadline == test_time.now() + timedelta(hours=72)

    def test_explicit_deadline_is_kept(self, handlers: WorkflowCommandHandlers) -> None:
        deadline = datetime(2025, 1, 16, 9, 0, tzinfo=timezone.utc)
        assert submit(handlers, deadline=deadline).workflow.deadline == deadline

    def test_second_submit_is_rejected(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        with pytest.raises(WorkflowAlreadyExists):
            stream.run(
                handlers.handle_submit,
                SubmitExpense(
                    expense_id="exp-1", expense_amount=Decimal("1"), current_approver_id="lead"
                ),
                "alice",
            )

    def test_submit_without_approver(self, handlers: WorkflowCommandHandlers) -> None:
        with pytest.raises(ConfigurationError):
            submit(handlers, current_approver_id=None)

    def test_amount_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            SubmitExpense(expense_id="exp-1", expense_amount=Decimal("0"))

    def test_auto_approval_needs_limit(self) -> None:
        with pytest.raises(ValidationError):
            SubmitExpense(
                expense_id="exp-1", expense_amount=Decimal("10"), auto_approve_enabled=True
            )


class TestApprove:
    def test_single_level_approval(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        events = stream.run(
            handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID, notes="ok"), "lead"
        )

        assert events[0].event_type == "ExpenseApproved"
        workflow = stream.workflow
        assert workflow.status == ApprovalStatus.APPROVED
        assert workflow.final_approver_id == "lead"
        assert workflow.approval_notes == "ok"
        assert [step.approver_id for step in workflow.approval_history] == ["lead"]

    def test_multi_level_advances_then_approves(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers, max_approval_level=2)

        events = stream.run(
            handlers.handle_approve,
            ApproveExpense(workflow_id=WORKFLOW_ID),
            "lead",
            next_approver_id="director",
        )
        assert events[0].event_type == "ApprovalLevelAdvanced"
        assert stream.workflow.status == ApprovalStatus.PENDING
        assert stream.workflow.approval_level == 2
        assert stream.workflow.current_approver_id == "director"

        # The previous approver is no longer entitled to decide
        with pytest.raises(Unauthorized):
            stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "lead")

        stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "director")
        workflow = stream.workflow
        assert workflow.status == ApprovalStatus.APPROVED
        assert workflow.approval_level == 2
        assert [s.level for s in workflow.approval_history] == [1, 2]

    def test_missing_next_approver_is_configuration_error(
        self, handlers: WorkflowCommandHandlers
    ) -> None:
        stream = submit(handlers, max_approval_level=2)
        with pytest.raises(ConfigurationError):
            stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "lead")

    def test_only_current_approver_may_approve(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        with pytest.raises(Unauthorized):
            stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "alice")

    def test_repeated_approve_by_same_approver_is_noop(
        self, handlers: WorkflowCommandHandlers
    ) -> None:
        stream = submit(handlers)
        stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "lead")

        assert stream.run(
            handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "lead"
        ) == []

    def test_approve_by_other_actor_after_approval(
        self, handlers: WorkflowCommandHandlers
    ) -> None:
        stream = submit(handlers)
        stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "lead")

        with pytest.raises(AlreadyFinalized) as exc_info:
            stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "vp")
        assert exc_info.value.finalized_by == "lead"

    def test_approve_after_reject_is_invalid(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        stream.run(
            handlers.handle_reject, RejectExpense(workflow_id=WORKFLOW_ID, reason="no"), "lead"
        )
        with pytest.raises(InvalidTransition):
            stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "lead")

    def test_unknown_workflow(self, handlers: WorkflowCommandHandlers) -> None:
        with pytest.raises(WorkflowNotFound):
            handlers.handle_approve(
                ApproveExpense(workflow_id="workflow-missing"), generate_id(), "lead", None
            )


class TestRejectAndCancel:
    def test_reject_records_reason(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        stream.run(
            handlers.handle_reject,
            RejectExpense(workflow_id=WORKFLOW_ID, reason="missing receipt"),
            "lead",
        )
        workflow = stream.workflow
        assert workflow.status == ApprovalStatus.REJECTED
        assert workflow.rejection_reason == "missing receipt"
        assert workflow.finalized_by() == "lead"

    def test_system_may_reject(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        stream.run(
            handlers.handle_reject, RejectExpense(workflow_id=WORKFLOW_ID, reason="late"), "system"
        )
        assert stream.workflow.status == ApprovalStatus.REJECTED

    def test_reject_needs_reason(self) -> None:
        with pytest.raises(ValidationError):
            RejectExpense(workflow_id=WORKFLOW_ID, reason="")

    def test_submitter_may_cancel(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        stream.run(handlers.handle_cancel, CancelWorkflow(workflow_id=WORKFLOW_ID), "alice")
        assert stream.workflow.status == ApprovalStatus.CANCELLED
        assert stream.workflow.cancelled_by == "alice"

    def test_admin_may_cancel(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        stream.run(
            handlers.handle_cancel, CancelWorkflow(workflow_id=WORKFLOW_ID), "admin",
            is_admin=True,
        )
        assert stream.workflow.status == ApprovalStatus.CANCELLED

    def test_approver_may_not_cancel(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        with pytest.raises(Unauthorized):
            stream.run(handlers.handle_cancel, CancelWorkflow(workflow_id=WORKFLOW_ID), "lead")

    def test_cancel_after_approval_is_invalid(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "lead")
        with pytest.raises(InvalidTransition):
            stream.run(handlers.handle_cancel, CancelWorkflow(workflow_id=WORKFLOW_ID), "alice")

    def test_repeated_reject_by_same_rejector_is_noop(
        self, handlers: WorkflowCommandHandlers, test_time: TestTimeProvider
    ) -> None:
        stream = submit(handlers)
        reject = RejectExpense(workflow_id=WORKFLOW_ID, reason="missing receipt")
        stream.run(handlers.handle_reject, reject, "lead")
        rejected_at = stream.workflow.rejected_at
        test_time.advance_hours(1)

        events = stream.run(handlers.handle_reject, reject, "lead")

        assert events == []
        assert len(stream.events) == 2
        assert stream.workflow.status == ApprovalStatus.REJECTED
        assert stream.workflow.rejected_at == rejected_at

    def test_reject_by_other_actor_after_rejection(
        self, handlers: WorkflowCommandHandlers
    ) -> None:
        stream = submit(handlers)
        reject = RejectExpense(workflow_id=WORKFLOW_ID, reason="missing receipt")
        stream.run(handlers.handle_reject, reject, "lead")

        with pytest.raises(AlreadyFinalized):
            stream.run(handlers.handle_reject, reject, "director")

    def test_repeated_cancel_by_same_actor_is_noop(
        self, handlers: WorkflowCommandHandlers, test_time: TestTimeProvider
    ) -> None:
        stream = submit(handlers)
        stream.run(handlers.handle_cancel, CancelWorkflow(workflow_id=WORKFLOW_ID), "alice")
        cancelled_at = stream.workflow.cancelled_at
        test_time.advance_hours(1)

        events = stream.run(
            handlers.handle_cancel, CancelWorkflow(workflow_id=WORKFLOW_ID), "alice"
        )

        assert events == []
        assert len(stream.events) == 2
        assert stream.workflow.status == ApprovalStatus.CANCELLED
        assert stream.workflow.cancelled_at == cancelled_at

    def test_cancel_by_other_actor_after_cancellation(
        self, handlers: WorkflowCommandHandlers
    ) -> None:
        stream = submit(handlers)
        stream.run(handlers.handle_cancel, CancelWorkflow(workflow_id=WORKFLOW_ID), "alice")

        with pytest.raises(AlreadyFinalized):
            stream.run(
                handlers.handle_cancel, CancelWorkflow(workflow_id=WORKFLOW_ID), "admin",
                is_admin=True,
            )


class TestEscalation:
    def escalate(self, stream: WorkflowStream, to: str) -> None:
        stream.run(
            stream.handlers.handle_escalate,
            EscalateWorkflow(workflow_id=WORKFLOW_ID, escalated_to=to, reason="overdue"),
            "system",
        )

    def test_escalation_reassigns_and_extends_deadline(
        self, handlers: WorkflowCommandHandlers, test_time: TestTimeProvider
    ) -> None:
        stream = submit(handlers)
        test_time.advance_hours(80)

        self.escalate(stream, "vp")

        workflow = stream.workflow
        assert workflow.status == ApprovalStatus.PENDING
        assert workflow.current_approver_id == "vp"
        assert workflow.escalation_level == 1
        assert workflow.awaiting_escalation_response is True
        assert workflow.deadline == test_time.now() + timedelta(hours=24)

    def test_second_escalation_waits_for_response(
        self, handlers: WorkflowCommandHandlers, test_time: TestTimeProvider
    ) -> None:
        stream = submit(handlers)
        self.escalate(stream, "vp")

        with pytest.raises(AlreadyEscalated):
            self.escalate(stream, "ceo")

        # Once the extended deadline passes the cycle is over
        test_time.advance_hours(25)
        self.escalate(stream, "ceo")
        assert stream.workflow.escalation_level == 2

    def test_escalation_limit(
        self, handlers: WorkflowCommandHandlers, test_time: TestTimeProvider
    ) -> None:
        stream = submit(handlers)
        for target in ("vp", "cfo", "ceo"):
            self.escalate(stream, target)
            test_time.advance_hours(25)

        with pytest.raises(EscalationLimitReached):
            self.escalate(stream, "board")
        assert stream.workflow.escalation_level == 3

    def test_escalation_disabled(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers, escalation_enabled=False)
        with pytest.raises(InvalidTransition):
            self.escalate(stream, "vp")

    def test_escalated_approver_can_approve(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        self.escalate(stream, "vp")

        stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "vp")
        assert stream.workflow.status == ApprovalStatus.APPROVED
        assert stream.workflow.awaiting_escalation_response is False

    def test_flag_exhausted_once(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        command = FlagEscalationExhausted(workflow_id=WORKFLOW_ID)

        assert len(stream.run(handlers.handle_flag_escalation_exhausted, command, "system")) == 1
        assert stream.workflow.fully_escalated is True
        assert stream.run(handlers.handle_flag_escalation_exhausted, command, "system") == []


class TestAutoApprove:
    def test_within_limit(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(
            handlers,
            expense_amount=Decimal("40"),
            auto_approve_enabled=True,
            approval_required_amount=Decimal("50"),
        )
        assert stream.workflow.can_auto_approve() is True

        stream.run(handlers.handle_auto_approve, AutoApproveExpense(workflow_id=WORKFLOW_ID), None)
        assert stream.workflow.status == ApprovalStatus.AUTO_APPROVED
        assert stream.workflow.finalized_by() is None

        # Repeats are harmless
        assert stream.run(
            handlers.handle_auto_approve, AutoApproveExpense(workflow_id=WORKFLOW_ID), None
        ) == []

    def test_over_limit(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(
            handlers,
            expense_amount=Decimal("60"),
            auto_approve_enabled=True,
            approval_required_amount=Decimal("50"),
        )
        with pytest.raises(InvalidTransition):
            stream.run(
                handlers.handle_auto_approve, AutoApproveExpense(workflow_id=WORKFLOW_ID), None
            )

    def test_disabled(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        with pytest.raises(InvalidTransition):
            stream.run(
                handlers.handle_auto_approve, AutoApproveExpense(workflow_id=WORKFLOW_ID), None
            )


class TestCommentsAndReversal:
    def test_comment_allowed_on_terminal_workflow(
        self, handlers: WorkflowCommandHandlers
    ) -> None:
        stream = submit(handlers)
        stream.run(
            handlers.handle_reject, RejectExpense(workflow_id=WORKFLOW_ID, reason="no"), "lead"
        )
        events = stream.run(
            handlers.handle_add_comment,
            AddComment(workflow_id=WORKFLOW_ID, text="Please resubmit"),
            "lead",
        )
        assert events[0].payload["comment_type"] == CommentType.GENERAL.value
        assert stream.workflow.status == ApprovalStatus.REJECTED

    def test_reverse_requires_admin(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "lead")
        with pytest.raises(Unauthorized):
            stream.run(
                handlers.handle_reverse_approval,
                ReverseApproval(workflow_id=WORKFLOW_ID, reason="duplicate"),
                "lead",
            )

    def test_reverse_keeps_status_and_marks_reversed(
        self, handlers: WorkflowCommandHandlers
    ) -> None:
        stream = submit(handlers)
        stream.run(handlers.handle_approve, ApproveExpense(workflow_id=WORKFLOW_ID), "lead")
        events = stream.run(
            handlers.handle_reverse_approval,
            ReverseApproval(workflow_id=WORKFLOW_ID, reason="duplicate"),
            "admin",
            is_admin=True,
        )

        assert events[0].payload["comment_type"] == CommentType.REVERSAL.value
        assert stream.workflow.status == ApprovalStatus.APPROVED
        assert stream.workflow.reversed_at is not None

        with pytest.raises(InvalidTransition):
            stream.run(
                handlers.handle_reverse_approval,
                ReverseApproval(workflow_id=WORKFLOW_ID, reason="again"),
                "admin",
                is_admin=True,
            )

    def test_reverse_pending_is_invalid(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        with pytest.raises(InvalidTransition):
            stream.run(
                handlers.handle_reverse_approval,
                ReverseApproval(workflow_id=WORKFLOW_ID, reason="oops"),
                "admin",
                is_admin=True,
            )


class TestProjection:
    def test_fold_does_not_touch_input_state(self, handlers: WorkflowCommandHandlers) -> None:
        stream = submit(handlers)
        state = stream.state
        events = handlers.handle_approve(
            ApproveExpense(workflow_id=WORKFLOW_ID), generate_id(), "lead", state
        )

        after = fold_workflow(state, events)

        assert after["status"] == ApprovalStatus.APPROVED.value
        assert state["status"] == ApprovalStatus.PENDING.value

    def test_overdue_is_a_query(
        self, handlers: WorkflowCommandHandlers, test_time: TestTimeProvider
    ) -> None:
        workflow = submit(handlers).workflow
        assert workflow.is_overdue(test_time.now()) is False
        assert workflow.is_overdue(test_time.now() + timedelta(hours=73)) is True
        assert workflow.days_until_deadline(test_time.now()) == 3
        assert workflow.hours_since_submission(test_time.now() + timedelta(hours=6)) == 6
