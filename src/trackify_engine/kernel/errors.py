"""
Custom exceptions for the Trackify engine

A single error hierarchy lets callers catch exactly the failure they care
about: a rejected state transition, a ledger misuse, or an exhausted
optimistic-locking retry.

Fun fact: Double-entry bookkeeping was codified by Luca Pacioli in 1494.
His rule that every debit has a matching credit is still the invariant
our ledger errors protect!
"""

from decimal import Decimal


class TrackifyError(Exception):
    """Base exception for all Trackify engine errors"""

    pass


class EventStoreError(TrackifyError):
    """Base class for event store errors"""

    pass


class CommandIdempotencyViolation(EventStoreError):
    """
    Raised when a command_id was already used for a different set of streams

    A repeated command_id for the same streams is not an error: the store
    returns the events committed the first time.
    """

    def __init__(self, command_id: str, message: str = "") -> None:
        self.command_id = command_id
        super().__init__(
            message or f"Command {command_id} already processed (idempotency preserved)"
        )


class StreamVersionConflict(EventStoreError):
    """
    Raised when stream version doesn't match expected (optimistic locking)

    Indicates concurrent modification - caller should reload and retry.
    """

    def __init__(
        self, stream_id: str, expected_version: int, actual_version: int
    ) -> None:
        self.stream_id = stream_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stream {stream_id} version mismatch: "
            f"expected {expected_version}, got {actual_version}"
        )


class ConcurrencyConflict(TrackifyError):
    """Raised when optimistic-locking retries are exhausted"""

    def __init__(self, operation: str, attempts: int, stream_id: str | None = None) -> None:
        self.operation = operation
        self.attempts = attempts
        self.stream_id = stream_id
        super().__init__(
            f"{operation} gave up after {attempts} attempts due to concurrent "
            f"modification" + (f" of stream {stream_id}" if stream_id else "")
        )


class ConfigurationError(TrackifyError):
    """Raised when approver chains or policy settings are missing or invalid"""

    pass


class OperationTimeout(TrackifyError, TimeoutError):
    """Raised when an operation exceeds its time limit"""

    def __init__(self, operation: str, seconds: float) -> None:
        self.operation = operation
        self.seconds = seconds
        super().__init__(f"{operation} exceeded timeout of {seconds} seconds")


# Approval Workflow Errors


class WorkflowError(TrackifyError):
    """Base class for approval workflow errors"""

    pass


class InvalidTransition(WorkflowError):
    """Raised when an event is not legal in the workflow's current status"""

    def __init__(self, workflow_id: str, status: str, event: str, reason: str = "") -> None:
        self.workflow_id = workflow_id
        self.status = status
        self.event = event
        self.reason = reason
        message = f"Cannot {event} workflow {workflow_id} in status {status}"
        if reason:
            message += f" - {reason}"
        super().__init__(message)


class EscalationLimitReached(InvalidTransition):
    """Raised when a workflow already reached the maximum escalation level"""

    def __init__(self, workflow_id: str, escalation_level: int, max_level: int) -> None:
        self.escalation_level = escalation_level
        self.max_level = max_level
        super().__init__(
            workflow_id,
            "PENDING",
            "escalate",
            f"escalation level {escalation_level} reached maximum {max_level}",
        )


class Unauthorized(WorkflowError):
    """Raised when the caller lacks the role or ownership for an event"""

    def __init__(self, workflow_id: str, actor_id: str | None, event: str) -> None:
        self.workflow_id = workflow_id
        self.actor_id = actor_id
        self.event = event
        super().__init__(f"Actor {actor_id} is not allowed to {event} workflow {workflow_id}")


class AlreadyFinalized(WorkflowError):
    """Raised when a terminal operation is retried by a different actor"""

    def __init__(
        self, workflow_id: str, status: str, finalized_by: str | None, actor_id: str | None
    ) -> None:
        self.workflow_id = workflow_id
        self.status = status
        self.finalized_by = finalized_by
        self.actor_id = actor_id
        super().__init__(
            f"Workflow {workflow_id} already {status} by {finalized_by}; "
            f"{actor_id} cannot finalize it again"
        )


class AlreadyEscalated(WorkflowError):
    """Raised when escalation is requested twice within one escalation cycle"""

    def __init__(self, workflow_id: str, escalation_level: int) -> None:
        self.workflow_id = workflow_id
        self.escalation_level = escalation_level
        super().__init__(
            f"Workflow {workflow_id} already escalated to level {escalation_level} "
            "and is awaiting a response from the escalated approver"
        )


class WorkflowNotFound(WorkflowError):
    """Raised when workflow does not exist"""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class WorkflowAlreadyExists(WorkflowError):
    """Raised when an expense is submitted for approval a second time"""

    def __init__(self, expense_id: str, workflow_id: str) -> None:
        self.expense_id = expense_id
        self.workflow_id = workflow_id
        super().__init__(
            f"Expense {expense_id} already has approval workflow {workflow_id}"
        )


# Budget Ledger Errors


class LedgerError(TrackifyError):
    """Base class for budget ledger errors"""

    pass


class BudgetNotFound(LedgerError):
    """Raised when budget does not exist"""

    def __init__(self, budget_id: str) -> None:
        self.budget_id = budget_id
        super().__init__(f"Budget {budget_id} not found")


class BudgetInactive(LedgerError):
    """Raised when a debit targets a budget that is not currently active"""

    def __init__(self, budget_id: str, reason: str = "") -> None:
        self.budget_id = budget_id
        self.reason = reason
        message = f"Budget {budget_id} is not currently active"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class AlreadyDebited(LedgerError):
    """Raised when an expense is debited twice without an intervening credit"""

    def __init__(self, budget_id: str, expense_id: str, amount: Decimal) -> None:
        self.budget_id = budget_id
        self.expense_id = expense_id
        self.amount = amount
        super().__init__(
            f"Expense {expense_id} already debited {amount} from budget {budget_id}"
        )


class NotDebited(LedgerError):
    """Raised when crediting an expense that holds no debit on the budget"""

    def __init__(self, budget_id: str, expense_id: str) -> None:
        self.budget_id = budget_id
        self.expense_id = expense_id
        super().__init__(f"Expense {expense_id} has no debit on budget {budget_id}")


class InvalidAmount(LedgerError):
    """Raised when a monetary amount is negative or otherwise unusable"""

    def __init__(self, field: str, amount: Decimal, reason: str = "must be positive") -> None:
        self.field = field
        self.amount = amount
        super().__init__(f"{field} {amount} {reason}")
