"""
Notifications - Best-effort messages to approvers, submitters and admins

The engine never waits on delivery. Notifiers are called after a transition
has committed; a failing notifier is logged and counted, nothing more.
Transports (email, push, websocket) live outside the engine behind the
Notifier protocol.
"""

import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from trackify_engine.kernel.bus import InProcessBus
from trackify_engine.kernel.events import Event
from trackify_engine.kernel.logging import get_logger, pseudonymize
from trackify_engine.kernel.metrics import collaborator_failures_total

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    """What a notification is about"""

    EXPENSE_SUBMITTED = "EXPENSE_SUBMITTED"
    EXPENSE_APPROVED = "EXPENSE_APPROVED"
    EXPENSE_REJECTED = "EXPENSE_REJECTED"
    EXPENSE_ESCALATED = "EXPENSE_ESCALATED"
    EXPENSE_AUTO_APPROVED = "EXPENSE_AUTO_APPROVED"
    EXPENSE_CANCELLED = "EXPENSE_CANCELLED"
    APPROVAL_REQUEST = "APPROVAL_REQUEST"
    APPROVAL_REMINDER = "APPROVAL_REMINDER"
    APPROVAL_ESCALATION = "APPROVAL_ESCALATION"
    APPROVAL_ESCALATION_EXHAUSTED = "APPROVAL_ESCALATION_EXHAUSTED"
    BUDGET_WARNING = "BUDGET_WARNING"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    BUDGET_EXPIRING = "BUDGET_EXPIRING"
    COMMENT_ADDED = "COMMENT_ADDED"


class Notification(BaseModel):
    """A delivered (or attempted) notification"""

    user_id: str
    kind: NotificationKind
    payload: dict[str, Any] = Field(default_factory=dict)
    sent_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Notifier(Protocol):
    """Notification sender - fire-and-forget"""

    def notify(self, user_id: str, kind: NotificationKind, payload: dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Notifier that writes every notification to the structured log"""

    def notify(self, user_id: str, kind: NotificationKind, payload: dict[str, Any]) -> None:
        logger.info(
            "Notification",
            recipient=pseudonymize(user_id),
            kind=kind.value,
            priority=payload.get("priority", "NORMAL"),
            subject=payload.get("workflow_id") or payload.get("budget_id"),
        )


class InMemoryNotifier:
    """Notifier that keeps notifications in memory (tests, CLI previews)"""

    def __init__(self) -> None:
        self.sent: list[Notification] = []
        self._lock = threading.Lock()

    def notify(self, user_id: str, kind: NotificationKind, payload: dict[str, Any]) -> None:
        with self._lock:
            self.sent.append(Notification(user_id=user_id, kind=kind, payload=payload))

    def of_kind(self, kind: NotificationKind) -> list[Notification]:
        with self._lock:
            return [n for n in self.sent if n.kind == kind]

    def for_user(self, user_id: str) -> list[Notification]:
        with self._lock:
            return [n for n in self.sent if n.user_id == user_id]


def deliver(
    notifier: Notifier,
    user_id: str | None,
    kind: NotificationKind,
    payload: dict[str, Any],
) -> bool:
    """
    Send one notification, swallowing and logging delivery failures

    Returns:
        True if the notifier accepted the notification
    """
    if not user_id:
        return False
    try:
        notifier.notify(user_id, kind, payload)
        return True
    except Exception as e:
        collaborator_failures_total.labels(collaborator="notifier").inc()
        logger.warning(
            "Notification delivery failed",
            kind=kind.value,
            error=str(e),
            error_type=type(e).__name__,
        )
        return False


class NotificationDispatcher:
    """
    Maps committed workflow events to notifications

    Subscribed to the in-process bus; runs after commit, so it only sees
    transitions that actually happened.
    """

    def __init__(self, notifier: Notifier, admin_ids: list[str]) -> None:
        self.notifier = notifier
        self.admin_ids = list(dict.fromkeys(admin_ids))

    def register(self, bus: InProcessBus) -> None:
        """Subscribe to every workflow event type this dispatcher handles"""
        for event_type in (
            "ExpenseSubmitted",
            "ApprovalLevelAdvanced",
            "ExpenseApproved",
            "ExpenseAutoApproved",
            "ExpenseRejected",
            "ExpenseEscalated",
            "EscalationExhausted",
            "ExpenseCancelled",
            "CommentAdded",
        ):
            bus.register_event_handler(event_type, self.handle)

    def handle(self, event: Event) -> None:
        payload = event.payload
        base = {
            "workflow_id": payload.get("workflow_id"),
            "expense_id": payload.get("expense_id"),
        }
        submitter = payload.get("submitted_by")

        if event.event_type == "ExpenseSubmitted":
            request = base | {
                "amount": payload.get("expense_amount"),
                "currency": payload.get("currency"),
                "deadline": payload.get("deadline"),
                "priority": payload.get("priority"),
            }
            deliver(self.notifier, payload.get("current_approver_id"),
                    NotificationKind.APPROVAL_REQUEST, request)
            deliver(self.notifier, submitter, NotificationKind.EXPENSE_SUBMITTED, base)

        elif event.event_type == "ApprovalLevelAdvanced":
            deliver(self.notifier, payload.get("next_approver_id"),
                    NotificationKind.APPROVAL_REQUEST,
                    base | {"approval_level": payload.get("approval_level")})

        elif event.event_type == "ExpenseApproved":
            deliver(self.notifier, submitter, NotificationKind.EXPENSE_APPROVED,
                    base | {"approver_id": payload.get("approver_id")})

        elif event.event_type == "ExpenseAutoApproved":
            deliver(self.notifier, submitter, NotificationKind.EXPENSE_AUTO_APPROVED, base)

        elif event.event_type == "ExpenseRejected":
            deliver(self.notifier, submitter, NotificationKind.EXPENSE_REJECTED,
                    base | {"reason": payload.get("reason")})

        elif event.event_type == "ExpenseEscalated":
            deliver(self.notifier, payload.get("escalated_to"),
                    NotificationKind.APPROVAL_ESCALATION,
                    base | {"escalation_level": payload.get("escalation_level")})
            deliver(self.notifier, submitter, NotificationKind.EXPENSE_ESCALATED, base)

        elif event.event_type == "EscalationExhausted":
            urgent = base | {"priority": "HIGH", "reason": payload.get("reason")}
            recipients = self.admin_ids or [payload.get("current_approver_id")]
            for admin_id in recipients:
                deliver(self.notifier, admin_id,
                        NotificationKind.APPROVAL_ESCALATION_EXHAUSTED, urgent)

        elif event.event_type == "ExpenseCancelled":
            deliver(self.notifier, payload.get("current_approver_id"),
                    NotificationKind.EXPENSE_CANCELLED, base)

        elif event.event_type == "CommentAdded":
            author = payload.get("author_id")
            for user_id in {submitter, payload.get("current_approver_id")}:
                if user_id and user_id != author:
                    deliver(self.notifier, user_id, NotificationKind.COMMENT_ADDED,
                            base | {"comment_id": payload.get("comment_id")})
