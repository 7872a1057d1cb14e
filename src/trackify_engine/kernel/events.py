"""
Base Event model for the event-sourced ledger and workflows

Every budget debit, every approval and every escalation is recorded as an
immutable event. Budget and workflow state are nothing more than a fold over
their event streams.

Fun fact: Accountants have used "events only, never erase" bookkeeping for
centuries - a correcting entry is added instead of rubbing out the old one.
A reversed approval here works exactly the same way!
"""

from datetime import datetime

from pydantic import BaseModel, Field


class Event(BaseModel):
    """
    Base event class - all domain events are stored in this envelope

    The combination of stream_id + version provides optimistic locking,
    while command_id ensures idempotency of retried operations.
    """

    event_id: str = Field(
        ...,
        description="Unique event identifier (UUIDv7 for time-ordering)",
    )

    stream_id: str = Field(
        ...,
        description="Aggregate root identifier (budget id or workflow id)",
    )

    stream_type: str = Field(
        ...,
        description="Type of aggregate: 'budget' or 'workflow'",
    )

    event_type: str = Field(
        ...,
        description="Specific event type: 'BudgetDebited', 'ExpenseApproved', etc.",
    )

    occurred_at: datetime = Field(
        ...,
        description="UTC timestamp when event occurred",
    )

    actor_id: str | None = Field(
        default=None,
        description="ID of actor who triggered this event (None for system events)",
    )

    command_id: str = Field(
        ...,
        description="ID of command that caused this event (idempotency key)",
    )

    payload: dict = Field(
        default_factory=dict,
        description="Event-specific data (must be JSON-serializable)",
    )

    version: int = Field(
        ...,
        description="Stream version after this event (monotonically increasing)",
        ge=1,
    )

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "examples": [
                {
                    "event_id": "01908e9a-3b87-7000-8000-123456789abc",
                    "stream_id": "01908e9a-0000-7000-8000-00000000b001",
                    "stream_type": "budget",
                    "event_type": "BudgetDebited",
                    "occurred_at": "2025-01-15T10:30:00Z",
                    "actor_id": "manager-bob",
                    "command_id": "cmd-123",
                    "payload": {"expense_id": "exp-42", "amount": "19.99"},
                    "version": 4,
                }
            ]
        },
    }


def create_event(
    *,
    event_id: str,
    stream_id: str,
    stream_type: str,
    event_type: str,
    occurred_at: datetime,
    command_id: str,
    version: int,
    actor_id: str | None = None,
    payload: dict | None = None,
) -> Event:
    """
    Factory function for creating events with all required fields
    """
    return Event(
        event_id=event_id,
        stream_id=stream_id,
        stream_type=stream_type,
        event_type=event_type,
        occurred_at=occurred_at,
        actor_id=actor_id,
        command_id=command_id,
        payload=payload or {},
        version=version,
    )


def group_by_stream(events: list[Event]) -> dict[str, list[Event]]:
    """Group events by stream_id, preserving order within each stream"""
    grouped: dict[str, list[Event]] = {}
    for event in events:
        grouped.setdefault(event.stream_id, []).append(event)
    return grouped
