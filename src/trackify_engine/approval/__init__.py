"""
Approval Module - Per-expense approval workflows

This module implements the approval state machine:
- Multi-level approval with a bounded level counter
- Escalation cycles bounded by the policy's maximum escalation level
- Rule-based auto-approval under a configured amount
- Idempotent terminal operations for at-least-once callers
- Append-only comment threads

Fun fact: The oldest surviving expense claims are Roman military pay
records on wooden tablets from Vindolanda, complete with an officer's
sign-off!
"""

from trackify_engine.approval.models import (
    SYSTEM_ACTOR,
    ApprovalStatus,
    ApprovalWorkflow,
    Comment,
    CommentType,
    Priority,
)

__all__ = [
    "SYSTEM_ACTOR",
    "ApprovalStatus",
    "ApprovalWorkflow",
    "Comment",
    "CommentType",
    "Priority",
]
