"""
Trackify Engine - Event-sourced expense approvals with consistent budgets

Routes expenses through multi-level approval with deadlines and escalation,
and keeps each budget's spend ledger in step with approval outcomes: every
approved expense is debited exactly once, every reversal credits it back.

Fun fact: The double-entry bookkeeping this ledger leans on was first written
down by Luca Pacioli in 1494, in a mathematics textbook.
"""

__version__ = "0.1.0"

from trackify_engine.engine import TrackifyEngine

__all__ = ["TrackifyEngine", "__version__"]
