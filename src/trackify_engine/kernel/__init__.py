"""
Kernel - Core event sourcing infrastructure

The kernel provides the machinery the ledger and approval modules build on:
versioned event streams, idempotent atomic appends, retry, logging, metrics
and the runtime policy.
"""

from trackify_engine.kernel.errors import (
    ConcurrencyConflict,
    ConfigurationError,
    EventStoreError,
    StreamVersionConflict,
    TrackifyError,
)
from trackify_engine.kernel.events import Event
from trackify_engine.kernel.ids import generate_id
from trackify_engine.kernel.policy import EnginePolicy
from trackify_engine.kernel.time import RealTimeProvider, TestTimeProvider, TimeProvider

__all__ = [
    "generate_id",
    "TimeProvider",
    "RealTimeProvider",
    "TestTimeProvider",
    "Event",
    "EnginePolicy",
    "TrackifyError",
    "EventStoreError",
    "StreamVersionConflict",
    "ConcurrencyConflict",
    "ConfigurationError",
]
