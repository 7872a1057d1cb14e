"""
Aggregate Repository - Load aggregates from streams, commit decisions

The repository is the single path between decisions and storage:
- load_budget / load_workflow replay one stream into current state
- commit appends one or more streams atomically, refreshes the in-memory
  registries and publishes newly committed events on the bus

Registries are caches. Decisions always use freshly replayed state; the
registries only serve queries.
"""

from trackify_engine.approval.projections import CommentLog, WorkflowRegistry, replay_workflow
from trackify_engine.kernel.bus import InProcessBus
from trackify_engine.kernel.event_store import SQLiteEventStore
from trackify_engine.kernel.events import Event, group_by_stream
from trackify_engine.kernel.logging import get_logger
from trackify_engine.kernel.metrics import record_committed_events
from trackify_engine.ledger.projections import BudgetRegistry, replay_budget

logger = get_logger(__name__)


def is_fresh(events: list[Event], committed: list[Event]) -> bool:
    """True when committed holds the given events, not a previous run of the same command"""
    return bool(events) and bool(committed) and committed[0].event_id == events[0].event_id


class AggregateRepository:
    """Versioned access to budget and workflow streams"""

    def __init__(
        self,
        event_store: SQLiteEventStore,
        bus: InProcessBus,
        budget_registry: BudgetRegistry,
        workflow_registry: WorkflowRegistry,
        comment_log: CommentLog,
    ) -> None:
        self.event_store = event_store
        self.bus = bus
        self.budget_registry = budget_registry
        self.workflow_registry = workflow_registry
        self.comment_log = comment_log

    def load_budget(self, budget_id: str) -> tuple[dict | None, int]:
        """
        Replay a budget stream

        Returns:
            (state or None, stream version)
        """
        events = self.event_store.load_stream(budget_id)
        return replay_budget(events), events[-1].version if events else 0

    def load_workflow(self, workflow_id: str) -> tuple[dict | None, int]:
        """
        Replay a workflow stream

        Returns:
            (state or None, stream version)
        """
        events = self.event_store.load_stream(workflow_id)
        return replay_workflow(events), events[-1].version if events else 0

    def committed_streams(self, command_id: str) -> set[str]:
        """Streams that already hold events committed under command_id"""
        return {e.stream_id for e in self.event_store.load_command(command_id)}

    def commit(self, expected_versions: dict[str, int], events: list[Event]) -> list[Event]:
        """
        Append events to every stream in expected_versions atomically

        For a repeated command_id the store hands back the events committed
        the first time; those are not published again.

        Raises:
            StreamVersionConflict: If any stream moved since it was loaded
        """
        if not events:
            return []

        committed = self.event_store.append_streams(expected_versions, events)
        for stream_id, stream_events in group_by_stream(committed).items():
            self._refresh(stream_id, stream_events[0].stream_type)

        if is_fresh(events, committed):
            for stream_id, stream_events in group_by_stream(committed).items():
                record_committed_events(
                    stream_events[0].stream_type, [e.event_type for e in stream_events]
                )
            for event in committed:
                self.comment_log.apply_event(event)
            logger.debug(
                "Events committed",
                streams=list(expected_versions),
                event_types=[e.event_type for e in committed],
                command_id=committed[0].command_id,
            )
            self.bus.publish_events(committed)
        return committed

    def _refresh(self, stream_id: str, stream_type: str) -> None:
        """Re-read a stream and offer its state to the matching registry"""
        if stream_type == "budget":
            state, _ = self.load_budget(stream_id)
            if state is not None:
                self.budget_registry.upsert(state)
        elif stream_type == "workflow":
            state, _ = self.load_workflow(stream_id)
            if state is not None:
                self.workflow_registry.upsert(state)

    def rebuild(self) -> None:
        """Rebuild every registry from the event store"""
        all_events = self.event_store.load_all_events()
        for event in all_events:
            if event.stream_type == "budget":
                self.budget_registry.apply_event(event)
            elif event.stream_type == "workflow":
                self.workflow_registry.apply_event(event)
                self.comment_log.apply_event(event)
        logger.info(
            "Projections rebuilt",
            event_count=len(all_events),
            budgets=self.budget_registry.count(),
            workflows=self.workflow_registry.count(),
        )
