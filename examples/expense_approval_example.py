"""
Expense Approval Examples - Walkthrough of workflows and budget ledgers

This example demonstrates:
- A team budget that submitted expenses link to automatically
- Two-level approval where only the final approval debits the budget
- Rejection releasing the provisional charge
- Overdue workflows escalated by the scanner
- Reversing an approval and crediting the budget back
- Rebuilding every projection from the event log
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path

from trackify_engine.collaborators.directory import StaticApproverDirectory
from trackify_engine.collaborators.notifications import InMemoryNotifier
from trackify_engine.engine import TrackifyEngine
from trackify_engine.kernel.policy import EnginePolicy
from trackify_engine.kernel.time import TestTimeProvider

DIRECTORY = {
    "teams": {
        "team-eng": {"approvers": ["lead", "director"], "escalation": ["vp"]},
    },
    "admins": ["admin"],
    "fallback_admin": "admin",
}


def build_engine(db_path: Path, clock: TestTimeProvider, notifier: InMemoryNotifier):
    return TrackifyEngine(
        db_path,
        policy=EnginePolicy(admin_ids=["admin"]),
        time_provider=clock,
        directory=StaticApproverDirectory.from_dict(DIRECTORY),
        notifier=notifier,
    )


def example_1_two_level_approval(engine: TrackifyEngine) -> None:
    print("\n=== Example 1: Two-Level Approval ===\n")

    budget = engine.create_budget(
        name="Engineering travel",
        total_amount="2000",
        team_id="team-eng",
        start_date="2025-01-01",
        end_date="2025-12-31",
        alert_threshold="75",
    )
    print(f"✓ Budget created: {budget['budget_id']} ({budget['total_amount']} USD)")

    wf = engine.submit_expense("exp-flight", "alice", "1200", team_id="team-eng",
                               max_approval_level=2)
    print(f"✓ Submitted: {wf['workflow_id']} → approver {wf['current_approver_id']}")
    print(f"  Pending charge: {engine.get_budget(budget['budget_id'])['pending_charges']}")

    wf = engine.approve(wf["workflow_id"], "lead", notes="Conference trip")
    print(f"✓ Level 1 approved, next approver: {wf['current_approver_id']}")
    print(f"  Spent so far: {engine.budget_status(budget['budget_id']).spent_amount}")

    wf = engine.approve(wf["workflow_id"], "director")
    status = engine.budget_status(budget["budget_id"])
    print(f"✓ Final approval: {wf['status']}")
    print(f"  Spent: {status.spent_amount} ({status.used_percentage}% used)")


def example_2_rejection(engine: TrackifyEngine) -> None:
    print("\n=== Example 2: Rejection Releases the Charge ===\n")

    wf = engine.submit_expense("exp-dinner", "bob", "300", team_id="team-eng")
    budget_id = wf["budget_id"]
    print(f"  Pending charges: {list(engine.get_budget(budget_id)['pending_charges'])}")

    wf = engine.reject(wf["workflow_id"], "lead", "Not a business expense")
    print(f"✓ {wf['status']}: {wf['rejection_reason']}")
    print(f"  Pending charges: {list(engine.get_budget(budget_id)['pending_charges'])}")


def example_3_escalation(engine: TrackifyEngine, clock: TestTimeProvider) -> None:
    print("\n=== Example 3: Overdue Escalation ===\n")

    wf = engine.submit_expense("exp-hotel", "carol", "400", team_id="team-eng")
    print(f"  Deadline: {wf['deadline']}")

    clock.advance_hours(73)
    result = engine.scan()
    print(f"✓ Scan: {result.summary()}")
    wf = engine.get_workflow(wf["workflow_id"])
    print(f"  Now waiting on: {wf['current_approver_id']} (escalation {wf['escalation_level']})")

    wf = engine.approve(wf["workflow_id"], "vp")
    print(f"✓ Approved by vp: {wf['status']}")


def example_4_reversal(engine: TrackifyEngine) -> None:
    print("\n=== Example 4: Reversing an Approval ===\n")

    wf = engine.get_workflow_for_expense("exp-flight")
    before = engine.budget_status(wf["budget_id"]).spent_amount

    engine.reverse_approval(wf["workflow_id"], "admin", "Trip cancelled, refund received")
    after = engine.budget_status(wf["budget_id"]).spent_amount
    print(f"✓ Reversed {wf['workflow_id']}: spent {before} → {after}")


def example_5_replay(db_path: Path, engine: TrackifyEngine, clock: TestTimeProvider) -> None:
    print("\n=== Example 5: Rebuild From the Event Log ===\n")

    rebuilt = build_engine(db_path, clock, InMemoryNotifier())
    for budget in engine.list_budgets():
        same = rebuilt.get_budget(budget["budget_id"]) == budget
        print(f"  {budget['budget_id']}: replay matches live projection: {same}")
    print(f"✓ {rebuilt.health()['events']} events replayed")


def main() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "expenses.db"
        clock = TestTimeProvider(datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))
        notifier = InMemoryNotifier()
        engine = build_engine(db_path, clock, notifier)

        example_1_two_level_approval(engine)
        example_2_rejection(engine)
        example_3_escalation(engine, clock)
        example_4_reversal(engine)
        example_5_replay(db_path, engine, clock)

        print(f"\n{len(notifier.sent)} notifications sent")


if __name__ == "__main__":
    main()
