#!/usr/bin/env python3
"""
Performance Benchmark for Trackify

Measures the paths that dominate a busy approval queue:

- Submit + approve throughput (each approval commits workflow and budget events)
- Projection rebuild from the event log on startup
- One escalation sweep over many overdue workflows

Run:
    python scripts/performance_benchmark.py
"""

import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path

from trackify_engine.collaborators.directory import StaticApproverDirectory
from trackify_engine.engine import TrackifyEngine
from trackify_engine.kernel.policy import EnginePolicy
from trackify_engine.kernel.time import TestTimeProvider

START = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
DIRECTORY = StaticApproverDirectory.from_dict(
    {
        "teams": {"team-eng": {"approvers": ["lead"], "escalation": ["vp"]}},
        "admins": ["admin"],
        "fallback_admin": "admin",
    }
)


def build_engine(db_path: Path, clock: TestTimeProvider) -> TrackifyEngine:
    return TrackifyEngine(
        str(db_path),
        policy=EnginePolicy(admin_ids=["admin"]),
        time_provider=clock,
        directory=DIRECTORY,
    )


def seed_budget(engine: TrackifyEngine) -> str:
    budget = engine.create_budget(
        name="Benchmark",
        total_amount="100000000",
        team_id="team-eng",
        start_date="2025-01-01",
        end_date="2025-12-31",
    )
    return budget["budget_id"]


def benchmark_approvals(db_path: Path, count: int = 500) -> dict:
    """Submit and approve count expenses against one budget"""
    print("\n=== Benchmark: Submit + Approve ===")
    engine = build_engine(db_path, TestTimeProvider(START))
    seed_budget(engine)

    start_time = time.perf_counter()
    for i in range(count):
        wf = engine.submit_expense(f"exp-{i}", f"user-{i % 50}", "12.34", team_id="team-eng")
        engine.approve(wf["workflow_id"], "lead")
    elapsed = time.perf_counter() - start_time

    rate = count / elapsed if elapsed > 0 else 0
    print(f"  Approvals: {count}")
    print(f"  Time elapsed: {elapsed:.2f}s")
    print(f"  Approvals/sec: {rate:.1f}")
    return {"test": "approvals", "count": count, "elapsed_sec": elapsed, "per_sec": rate}


def benchmark_rebuild(db_path: Path) -> dict:
    """Rebuild every projection from the log written by the approval benchmark"""
    print("\n=== Benchmark: Projection Rebuild ===")

    start_time = time.perf_counter()
    engine = build_engine(db_path, TestTimeProvider(START))
    elapsed = time.perf_counter() - start_time

    events = engine.health()["events"]
    print(f"  Events replayed: {events}")
    print(f"  Time elapsed: {elapsed:.2f}s")
    return {"test": "rebuild", "events": events, "elapsed_sec": elapsed}


def benchmark_scan(count: int = 300) -> dict:
    """Escalate count overdue workflows in one sweep"""
    print("\n=== Benchmark: Escalation Sweep ===")
    with tempfile.TemporaryDirectory() as tmpdir:
        clock = TestTimeProvider(START)
        engine = build_engine(Path(tmpdir) / "scan.db", clock)
        seed_budget(engine)
        for i in range(count):
            engine.submit_expense(f"exp-{i}", "alice", "5", team_id="team-eng")

        clock.advance_hours(73)
        start_time = time.perf_counter()
        result = engine.scan()
        elapsed = time.perf_counter() - start_time

    print(f"  {result.summary()}")
    print(f"  Time elapsed: {elapsed:.2f}s")
    return {"test": "scan", "count": count, "elapsed_sec": elapsed, "failed": len(result.failed)}


def main() -> None:
    print("Trackify performance benchmark")
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "bench.db"
        results = [benchmark_approvals(db_path), benchmark_rebuild(db_path)]
    results.append(benchmark_scan())

    print("\n=== Summary ===")
    for result in results:
        print(f"  {result['test']}: {result['elapsed_sec']:.2f}s")


if __name__ == "__main__":
    main()
