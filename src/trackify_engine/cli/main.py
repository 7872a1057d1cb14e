"""
Trackify CLI

Command-line interface for the expense approval and budget engine.
Provides commands for budgets, expense workflows and the escalation sweep.

Usage:
    trackify init --db trackify.db
    trackify budget create --name "Team travel" --total 1000 --team team-eng \\
        --start 2025-01-01 --end 2025-12-31
    trackify expense submit --expense exp-1 --by alice --amount 300 --approver bob
    trackify expense approve --id workflow-exp-1 --by bob
    trackify scan
    trackify health
"""

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from typing_extensions import Annotated

from trackify_engine.collaborators.directory import StaticApproverDirectory
from trackify_engine.engine import TrackifyEngine
from trackify_engine.kernel.errors import TrackifyError
from trackify_engine.kernel.logging import configure_logging
from trackify_engine.kernel.policy import EnginePolicy

# Configure logging to stderr (avoids polluting stdout for JSON output)
configure_logging(json_output=False, log_level="INFO")

app = typer.Typer(
    name="trackify",
    help="Trackify - Expense approval workflows and budget ledgers",
    add_completion=False,
)

# Sub-apps
budget_app = typer.Typer(help="Budget management commands")
expense_app = typer.Typer(help="Expense approval workflow commands")

app.add_typer(budget_app, name="budget")
app.add_typer(expense_app, name="expense")

# Global state
DEFAULT_DB = Path(".trackify.db")
settings: dict[str, Optional[Path]] = {"policy": None, "directory": None}


@app.callback()
def configure(
    policy: Annotated[
        Optional[Path],
        typer.Option("--policy", envvar="TRACKIFY_POLICY", help="Engine policy JSON file"),
    ] = None,
    directory: Annotated[
        Optional[Path],
        typer.Option(
            "--directory", envvar="TRACKIFY_DIRECTORY", help="Approver directory JSON file"
        ),
    ] = None,
) -> None:
    """Trackify - Expense approval workflows and budget ledgers"""
    settings["policy"] = policy
    settings["directory"] = directory


def get_engine(db_path: Optional[Path] = None, must_exist: bool = True) -> TrackifyEngine:
    """Get engine instance"""
    db = db_path or DEFAULT_DB
    if must_exist and not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'trackify init --db {db}' to initialize", err=True)
        raise typer.Exit(1)
    with domain_errors():
        policy = EnginePolicy.from_file(settings["policy"]) if settings["policy"] else None
        directory = (
            StaticApproverDirectory.from_file(settings["directory"])
            if settings["directory"]
            else None
        )
        return TrackifyEngine(str(db), policy=policy, directory=directory)


@contextmanager
def domain_errors() -> Iterator[None]:
    """Turn engine and validation errors into a one-line message and exit code 1"""
    try:
        yield
    except (TrackifyError, ValidationError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e


def echo_json(data: object) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


DbOption = Annotated[Optional[Path], typer.Option("--db", help="Database path")]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]


# Initialization command


@app.command()
def init(
    db: Annotated[
        Path,
        typer.Option(help="Database path"),
    ] = DEFAULT_DB,
) -> None:
    """Initialize a new Trackify database"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)

    get_engine(db, must_exist=False)
    typer.echo(f"✓ Initialized Trackify database: {db}")


# Budget commands


@budget_app.command("create")
def budget_create(
    name: Annotated[str, typer.Option("--name", help="Budget name")],
    total: Annotated[str, typer.Option("--total", help="Total amount")],
    start: Annotated[str, typer.Option("--start", help="Start date (YYYY-MM-DD)")],
    end: Annotated[str, typer.Option("--end", help="End date (YYYY-MM-DD)")],
    owner: Annotated[Optional[str], typer.Option("--owner", help="Owning user")] = None,
    team: Annotated[Optional[str], typer.Option("--team", help="Owning team")] = None,
    category: Annotated[
        Optional[str], typer.Option("--category", help="Expense category")
    ] = None,
    currency: Annotated[Optional[str], typer.Option("--currency", help="Currency code")] = None,
    alert_threshold: Annotated[
        Optional[str],
        typer.Option("--alert-threshold", help="Alert threshold (percent used)"),
    ] = None,
    recurrence: Annotated[
        Optional[str],
        typer.Option("--recurrence", help="Recurrence period (MONTHLY, QUARTERLY, YEARLY)"),
    ] = None,
    db: DbOption = None,
) -> None:
    """Create a new budget"""
    engine = get_engine(db)

    with domain_errors():
        budget = engine.create_budget(
            name=name,
            total_amount=total,
            start_date=start,
            end_date=end,
            owner_id=owner,
            team_id=team,
            category_id=category,
            currency=currency,
            alert_threshold=alert_threshold,
            is_recurring=recurrence is not None,
            recurrence_period=recurrence,
        )

    typer.echo(f"✓ Created budget: {budget['budget_id']}")
    typer.echo(f"  Name: {budget['name']}")
    typer.echo(f"  Total: {budget['total_amount']} {budget['currency']}")
    typer.echo(f"  Period: {budget['start_date']} → {budget['end_date']}")


@budget_app.command("show")
def budget_show(
    budget_id: Annotated[str, typer.Option("--id", help="Budget ID")],
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show budget details and status"""
    engine = get_engine(db)

    budget = engine.get_budget(budget_id)
    if not budget:
        typer.echo(f"Error: Budget not found: {budget_id}", err=True)
        raise typer.Exit(1)

    with domain_errors():
        status = engine.budget_status(budget_id)
        alert = engine.check_alert(budget_id)

    if json_output:
        echo_json({"budget": budget, "status": status.model_dump(mode="json")})
        return

    typer.echo(f"\nBudget: {budget['budget_id']}")
    typer.echo(f"  Name: {budget['name']}")
    typer.echo(f"  Active: {budget['is_active']}")
    typer.echo(f"  Period: {budget['start_date']} → {budget['end_date']}")
    typer.echo(f"  Total: {status.total_amount} {budget['currency']}")
    typer.echo(f"  Spent: {status.spent_amount}")
    typer.echo(f"  Remaining: {status.remaining_amount}")
    typer.echo(f"  Used: {status.used_percentage}%")
    typer.echo(f"  Debits: {status.debit_count}")
    if status.is_expired:
        typer.echo("  Expired")
    if alert is not None:
        typer.echo(f"  ⚠️  {alert.level.value}: {alert.message}")


@budget_app.command("list")
def budget_list(
    owner: Annotated[Optional[str], typer.Option("--owner", help="Filter by owner")] = None,
    team: Annotated[Optional[str], typer.Option("--team", help="Filter by team")] = None,
    active_only: Annotated[
        bool, typer.Option("--active-only", help="Only active budgets")
    ] = False,
    db: DbOption = None,
) -> None:
    """List budgets"""
    engine = get_engine(db)

    budgets = engine.list_budgets(owner_id=owner, team_id=team, active_only=active_only)

    if not budgets:
        typer.echo("No budgets")
        return

    typer.echo(f"Budgets ({len(budgets)}):")
    for budget in budgets:
        state = "active" if budget["is_active"] else "inactive"
        typer.echo(
            f"  {budget['budget_id']}: {budget['name']} [{state}] - "
            f"{budget['spent_amount']}/{budget['total_amount']} {budget['currency']}"
        )


@budget_app.command("adjust")
def budget_adjust(
    budget_id: Annotated[str, typer.Option("--id", help="Budget ID")],
    total: Annotated[str, typer.Option("--total", help="New total amount")],
    reason: Annotated[str, typer.Option("--reason", help="Reason for the change")] = "",
    actor: Annotated[str, typer.Option("--by", help="Acting user")] = "system",
    db: DbOption = None,
) -> None:
    """Change a budget's total amount"""
    engine = get_engine(db)

    with domain_errors():
        budget = engine.adjust_budget_total(budget_id, total, reason=reason, actor_id=actor)

    typer.echo(f"✓ Adjusted budget: {budget['budget_id']}")
    typer.echo(f"  Total: {budget['total_amount']}")
    typer.echo(f"  Spent: {budget['spent_amount']}")


@budget_app.command("deactivate")
def budget_deactivate(
    budget_id: Annotated[str, typer.Option("--id", help="Budget ID")],
    reason: Annotated[str, typer.Option("--reason", help="Reason")] = "deactivated",
    actor: Annotated[str, typer.Option("--by", help="Acting user")] = "system",
    db: DbOption = None,
) -> None:
    """Deactivate a budget"""
    engine = get_engine(db)

    with domain_errors():
        budget = engine.deactivate_budget(budget_id, reason=reason, actor_id=actor)

    typer.echo(f"✓ Deactivated budget: {budget['budget_id']}")


@budget_app.command("activate")
def budget_activate(
    budget_id: Annotated[str, typer.Option("--id", help="Budget ID")],
    actor: Annotated[str, typer.Option("--by", help="Acting user")] = "system",
    db: DbOption = None,
) -> None:
    """Re-activate a deactivated budget"""
    engine = get_engine(db)

    with domain_errors():
        budget = engine.activate_budget(budget_id, actor_id=actor)

    typer.echo(f"✓ Activated budget: {budget['budget_id']}")


@budget_app.command("maintain")
def budget_maintain(db: DbOption = None) -> None:
    """Roll over recurring budgets and deactivate expired ones"""
    engine = get_engine(db)

    with domain_errors():
        result = engine.run_budget_maintenance()

    typer.echo("✓ Budget maintenance completed")
    typer.echo(f"  Rolled over: {len(result.rolled_over)}")
    for old_id, new_id in result.rolled_over.items():
        typer.echo(f"    {old_id} → {new_id}")
    typer.echo(f"  Deactivated: {len(result.deactivated)}")
    typer.echo(f"  Expiring soon: {len(result.expiring_alerts)}")


# Expense workflow commands


@expense_app.command("submit")
def expense_submit(
    expense_id: Annotated[str, typer.Option("--expense", help="Expense ID")],
    submitted_by: Annotated[str, typer.Option("--by", help="Submitting user")],
    amount: Annotated[str, typer.Option("--amount", help="Expense amount")],
    approver: Annotated[
        Optional[str],
        typer.Option("--approver", help="First approver (directory lookup if omitted)"),
    ] = None,
    team: Annotated[Optional[str], typer.Option("--team", help="Team ID")] = None,
    category: Annotated[Optional[str], typer.Option("--category", help="Category ID")] = None,
    budget: Annotated[Optional[str], typer.Option("--budget", help="Budget ID")] = None,
    levels: Annotated[int, typer.Option("--levels", help="Approval levels")] = 1,
    auto_approve_below: Annotated[
        Optional[str],
        typer.Option("--auto-approve-below", help="Auto-approve amounts up to this"),
    ] = None,
    no_escalation: Annotated[
        bool, typer.Option("--no-escalation", help="Disable escalation")
    ] = False,
    priority: Annotated[
        str, typer.Option("--priority", help="LOW, MEDIUM, HIGH or URGENT")
    ] = "MEDIUM",
    db: DbOption = None,
) -> None:
    """Submit an expense for approval"""
    engine = get_engine(db)

    with domain_errors():
        workflow = engine.submit_expense(
            expense_id=expense_id,
            submitted_by=submitted_by,
            amount=amount,
            approver_id=approver,
            team_id=team,
            category_id=category,
            budget_id=budget,
            max_approval_level=levels,
            approval_required_amount=auto_approve_below,
            auto_approve_enabled=auto_approve_below is not None,
            escalation_enabled=not no_escalation,
            priority=priority.upper(),
        )

    typer.echo(f"✓ Submitted expense: {workflow['workflow_id']}")
    typer.echo(f"  Status: {workflow['status']}")
    typer.echo(f"  Approver: {workflow['current_approver_id']}")
    typer.echo(f"  Budget: {workflow['budget_id'] or 'none'}")
    typer.echo(f"  Deadline: {workflow['deadline']}")


@expense_app.command("approve")
def expense_approve(
    workflow_id: Annotated[str, typer.Option("--id", help="Workflow ID")],
    approver: Annotated[str, typer.Option("--by", help="Approving user")],
    notes: Annotated[str, typer.Option("--notes", help="Approval notes")] = "",
    db: DbOption = None,
) -> None:
    """Approve the current level of a workflow"""
    engine = get_engine(db)

    with domain_errors():
        workflow = engine.approve(workflow_id, approver, notes=notes)

    typer.echo(f"✓ Approved: {workflow['workflow_id']}")
    typer.echo(f"  Status: {workflow['status']}")
    typer.echo(f"  Level: {workflow['approval_level']}/{workflow['max_approval_level']}")
    if workflow["status"] == "PENDING":
        typer.echo(f"  Next approver: {workflow['current_approver_id']}")


@expense_app.command("reject")
def expense_reject(
    workflow_id: Annotated[str, typer.Option("--id", help="Workflow ID")],
    approver: Annotated[str, typer.Option("--by", help="Rejecting user")],
    reason: Annotated[str, typer.Option("--reason", help="Rejection reason")],
    db: DbOption = None,
) -> None:
    """Reject an expense"""
    engine = get_engine(db)

    with domain_errors():
        workflow = engine.reject(workflow_id, approver, reason)

    typer.echo(f"✓ Rejected: {workflow['workflow_id']}")
    typer.echo(f"  Reason: {workflow['rejection_reason']}")


@expense_app.command("escalate")
def expense_escalate(
    workflow_id: Annotated[str, typer.Option("--id", help="Workflow ID")],
    to: Annotated[
        Optional[str],
        typer.Option("--to", help="New approver (directory lookup if omitted)"),
    ] = None,
    actor: Annotated[str, typer.Option("--by", help="Acting user")] = "system",
    reason: Annotated[str, typer.Option("--reason", help="Escalation reason")] = "",
    db: DbOption = None,
) -> None:
    """Escalate a workflow to a higher approver"""
    engine = get_engine(db)

    with domain_errors():
        workflow = engine.escalate(workflow_id, escalated_to=to, actor_id=actor, reason=reason)

    typer.echo(f"✓ Escalated: {workflow['workflow_id']}")
    typer.echo(f"  Escalated to: {workflow['escalated_to']}")
    typer.echo(f"  Escalation level: {workflow['escalation_level']}")
    typer.echo(f"  New deadline: {workflow['deadline']}")


@expense_app.command("cancel")
def expense_cancel(
    workflow_id: Annotated[str, typer.Option("--id", help="Workflow ID")],
    actor: Annotated[str, typer.Option("--by", help="Submitter or admin")],
    reason: Annotated[str, typer.Option("--reason", help="Cancellation reason")] = "",
    db: DbOption = None,
) -> None:
    """Cancel a pending workflow"""
    engine = get_engine(db)

    with domain_errors():
        workflow = engine.cancel(workflow_id, actor, reason=reason)

    typer.echo(f"✓ Cancelled: {workflow['workflow_id']}")


@expense_app.command("comment")
def expense_comment(
    workflow_id: Annotated[str, typer.Option("--id", help="Workflow ID")],
    author: Annotated[str, typer.Option("--by", help="Comment author")],
    text: Annotated[str, typer.Option("--text", help="Comment text")],
    db: DbOption = None,
) -> None:
    """Add a comment to a workflow"""
    engine = get_engine(db)

    with domain_errors():
        engine.add_comment(workflow_id, author, text)

    typer.echo(f"✓ Comment added to {workflow_id}")


@expense_app.command("reverse")
def expense_reverse(
    workflow_id: Annotated[str, typer.Option("--id", help="Workflow ID")],
    admin: Annotated[str, typer.Option("--by", help="Administrator")],
    reason: Annotated[str, typer.Option("--reason", help="Reversal reason")],
    db: DbOption = None,
) -> None:
    """Reverse an approval and credit the budget back"""
    engine = get_engine(db)

    with domain_errors():
        workflow = engine.reverse_approval(workflow_id, admin, reason)

    typer.echo(f"✓ Reversed approval: {workflow['workflow_id']}")
    typer.echo(f"  Reversed at: {workflow['reversed_at']}")


@expense_app.command("show")
def expense_show(
    workflow_id: Annotated[str, typer.Option("--id", help="Workflow ID")],
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show workflow details and comments"""
    engine = get_engine(db)

    workflow = engine.get_workflow(workflow_id)
    if not workflow:
        typer.echo(f"Error: Workflow not found: {workflow_id}", err=True)
        raise typer.Exit(1)

    comments = engine.get_comments(workflow_id)

    if json_output:
        echo_json(
            {
                "workflow": workflow,
                "budget": engine.linked_budget(workflow_id),
                "comments": [c.model_dump(mode="json") for c in comments],
            }
        )
        return

    typer.echo(f"\nWorkflow: {workflow['workflow_id']}")
    typer.echo(f"  Expense: {workflow['expense_id']}")
    typer.echo(f"  Submitted by: {workflow['submitted_by']}")
    typer.echo(f"  Amount: {workflow['expense_amount']} {workflow['currency']}")
    typer.echo(f"  Status: {workflow['status']}")
    typer.echo(f"  Level: {workflow['approval_level']}/{workflow['max_approval_level']}")
    typer.echo(f"  Approver: {workflow['current_approver_id']}")
    typer.echo(f"  Deadline: {workflow['deadline']}")
    if workflow["escalation_level"]:
        typer.echo(f"  Escalations: {workflow['escalation_level']}")
    if workflow["fully_escalated"]:
        typer.echo("  ⚠️  No escalation target left")
    if workflow["budget_id"]:
        typer.echo(f"  Budget: {workflow['budget_id']}")

    if workflow["approval_history"]:
        typer.echo("\n  Approvals:")
        for step in workflow["approval_history"]:
            typer.echo(f"    Level {step['level']}: {step['approver_id']} ({step['approved_at']})")

    if comments:
        typer.echo(f"\n  Comments ({len(comments)}):")
        for comment in comments:
            typer.echo(f"    [{comment.comment_type.value}] {comment.author_id}: {comment.text}")


@expense_app.command("list")
def expense_list(
    status: Annotated[
        Optional[str],
        typer.Option("--status", help="Filter by status (PENDING, APPROVED, ...)"),
    ] = None,
    approver: Annotated[
        Optional[str],
        typer.Option("--approver", help="Pending workflows waiting on this approver"),
    ] = None,
    overdue: Annotated[bool, typer.Option("--overdue", help="Only overdue workflows")] = False,
    db: DbOption = None,
) -> None:
    """List approval workflows"""
    engine = get_engine(db)

    with domain_errors():
        if overdue:
            workflows = engine.list_overdue()
        else:
            workflows = engine.list_workflows(
                status=status.upper() if status else None, approver_id=approver
            )

    if not workflows:
        typer.echo("No workflows")
        return

    typer.echo(f"Workflows ({len(workflows)}):")
    for workflow in workflows:
        typer.echo(
            f"  {workflow['workflow_id']}: [{workflow['status']}] "
            f"{workflow['expense_amount']} {workflow['currency']} - "
            f"approver {workflow['current_approver_id']}"
        )


# Scanner & monitoring


@app.command()
def scan(db: DbOption = None) -> None:
    """Run one escalation sweep over overdue workflows"""
    engine = get_engine(db)

    result = engine.scan()

    typer.echo(f"✓ Scan completed: {result.scan_id}")
    typer.echo(f"  Escalated: {len(result.escalated)}")
    typer.echo(f"  Reminded: {len(result.reminded)}")
    typer.echo(f"  Exhausted: {len(result.exhausted)}")
    typer.echo(f"  Auto-rejected: {len(result.auto_rejected)}")
    if result.failed:
        typer.echo(f"  ⚠️  Failed: {len(result.failed)}")
        for workflow_id, error in result.failed.items():
            typer.echo(f"    - {workflow_id}: {error}")


@app.command()
def health(
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show engine counts"""
    engine = get_engine(db)

    stats = engine.health()

    if json_output:
        echo_json(stats)
        return

    typer.echo("\nTrackify Health:")
    typer.echo(f"  Events: {stats['events']}")
    typer.echo(f"  Budgets: {stats['budgets']} ({stats['active_budgets']} active)")
    typer.echo(f"  Workflows: {stats['workflows']}")
    typer.echo(f"  Pending: {stats['pending_workflows']}")
    typer.echo(f"  Overdue: {stats['overdue_workflows']}")


def main() -> None:
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
