"""
Escalation Scanner - Periodic sweep over overdue approvals

The scanner turns "overdue" (a query) into action, using the same
coordinator operations a human approver uses:
- escalation enabled: escalate to the team's next escalation target
- no target left, or escalation limit reached: flag fully_escalated and
  alert admins (or reject as the system actor when policy says so)
- escalation disabled, or already flagged: remind the current approver

Each workflow is processed in a worker thread with a time limit. A failure
or timeout is logged and counted; the workflow is simply picked up again
on the next sweep.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from functools import partial

from trackify_engine.approval.models import SYSTEM_ACTOR, ApprovalWorkflow
from trackify_engine.approval.projections import WorkflowRegistry
from trackify_engine.collaborators.directory import ApproverDirectory
from trackify_engine.collaborators.notifications import NotificationKind, Notifier, deliver
from trackify_engine.coordinator import BudgetWorkflowCoordinator
from trackify_engine.kernel.errors import OperationTimeout
from trackify_engine.kernel.ids import generate_id
from trackify_engine.kernel.logging import LogOperation, correlation_scope, get_logger
from trackify_engine.kernel.metrics import (
    escalation_outcomes_total,
    escalation_sweep_duration_seconds,
)
from trackify_engine.kernel.policy import EnginePolicy
from trackify_engine.kernel.time import TimeProvider
from trackify_engine.kernel.timeout import submit_in_context, wait_with_timeout

logger = get_logger(__name__)

DEADLINE_EXCEEDED_REASON = "Approval deadline exceeded"

ESCALATED = "escalated"
REMINDED = "reminded"
EXHAUSTED = "exhausted"
AUTO_REJECTED = "auto_rejected"
SKIPPED = "skipped"


class ScanResult:
    """
    Result of one escalation sweep

    Workflow ids per outcome; failures carry the error message.
    """

    def __init__(self, scan_id: str, scanned_at: datetime) -> None:
        self.scan_id = scan_id
        self.scanned_at = scanned_at
        self.escalated: list[str] = []
        self.reminded: list[str] = []
        self.exhausted: list[str] = []
        self.auto_rejected: list[str] = []
        self.skipped: list[str] = []
        self.failed: dict[str, str] = {}

    def record(self, outcome: str, workflow_id: str) -> None:
        getattr(self, outcome).append(workflow_id)

    @property
    def processed(self) -> int:
        return (
            len(self.escalated)
            + len(self.reminded)
            + len(self.exhausted)
            + len(self.auto_rejected)
            + len(self.skipped)
            + len(self.failed)
        )

    def summary(self) -> str:
        """Human-readable summary of the sweep"""
        return (
            f"Scan {self.scan_id} at {self.scanned_at}: "
            f"{len(self.escalated)} escalated, {len(self.reminded)} reminded, "
            f"{len(self.exhausted)} exhausted, {len(self.auto_rejected)} auto-rejected, "
            f"{len(self.failed)} failed"
        )


class EscalationScanner:
    """Finds overdue PENDING workflows and escalates, flags or reminds"""

    def __init__(
        self,
        coordinator: BudgetWorkflowCoordinator,
        workflow_registry: WorkflowRegistry,
        directory: ApproverDirectory,
        notifier: Notifier,
        time_provider: TimeProvider,
        policy: EnginePolicy,
    ) -> None:
        self.coordinator = coordinator
        self.workflow_registry = workflow_registry
        self.directory = directory
        self.notifier = notifier
        self.time_provider = time_provider
        self.policy = policy

    def sweep(self) -> ScanResult:
        """
        Process every overdue workflow once

        Returns:
            ScanResult with per-outcome workflow ids
        """
        now = self.time_provider.now()
        result = ScanResult(generate_id(), now)
        overdue = self.workflow_registry.list_overdue(now)

        start = time.perf_counter()
        with correlation_scope(result.scan_id), LogOperation(
            logger, "escalation_sweep", scan_id=result.scan_id, overdue=len(overdue)
        ):
            executor = ThreadPoolExecutor(
                max_workers=self.policy.scan_workers, thread_name_prefix="escalation"
            )
            try:
                # Everything is queued before the first wait, so up to
                # scan_workers workflows are handled at once
                futures = [
                    (
                        workflow.workflow_id,
                        submit_in_context(
                            executor, partial(self.process_workflow, workflow.workflow_id, now)
                        ),
                    )
                    for workflow in overdue
                ]
                for workflow_id, future in futures:
                    self._collect(workflow_id, future, result)
            finally:
                # A timed-out attempt may still be running; never wait for it
                executor.shutdown(wait=False, cancel_futures=True)
        escalation_sweep_duration_seconds.observe(time.perf_counter() - start)

        logger.info(
            "Escalation sweep finished",
            scan_id=result.scan_id,
            escalated=len(result.escalated),
            reminded=len(result.reminded),
            exhausted=len(result.exhausted),
            auto_rejected=len(result.auto_rejected),
            failed=len(result.failed),
        )
        return result

    def _collect(self, workflow_id: str, future: Future, result: ScanResult) -> None:
        try:
            outcome = wait_with_timeout(
                future,
                seconds=self.policy.escalation_timeout_seconds,
                operation_name=f"escalate {workflow_id}",
            )
        except OperationTimeout as e:
            escalation_outcomes_total.labels(outcome="timeout").inc()
            result.failed[workflow_id] = str(e)
            return
        except Exception as e:
            escalation_outcomes_total.labels(outcome="failed").inc()
            result.failed[workflow_id] = str(e)
            logger.error(
                "Escalation attempt failed",
                workflow_id=workflow_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        escalation_outcomes_total.labels(outcome=outcome).inc()
        result.record(outcome, workflow_id)

    def process_workflow(self, workflow_id: str, now: datetime) -> str:
        """
        Decide and apply the sweep action for one workflow

        Works on the replayed workflow, not the cached one, so a workflow
        approved since the overdue query is skipped.

        Returns:
            Outcome name
        """
        workflow = self.coordinator.load(workflow_id)
        if not workflow.is_overdue(now):
            return SKIPPED

        if not workflow.escalation_enabled or workflow.fully_escalated:
            self._remind(workflow, now)
            return REMINDED

        target = None
        if workflow.escalation_level < self.policy.max_escalation_level:
            target = self.directory.escalation_target(workflow.team_id, workflow.escalation_level)

        if target is not None:
            self.coordinator.escalate(
                workflow_id, target, actor_id=SYSTEM_ACTOR, reason=DEADLINE_EXCEEDED_REASON
            )
            return ESCALATED

        if self.policy.auto_reject_when_exhausted:
            self.coordinator.reject(workflow_id, SYSTEM_ACTOR, DEADLINE_EXCEEDED_REASON)
            return AUTO_REJECTED

        reason = (
            "maximum escalation level reached"
            if workflow.escalation_level >= self.policy.max_escalation_level
            else "no escalation target available"
        )
        self.coordinator.flag_escalation_exhausted(workflow_id, reason)
        return EXHAUSTED

    def _remind(self, workflow: ApprovalWorkflow, now: datetime) -> None:
        deliver(
            self.notifier,
            workflow.current_approver_id,
            NotificationKind.APPROVAL_REMINDER,
            {
                "workflow_id": workflow.workflow_id,
                "expense_id": workflow.expense_id,
                "deadline": workflow.deadline.isoformat() if workflow.deadline else None,
                "hours_overdue": round((now - workflow.deadline).total_seconds() / 3600, 1)
                if workflow.deadline
                else None,
                "priority": workflow.priority.value,
            },
        )

    def run_forever(self, stop_event: threading.Event) -> None:
        """
        Sweep every scan_interval_seconds until stop_event is set

        A failing sweep is logged; the loop keeps going.
        """
        logger.info(
            "Escalation scanner started", interval_seconds=self.policy.scan_interval_seconds
        )
        while not stop_event.is_set():
            try:
                self.sweep()
            except Exception as e:
                logger.error("Escalation sweep failed", error=str(e), exc_info=True)
            stop_event.wait(self.policy.scan_interval_seconds)
        logger.info("Escalation scanner stopped")
