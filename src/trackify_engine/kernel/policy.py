"""
Engine Policy - Tunable parameters for approvals, escalation and budgets

The EnginePolicy gathers every knob the engine reads at runtime: deadlines,
escalation limits, retry bounds and the budget maintenance windows. It is a
plain pydantic model, so a JSON file can supply overrides and bad values
fail loudly at load time.
"""

from decimal import Decimal
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, model_validator

from trackify_engine.kernel.errors import ConfigurationError


class EnginePolicy(BaseModel):
    """
    Runtime parameters for the approval and budget engine

    Defaults mirror the behaviour of the surrounding expense backend:
    80% budget alerts, a three-day approval window and a 15-minute
    escalation sweep.
    """

    policy_version: str = Field(
        default="1.0",
        description="Policy version for tracking changes over time",
    )

    # Budget ledger
    default_alert_threshold: Decimal = Field(
        default=Decimal("80"),
        ge=0,
        le=100,
        description="Alert threshold (percent used) for budgets created without one",
    )

    default_currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="Currency for budgets and expenses created without one",
    )

    expired_budget_grace_days: int = Field(
        default=30,
        ge=0,
        description="Days after end date before an expired budget is deactivated",
    )

    expiring_budget_warning_days: int = Field(
        default=7,
        ge=0,
        description="Window (days) for 'budget expiring soon' notifications",
    )

    # Approval workflow
    default_deadline_hours: int = Field(
        default=72,
        ge=1,
        description="Approval deadline for workflows submitted without one",
    )

    auto_approve_on_submit: bool = Field(
        default=True,
        description="Auto-approve eligible workflows immediately at submission",
    )

    auto_approval_note: str = Field(
        default="Auto-approved based on system rules",
        description="Approval notes recorded on auto-approved workflows",
    )

    admin_ids: list[str] = Field(
        default_factory=list,
        description="Users allowed to cancel any workflow and reverse approvals",
    )

    # Escalation
    max_escalation_level: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Maximum number of escalations per workflow",
    )

    escalation_extension_hours: int = Field(
        default=24,
        ge=1,
        description="New deadline (hours from escalation) given to the escalated approver",
    )

    auto_reject_when_exhausted: bool = Field(
        default=False,
        description="Reject overdue workflows with no escalation target left "
        "instead of flagging them",
    )

    scan_interval_seconds: int = Field(
        default=900,
        ge=1,
        description="Interval between escalation sweeps",
    )

    escalation_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Time limit for processing a single overdue workflow",
    )

    scan_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Worker threads used by the escalation sweep",
    )

    # Optimistic concurrency
    max_conflict_retries: int = Field(
        default=8,
        ge=1,
        le=100,
        description="Attempts before a stream version conflict surfaces as ConcurrencyConflict",
    )

    conflict_retry_min_wait_ms: int = Field(
        default=5,
        ge=0,
        description="Backoff base between conflict retries",
    )

    conflict_retry_max_wait_ms: int = Field(
        default=200,
        ge=0,
        description="Backoff ceiling between conflict retries",
    )

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "description": "Runtime parameters for expense approvals and budget ledgers"
        },
    }

    @model_validator(mode="after")
    def _check_wait_bounds(self) -> "EnginePolicy":
        if self.conflict_retry_max_wait_ms < self.conflict_retry_min_wait_ms:
            raise ValueError(
                "conflict_retry_max_wait_ms must be >= conflict_retry_min_wait_ms"
            )
        return self

    def is_admin(self, user_id: str | None) -> bool:
        """Check if user is listed as an engine administrator"""
        return user_id is not None and user_id in self.admin_ids

    @classmethod
    def from_file(cls, path: str | Path) -> "EnginePolicy":
        """
        Load a policy from a JSON file

        Raises:
            ConfigurationError: If the file is missing or fails validation
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Policy file not found: {path}")
        try:
            return cls.model_validate_json(path.read_text())
        except ValidationError as e:
            raise ConfigurationError(f"Invalid policy file {path}: {e}") from e


default_policy = EnginePolicy()
