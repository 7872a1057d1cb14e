"""
Approver Directory - Who approves and who is escalated to

Team and role management live outside the engine; it only asks two
questions: who approves the next level, and who takes over an overdue
workflow. StaticApproverDirectory answers them from a JSON document:

    {
        "teams": {
            "team-eng": {"approvers": ["lead", "director"], "escalation": ["vp"]}
        },
        "admins": ["admin"],
        "fallback_admin": "admin"
    }
"""

from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from trackify_engine.kernel.errors import ConfigurationError


class ApproverDirectory(Protocol):
    """Approver resolution supplied by team/role management"""

    def next_approver(self, team_id: str | None, current_level: int) -> str | None:
        """Approver for level current_level + 1, or None"""
        ...

    def escalation_target(self, team_id: str | None, current_escalation_level: int) -> str | None:
        """Who takes over after escalation number current_escalation_level + 1, or None"""
        ...

    def is_admin(self, user_id: str | None) -> bool:
        ...

    def admin_ids(self) -> list[str]:
        ...


class TeamChain(BaseModel):
    approvers: list[str] = Field(default_factory=list)
    escalation: list[str] = Field(default_factory=list)


class DirectoryConfig(BaseModel):
    teams: dict[str, TeamChain] = Field(default_factory=dict)
    admins: list[str] = Field(default_factory=list)
    fallback_admin: str | None = None


class StaticApproverDirectory:
    """
    Directory backed by a fixed configuration

    Approver chains are indexed by level: approvers[0] approves level 1.
    Escalation chains are indexed the same way; once a team's chain is
    used up, the fallback admin takes over exactly once.
    """

    def __init__(self, config: DirectoryConfig | None = None) -> None:
        self.config = config or DirectoryConfig()

    @classmethod
    def from_dict(cls, data: dict) -> "StaticApproverDirectory":
        try:
            return cls(DirectoryConfig.model_validate(data))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid approver directory: {e}") from e

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticApproverDirectory":
        """
        Load the directory from a JSON file

        Raises:
            ConfigurationError: If the file is missing or malformed
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Approver directory file not found: {path}")
        try:
            return cls(DirectoryConfig.model_validate_json(path.read_text()))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid approver directory {path}: {e}") from e

    def _chain(self, team_id: str | None) -> TeamChain:
        if team_id is None:
            return TeamChain()
        return self.config.teams.get(team_id, TeamChain())

    def next_approver(self, team_id: str | None, current_level: int) -> str | None:
        approvers = self._chain(team_id).approvers
        if 0 <= current_level < len(approvers):
            return approvers[current_level]
        return None

    def escalation_target(self, team_id: str | None, current_escalation_level: int) -> str | None:
        escalation = self._chain(team_id).escalation
        if 0 <= current_escalation_level < len(escalation):
            return escalation[current_escalation_level]
        if current_escalation_level == len(escalation):
            return self.config.fallback_admin
        return None

    def is_admin(self, user_id: str | None) -> bool:
        return user_id is not None and user_id in self.config.admins

    def admin_ids(self) -> list[str]:
        return list(self.config.admins)
