"""Domain models for tracked issues."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class IssueStatus(str, Enum):
    """Durable issue lifecycle states."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    BLOCKED = "blocked"
    DONE = "done"


class IssuePriority(str, Enum):
    """Scheduling priority; lower rank drains first."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    IssuePriority.HIGH: 0,
    IssuePriority.MEDIUM: 1,
    IssuePriority.LOW: 2,
}


@dataclass(slots=True)
class AgentLogEntry:
    """One append-only note written by the manager or a worker."""

    timestamp: str
    agent: str
    content: str


@dataclass(slots=True)
class Issue:
    """A unit of work implemented by exactly one worker at a time."""

    id: str
    title: str
    slug: str
    status: IssueStatus = IssueStatus.OPEN
    priority: IssuePriority = IssuePriority.MEDIUM
    created: str = ""
    branch: str = ""
    specs: list[str] = field(default_factory=list)
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    agent_log: list[AgentLogEntry] = field(default_factory=list)

    @property
    def record_name(self) -> str:
        return f"{self.id}-{self.slug}"
