"""Domain models for the manager, its worker queue and worker outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from orchard.issues.models import IssuePriority


class WorkerStatus(str, Enum):
    """Worker subprocess lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in {WorkerStatus.COMPLETED, WorkerStatus.FAILED, WorkerStatus.BLOCKED}


@dataclass(slots=True)
class WorkerOutcome:
    """Classified terminal outcome of one worker run."""

    status: WorkerStatus
    message: str
    confirmed: bool = False
    matched_rule: str = ""


@dataclass(slots=True)
class WorkerResult:
    """Typed completion value handed from a worker to its supervisor."""

    issue_id: str
    status: WorkerStatus
    message: str
    confirmed: bool
    exit_code: int | None
    elapsed: str
    tail_output: str


@dataclass(slots=True)
class QueuedWorker:
    """Issue waiting for worker capacity."""

    issue_id: str
    priority: IssuePriority
    queued_at: datetime
    sequence: int

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority.rank, self.sequence)


class ManagerEventKind(str, Enum):
    """Events surfaced to the terminal while a turn runs."""

    TEXT = "text"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    WORKER_UPDATE = "worker_update"


@dataclass(slots=True)
class ManagerEvent:
    kind: ManagerEventKind
    text: str
    tool_name: str | None = None
    issue_id: str | None = None


@dataclass(slots=True)
class RecoveryReport:
    """Issues reset at startup because their worker did not survive a restart."""

    reset_issue_ids: list[str] = field(default_factory=list)
    lines: list[str] = field(default_factory=list)

    @property
    def recovered(self) -> bool:
        return bool(self.reset_issue_ids)
