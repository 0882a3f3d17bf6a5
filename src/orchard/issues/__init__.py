"""Issue records, their lifecycle and the file-backed store."""

from orchard.issues.lifecycle import InvalidTransitionError, can_transition, ensure_transition
from orchard.issues.models import AgentLogEntry, Issue, IssuePriority, IssueStatus
from orchard.issues.store import IssueStore

__all__ = [
    "AgentLogEntry",
    "InvalidTransitionError",
    "Issue",
    "IssuePriority",
    "IssueStatus",
    "IssueStore",
    "can_transition",
    "ensure_transition",
]
