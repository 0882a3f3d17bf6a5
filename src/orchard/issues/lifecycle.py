"""Issue status transition graph."""

from __future__ import annotations

from orchard.issues.models import IssueStatus

VALID_TRANSITIONS: dict[IssueStatus, frozenset[IssueStatus]] = {
    IssueStatus.OPEN: frozenset({IssueStatus.IN_PROGRESS, IssueStatus.BLOCKED}),
    IssueStatus.IN_PROGRESS: frozenset(
        {IssueStatus.REVIEW, IssueStatus.BLOCKED, IssueStatus.OPEN},
    ),
    IssueStatus.REVIEW: frozenset({IssueStatus.DONE, IssueStatus.IN_PROGRESS, IssueStatus.OPEN}),
    IssueStatus.BLOCKED: frozenset({IssueStatus.OPEN, IssueStatus.IN_PROGRESS}),
    # reopen
    IssueStatus.DONE: frozenset({IssueStatus.OPEN}),
}

STATUS_ICONS = {
    IssueStatus.OPEN: "○",
    IssueStatus.IN_PROGRESS: "●",
    IssueStatus.REVIEW: "◐",
    IssueStatus.DONE: "✓",
    IssueStatus.BLOCKED: "✗",
}


class InvalidTransitionError(ValueError):
    """Raised when a status change is not an edge of the transition graph."""

    def __init__(self, issue_id: str, current: IssueStatus, target: IssueStatus) -> None:
        super().__init__(
            f"Issue #{issue_id} cannot move from {current.value} to {target.value}.",
        )
        self.issue_id = issue_id
        self.current = current
        self.target = target


def can_transition(current: IssueStatus, target: IssueStatus) -> bool:
    """Return whether `current -> target` is an allowed transition."""

    return target in VALID_TRANSITIONS.get(current, frozenset())


def ensure_transition(issue_id: str, current: IssueStatus, target: IssueStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(issue_id, current, target)
