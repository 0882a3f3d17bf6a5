"""File-backed issue store: one markdown record per issue."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

from orchard.issues.lifecycle import ensure_transition
from orchard.issues.models import AgentLogEntry, Issue, IssuePriority, IssueStatus
from orchard.issues.records import parse_issue, serialize_issue, slugify
from orchard.storage.common import utc_now

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "orchard/"
ISSUE_ID_WIDTH = 3
_UPDATABLE_FIELDS = frozenset(
    {"title", "description", "priority", "specs", "acceptance_criteria", "status"},
)

IssueListener = Callable[[Issue], None]


def branch_name(issue_id: str, slug: str) -> str:
    return f"{BRANCH_PREFIX}{issue_id}-{slug}"


class IssueStore:
    """CRUD facade over `<issues_dir>/<id>-<slug>.md` records."""

    def __init__(self, issues_dir: Path) -> None:
        self.issues_dir = issues_dir
        self._listeners: list[IssueListener] = []

    def subscribe(self, listener: IssueListener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""

        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def create(  # noqa: PLR0913
        self,
        title: str,
        description: str,
        specs: list[str] | None = None,
        priority: IssuePriority = IssuePriority.MEDIUM,
        acceptance_criteria: list[str] | None = None,
    ) -> Issue:
        """Create an open issue with the next monotonic id."""

        issue_id = self._next_id()
        slug = slugify(title)
        issue = Issue(
            id=issue_id,
            title=title.strip(),
            slug=slug,
            status=IssueStatus.OPEN,
            priority=priority,
            created=utc_now().isoformat(),
            branch=branch_name(issue_id, slug),
            specs=list(specs or []),
            description=description.strip(),
            acceptance_criteria=list(acceptance_criteria or []),
        )
        self._write(issue)
        logger.info("Created issue #%s: %s", issue_id, issue.title)
        return issue

    def list(self, status: IssueStatus | None = None) -> list[Issue]:
        if not self.issues_dir.exists():
            return []
        issues: list[Issue] = []
        for path in sorted(self.issues_dir.glob("*.md")):
            issue = self._read(path)
            if status is not None and issue.status != status:
                continue
            issues.append(issue)
        return issues

    def get(self, issue_id: str) -> Issue | None:
        path = self._find_path(issue_id)
        if path is None:
            return None
        return self._read(path)

    def update(self, issue_id: str, **fields: object) -> Issue | None:
        """Replace the given fields; status changes are validated against the graph."""

        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported issue fields: {', '.join(sorted(unknown))}")
        issue = self.get(issue_id)
        if issue is None:
            return None
        status = fields.get("status")
        if isinstance(status, IssueStatus) and status != issue.status:
            ensure_transition(issue.id, issue.status, status)
        updated = replace(issue, **fields)
        self._write(updated)
        logger.info("Updated issue #%s: %s", issue_id, ", ".join(sorted(fields)))
        return updated

    def update_status(self, issue_id: str, status: IssueStatus) -> Issue | None:
        return self.update(issue_id, status=status)

    def append_agent_log(self, issue_id: str, agent: str, content: str) -> Issue | None:
        issue = self.get(issue_id)
        if issue is None:
            return None
        issue.agent_log.append(
            AgentLogEntry(timestamp=utc_now().isoformat(), agent=agent, content=content.strip()),
        )
        self._write(issue)
        return issue

    def delete(self, issue_id: str) -> bool:
        path = self._find_path(issue_id)
        if path is None:
            return False
        path.unlink()
        logger.info("Deleted issue #%s", issue_id)
        return True

    def record_path(self, issue: Issue) -> Path:
        return self.issues_dir / f"{issue.record_name}.md"

    def _next_id(self) -> str:
        existing = [int(issue.id) for issue in self.list() if issue.id.isdigit()]
        next_id = max(existing, default=0) + 1
        return str(next_id).zfill(ISSUE_ID_WIDTH)

    def _find_path(self, issue_id: str) -> Path | None:
        if not self.issues_dir.exists():
            return None
        normalized = _normalize_id(issue_id)
        matches = sorted(self.issues_dir.glob(f"{normalized}-*.md"))
        return matches[0] if matches else None

    def _read(self, path: Path) -> Issue:
        return parse_issue(path.read_text("utf-8"), path.stem)

    def _write(self, issue: Issue) -> None:
        path = self.record_path(issue)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(serialize_issue(issue), "utf-8")
        for listener in list(self._listeners):
            try:
                listener(issue)
            except Exception:  # noqa: BLE001
                logger.exception("Issue change listener failed for #%s", issue.id)


def _normalize_id(issue_id: str) -> str:
    """Accept `7`, `#7` and `007` for the same record."""

    stripped = issue_id.strip().lstrip("#")
    if stripped.isdigit():
        return stripped.zfill(ISSUE_ID_WIDTH)
    return stripped
