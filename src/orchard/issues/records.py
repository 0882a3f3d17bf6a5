"""Human-readable markdown record format for issues."""

from __future__ import annotations

import re

from orchard.issues.models import AgentLogEntry, Issue, IssuePriority, IssueStatus

_TITLE_LINE = re.compile(r"^# (?P<title>.+)$")
_FIELD_LINE = re.compile(r"^- \*\*(?P<name>[a-z_]+)\*\*:[ \t]*(?P<value>.*)$")
_LOG_HEADER = re.compile(r"^### (?P<timestamp>.+) - (?P<agent>.+)$")
_RECORD_PREFIX = re.compile(r"^(?P<id>\d+)-")
_SLUG_STRIP = re.compile(r"[^a-z0-9]+")
SLUG_MAX_CHARS = 40


def slugify(title: str) -> str:
    """Build a filesystem and branch safe slug from an issue title."""

    slug = _SLUG_STRIP.sub("-", title.lower()).strip("-")
    return slug[:SLUG_MAX_CHARS].strip("-") or "issue"


def serialize_issue(issue: Issue) -> str:
    lines = [
        f"# {issue.title}",
        "",
        f"- **id**: {issue.id}",
        f"- **status**: {issue.status.value}",
        f"- **created**: {issue.created}",
        f"- **branch**: {issue.branch}",
        f"- **specs**: {', '.join(issue.specs)}",
        f"- **priority**: {issue.priority.value}",
        "",
        "## Description",
        "",
        issue.description,
        "",
        "## Acceptance Criteria",
        "",
    ]
    for criterion in issue.acceptance_criteria:
        lines.append(criterion if criterion.startswith("- [") else f"- [ ] {criterion}")
    lines.extend(["", "## Agent Log", ""])
    for entry in issue.agent_log:
        lines.append(f"### {entry.timestamp} - {entry.agent}")
        lines.append(entry.content)
        lines.append("")
    return "\n".join(lines)


def parse_issue(content: str, record_name: str) -> Issue:
    """Parse a markdown record; `record_name` is the `<id>-<slug>` file stem."""

    lines = content.splitlines()
    title = "Untitled"
    fields: dict[str, str] = {}
    for line in lines:
        if line.startswith("## "):
            break
        title_match = _TITLE_LINE.match(line)
        if title_match and title == "Untitled":
            title = title_match.group("title").strip()
            continue
        field_match = _FIELD_LINE.match(line)
        if field_match:
            fields[field_match.group("name")] = field_match.group("value").strip()

    prefix = _RECORD_PREFIX.match(record_name)
    issue_id = fields.get("id") or (prefix.group("id") if prefix else "000")
    slug = record_name[prefix.end() :] if prefix else record_name
    specs_raw = fields.get("specs", "")

    return Issue(
        id=issue_id,
        title=title,
        slug=slug,
        status=_parse_enum(IssueStatus, fields.get("status"), IssueStatus.OPEN),
        priority=_parse_enum(IssuePriority, fields.get("priority"), IssuePriority.MEDIUM),
        created=fields.get("created", ""),
        branch=fields.get("branch", ""),
        specs=[spec.strip() for spec in specs_raw.split(",") if spec.strip()],
        description="\n".join(_section(lines, "Description")).strip(),
        acceptance_criteria=[
            line.strip()
            for line in _section(lines, "Acceptance Criteria")
            if line.strip().startswith("- [")
        ],
        agent_log=_parse_agent_log(_section(lines, "Agent Log")),
    )


def _section(lines: list[str], heading: str) -> list[str]:
    marker = f"## {heading}"
    try:
        start = next(index for index, line in enumerate(lines) if line.strip() == marker)
    except StopIteration:
        return []
    body: list[str] = []
    for line in lines[start + 1 :]:
        if line.startswith("## "):
            break
        body.append(line)
    return body


def _parse_agent_log(lines: list[str]) -> list[AgentLogEntry]:
    entries: list[AgentLogEntry] = []
    current: AgentLogEntry | None = None
    body: list[str] = []
    for line in lines:
        header = _LOG_HEADER.match(line)
        if header:
            if current is not None:
                current.content = "\n".join(body).strip()
                entries.append(current)
            current = AgentLogEntry(
                timestamp=header.group("timestamp"),
                agent=header.group("agent"),
                content="",
            )
            body = []
        elif current is not None:
            body.append(line)
    if current is not None:
        current.content = "\n".join(body).strip()
        entries.append(current)
    return entries


def _parse_enum(enum_type, raw: str | None, default):
    if not raw:
        return default
    try:
        return enum_type(raw.strip().lower())
    except ValueError:
        return default
