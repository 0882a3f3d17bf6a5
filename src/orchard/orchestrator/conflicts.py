"""Advisory detection of file-path overlap between concurrently running issues."""

from __future__ import annotations

import posixpath
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from orchard.issues.models import Issue

_URL = re.compile(r"\b[a-z][a-z0-9+.-]*://\S+", re.IGNORECASE)
_PATH_TOKEN = re.compile(r"(?<![\w/.-])(?:\./)?[\w.-]+(?:/[\w.-]+)+/?")


@dataclass(slots=True)
class IssueConflict:
    issue_id: str
    other_issue_id: str
    shared_paths: list[str] = field(default_factory=list)


def extract_paths(text: str) -> set[str]:
    """Find path-shaped substrings and normalize them to their directory."""

    tokens: set[str] = set()
    for match in _PATH_TOKEN.finditer(_URL.sub(" ", text)):
        raw = match.group(0).rstrip(".")
        if raw.startswith("./"):
            raw = raw[2:]
        raw = raw.rstrip("/")
        # a dotted last segment names a file, anything else is already a directory
        if "." in posixpath.basename(raw):
            directory = posixpath.dirname(raw)
        else:
            directory = raw
        if directory and directory not in {".", ".."}:
            tokens.add(directory)
    return tokens


def issue_path_tokens(issue: Issue) -> set[str]:
    text = "\n".join([issue.description, *issue.acceptance_criteria])
    tokens = extract_paths(text)
    tokens.update(spec.strip().rstrip("/") for spec in issue.specs if spec.strip())
    return tokens


def paths_overlap(left: str, right: str) -> bool:
    """Whether one path equals or contains the other, compared by whole segments."""

    return left == right or right.startswith(f"{left}/") or left.startswith(f"{right}/")


def find_conflicts(issue: Issue, running: Iterable[Issue]) -> list[IssueConflict]:
    tokens = issue_path_tokens(issue)
    conflicts: list[IssueConflict] = []
    if not tokens:
        return conflicts
    for other in running:
        if other.id == issue.id:
            continue
        other_tokens = issue_path_tokens(other)
        shared = sorted(
            {
                min(token, other_token, key=len)
                for token in tokens
                for other_token in other_tokens
                if paths_overlap(token, other_token)
            },
        )
        if shared:
            conflicts.append(
                IssueConflict(issue_id=issue.id, other_issue_id=other.id, shared_paths=shared),
            )
    return conflicts


def format_conflict_warning(conflicts: list[IssueConflict]) -> str:
    lines = ["Warning: potential file conflicts with running workers:"]
    lines.extend(
        f"  #{conflict.issue_id} and #{conflict.other_issue_id} both touch "
        f"{', '.join(conflict.shared_paths)}"
        for conflict in conflicts
    )
    return "\n".join(lines)
