"""Manager tool catalog and typed parsing of model-issued tool calls."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from orchard.issues.models import IssuePriority, IssueStatus
from orchard.orchestrator.backend import ToolDefinition


class UnknownToolError(LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolInputError(ValueError):
    """Model supplied arguments that do not fit the tool's schema."""


@dataclass(frozen=True, slots=True)
class CreateIssue:
    title: str
    description: str
    specs: tuple[str, ...] = ()
    priority: IssuePriority = IssuePriority.MEDIUM
    acceptance_criteria: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ListIssues:
    status: IssueStatus | None = None


@dataclass(frozen=True, slots=True)
class SpawnWorker:
    issue_id: str


@dataclass(frozen=True, slots=True)
class ReviewDiff:
    issue_id: str


@dataclass(frozen=True, slots=True)
class MergeIssue:
    issue_id: str


@dataclass(frozen=True, slots=True)
class RunTests:
    issue_id: str


@dataclass(frozen=True, slots=True)
class CreateSpec:
    filename: str
    content: str


@dataclass(frozen=True, slots=True)
class ListSpecs:
    pass


@dataclass(frozen=True, slots=True)
class WorkerStatusQuery:
    issue_id: str | None = None


@dataclass(frozen=True, slots=True)
class Reprioritize:
    issue_id: str
    priority: IssuePriority


@dataclass(frozen=True, slots=True)
class DeleteIssue:
    issue_id: str


@dataclass(frozen=True, slots=True)
class CommitFiles:
    files: tuple[str, ...]
    message: str


@dataclass(frozen=True, slots=True)
class ReadFile:
    path: str


ToolCall = (
    CreateIssue
    | ListIssues
    | SpawnWorker
    | ReviewDiff
    | MergeIssue
    | RunTests
    | CreateSpec
    | ListSpecs
    | WorkerStatusQuery
    | Reprioritize
    | DeleteIssue
    | CommitFiles
    | ReadFile
)

DESTRUCTIVE_TOOLS = frozenset({"spawn_worker", "merge_issue", "delete_issue", "commit_files"})

_ISSUE_ID_PROPERTY = {"type": "string", "description": 'Issue ID (e.g., "001")'}
_PRIORITIES = [priority.value for priority in IssuePriority]
_STATUSES = [status.value for status in IssueStatus]


def _issue_only_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {"issue_id": dict(_ISSUE_ID_PROPERTY)},
        "required": ["issue_id"],
    }


TOOL_DEFINITIONS: list[ToolDefinition] = [
    ToolDefinition(
        name="create_issue",
        description="Create a new issue in the tracker. Specs must reference existing spec files.",
        input_schema={
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Issue title"},
                "description": {"type": "string", "description": "Detailed description"},
                "specs": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Spec file paths (e.g., specs/auth-flow.md)",
                },
                "priority": {"type": "string", "enum": _PRIORITIES},
                "acceptance_criteria": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Acceptance criteria items",
                },
            },
            "required": ["title", "description"],
        },
    ),
    ToolDefinition(
        name="list_issues",
        description="List all issues, optionally filtered by status.",
        input_schema={
            "type": "object",
            "properties": {"status": {"type": "string", "enum": _STATUSES}},
        },
    ),
    ToolDefinition(
        name="spawn_worker",
        description=(
            "Start a worker on an open issue in its own git worktree. The worker runs "
            "asynchronously; wait for its completion notice before reviewing."
        ),
        input_schema=_issue_only_schema(),
    ),
    ToolDefinition(
        name="review_diff",
        description="Show the git diff of an issue worktree against the main branch.",
        input_schema=_issue_only_schema(),
    ),
    ToolDefinition(
        name="merge_issue",
        description="Merge a reviewed issue branch into main and clean up its worktree.",
        input_schema=_issue_only_schema(),
    ),
    ToolDefinition(
        name="run_tests",
        description="Run the configured test command in an issue worktree.",
        input_schema=_issue_only_schema(),
    ),
    ToolDefinition(
        name="create_spec",
        description=(
            "Create or update a spec file in the specs directory. The Spec Index section "
            "of specs/readme.md is maintained automatically."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "filename": {"type": "string", "description": "File name, e.g. auth-flow.md"},
                "content": {"type": "string", "description": "Markdown content"},
            },
            "required": ["filename", "content"],
        },
    ),
    ToolDefinition(
        name="list_specs",
        description="List existing spec files.",
        input_schema={"type": "object", "properties": {}},
    ),
    ToolDefinition(
        name="worker_status",
        description="Show a worker's status, elapsed time and recent output, or all workers.",
        input_schema={
            "type": "object",
            "properties": {"issue_id": dict(_ISSUE_ID_PROPERTY)},
        },
    ),
    ToolDefinition(
        name="reprioritize",
        description="Change an issue's priority; queued workers are re-sorted.",
        input_schema={
            "type": "object",
            "properties": {
                "issue_id": dict(_ISSUE_ID_PROPERTY),
                "priority": {"type": "string", "enum": _PRIORITIES},
            },
            "required": ["issue_id", "priority"],
        },
    ),
    ToolDefinition(
        name="delete_issue",
        description="Delete an issue, stopping its worker and removing its worktree and branch.",
        input_schema=_issue_only_schema(),
    ),
    ToolDefinition(
        name="commit_files",
        description="Stage and commit files in the main checkout. Commit specs before spawning.",
        input_schema={
            "type": "object",
            "properties": {
                "files": {"type": "array", "items": {"type": "string"}},
                "message": {"type": "string", "description": "Commit message"},
            },
            "required": ["files", "message"],
        },
    ),
    ToolDefinition(
        name="read_file",
        description="Read a file from the project.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to project root"},
            },
            "required": ["path"],
        },
    ),
]


def parse_tool_call(name: str, raw_input: dict[str, Any] | None) -> ToolCall:  # noqa: C901, PLR0911
    """Build the typed variant for `name` from loosely typed model input."""

    payload = raw_input or {}
    match name:
        case "create_issue":
            return CreateIssue(
                title=_required_str(payload, "title"),
                description=_required_str(payload, "description"),
                specs=_str_tuple(payload, "specs"),
                priority=_priority(payload.get("priority"), default=IssuePriority.MEDIUM),
                acceptance_criteria=_str_tuple(payload, "acceptance_criteria"),
            )
        case "list_issues":
            raw_status = payload.get("status")
            return ListIssues(status=_status(raw_status) if raw_status else None)
        case "spawn_worker":
            return SpawnWorker(issue_id=_required_str(payload, "issue_id"))
        case "review_diff":
            return ReviewDiff(issue_id=_required_str(payload, "issue_id"))
        case "merge_issue":
            return MergeIssue(issue_id=_required_str(payload, "issue_id"))
        case "run_tests":
            return RunTests(issue_id=_required_str(payload, "issue_id"))
        case "create_spec":
            return CreateSpec(
                filename=_required_str(payload, "filename"),
                content=_required_str(payload, "content", allow_empty=True),
            )
        case "list_specs":
            return ListSpecs()
        case "worker_status":
            issue_id = payload.get("issue_id")
            return WorkerStatusQuery(issue_id=str(issue_id).strip() if issue_id else None)
        case "reprioritize":
            return Reprioritize(
                issue_id=_required_str(payload, "issue_id"),
                priority=_priority(payload.get("priority")),
            )
        case "delete_issue":
            return DeleteIssue(issue_id=_required_str(payload, "issue_id"))
        case "commit_files":
            files = _str_tuple(payload, "files")
            if not files:
                raise ToolInputError("files must list at least one path")
            return CommitFiles(files=files, message=_required_str(payload, "message"))
        case "read_file":
            return ReadFile(path=_required_str(payload, "path"))
        case _:
            raise UnknownToolError(name)


def tool_signature(calls: list[tuple[str, dict[str, Any] | None]]) -> str:
    """Stable fingerprint of an ordered batch of tool calls."""

    return json.dumps(
        [[name, raw_input or {}] for name, raw_input in calls],
        sort_keys=True,
        default=str,
    )


def _required_str(payload: dict[str, Any], key: str, *, allow_empty: bool = False) -> str:
    value = payload.get(key)
    if value is None:
        raise ToolInputError(f"missing required field {key!r}")
    if isinstance(value, int | float) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        raise ToolInputError(f"{key!r} must be a string")
    if not allow_empty and not value.strip():
        raise ToolInputError(f"{key!r} must not be empty")
    return value if allow_empty else value.strip()


def _str_tuple(payload: dict[str, Any], key: str) -> tuple[str, ...]:
    value = payload.get(key)
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ToolInputError(f"{key!r} must be a list of strings")
    return tuple(str(item).strip() for item in value if str(item).strip())


def _priority(raw: object, default: IssuePriority | None = None) -> IssuePriority:
    if raw is None or raw == "":
        if default is None:
            raise ToolInputError("missing required field 'priority'")
        return default
    try:
        return IssuePriority(str(raw).strip().lower())
    except ValueError as error:
        raise ToolInputError(
            f"priority must be one of {', '.join(_PRIORITIES)}, got {raw!r}",
        ) from error


def _status(raw: object) -> IssueStatus:
    try:
        return IssueStatus(str(raw).strip().lower())
    except ValueError as error:
        raise ToolInputError(
            f"status must be one of {', '.join(_STATUSES)}, got {raw!r}",
        ) from error
