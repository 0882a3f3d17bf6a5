from __future__ import annotations

import allure
import pytest

from orchard.issues import IssuePriority, IssueStatus
from orchard.orchestrator.tools import (
    DESTRUCTIVE_TOOLS,
    TOOL_DEFINITIONS,
    CommitFiles,
    CreateIssue,
    ListIssues,
    ListSpecs,
    Reprioritize,
    SpawnWorker,
    ToolInputError,
    UnknownToolError,
    WorkerStatusQuery,
    parse_tool_call,
    tool_signature,
)

pytestmark = [
    allure.epic("Manager Agent"),
    allure.feature("Tool Catalog"),
]


def test_catalog_names_are_unique_and_cover_destructive_tools() -> None:
    names = [tool.name for tool in TOOL_DEFINITIONS]

    assert len(names) == len(set(names)) == 13
    assert DESTRUCTIVE_TOOLS <= set(names)
    assert all(tool.input_schema["type"] == "object" for tool in TOOL_DEFINITIONS)


def test_every_catalog_tool_parses_with_minimal_input() -> None:
    minimal = {
        "create_issue": {"title": "t", "description": "d"},
        "reprioritize": {"issue_id": "1", "priority": "low"},
        "create_spec": {"filename": "a.md", "content": ""},
        "commit_files": {"files": ["specs/a.md"], "message": "Add spec"},
        "read_file": {"path": "README.md"},
        "list_issues": {},
        "list_specs": {},
        "worker_status": {},
    }

    for tool in TOOL_DEFINITIONS:
        parse_tool_call(tool.name, minimal.get(tool.name, {"issue_id": "001"}))


def test_create_issue_normalizes_lists_and_priority() -> None:
    call = parse_tool_call(
        "create_issue",
        {
            "title": "  Add login ",
            "description": "Form",
            "specs": "specs/auth.md",
            "priority": "HIGH",
            "acceptance_criteria": ["works", " ", "is fast"],
        },
    )

    assert call == CreateIssue(
        title="Add login",
        description="Form",
        specs=("specs/auth.md",),
        priority=IssuePriority.HIGH,
        acceptance_criteria=("works", "is fast"),
    )


def test_numeric_issue_ids_are_stringified() -> None:
    assert parse_tool_call("spawn_worker", {"issue_id": 7}) == SpawnWorker(issue_id="7")


def test_optional_filters() -> None:
    assert parse_tool_call("list_issues", {"status": "review"}) == ListIssues(
        status=IssueStatus.REVIEW,
    )
    assert parse_tool_call("list_issues", None) == ListIssues()
    assert parse_tool_call("list_specs", {}) == ListSpecs()
    assert parse_tool_call("worker_status", {"issue_id": "002"}) == WorkerStatusQuery("002")


@pytest.mark.parametrize(
    ("name", "raw_input", "message"),
    [
        ("spawn_worker", {}, "missing required field 'issue_id'"),
        ("create_issue", {"title": " ", "description": "d"}, "'title' must not be empty"),
        ("reprioritize", {"issue_id": "1", "priority": "urgent"}, "priority must be one of"),
        ("reprioritize", {"issue_id": "1"}, "missing required field 'priority'"),
        ("list_issues", {"status": "archived"}, "status must be one of"),
        ("commit_files", {"files": [], "message": "m"}, "at least one path"),
        ("read_file", {"path": ["a", "b"]}, "'path' must be a string"),
    ],
)
def test_invalid_input_is_rejected(name: str, raw_input: dict, message: str) -> None:
    with pytest.raises(ToolInputError, match=message):
        parse_tool_call(name, raw_input)


def test_unknown_tool() -> None:
    with pytest.raises(UnknownToolError, match="Unknown tool: rm_rf"):
        parse_tool_call("rm_rf", {})


def test_commit_and_reprioritize_variants() -> None:
    assert parse_tool_call(
        "commit_files",
        {"files": ["specs/a.md", "specs/readme.md"], "message": "Add specs"},
    ) == CommitFiles(files=("specs/a.md", "specs/readme.md"), message="Add specs")
    assert parse_tool_call("reprioritize", {"issue_id": "3", "priority": "low"}) == Reprioritize(
        issue_id="3",
        priority=IssuePriority.LOW,
    )


def test_tool_signature_ignores_key_order_but_not_call_order() -> None:
    first = tool_signature([("read_file", {"path": "a", "x": 1}), ("list_specs", None)])
    reordered_keys = tool_signature([("read_file", {"x": 1, "path": "a"}), ("list_specs", {})])
    swapped_calls = tool_signature([("list_specs", {}), ("read_file", {"path": "a", "x": 1})])

    assert first == reordered_keys
    assert first != swapped_calls
