from __future__ import annotations

from pathlib import Path

import allure
import pytest

from orchard.issues import (
    InvalidTransitionError,
    IssuePriority,
    IssueStatus,
    IssueStore,
    can_transition,
)
from orchard.issues.records import parse_issue, serialize_issue, slugify

pytestmark = [
    allure.epic("Issue Tracking"),
    allure.feature("Issue Store & Lifecycle"),
]


def test_create_assigns_monotonic_padded_ids(store: IssueStore) -> None:
    first = store.create("Add login form", "Render a login form.")
    second = store.create("Add logout", "Clear the session.", priority=IssuePriority.HIGH)

    assert first.id == "001"
    assert second.id == "002"
    assert first.status == IssueStatus.OPEN
    assert first.branch == "orchard/001-add-login-form"
    assert store.record_path(first).name == "001-add-login-form.md"
    assert store.record_path(first).exists()


def test_ids_are_not_reused_after_delete_of_older_issue(store: IssueStore) -> None:
    store.create("One", "first")
    second = store.create("Two", "second")
    store.delete("001")

    third = store.create("Three", "third")

    assert third.id == str(int(second.id) + 1).zfill(3)


def test_get_accepts_short_and_hash_prefixed_ids(store: IssueStore) -> None:
    issue = store.create("Fix parser", "Handle empty input.")

    assert store.get("1") == store.get("#1") == store.get(issue.id)
    assert store.get("42") is None


def test_record_round_trips_through_markdown(store: IssueStore) -> None:
    issue = store.create(
        "Add auth middleware",
        "Protect /api routes.\n\nUse src/auth/middleware.py.",
        specs=["specs/auth.md"],
        priority=IssuePriority.LOW,
        acceptance_criteria=["Unauthenticated requests get 401", "- [x] Tokens are validated"],
    )
    store.append_agent_log(issue.id, "manager", "Spawned worker.")

    loaded = store.get(issue.id)

    assert loaded is not None
    assert loaded.title == "Add auth middleware"
    assert loaded.slug == "add-auth-middleware"
    assert loaded.priority == IssuePriority.LOW
    assert loaded.specs == ["specs/auth.md"]
    assert loaded.description == "Protect /api routes.\n\nUse src/auth/middleware.py."
    assert loaded.acceptance_criteria == [
        "- [ ] Unauthenticated requests get 401",
        "- [x] Tokens are validated",
    ]
    assert [(entry.agent, entry.content) for entry in loaded.agent_log] == [
        ("manager", "Spawned worker."),
    ]


def test_list_filters_by_status(store: IssueStore) -> None:
    first = store.create("A", "a")
    store.create("B", "b")
    store.update_status(first.id, IssueStatus.IN_PROGRESS)

    assert [issue.id for issue in store.list(status=IssueStatus.IN_PROGRESS)] == [first.id]
    assert [issue.id for issue in store.list(status=IssueStatus.OPEN)] == ["002"]
    assert len(store.list()) == 2


def test_update_status_enforces_transition_graph(store: IssueStore) -> None:
    issue = store.create("A", "a")

    with pytest.raises(InvalidTransitionError, match="cannot move from open to done"):
        store.update_status(issue.id, IssueStatus.DONE)

    store.update_status(issue.id, IssueStatus.IN_PROGRESS)
    store.update_status(issue.id, IssueStatus.REVIEW)
    done = store.update_status(issue.id, IssueStatus.DONE)
    assert done is not None
    assert done.status == IssueStatus.DONE


def test_update_rejects_unknown_fields(store: IssueStore) -> None:
    issue = store.create("A", "a")

    with pytest.raises(ValueError, match="Unsupported issue fields: slug"):
        store.update(issue.id, slug="other")


def test_update_missing_issue_returns_none(store: IssueStore) -> None:
    assert store.update("999", priority=IssuePriority.HIGH) is None
    assert store.append_agent_log("999", "manager", "note") is None
    assert store.delete("999") is False


def test_subscribers_see_every_write_until_unsubscribed(store: IssueStore) -> None:
    seen: list[tuple[str, IssueStatus]] = []
    unsubscribe = store.subscribe(lambda issue: seen.append((issue.id, issue.status)))

    issue = store.create("A", "a")
    store.update_status(issue.id, IssueStatus.IN_PROGRESS)
    unsubscribe()
    store.update_status(issue.id, IssueStatus.REVIEW)

    assert seen == [("001", IssueStatus.OPEN), ("001", IssueStatus.IN_PROGRESS)]


def test_failing_subscriber_does_not_break_writes(store: IssueStore) -> None:
    def explode(_issue) -> None:
        raise RuntimeError("listener bug")

    store.subscribe(explode)
    issue = store.create("A", "a")

    assert store.get(issue.id) is not None


def test_list_on_missing_directory_is_empty(tmp_path: Path) -> None:
    assert IssueStore(tmp_path / "nothing-here").list() == []


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (IssueStatus.OPEN, IssueStatus.IN_PROGRESS, True),
        (IssueStatus.OPEN, IssueStatus.REVIEW, False),
        (IssueStatus.IN_PROGRESS, IssueStatus.OPEN, True),
        (IssueStatus.REVIEW, IssueStatus.IN_PROGRESS, True),
        (IssueStatus.BLOCKED, IssueStatus.DONE, False),
        (IssueStatus.DONE, IssueStatus.OPEN, True),
        (IssueStatus.DONE, IssueStatus.IN_PROGRESS, False),
    ],
)
def test_transition_graph(current: IssueStatus, target: IssueStatus, allowed: bool) -> None:
    assert can_transition(current, target) is allowed


def test_slugify_limits_length_and_strips_symbols() -> None:
    assert slugify("Fix: the *login* page!") == "fix-the-login-page"
    assert slugify("!!!") == "issue"
    assert len(slugify("word " * 30)) <= 40


def test_parse_tolerates_unknown_status_and_missing_fields() -> None:
    issue = parse_issue("# Legacy\n\n- **status**: archived\n", "007-legacy")

    assert issue.id == "007"
    assert issue.slug == "legacy"
    assert issue.status == IssueStatus.OPEN
    assert issue.priority == IssuePriority.MEDIUM
    assert issue.agent_log == []


def test_serialize_marks_plain_criteria_as_unchecked(store: IssueStore) -> None:
    issue = store.create("A", "a", acceptance_criteria=["works"])

    assert "- [ ] works" in serialize_issue(issue)
