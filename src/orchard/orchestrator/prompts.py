"""Prompt builders for the manager conversation and worker subprocesses."""

from __future__ import annotations

from pathlib import Path

from orchard.issues.lifecycle import STATUS_ICONS
from orchard.issues.models import Issue
from orchard.orchestrator.models import WorkerResult, WorkerStatus
from orchard.orchestrator.outcome_classifier import BLOCKED_DIRECTIVE, COMPLETION_SENTINEL

FALLBACK_SYSTEM_PROMPT = "You are a helpful project manager agent."

DEFAULT_MANAGER_SYSTEM_PROMPT = """\
# Orchard Manager

You are the project manager for the git repository you are running in. You plan
work, delegate it to worker agents and integrate their results. You never write
project code yourself.

## Rules

- Delegate all implementation to workers with spawn_worker.
- Keep issues small: one focused change a worker can finish in a single session,
  with two or three acceptance criteria.
- Dependent issues run in sequence: merge the first before spawning the second,
  because worktrees branch from main.
- Only call review_diff or run_tests for an issue whose worker has finished.
- If a tool reports an error, explain it to the user instead of retrying it.
- Keep answers short.

## Workflow

1. Discuss the request with the user and clarify open points.
2. If specs/readme.md does not exist, create it with create_spec: project name,
   overview, tech stack and layout. The Spec Index section is generated for you.
3. Write a spec for the feature with create_spec.
4. Commit the spec files with commit_files so worker branches contain them.
5. Create an issue with create_issue that references the spec files.
6. Spawn a worker with spawn_worker. Workers run in the background; you will
   receive a notice when one finishes.
7. When a worker completes, call review_diff and run_tests.
8. Merge with merge_issue when tests pass; otherwise report to the user.

## Worker failures

Check worker_status, tell the user what went wrong and ask how to proceed.
Never delete an issue unless the user asks for it.

## Autonomy

In yolo mode act on your own. Otherwise the user confirms every spawn, merge,
commit and deletion.
"""

DEFAULT_MANAGER_KNOWLEDGE = """\
# Project Knowledge

## Specifications
(No specs registered yet.)

## Architecture Notes
(Not documented yet.)

## Decisions
(None yet.)
"""


def build_system_prompt(  # noqa: PLR0913
    *,
    template: str,
    knowledge: str,
    issues: list[Issue],
    yolo_mode: bool,
    test_command: str,
    build_command: str,
) -> str:
    """Compose the manager system prompt from instructions, knowledge and live state."""

    if issues:
        summary = "\n".join(
            f"- #{issue.id} {issue.title} [{issue.status.value}] ({issue.priority.value})"
            for issue in issues
        )
    else:
        summary = "No issues yet."
    return "\n".join(
        [
            template.strip() or FALLBACK_SYSTEM_PROMPT,
            "",
            "## Project Knowledge",
            knowledge.strip(),
            "",
            "## Current Issues",
            summary,
            "",
            "## Configuration",
            f"- Yolo mode: {'ON' if yolo_mode else 'OFF'}",
            f"- Test command: {test_command}",
            f"- Build command: {build_command}",
        ],
    )


def build_worker_prompt(
    *,
    issue: Issue,
    project_root: Path,
    record_path: Path,
    test_command: str,
) -> str:
    """Task context piped to a worker on stdin."""

    lines = [
        f"# Task: {issue.title}",
        "",
        "## Issue",
        f"Issue #{issue.id}: {issue.title}",
        f"Priority: {issue.priority.value}",
        "",
    ]
    if issue.specs:
        lines.extend(["## Relevant Specs", ""])
        for spec in issue.specs:
            spec_path = project_root / spec
            try:
                content = spec_path.read_text("utf-8")
            except OSError:
                lines.extend([f"### {spec} (not found)", ""])
                continue
            lines.extend([f"### {spec}", "```", content.rstrip(), "```", ""])

    lines.extend(["## Description", "", issue.description, ""])
    if issue.acceptance_criteria:
        lines.extend(["## Acceptance Criteria", "", *issue.acceptance_criteria, ""])

    lines.extend(
        [
            "## Instructions",
            "",
            "1. Implement the changes described above in this worktree.",
            f"2. Run `{test_command}` and make sure it passes.",
            "3. Commit your changes with a descriptive message.",
            f"4. When finished, append the exact text {COMPLETION_SENTINEL} to {record_path}",
            f"5. If you cannot proceed, append `{BLOCKED_DIRECTIVE} <reason>` to that file\n"
            "   instead.",
            "",
            "## Constraints",
            "",
            "- Keep changes focused on this issue.",
            "- Follow the existing code conventions.",
            "",
        ],
    )
    return "\n".join(lines)


def build_completion_notice(result: WorkerResult, *, tail_output: str) -> str:
    """Synthetic turn telling the manager that a worker finished."""

    if result.status == WorkerStatus.COMPLETED:
        headline = f"Worker for issue #{result.issue_id} completed"
        if not result.confirmed:
            headline += " without confirming completion"
        follow_up = (
            "Review the diff with review_diff, run the tests with run_tests, "
            "and merge with merge_issue if everything passes."
        )
    elif result.status == WorkerStatus.BLOCKED:
        headline = f"Worker for issue #{result.issue_id} is blocked"
        follow_up = "Explain the blocker to the user and ask how to proceed."
    else:
        headline = f"Worker for issue #{result.issue_id} failed"
        follow_up = "Tell the user what went wrong and ask how to proceed."

    return "\n".join(
        [
            f"[System notice] {headline} after {result.elapsed}.",
            result.message,
            "",
            "Recent output:",
            tail_output.strip() or "No output captured.",
            "",
            follow_up,
        ],
    )


def format_issue_line(issue: Issue) -> str:
    return (
        f"{STATUS_ICONS[issue.status]} #{issue.id} {issue.title} "
        f"[{issue.status.value}] ({issue.priority.value})"
    )
