"""Filesystem layout of a managed project: init, spec files and safe path access."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from orchard.config import STATE_DIR_NAME, Settings
from orchard.orchestrator.prompts import DEFAULT_MANAGER_KNOWLEDGE, DEFAULT_MANAGER_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

SPEC_README = "readme.md"
SPEC_INDEX_HEADING = "## Spec Index"
KNOWLEDGE_FILE = "manager.md"
_HEADING = re.compile(r"^#\s+(?P<title>.+)$", re.MULTILINE)


class PathOutsideProjectError(ValueError):
    """Requested path escapes the directory it must stay in."""


@dataclass(slots=True)
class InitResult:
    created: list[Path] = field(default_factory=list)
    already_initialized: bool = False


def initialize_project(settings: Settings) -> InitResult:
    """Create state directories, default prompts and the `.gitignore` entry."""

    root = settings.project_root
    state_dir = settings.state_dir
    result = InitResult(already_initialized=state_dir.exists())

    for directory in (
        state_dir,
        state_dir / "issues",
        state_dir / "worktrees",
        root / settings.project.specs_dir,
    ):
        if not directory.exists():
            directory.mkdir(parents=True)
            result.created.append(directory)

    defaults = {
        root / settings.manager.system_prompt_file: DEFAULT_MANAGER_SYSTEM_PROMPT,
        state_dir / KNOWLEDGE_FILE: DEFAULT_MANAGER_KNOWLEDGE,
    }
    for path, content in defaults.items():
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, "utf-8")
            result.created.append(path)

    gitignore = root / ".gitignore"
    entry = f"{STATE_DIR_NAME}/"
    if gitignore.exists():
        existing = gitignore.read_text("utf-8")
        if STATE_DIR_NAME not in existing:
            gitignore.write_text(existing.rstrip() + f"\n{entry}\n", "utf-8")
    else:
        gitignore.write_text(f"{entry}\n", "utf-8")
        result.created.append(gitignore)

    logger.info("Initialized project at %s (%d paths created)", root, len(result.created))
    return result


def resolve_within(base: Path, relative: str) -> Path:
    """Resolve `relative` under `base`, rejecting traversal and absolute paths."""

    base_resolved = base.resolve()
    candidate = (base_resolved / relative).resolve()
    if not candidate.is_relative_to(base_resolved):
        raise PathOutsideProjectError(f"Path {relative!r} is outside {base_resolved}")
    return candidate


def list_spec_files(specs_dir: Path) -> list[str]:
    if not specs_dir.exists():
        return []
    return sorted(
        path.relative_to(specs_dir).as_posix() for path in specs_dir.rglob("*") if path.is_file()
    )


def write_spec(specs_dir: Path, filename: str, content: str) -> Path:
    """Write a spec file and refresh the index in the specs readme."""

    name = filename.strip()
    if not Path(name).suffix:
        name = f"{name}.md"
    path = resolve_within(specs_dir, name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content.rstrip() + "\n", "utf-8")
    update_spec_index(specs_dir)
    return path


def update_spec_index(specs_dir: Path) -> bool:
    """Regenerate the `## Spec Index` section of the specs readme if it exists."""

    readme = specs_dir / SPEC_README
    if not readme.exists():
        return False

    entries: list[str] = []
    for name in list_spec_files(specs_dir):
        if name == SPEC_README or not name.endswith(".md"):
            continue
        title = _spec_title(specs_dir / name)
        entries.append(f"- [{name}]({name})" + (f" - {title}" if title else ""))
    section = [SPEC_INDEX_HEADING, "", *(entries or ["(No specs yet.)"]), ""]

    lines = readme.read_text("utf-8").rstrip().splitlines()
    try:
        start = next(i for i, line in enumerate(lines) if line.strip() == SPEC_INDEX_HEADING)
    except StopIteration:
        updated = [*lines, "", *section]
    else:
        end = next(
            (i for i in range(start + 1, len(lines)) if lines[i].startswith("## ")),
            len(lines),
        )
        updated = [*lines[:start], *section, *lines[end:]]
    readme.write_text("\n".join(updated).rstrip() + "\n", "utf-8")
    return True


def _spec_title(path: Path) -> str:
    try:
        match = _HEADING.search(path.read_text("utf-8"))
    except OSError:
        return ""
    return match.group("title").strip() if match else ""
