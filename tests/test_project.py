from __future__ import annotations

from pathlib import Path

import allure
import pytest

from orchard.config import Settings
from orchard.project import (
    KNOWLEDGE_FILE,
    PathOutsideProjectError,
    initialize_project,
    list_spec_files,
    resolve_within,
    update_spec_index,
    write_spec,
)

pytestmark = [
    allure.epic("Project Layout"),
    allure.feature("Init & Specs"),
]


def test_initialize_creates_layout_once(settings: Settings) -> None:
    first = initialize_project(settings)

    root = settings.project_root
    assert first.already_initialized is False
    assert (root / ".orchard" / "issues").is_dir()
    assert (root / ".orchard" / "worktrees").is_dir()
    assert (root / "specs").is_dir()
    assert (root / settings.manager.system_prompt_file).read_text("utf-8").startswith("# Orchard")
    assert (settings.state_dir / KNOWLEDGE_FILE).exists()
    assert (root / ".gitignore").read_text("utf-8") == ".orchard/\n"

    second = initialize_project(settings)

    assert second.already_initialized is True
    assert second.created == []


def test_initialize_appends_to_existing_gitignore(settings: Settings) -> None:
    gitignore = settings.project_root / ".gitignore"
    gitignore.write_text("__pycache__/\n", "utf-8")

    initialize_project(settings)
    initialize_project(settings)

    assert gitignore.read_text("utf-8") == "__pycache__/\n.orchard/\n"


def test_initialize_keeps_customized_prompt(settings: Settings) -> None:
    prompt = settings.project_root / settings.manager.system_prompt_file
    prompt.parent.mkdir(parents=True)
    prompt.write_text("custom", "utf-8")

    initialize_project(settings)

    assert prompt.read_text("utf-8") == "custom"


def test_resolve_within_rejects_traversal(tmp_path: Path) -> None:
    assert resolve_within(tmp_path, "src/app.py") == tmp_path.resolve() / "src" / "app.py"
    with pytest.raises(PathOutsideProjectError):
        resolve_within(tmp_path, "../secrets.txt")
    with pytest.raises(PathOutsideProjectError):
        resolve_within(tmp_path, "/etc/passwd")


def test_write_spec_adds_extension_and_refreshes_index(tmp_path: Path) -> None:
    specs = tmp_path / "specs"
    specs.mkdir()
    (specs / "readme.md").write_text("# Project\n\nOverview.\n\n## Tech Stack\n\nPython\n", "utf-8")

    path = write_spec(specs, "auth-flow", "# Auth Flow\n\nLogin and logout.")
    write_spec(specs, "api/users.md", "# Users API\n")
    write_spec(specs, "notes.txt", "plain")

    assert path == (specs / "auth-flow.md").resolve()
    assert path.read_text("utf-8") == "# Auth Flow\n\nLogin and logout.\n"
    readme = (specs / "readme.md").read_text("utf-8")
    assert readme == (
        "# Project\n\nOverview.\n\n## Tech Stack\n\nPython\n\n"
        "## Spec Index\n\n"
        "- [api/users.md](api/users.md) - Users API\n"
        "- [auth-flow.md](auth-flow.md) - Auth Flow\n"
    )


def test_spec_index_section_is_replaced_in_place(tmp_path: Path) -> None:
    specs = tmp_path / "specs"
    specs.mkdir()
    (specs / "readme.md").write_text(
        "# Project\n\n## Spec Index\n\n- stale\n\n## Layout\n\nsrc/\n",
        "utf-8",
    )
    (specs / "db.md").write_text("no heading", "utf-8")

    assert update_spec_index(specs) is True

    assert (specs / "readme.md").read_text("utf-8") == (
        "# Project\n\n## Spec Index\n\n- [db.md](db.md)\n\n## Layout\n\nsrc/\n"
    )


def test_spec_index_requires_readme(tmp_path: Path) -> None:
    specs = tmp_path / "specs"
    write_spec(specs, "a.md", "# A")

    assert update_spec_index(specs) is False
    assert not (specs / "readme.md").exists()
    assert list_spec_files(specs) == ["a.md"]


def test_write_spec_rejects_escape(tmp_path: Path) -> None:
    with pytest.raises(PathOutsideProjectError):
        write_spec(tmp_path / "specs", "../../evil.md", "x")


def test_list_spec_files_on_missing_dir(tmp_path: Path) -> None:
    assert list_spec_files(tmp_path / "missing") == []
