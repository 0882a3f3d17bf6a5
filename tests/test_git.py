from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import allure
import pytest

from orchard.vcs.git import GitCoordinator, VcsError, parse_worktree_list

pytestmark = [
    allure.epic("Version Control"),
    allure.feature("Worktrees & Merges"),
]

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


@pytest.fixture()
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for variable in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(variable, "Orchard Tests")
    for variable in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(variable, "tests@example.com")
    root = tmp_path / "project"
    root.mkdir()
    _git(root, "init", "--quiet")
    _git(root, "checkout", "--quiet", "-b", "main")
    (root / ".gitignore").write_text(".orchard/\n", "utf-8")
    (root / "app.py").write_text("print('v1')\n", "utf-8")
    _git(root, "add", ".")
    _git(root, "commit", "--quiet", "-m", "Initial commit")
    return root


def test_parse_worktree_list_keeps_orchard_branches() -> None:
    porcelain = (
        "worktree /repo\nHEAD 1111111\nbranch refs/heads/main\n\n"
        "worktree /repo/.orchard/worktrees/004-add-login\nHEAD 2222222\n"
        "branch refs/heads/orchard/004-add-login\n\n"
        "worktree /tmp/detached\nHEAD 3333333\ndetached\n"
    )

    worktrees = parse_worktree_list(porcelain)

    assert len(worktrees) == 1
    assert worktrees[0].issue_id == "004"
    assert worktrees[0].branch == "orchard/004-add-login"
    assert worktrees[0].path == Path("/repo/.orchard/worktrees/004-add-login")
    assert worktrees[0].commit == "2222222"


def test_parse_worktree_list_on_empty_output() -> None:
    assert parse_worktree_list("") == []


@requires_git
async def test_is_repository(repo: Path, tmp_path: Path) -> None:
    outside = tmp_path / "plain"
    outside.mkdir()

    assert await GitCoordinator(repo).is_repository() is True
    assert await GitCoordinator(outside).is_repository() is False


@requires_git
async def test_worktree_lifecycle_and_merge(repo: Path) -> None:
    vcs = GitCoordinator(repo)

    info = await vcs.create_worktree("001", "add-login")
    again = await vcs.create_worktree("001", "add-login")

    assert info.branch == "orchard/001-add-login"
    assert info.path == repo / ".orchard" / "worktrees" / "001-add-login"
    assert again.path.resolve() == info.path.resolve()
    listed = await vcs.list_worktrees()
    assert [worktree.issue_id for worktree in listed] == ["001"]

    (info.path / "app.py").write_text("print('v2')\n", "utf-8")
    uncommitted = await vcs.get_diff(info.path)
    assert "+print('v2')" in uncommitted

    _git(info.path, "commit", "--quiet", "-am", "Update app")
    assert "+print('v2')" in await vcs.get_diff(info.path)

    merged = await vcs.merge("001", "add-login")
    assert merged.success is True
    assert merged.message == "Merged orchard/001-add-login to main"
    assert (repo / "app.py").read_text("utf-8") == "print('v2')\n"

    await vcs.remove_worktree("001", "add-login")
    assert await vcs.list_worktrees() == []
    assert "orchard/001-add-login" not in _git(repo, "branch", "--list")


@requires_git
async def test_conflicting_merge_is_aborted(repo: Path) -> None:
    vcs = GitCoordinator(repo)
    info = await vcs.create_worktree("002", "rewrite")
    (info.path / "app.py").write_text("print('branch')\n", "utf-8")
    _git(info.path, "commit", "--quiet", "-am", "Branch change")
    (repo / "app.py").write_text("print('main')\n", "utf-8")
    _git(repo, "commit", "--quiet", "-am", "Main change")

    result = await vcs.merge("002", "rewrite")

    assert result.success is False
    assert result.message
    assert _git(repo, "status", "--porcelain") == ""
    assert (repo / "app.py").read_text("utf-8") == "print('main')\n"


@requires_git
async def test_commit_stages_only_given_files(repo: Path) -> None:
    vcs = GitCoordinator(repo)
    (repo / "specs").mkdir()
    (repo / "specs" / "auth.md").write_text("# Auth\n", "utf-8")
    (repo / "scratch.txt").write_text("not committed\n", "utf-8")

    short_hash = await vcs.commit(["specs/auth.md"], "Add auth spec")

    assert short_hash == _git(repo, "rev-parse", "--short", "HEAD").strip()
    assert _git(repo, "log", "-1", "--format=%s").strip() == "Add auth spec"
    assert "?? scratch.txt" in _git(repo, "status", "--porcelain")


@requires_git
async def test_commit_without_files_is_rejected(repo: Path) -> None:
    with pytest.raises(VcsError, match="No files to commit"):
        await GitCoordinator(repo).commit([], "Nothing")


@requires_git
async def test_merge_refuses_when_checkout_is_not_main(repo: Path) -> None:
    vcs = GitCoordinator(repo)
    await vcs.create_worktree("003", "feature")
    _git(repo, "checkout", "--quiet", "-b", "other")

    result = await vcs.merge("003", "feature")

    assert result.success is False
    assert result.message == "Project checkout is on 'other', expected 'main'."
