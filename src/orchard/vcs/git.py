"""Async `git` subprocess wrapper for issue branches and worktrees."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from orchard.config import STATE_DIR_NAME
from orchard.issues.store import BRANCH_PREFIX, branch_name

logger = logging.getLogger(__name__)

_BRANCH_ISSUE_ID = re.compile(rf"^{re.escape(BRANCH_PREFIX)}(?P<issue_id>\d+)-")


class VcsError(RuntimeError):
    """Raised when a git command fails."""

    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


@dataclass(slots=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass(slots=True)
class WorktreeInfo:
    """One orchard-managed worktree."""

    issue_id: str
    branch: str
    path: Path
    commit: str = ""


@dataclass(slots=True)
class MergeResult:
    success: bool
    message: str


class GitCoordinator:
    """Branch `orchard/<id>-<slug>` checked out at `.orchard/worktrees/<id>-<slug>`."""

    def __init__(self, project_root: Path, *, git_binary: str = "git") -> None:
        self.project_root = project_root
        self.git_binary = git_binary
        self.worktrees_dir = project_root / STATE_DIR_NAME / "worktrees"

    def worktree_path(self, issue_id: str, slug: str) -> Path:
        return self.worktrees_dir / f"{issue_id}-{slug}"

    async def is_repository(self) -> bool:
        result = await self._run("rev-parse", "--is-inside-work-tree", check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"

    async def current_branch(self) -> str:
        result = await self._run("rev-parse", "--abbrev-ref", "HEAD")
        return result.stdout.strip()

    async def create_worktree(
        self,
        issue_id: str,
        slug: str,
        base_branch: str = "main",
    ) -> WorktreeInfo:
        """Create the issue worktree, or return the existing one for this issue."""

        branch = branch_name(issue_id, slug)
        path = self.worktree_path(issue_id, slug)
        for existing in await self.list_worktrees():
            if existing.branch == branch or existing.path == path:
                logger.info("Reusing worktree %s on %s", existing.path, existing.branch)
                return existing

        path.parent.mkdir(parents=True, exist_ok=True)
        branch_exists = await self._run(
            "rev-parse",
            "--verify",
            "--quiet",
            f"refs/heads/{branch}",
            check=False,
        )
        if branch_exists.returncode == 0:
            await self._run("worktree", "add", str(path), branch)
        else:
            await self._run("worktree", "add", "-b", branch, str(path), base_branch)
        head = await self._run("rev-parse", "HEAD", cwd=path, check=False)
        logger.info("Created worktree %s on branch %s", path, branch)
        return WorktreeInfo(
            issue_id=issue_id,
            branch=branch,
            path=path,
            commit=head.stdout.strip(),
        )

    async def remove_worktree(self, issue_id: str, slug: str) -> None:
        path = self.worktree_path(issue_id, slug)
        branch = branch_name(issue_id, slug)
        if path.exists():
            await self._run("worktree", "remove", "--force", str(path))
            logger.info("Removed worktree %s", path)
        await self._run("worktree", "prune", check=False)
        deleted = await self._run("branch", "-D", branch, check=False)
        if deleted.returncode != 0:
            logger.warning("Could not delete branch %s: %s", branch, deleted.stderr.strip())

    async def list_worktrees(self) -> list[WorktreeInfo]:
        result = await self._run("worktree", "list", "--porcelain")
        return parse_worktree_list(result.stdout)

    async def get_diff(self, path: Path, base_branch: str = "main") -> str:
        """Committed changes since `base_branch` plus anything still uncommitted."""

        committed = await self._run("diff", f"{base_branch}...HEAD", cwd=path)
        uncommitted = await self._run("diff", "HEAD", cwd=path, check=False)
        parts = [part for part in (committed.stdout, uncommitted.stdout) if part.strip()]
        return "\n".join(parts)

    async def merge(self, issue_id: str, slug: str, base_branch: str = "main") -> MergeResult:
        branch = branch_name(issue_id, slug)
        current = await self.current_branch()
        if current != base_branch:
            return MergeResult(
                success=False,
                message=f"Project checkout is on {current!r}, expected {base_branch!r}.",
            )
        result = await self._run(
            "merge",
            "--no-ff",
            "-m",
            f"Merge {branch}: issue #{issue_id}",
            branch,
            check=False,
        )
        if result.returncode != 0:
            await self._run("merge", "--abort", check=False)
            message = (result.stderr or result.stdout).strip() or "git merge failed"
            logger.warning("Merge of %s failed: %s", branch, message)
            return MergeResult(success=False, message=message)
        logger.info("Merged %s into %s", branch, base_branch)
        return MergeResult(success=True, message=f"Merged {branch} to {base_branch}")

    async def commit(self, files: Sequence[str], message: str) -> str:
        """Stage `files` and commit them; returns the short commit hash."""

        if not files:
            raise VcsError("No files to commit.")
        await self._run("add", "--", *files)
        await self._run("commit", "-m", message)
        head = await self._run("rev-parse", "--short", "HEAD")
        return head.stdout.strip()

    async def _run(
        self,
        *args: str,
        cwd: Path | None = None,
        check: bool = True,
    ) -> GitResult:
        argv = [self.git_binary, *args]
        logger.debug("git %s", " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd or self.project_root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as error:
            raise VcsError(f"Failed to run git: {error}") from error
        stdout, stderr = await process.communicate()
        result = GitResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if check and result.returncode != 0:
            raise VcsError(
                f"git {' '.join(args)} failed: {result.stderr.strip() or result.stdout.strip()}",
                stderr=result.stderr,
            )
        return result


def parse_worktree_list(porcelain: str) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain`, keeping only orchard branches."""

    worktrees: list[WorktreeInfo] = []
    for block in porcelain.strip().split("\n\n"):
        fields: dict[str, str] = {}
        for line in block.splitlines():
            key, _, value = line.partition(" ")
            fields[key] = value
        path = fields.get("worktree")
        ref = fields.get("branch", "")
        if not path or not ref:
            continue
        branch = ref.removeprefix("refs/heads/")
        match = _BRANCH_ISSUE_ID.match(branch)
        if match is None:
            continue
        worktrees.append(
            WorktreeInfo(
                issue_id=match.group("issue_id"),
                branch=branch,
                path=Path(path),
                commit=fields.get("HEAD", ""),
            ),
        )
    return worktrees
