"""Supervisor for one worker subprocess running in an issue worktree."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from orchard.orchestrator.models import WorkerOutcome, WorkerResult, WorkerStatus
from orchard.orchestrator.outcome_classifier import classify_worker_outcome, last_lines
from orchard.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_API_KEY = "nokey"
_READ_CHUNK_BYTES = 64 * 1024


class WorkerStateError(RuntimeError):
    """Operation is not valid in the worker's current state."""


@dataclass(slots=True)
class WorkerState:
    issue_id: str
    status: WorkerStatus = WorkerStatus.IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None


def build_worker_args(
    command_template: str,
    *,
    model: str,
    issue_id: str,
    title: str,
) -> list[str]:
    """Render the worker command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise ValueError("Worker command template is empty.")
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            issue_id=shlex.quote(issue_id),
            title=shlex.quote(title),
        )
    except (KeyError, IndexError) as error:
        raise ValueError(f"Unsupported worker command placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise ValueError("Worker command template rendered empty command.")
    return argv


def format_elapsed(seconds: float) -> str:
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class Worker:
    """Runs the configured agent command for one issue and classifies its exit.

    The task prompt is piped through stdin, output is captured in full, and
    the terminal outcome is computed exactly once. Every call to `wait()`
    returns the same `WorkerResult`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        issue_id: str,
        title: str,
        worktree_path: Path,
        prompt: str,
        command_template: str,
        model: str,
        record_path: Path | None = None,
        kill_grace_seconds: float = 5.0,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.issue_id = issue_id
        self.title = title
        self.worktree_path = worktree_path
        self.prompt = prompt
        self.command_template = command_template
        self.model = model
        self.record_path = record_path
        self.kill_grace_seconds = kill_grace_seconds
        self.state = WorkerState(issue_id=issue_id)
        self._base_env = dict(os.environ if env is None else env)
        self._process: asyncio.subprocess.Process | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._result: asyncio.Future[WorkerResult] | None = None
        self._record_baseline = ""

    @property
    def status(self) -> WorkerStatus:
        return self.state.status

    @property
    def is_running(self) -> bool:
        return self.state.status == WorkerStatus.RUNNING

    async def start(self, endpoint_url: str) -> None:
        """Spawn the subprocess against `endpoint_url`; a spawn error fails the worker."""

        if self.state.status != WorkerStatus.IDLE:
            raise WorkerStateError(
                f"Worker for #{self.issue_id} cannot start from {self.state.status.value}.",
            )
        self.state.status = WorkerStatus.RUNNING
        self.state.started_at = utc_now()
        self._record_baseline = self._read_record()
        self._result = asyncio.get_running_loop().create_future()

        env = dict(self._base_env)
        env["ANTHROPIC_BASE_URL"] = endpoint_url
        env["ANTHROPIC_MODEL"] = self.model
        env.setdefault("ANTHROPIC_API_KEY", DEFAULT_API_KEY)

        try:
            argv = build_worker_args(
                self.command_template,
                model=self.model,
                issue_id=self.issue_id,
                title=self.title,
            )
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.worktree_path),
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as error:
            logger.error("Worker for #%s failed to start: %s", self.issue_id, error)
            self._finish(
                WorkerOutcome(
                    status=WorkerStatus.FAILED,
                    message=f"Worker failed to start: {error}",
                    matched_rule="spawn_error",
                ),
            )
            return

        logger.info(
            "Worker for #%s started (pid=%s, endpoint=%s)",
            self.issue_id,
            self._process.pid,
            endpoint_url,
        )
        self._supervisor = asyncio.create_task(self._supervise(self._process))

    async def wait(self) -> WorkerResult:
        if self._result is None:
            raise WorkerStateError(f"Worker for #{self.issue_id} was never started.")
        return await asyncio.shield(self._result)

    async def kill(self, grace_seconds: float | None = None) -> None:
        """SIGTERM the process, then SIGKILL it if it outlives the grace period."""

        process = self._process
        if process is None or process.returncode is not None or self._result is None:
            return
        grace = self.kill_grace_seconds if grace_seconds is None else grace_seconds
        logger.info("Terminating worker for #%s (pid=%s)", self.issue_id, process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._result), timeout=grace)
        except TimeoutError:
            logger.warning("Worker for #%s ignored SIGTERM; sending SIGKILL", self.issue_id)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await asyncio.shield(self._result)

    def tail_output(self, lines: int = 20) -> str:
        stdout = last_lines(self.state.stdout, lines)
        stderr = last_lines(self.state.stderr, lines)
        parts: list[str] = []
        if stdout:
            parts.append(f"=== stdout (last {len(stdout)} lines) ===\n" + "\n".join(stdout))
        if stderr:
            parts.append(f"=== stderr (last {len(stderr)} lines) ===\n" + "\n".join(stderr))
        if not parts:
            return "No output captured."
        return "\n\n".join(parts)

    def elapsed(self) -> str:
        if self.state.started_at is None:
            return "0s"
        end = self.state.finished_at or utc_now()
        return format_elapsed((end - self.state.started_at).total_seconds())

    async def _supervise(self, process: asyncio.subprocess.Process) -> None:
        await asyncio.gather(
            self._feed_stdin(process),
            self._pump(process.stdout, "stdout"),
            self._pump(process.stderr, "stderr"),
        )
        exit_code = await process.wait()
        self.state.exit_code = exit_code
        outcome = classify_worker_outcome(
            stdout=self.state.stdout,
            stderr=self.state.stderr,
            exit_code=exit_code,
            record_text=self._record_additions(),
        )
        logger.info(
            "Worker for #%s exited with code %s: %s",
            self.issue_id,
            exit_code,
            outcome.status.value,
        )
        self._finish(outcome)

    async def _feed_stdin(self, process: asyncio.subprocess.Process) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(self.prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Worker for #%s closed stdin before reading the prompt", self.issue_id)
        finally:
            process.stdin.close()

    async def _pump(self, stream: asyncio.StreamReader | None, target: str) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            self._append(target, decoder.decode(chunk))
        self._append(target, decoder.decode(b"", final=True))

    def _append(self, target: str, text: str) -> None:
        if not text:
            return
        if target == "stdout":
            self.state.stdout += text
        else:
            self.state.stderr += text

    def _record_additions(self) -> str:
        """Record text written since start; the whole record if it was rewritten meanwhile."""

        current = self._read_record()
        if self._record_baseline and current.startswith(self._record_baseline):
            return current[len(self._record_baseline) :]
        return current

    def _read_record(self) -> str:
        if self.record_path is None:
            return ""
        try:
            return self.record_path.read_text("utf-8")
        except OSError as error:
            logger.warning("Could not read issue record for #%s: %s", self.issue_id, error)
            return ""

    def _finish(self, outcome: WorkerOutcome) -> None:
        if self.state.status.is_terminal:
            return
        self.state.status = outcome.status
        self.state.finished_at = utc_now()
        result = WorkerResult(
            issue_id=self.issue_id,
            status=outcome.status,
            message=outcome.message,
            confirmed=outcome.confirmed,
            exit_code=self.state.exit_code,
            elapsed=self.elapsed(),
            tail_output=self.tail_output(),
        )
        if self._result is not None and not self._result.done():
            self._result.set_result(result)
