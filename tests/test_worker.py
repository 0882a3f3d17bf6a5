from __future__ import annotations

import os
import shlex
import sys
from pathlib import Path

import allure
import pytest

from orchard.orchestrator.models import WorkerStatus
from orchard.orchestrator.outcome_classifier import COMPLETION_SENTINEL
from orchard.orchestrator.worker import (
    Worker,
    WorkerStateError,
    build_worker_args,
    format_elapsed,
)

pytestmark = [
    allure.epic("Worker Supervision"),
    allure.feature("Worker Subprocess"),
]

# The model name doubles as the behaviour switch of the fake agent.
_FAKE_AGENT = """\
import os
import sys
import time

mode = sys.argv[1]
prompt = sys.stdin.read()
with open("prompt.txt", "w", encoding="utf-8") as handle:
    handle.write(prompt)
print("base_url=" + os.environ["ANTHROPIC_BASE_URL"])
print("api_key=" + os.environ["ANTHROPIC_API_KEY"])
sys.stdout.flush()
if mode == "sentinel":
    print("all tests pass")
    print("ITHAVEBEENDONE")
elif mode == "record":
    with open(os.environ["FAKE_AGENT_RECORD"], "a", encoding="utf-8") as handle:
        handle.write("\\nITHAVEBEENDONE\\n")
elif mode == "blocked":
    print("STATUS: BLOCKED need API token")
elif mode == "fail":
    print("compiling", file=sys.stderr)
    print("fatal: boom", file=sys.stderr)
    sys.exit(2)
elif mode == "sleep":
    time.sleep(30)
"""


@pytest.fixture()
def agent_template(tmp_path: Path) -> str:
    script = tmp_path / "fake_agent.py"
    script.write_text(_FAKE_AGENT, "utf-8")
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{model}}"


@pytest.fixture()
def worktree(tmp_path: Path) -> Path:
    path = tmp_path / "worktree"
    path.mkdir()
    return path


def _worker(
    template: str,
    worktree: Path,
    mode: str,
    *,
    record_path: Path | None = None,
) -> Worker:
    env = {key: value for key, value in os.environ.items() if key != "ANTHROPIC_API_KEY"}
    if record_path is not None:
        env["FAKE_AGENT_RECORD"] = str(record_path)
    return Worker(
        issue_id="001",
        title="Add login",
        worktree_path=worktree,
        prompt="# Task: Add login\n",
        command_template=template,
        model=mode,
        record_path=record_path,
        kill_grace_seconds=2.0,
        env=env,
    )


async def test_sentinel_on_stdout_completes_and_pipes_prompt(
    agent_template: str,
    worktree: Path,
) -> None:
    worker = _worker(agent_template, worktree, "sentinel")

    await worker.start("http://gpu-a:8000")
    result = await worker.wait()

    assert result.status == WorkerStatus.COMPLETED
    assert result.confirmed is True
    assert result.exit_code == 0
    assert (worktree / "prompt.txt").read_text("utf-8") == "# Task: Add login\n"
    assert "base_url=http://gpu-a:8000" in worker.state.stdout
    assert "api_key=nokey" in worker.state.stdout
    assert "=== stdout (last" in result.tail_output
    assert worker.status == WorkerStatus.COMPLETED
    assert worker.is_running is False


async def test_wait_returns_the_same_result_every_time(
    agent_template: str,
    worktree: Path,
) -> None:
    worker = _worker(agent_template, worktree, "sentinel")
    await worker.start("http://a")

    first = await worker.wait()
    second = await worker.wait()

    assert first is second


async def test_sentinel_appended_to_issue_record_completes(
    agent_template: str,
    worktree: Path,
    tmp_path: Path,
) -> None:
    record = tmp_path / "001-add-login.md"
    record.write_text("# Add login\n\n## Agent Log\n", "utf-8")
    worker = _worker(agent_template, worktree, "record", record_path=record)

    await worker.start("http://a")
    result = await worker.wait()

    assert result.status == WorkerStatus.COMPLETED
    assert result.confirmed is True


async def test_sentinel_left_by_an_earlier_run_is_ignored(
    agent_template: str,
    worktree: Path,
    tmp_path: Path,
) -> None:
    record = tmp_path / "001-add-login.md"
    record.write_text(f"# Add login\n\n## Agent Log\n{COMPLETION_SENTINEL}\n", "utf-8")
    worker = _worker(agent_template, worktree, "quiet", record_path=record)

    await worker.start("http://a")
    result = await worker.wait()

    assert result.status == WorkerStatus.COMPLETED
    assert result.confirmed is False


async def test_blocked_directive_blocks(agent_template: str, worktree: Path) -> None:
    worker = _worker(agent_template, worktree, "blocked")

    await worker.start("http://a")
    result = await worker.wait()

    assert result.status == WorkerStatus.BLOCKED
    assert result.message == "Worker is blocked: need API token"


async def test_nonzero_exit_fails_with_stderr_tail(agent_template: str, worktree: Path) -> None:
    worker = _worker(agent_template, worktree, "fail")

    await worker.start("http://a")
    result = await worker.wait()

    assert result.status == WorkerStatus.FAILED
    assert result.exit_code == 2
    assert result.message == "Worker failed (exit code 2).\nStderr: compiling\nfatal: boom"
    assert "=== stderr (last 2 lines) ===" in worker.tail_output()


async def test_spawn_error_fails_worker_without_raising(worktree: Path) -> None:
    worker = _worker("definitely-not-an-agent-binary --model {model}", worktree, "x")

    await worker.start("http://a")
    result = await worker.wait()

    assert result.status == WorkerStatus.FAILED
    assert result.message.startswith("Worker failed to start:")
    assert result.tail_output == "No output captured."


async def test_kill_terminates_long_running_worker(agent_template: str, worktree: Path) -> None:
    worker = _worker(agent_template, worktree, "sleep")
    await worker.start("http://a")
    assert worker.is_running is True

    await worker.kill(grace_seconds=2.0)
    result = await worker.wait()

    assert result.status == WorkerStatus.FAILED
    assert result.exit_code is not None
    assert result.exit_code != 0
    assert worker.elapsed() == result.elapsed


async def test_start_twice_is_rejected(agent_template: str, worktree: Path) -> None:
    worker = _worker(agent_template, worktree, "sentinel")
    await worker.start("http://a")

    with pytest.raises(WorkerStateError, match="cannot start"):
        await worker.start("http://a")
    await worker.wait()


async def test_wait_before_start_is_rejected(agent_template: str, worktree: Path) -> None:
    worker = _worker(agent_template, worktree, "sentinel")

    with pytest.raises(WorkerStateError, match="never started"):
        await worker.wait()
    await worker.kill()
    assert worker.elapsed() == "0s"


def test_build_worker_args_quotes_placeholders() -> None:
    argv = build_worker_args(
        "agent run --model {model} --issue {issue_id} --title {title}",
        model="qwen coder",
        issue_id="001",
        title="Fix 'quotes' & spaces",
    )

    assert argv == [
        "agent",
        "run",
        "--model",
        "qwen coder",
        "--issue",
        "001",
        "--title",
        "Fix 'quotes' & spaces",
    ]


def test_build_worker_args_rejects_unknown_placeholder_and_empty_template() -> None:
    with pytest.raises(ValueError, match="Unsupported worker command placeholder"):
        build_worker_args("agent {prompt}", model="m", issue_id="1", title="t")
    with pytest.raises(ValueError, match="empty"):
        build_worker_args("   ", model="m", issue_id="1", title="t")


def test_format_elapsed() -> None:
    assert format_elapsed(5.9) == "5s"
    assert format_elapsed(125) == "2m 5s"
    assert format_elapsed(-3) == "0s"
