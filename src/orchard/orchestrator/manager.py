"""Conversational manager: tool-use loop, worker scheduling and recovery."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shlex
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, assert_never

from orchard.config import Settings
from orchard.issues.lifecycle import InvalidTransitionError, can_transition
from orchard.issues.models import Issue, IssuePriority, IssueStatus
from orchard.issues.store import IssueStore
from orchard.orchestrator.backend import ContentBlock, LlmRequest, Message
from orchard.orchestrator.conflicts import find_conflicts, format_conflict_warning
from orchard.orchestrator.models import (
    ManagerEvent,
    ManagerEventKind,
    QueuedWorker,
    RecoveryReport,
    WorkerResult,
    WorkerStatus,
)
from orchard.orchestrator.prompts import (
    FALLBACK_SYSTEM_PROMPT,
    build_completion_notice,
    build_system_prompt,
    build_worker_prompt,
)
from orchard.orchestrator.repository import ManagerRepository
from orchard.orchestrator.routing import EndpointRouter, RouterError, WorkerSlot
from orchard.orchestrator.tools import (
    DESTRUCTIVE_TOOLS,
    TOOL_DEFINITIONS,
    CommitFiles,
    CreateIssue,
    CreateSpec,
    DeleteIssue,
    ListIssues,
    ListSpecs,
    MergeIssue,
    ReadFile,
    Reprioritize,
    ReviewDiff,
    RunTests,
    SpawnWorker,
    ToolCall,
    UnknownToolError,
    WorkerStatusQuery,
    parse_tool_call,
    tool_signature,
)
from orchard.orchestrator.worker import Worker
from orchard.project import KNOWLEDGE_FILE, list_spec_files, resolve_within, write_spec
from orchard.storage.common import utc_now
from orchard.vcs.git import GitCoordinator, VcsError

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Action cancelled by user."
MAX_IDENTICAL_TOOL_BATCHES = 3
MAX_TOOL_OUTPUT_CHARS = 50_000

_OUTCOME_STATUS = {
    WorkerStatus.COMPLETED: IssueStatus.REVIEW,
    WorkerStatus.BLOCKED: IssueStatus.BLOCKED,
    WorkerStatus.FAILED: IssueStatus.OPEN,
}

ApprovalCallback = Callable[[str], Awaitable[bool]]
EventListener = Callable[[ManagerEvent], None]


class WorkerHandle(Protocol):
    """What the manager needs from a running worker."""

    issue_id: str

    async def start(self, endpoint_url: str) -> None: ...

    async def wait(self) -> WorkerResult: ...

    async def kill(self, grace_seconds: float | None = None) -> None: ...

    def tail_output(self, lines: int = 20) -> str: ...

    def elapsed(self) -> str: ...


WorkerFactory = Callable[..., WorkerHandle]


@dataclass(slots=True)
class _ActiveWorker:
    issue_id: str
    slug: str
    worker: WorkerHandle
    slot: WorkerSlot
    run_id: int | None = None
    supervisor: asyncio.Task[None] | None = None
    finished: bool = False
    notify: bool = True


@dataclass(slots=True)
class _FinishedWorker:
    result: WorkerResult
    tail_output: str


@dataclass(slots=True)
class _Turn:
    content: str
    future: asyncio.Future[str] | None = None


@dataclass(slots=True)
class _TurnState:
    texts: list[str] = field(default_factory=list)
    iterations: int = 0


class Manager:
    """Owns the conversation, the worker map and the worker queue.

    Turns are processed one at a time by a single runner task, so user
    messages and worker completion notices never interleave. Every running
    worker holds exactly one router slot, released when its outcome is
    handled.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        router: EndpointRouter,
        store: IssueStore,
        vcs: GitCoordinator,
        repository: ManagerRepository | None = None,
        worker_factory: WorkerFactory | None = None,
        approval_callback: ApprovalCallback | None = None,
    ) -> None:
        self.settings = settings
        self.router = router
        self.store = store
        self.vcs = vcs
        self.repository = repository
        self.approval_callback = approval_callback
        self.yolo_mode = settings.manager.yolo_mode
        self._worker_factory = worker_factory or self._default_worker_factory
        self._messages: list[Message] = []
        self._workers: dict[str, _ActiveWorker] = {}
        self._finished: dict[str, _FinishedWorker] = {}
        self._queue: list[QueuedWorker] = []
        self._queue_sequence = 0
        self._listeners: list[EventListener] = []
        self._turns: asyncio.Queue[_Turn] = asyncio.Queue()
        self._turn_runner: asyncio.Task[None] | None = None
        self._turn_in_progress = False
        self._last_tool_signature: str | None = None
        self._tool_signature_repeats = 0
        self._closing = False
        self._launching = 0
        self._drain_lock = asyncio.Lock()
        self._drain_task: asyncio.Task[dict[str, str]] | None = None
        router.on_capacity_change(self._on_capacity_change)

    # -- lifecycle -----------------------------------------------------------------

    def initialize(self) -> None:
        """Replay the most recent conversation history."""

        if self.repository is None:
            return
        limit = self.settings.manager.history_replay_messages
        self._messages = _trim_orphan_prefix(self.repository.load_recent_messages(limit))
        logger.info("Manager initialized with %d replayed messages", len(self._messages))

    async def recover(self) -> RecoveryReport:
        """Reset issues whose worktree survived but whose worker did not."""

        report = RecoveryReport()
        for worktree in await self.vcs.list_worktrees():
            if worktree.issue_id in self._workers:
                continue
            issue = self.store.get(worktree.issue_id)
            if issue is None or issue.status not in (IssueStatus.IN_PROGRESS, IssueStatus.REVIEW):
                continue
            previous = issue.status
            self.store.update_status(issue.id, IssueStatus.OPEN)
            self.store.append_agent_log(
                issue.id,
                "manager",
                f"Reset from {previous.value} to open after restart; no worker was running.",
            )
            report.reset_issue_ids.append(issue.id)
            report.lines.append(
                f"Recovered #{issue.id} {issue.title}: {previous.value} -> open "
                f"(worktree {worktree.path})",
            )
        if report.recovered:
            logger.info("Recovered %d orphaned issue(s)", len(report.reset_issue_ids))
        return report

    async def shutdown(self) -> None:
        """Kill workers, release their slots and stop background tasks."""

        self._closing = True
        active = list(self._workers.values())
        for entry in active:
            entry.notify = False
        await asyncio.gather(
            *(entry.worker.kill() for entry in active),
            return_exceptions=True,
        )
        supervisors = [entry.supervisor for entry in active if entry.supervisor is not None]
        if supervisors:
            await asyncio.gather(*supervisors, return_exceptions=True)

        if self._drain_task is not None:
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
            self._drain_task = None
        if self._turn_runner is not None:
            self._turn_runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._turn_runner
            self._turn_runner = None
        while not self._turns.empty():
            turn = self._turns.get_nowait()
            if turn.future is not None and not turn.future.done():
                turn.future.cancel()
        await self.router.stop()

    # -- events --------------------------------------------------------------------

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _emit(self, kind: ManagerEventKind, text: str, **details: Any) -> None:
        event = ManagerEvent(kind=kind, text=text, **details)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Manager event listener failed")

    # -- read-only views -----------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def running_issue_ids(self) -> list[str]:
        return list(self._workers)

    @property
    def queued(self) -> list[QueuedWorker]:
        return list(self._queue)

    def worker_for(self, issue_id: str) -> WorkerHandle | None:
        entry = self._workers.get(issue_id)
        return entry.worker if entry is not None else None

    def toggle_yolo_mode(self) -> bool:
        self.yolo_mode = not self.yolo_mode
        logger.info("Yolo mode %s", "on" if self.yolo_mode else "off")
        return self.yolo_mode

    # -- turns ---------------------------------------------------------------------

    async def chat(self, user_message: str) -> str:
        """Run one user turn after any turns already queued; returns the reply text."""

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._submit_turn(_Turn(content=user_message, future=future))
        return await future

    async def chat_stream(self, user_message: str) -> AsyncIterator[ManagerEvent]:
        """Single streamed reply without tool execution."""

        if self._turn_in_progress:
            yield ManagerEvent(kind=ManagerEventKind.ERROR, text="A turn is already running.")
            return
        self._append(Message(role="user", content=user_message))
        request = self._build_request()
        collected: list[str] = []
        try:
            async for event in self.router.stream(request):
                if event.error:
                    yield ManagerEvent(kind=ManagerEventKind.ERROR, text=event.error)
                    continue
                if event.type == "content_block_delta" and event.text_delta:
                    collected.append(event.text_delta)
                    yield ManagerEvent(kind=ManagerEventKind.TEXT, text=event.text_delta)
        except RouterError as error:
            yield ManagerEvent(kind=ManagerEventKind.ERROR, text=str(error))
        full_text = "".join(collected)
        if full_text:
            self._append(Message(role="assistant", content=full_text))

    def _submit_turn(self, turn: _Turn) -> None:
        if self._turn_runner is None or self._turn_runner.done():
            self._turn_runner = asyncio.create_task(self._run_turns())
        self._turns.put_nowait(turn)

    async def _run_turns(self) -> None:
        while True:
            turn = await self._turns.get()
            self._turn_in_progress = True
            try:
                reply = await self._run_turn(turn.content)
            except Exception as error:
                logger.exception("Manager turn failed")
                if turn.future is not None and not turn.future.done():
                    turn.future.set_exception(error)
            else:
                if turn.future is not None and not turn.future.done():
                    turn.future.set_result(reply)
            finally:
                self._turn_in_progress = False

    async def _run_turn(self, content: str) -> str:
        self._append(Message(role="user", content=content))
        self._last_tool_signature = None
        self._tool_signature_repeats = 0
        state = _TurnState()
        cap = self.settings.manager.max_turn_iterations

        while True:
            if not self.yolo_mode and state.iterations >= cap:
                return self._abort_turn(
                    state,
                    f"Stopped after {cap} model calls in one turn without a final answer.",
                )
            state.iterations += 1

            try:
                response = await self.router.complete(self._build_request())
            except RouterError as error:
                logger.error("LLM request failed during turn: %s", error)
                self._emit(ManagerEventKind.ERROR, str(error))
                return f"Error communicating with LLM: {error}"

            self._append(Message(role="assistant", content=list(response.content)))
            for block in response.text_blocks:
                state.texts.append(block.text or "")
                self._emit(ManagerEventKind.TEXT, block.text or "")

            if not response.requests_tools:
                return "\n".join(state.texts)

            tool_uses = response.tool_uses
            signature = tool_signature([(block.name or "", block.input) for block in tool_uses])
            if signature == self._last_tool_signature:
                self._tool_signature_repeats += 1
            else:
                self._last_tool_signature = signature
                self._tool_signature_repeats = 1
            if self._tool_signature_repeats > MAX_IDENTICAL_TOOL_BATCHES:
                names = ", ".join(block.name or "?" for block in tool_uses)
                self._append(
                    Message(
                        role="user",
                        content=[
                            ContentBlock.tool_result(block.id, "Not executed: repeated tool call.")
                            for block in tool_uses
                        ],
                    ),
                )
                return self._abort_turn(
                    state,
                    f"Aborted turn: repeated tool call ({names}) requested "
                    f"{self._tool_signature_repeats} times in a row.",
                )

            results: list[ContentBlock] = []
            for block in tool_uses:
                name = block.name or ""
                self._emit(ManagerEventKind.TOOL_CALL, f"Calling {name}...", tool_name=name)
                result = await self.execute_tool(name, block.input or {})
                self._emit(ManagerEventKind.TOOL_RESULT, result, tool_name=name)
                results.append(ContentBlock.tool_result(block.id, result))
            self._append(Message(role="user", content=results))

    def _abort_turn(self, state: _TurnState, error: str) -> str:
        logger.warning(error)
        self._emit(ManagerEventKind.ERROR, error)
        return "\n".join([*state.texts, error])

    def _build_request(self) -> LlmRequest:
        return LlmRequest(
            model=self.settings.llm.model,
            messages=list(self._messages),
            max_tokens=self.settings.llm.max_tokens,
            system=self._system_prompt(),
            tools=list(TOOL_DEFINITIONS),
        )

    def _system_prompt(self) -> str:
        root = self.settings.project_root
        template_path = root / self.settings.manager.system_prompt_file
        knowledge_path = self.settings.state_dir / KNOWLEDGE_FILE
        template = _read_optional(template_path) or FALLBACK_SYSTEM_PROMPT
        return build_system_prompt(
            template=template,
            knowledge=_read_optional(knowledge_path),
            issues=self.store.list(),
            yolo_mode=self.yolo_mode,
            test_command=self.settings.worker.test_command,
            build_command=self.settings.worker.build_command,
        )

    def _append(self, message: Message) -> None:
        self._messages.append(message)
        if self.repository is not None:
            self.repository.append_message(message)

    # -- tools ---------------------------------------------------------------------

    async def execute_tool(self, name: str, raw_input: dict[str, Any]) -> str:
        """Run one tool call; never raises, always returns text for the model."""

        logger.info("Executing tool %s", name)
        try:
            call = parse_tool_call(name, raw_input)
            if name in DESTRUCTIVE_TOOLS and not await self._confirm(call):
                logger.info("Tool %s declined", name)
                return CANCELLED_MESSAGE
            return await self._dispatch(call)
        except UnknownToolError:
            logger.warning("Model requested unknown tool %s", name)
            return f"Unknown tool: {name}"
        except Exception as error:  # noqa: BLE001
            logger.exception("Tool %s failed", name)
            return f"Tool {name} failed: {error}"

    async def _confirm(self, call: ToolCall) -> bool:
        if self.yolo_mode:
            return True
        if self.approval_callback is None:
            return False
        return await self.approval_callback(describe_tool_call(call))

    async def _dispatch(self, call: ToolCall) -> str:  # noqa: PLR0911
        match call:
            case CreateIssue():
                return self._create_issue(call)
            case ListIssues():
                return self._list_issues(call.status)
            case SpawnWorker():
                return await self.spawn_worker(call.issue_id)
            case ReviewDiff():
                return await self._review_diff(call.issue_id)
            case MergeIssue():
                return await self._merge_issue(call.issue_id)
            case RunTests():
                return await self._run_tests(call.issue_id)
            case CreateSpec():
                return self._create_spec(call.filename, call.content)
            case ListSpecs():
                return self._list_specs()
            case WorkerStatusQuery():
                return self._worker_status(call.issue_id)
            case Reprioritize():
                return self._reprioritize(call.issue_id, call.priority)
            case DeleteIssue():
                return await self._delete_issue(call.issue_id)
            case CommitFiles():
                return await self._commit_files(list(call.files), call.message)
            case ReadFile():
                return self._read_file(call.path)
            case _:
                assert_never(call)

    def _create_issue(self, call: CreateIssue) -> str:
        issue = self.store.create(
            call.title,
            call.description,
            specs=list(call.specs),
            priority=call.priority,
            acceptance_criteria=list(call.acceptance_criteria),
        )
        reply = f"Created issue #{issue.id}: {issue.title} [{issue.status.value}]"
        missing = [spec for spec in issue.specs if not (self.settings.project_root / spec).exists()]
        if missing:
            reply += f"\nWarning: spec file(s) not found: {', '.join(missing)}"
        return reply

    def _list_issues(self, status: IssueStatus | None) -> str:
        issues = self.store.list(status=status)
        if not issues:
            return "No issues found."
        return "\n".join(
            f"#{issue.id} {issue.title} [{issue.status.value}] ({issue.priority.value})"
            for issue in issues
        )

    async def spawn_worker(self, issue_id: str) -> str:
        """Start a worker for the issue now, or queue it when at capacity."""

        issue = self.store.get(issue_id)
        if issue is None:
            return f"Issue #{issue_id} not found."
        if issue.id in self._workers:
            return f"Worker for #{issue.id} is already running."
        if any(entry.issue_id == issue.id for entry in self._queue):
            return f"Issue #{issue.id} is already queued for a worker."
        if not can_transition(issue.status, IssueStatus.IN_PROGRESS):
            return (
                f"Issue #{issue.id} is {issue.status.value}; "
                "a worker can only start on an open, blocked or review issue."
            )

        limit = self.settings.worker.max_concurrent
        at_capacity = self._occupied() >= limit
        if not at_capacity and not self._queue:
            return await self._launch_worker(issue)

        # earlier queued work keeps its place ahead of this request
        self._queue_sequence += 1
        self._queue.append(
            QueuedWorker(
                issue_id=issue.id,
                priority=issue.priority,
                queued_at=utc_now(),
                sequence=self._queue_sequence,
            ),
        )
        self._sort_queue()
        if at_capacity:
            position = self._queue_position(issue.id)
            self._emit(
                ManagerEventKind.WORKER_UPDATE,
                f"Issue #{issue.id} queued at position {position}",
                issue_id=issue.id,
            )
            return (
                f"Worker capacity reached ({len(self._workers)}/{limit} running). "
                f"Issue #{issue.id} queued at position {position}."
            )

        outcomes = await self._drain_worker_queue()
        if issue.id in outcomes:
            return outcomes[issue.id]
        position = self._queue_position(issue.id)
        self._emit(
            ManagerEventKind.WORKER_UPDATE,
            f"Issue #{issue.id} queued at position {position}",
            issue_id=issue.id,
        )
        return (
            f"Issue #{issue.id} queued at position {position}; "
            "waiting for LLM endpoint capacity."
        )

    def _occupied(self) -> int:
        return len(self._workers) + self._launching

    async def _launch_worker(self, issue: Issue) -> str:
        self._launching += 1
        try:
            return await self._start_worker(issue)
        finally:
            self._launching -= 1

    async def _start_worker(self, issue: Issue) -> str:
        running = [
            other for other_id in self._workers if (other := self.store.get(other_id)) is not None
        ]
        conflicts = find_conflicts(issue, running)

        slot = self.router.acquire_worker_slot()
        if slot is None:
            return "No healthy LLM endpoint has spare capacity for a worker right now."

        previous_status = issue.status
        status_changed = False
        try:
            worktree = await self.vcs.create_worktree(
                issue.id,
                issue.slug,
                self.settings.project.main_branch,
            )
            self.store.update_status(issue.id, IssueStatus.IN_PROGRESS)
            status_changed = True
            record_path = self.store.record_path(issue)
            worker = self._worker_factory(
                issue=issue,
                worktree_path=worktree.path,
                prompt=build_worker_prompt(
                    issue=issue,
                    project_root=self.settings.project_root,
                    record_path=record_path,
                    test_command=self.settings.worker.test_command,
                ),
                record_path=record_path,
            )
            await worker.start(slot.url)
        except Exception:
            self.router.release_worker_slot(slot)
            if status_changed and can_transition(IssueStatus.IN_PROGRESS, previous_status):
                self.store.update_status(issue.id, previous_status)
            raise

        run_id = None
        if self.repository is not None:
            run_id = self.repository.start_worker_run(
                issue_id=issue.id,
                endpoint_name=slot.endpoint_name,
            )
        entry = _ActiveWorker(
            issue_id=issue.id,
            slug=issue.slug,
            worker=worker,
            slot=slot,
            run_id=run_id,
        )
        self._workers[issue.id] = entry
        self._finished.pop(issue.id, None)
        entry.supervisor = asyncio.create_task(self._supervise(entry))
        self._emit(
            ManagerEventKind.WORKER_UPDATE,
            f"Worker started for #{issue.id} on {slot.endpoint_name}",
            issue_id=issue.id,
        )

        reply = (
            f"Worker spawned for issue #{issue.id} on endpoint {slot.endpoint_name}. "
            f"Worktree: {worktree.path}. Branch: {worktree.branch}"
        )
        if conflicts:
            reply += "\n" + format_conflict_warning(conflicts)
        return reply

    async def _supervise(self, entry: _ActiveWorker) -> None:
        try:
            result = await entry.worker.wait()
        except Exception as error:  # noqa: BLE001
            logger.exception("Waiting for worker #%s failed", entry.issue_id)
            result = WorkerResult(
                issue_id=entry.issue_id,
                status=WorkerStatus.FAILED,
                message=f"Worker supervision failed: {error}",
                confirmed=False,
                exit_code=None,
                elapsed=entry.worker.elapsed(),
                tail_output=entry.worker.tail_output(),
            )
        await self._handle_worker_result(entry, result)

    async def _handle_worker_result(self, entry: _ActiveWorker, result: WorkerResult) -> None:
        if entry.finished:
            return
        entry.finished = True
        self._workers.pop(entry.issue_id, None)
        self.router.release_worker_slot(entry.slot)
        tail = entry.worker.tail_output(self.settings.manager.completion_tail_lines)
        self._finished[entry.issue_id] = _FinishedWorker(result=result, tail_output=tail)

        target = _OUTCOME_STATUS[result.status]
        try:
            self.store.update_status(entry.issue_id, target)
        except InvalidTransitionError as error:
            logger.warning("Could not apply worker outcome to #%s: %s", entry.issue_id, error)
        self.store.append_agent_log(entry.issue_id, "worker", result.message)
        if self.repository is not None and entry.run_id is not None:
            self.repository.finish_worker_run(run_id=entry.run_id, result=result)

        self._emit(
            ManagerEventKind.WORKER_UPDATE,
            f"Worker for #{entry.issue_id} {result.status.value}: {result.message}",
            issue_id=entry.issue_id,
        )
        if self._closing:
            return
        await self._drain_worker_queue()
        if entry.notify:
            self._submit_turn(_Turn(content=build_completion_notice(result, tail_output=tail)))

    def _on_capacity_change(self) -> None:
        if self._closing or not self._queue:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.create_task(self._drain_worker_queue())

    async def _drain_worker_queue(self) -> dict[str, str]:
        """Launch queued issues in priority order while capacity remains.

        Returns the launch or skip message for every entry taken off the queue.
        """

        outcomes: dict[str, str] = {}
        limit = self.settings.worker.max_concurrent
        async with self._drain_lock:
            while self._queue and self._occupied() < limit and not self._closing:
                if self.router.select_worker_endpoint() is None:
                    logger.info("Worker queue waiting for endpoint capacity")
                    break
                entry = self._queue.pop(0)
                issue = self.store.get(entry.issue_id)
                if issue is None:
                    logger.warning("Dropped queued worker for deleted issue #%s", entry.issue_id)
                    continue
                if not can_transition(issue.status, IssueStatus.IN_PROGRESS):
                    message = (
                        f"Skipped queued worker for #{issue.id}: "
                        f"the issue is now {issue.status.value}."
                    )
                    logger.warning(message)
                else:
                    try:
                        message = await self._launch_worker(issue)
                    except Exception as error:  # noqa: BLE001
                        logger.exception("Failed to start queued worker for #%s", issue.id)
                        message = f"Failed to start queued worker for #{issue.id}: {error}"
                outcomes[issue.id] = message
                self._emit(ManagerEventKind.WORKER_UPDATE, message, issue_id=issue.id)
        return outcomes

    def _sort_queue(self) -> None:
        self._queue.sort(key=lambda entry: entry.sort_key)

    def _queue_position(self, issue_id: str) -> int | None:
        for index, entry in enumerate(self._queue):
            if entry.issue_id == issue_id:
                return index + 1
        return None

    async def _review_diff(self, issue_id: str) -> str:
        issue = self.store.get(issue_id)
        if issue is None:
            return f"Issue #{issue_id} not found."
        path = self.vcs.worktree_path(issue.id, issue.slug)
        if not path.exists():
            return f"No worktree for issue #{issue.id}."
        diff = await self.vcs.get_diff(path, self.settings.project.main_branch)
        return _truncate(diff) if diff.strip() else "No changes found in worktree."

    async def _merge_issue(self, issue_id: str) -> str:
        issue = self.store.get(issue_id)
        if issue is None:
            return f"Issue #{issue_id} not found."
        if issue.id in self._workers:
            return f"Worker for #{issue.id} is still running; wait for it to finish."
        if issue.status != IssueStatus.REVIEW:
            return (
                f"Issue #{issue.id} is {issue.status.value}; only issues in review can be merged."
            )
        result = await self.vcs.merge(issue.id, issue.slug, self.settings.project.main_branch)
        if not result.success:
            return f"Merge failed: {result.message}"
        self.store.update_status(issue.id, IssueStatus.DONE)
        self.store.append_agent_log(issue.id, "manager", result.message)
        await self.vcs.remove_worktree(issue.id, issue.slug)
        self._finished.pop(issue.id, None)
        return f"Merged and closed issue #{issue.id}. Worktree cleaned up."

    async def _run_tests(self, issue_id: str) -> str:
        issue = self.store.get(issue_id)
        if issue is None:
            return f"Issue #{issue_id} not found."
        path = self.vcs.worktree_path(issue.id, issue.slug)
        if not path.exists():
            return f"No worktree for issue #{issue.id}."
        return await run_command(
            self.settings.worker.test_command,
            cwd=path,
            timeout_seconds=self.settings.worker.test_timeout_seconds,
        )

    def _create_spec(self, filename: str, content: str) -> str:
        specs_dir = self.settings.project_root / self.settings.project.specs_dir
        path = write_spec(specs_dir, filename, content)
        relative = path.relative_to(self.settings.project_root.resolve()).as_posix()
        return f"Spec written: {relative}"

    def _list_specs(self) -> str:
        specs_dir_name = self.settings.project.specs_dir
        files = list_spec_files(self.settings.project_root / specs_dir_name)
        if not files:
            return "No spec files found."
        return "\n".join(f"{specs_dir_name}/{name}" for name in files)

    def _worker_status(self, issue_id: str | None) -> str:
        if issue_id is None:
            return self._all_workers_status()
        issue = self.store.get(issue_id)
        resolved = issue.id if issue is not None else issue_id
        entry = self._workers.get(resolved)
        if entry is not None:
            return "\n".join(
                [
                    f"Worker #{resolved}: running for {entry.worker.elapsed()} "
                    f"on {entry.slot.endpoint_name}",
                    entry.worker.tail_output(self.settings.manager.completion_tail_lines),
                ],
            )
        position = self._queue_position(resolved)
        if position is not None:
            return f"Issue #{resolved} is queued at position {position}."
        finished = self._finished.get(resolved)
        if finished is not None:
            result = finished.result
            return "\n".join(
                [
                    f"Worker #{resolved}: {result.status.value} "
                    f"(exit code {result.exit_code}) after {result.elapsed}",
                    result.message,
                    finished.tail_output,
                ],
            )
        return f"No worker has run for issue #{resolved} in this session."

    def _all_workers_status(self) -> str:
        lines = [
            f"#{issue_id}: running for {entry.worker.elapsed()} on {entry.slot.endpoint_name}"
            for issue_id, entry in self._workers.items()
        ]
        lines.extend(
            f"#{entry.issue_id}: queued at position {index} ({entry.priority.value})"
            for index, entry in enumerate(self._queue, start=1)
        )
        if not lines:
            return "No workers running."
        return "\n".join(lines)

    def _reprioritize(self, issue_id: str, priority: IssuePriority) -> str:
        issue = self.store.update(issue_id, priority=priority)
        if issue is None:
            return f"Issue #{issue_id} not found."
        for entry in self._queue:
            if entry.issue_id == issue.id:
                entry.priority = priority
        self._sort_queue()
        reply = f"Issue #{issue.id} priority set to {priority.value}."
        position = self._queue_position(issue.id)
        if position is not None:
            reply += f" Queue position: {position}."
        return reply

    async def _delete_issue(self, issue_id: str) -> str:
        issue = self.store.get(issue_id)
        if issue is None:
            return f"Issue #{issue_id} not found."
        notes: list[str] = []
        entry = self._workers.get(issue.id)
        if entry is not None:
            entry.notify = False
            await entry.worker.kill()
            if entry.supervisor is not None:
                await asyncio.gather(entry.supervisor, return_exceptions=True)
            notes.append("stopped its worker")
        before = len(self._queue)
        self._queue = [queued for queued in self._queue if queued.issue_id != issue.id]
        if len(self._queue) != before:
            notes.append("removed it from the worker queue")
        try:
            await self.vcs.remove_worktree(issue.id, issue.slug)
        except VcsError as error:
            notes.append(f"could not remove worktree ({error})")
        self.store.delete(issue.id)
        self._finished.pop(issue.id, None)
        suffix = f" ({'; '.join(notes)})" if notes else ""
        return f"Deleted issue #{issue.id}: {issue.title}{suffix}"

    async def _commit_files(self, files: list[str], message: str) -> str:
        root = self.settings.project_root
        relative = [
            resolve_within(root, name).relative_to(root.resolve()).as_posix() for name in files
        ]
        commit = await self.vcs.commit(relative, message)
        return f"Committed {len(relative)} file(s) as {commit}: {message}"

    def _read_file(self, relative_path: str) -> str:
        path = resolve_within(self.settings.project_root, relative_path)
        if not path.is_file():
            return f"File not found: {relative_path}"
        return _truncate(path.read_text("utf-8", errors="replace"))

    def _default_worker_factory(
        self,
        *,
        issue: Issue,
        worktree_path: Path,
        prompt: str,
        record_path: Path,
    ) -> WorkerHandle:
        return Worker(
            issue_id=issue.id,
            title=issue.title,
            worktree_path=worktree_path,
            prompt=prompt,
            command_template=self.settings.worker.command_template,
            model=self.settings.llm.model,
            record_path=record_path,
            kill_grace_seconds=self.settings.worker.kill_grace_seconds,
        )


def describe_tool_call(call: ToolCall) -> str:
    """Human-readable summary shown when asking for approval."""

    match call:
        case SpawnWorker(issue_id=issue_id):
            return f"Spawn a worker for issue #{issue_id}"
        case MergeIssue(issue_id=issue_id):
            return f"Merge issue #{issue_id} into the main branch"
        case DeleteIssue(issue_id=issue_id):
            return f"Delete issue #{issue_id} with its worktree and branch"
        case CommitFiles(files=files, message=message):
            return f"Commit {', '.join(files)}: {message}"
        case _:
            return type(call).__name__


async def run_command(command: str, *, cwd: Path, timeout_seconds: float) -> str:
    """Run a shell-style command, merging stdout and stderr, with a timeout."""

    try:
        argv = shlex.split(command)
    except ValueError as error:
        return f"Command failed: {error}"
    if not argv:
        return "Command failed: empty command"
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as error:
        return f"Command failed: {error}"
    try:
        output, _ = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        process.kill()
        await process.wait()
        return f"Command timed out after {timeout_seconds:g}s"
    text = output.decode("utf-8", errors="replace")
    return _truncate(f"Exit code: {process.returncode}\n{text}")


def _truncate(text: str) -> str:
    if len(text) <= MAX_TOOL_OUTPUT_CHARS:
        return text
    omitted = len(text) - MAX_TOOL_OUTPUT_CHARS
    return f"{text[:MAX_TOOL_OUTPUT_CHARS]}\n... ({omitted} more characters truncated)"


def _read_optional(path: Path) -> str:
    try:
        return path.read_text("utf-8")
    except OSError:
        return ""


def _trim_orphan_prefix(messages: list[Message]) -> list[Message]:
    """Drop leading messages that cannot open a conversation after truncation."""

    start = 0
    while start < len(messages) and (
        messages[start].role != "user" or messages[start].is_tool_result
    ):
        start += 1
    return messages[start:]

