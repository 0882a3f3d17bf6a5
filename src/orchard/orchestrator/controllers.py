"""Controllers for orchard CLI commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from orchard.config import EndpointSettings, Settings
from orchard.issues import IssueStatus, IssueStore
from orchard.orchestrator.backend import HttpLlmBackend, LlmBackend
from orchard.orchestrator.manager import Manager
from orchard.orchestrator.models import ManagerEvent, ManagerEventKind
from orchard.orchestrator.prompts import format_issue_line
from orchard.orchestrator.repository import ManagerRepository
from orchard.orchestrator.routing import EndpointRouter
from orchard.project import initialize_project
from orchard.vcs.git import GitCoordinator

logger = logging.getLogger(__name__)

TOOL_RESULT_PREVIEW_CHARS = 200


@dataclass(slots=True)
class InitCommand:
    """CLI input for project initialization."""

    project_root: Path | None


@dataclass(slots=True)
class IssuesListCommand:
    """CLI input for issue listing."""

    project_root: Path | None
    status: IssueStatus | None


@dataclass(slots=True)
class IssueShowCommand:
    """CLI input for one issue's details."""

    project_root: Path | None
    issue_id: str


@dataclass(slots=True)
class EndpointsCommand:
    """CLI input for the endpoint health snapshot."""

    project_root: Path | None


@dataclass(slots=True)
class RecoverCommand:
    """CLI input for orphaned-worktree recovery."""

    project_root: Path | None


@dataclass(slots=True)
class ChatCommand:
    """CLI input for an interactive manager session."""

    project_root: Path | None
    yolo: bool = False


@dataclass(slots=True)
class CommandResult:
    """Report to render in CLI plus whether the command succeeded."""

    lines: list[str]
    success: bool


class ChatIO(Protocol):
    """Terminal side of a chat session."""

    def read_line(self) -> str | None:
        """Return the next user line, or None at end of input."""

    def write(self, line: str) -> None: ...

    def confirm(self, question: str) -> bool: ...


class OrchardCliController:
    """Coordinates project, issue, endpoint and chat CLI operations."""

    def init(self, command: InitCommand) -> list[str]:
        settings = _settings(command.project_root)
        result = initialize_project(settings)
        lines = [f"Project: {settings.project_root}"]
        if result.already_initialized and not result.created:
            lines.append("Already initialized; nothing to create.")
            return lines
        lines.extend(
            f"Created {path.relative_to(settings.project_root).as_posix()}"
            for path in result.created
        )
        lines.append("Run `orchard chat` to start the manager.")
        return lines

    def list_issues(self, command: IssuesListCommand) -> list[str]:
        settings = _settings(command.project_root)
        issues = _issue_store(settings).list(status=command.status)
        if not issues:
            return ["No issues found."]
        return [format_issue_line(issue) for issue in issues]

    def show_issue(self, command: IssueShowCommand) -> CommandResult:
        settings = _settings(command.project_root)
        issue = _issue_store(settings).get(command.issue_id)
        if issue is None:
            return CommandResult(lines=[f"Issue not found: {command.issue_id}"], success=False)

        lines = [
            f"Issue #{issue.id}: {issue.title}",
            f"Status: {issue.status.value}",
            f"Priority: {issue.priority.value}",
            f"Branch: {issue.branch}",
            f"Created: {issue.created}",
            f"Specs: {', '.join(issue.specs) if issue.specs else '-'}",
            "",
            issue.description or "(no description)",
        ]
        if issue.acceptance_criteria:
            lines.extend(["", "Acceptance criteria:"])
            lines.extend(f"  {criterion}" for criterion in issue.acceptance_criteria)
        if issue.agent_log:
            lines.extend(["", "Agent log:"])
            lines.extend(
                f"  {entry.timestamp} [{entry.agent}] {entry.content}" for entry in issue.agent_log
            )
        if settings.db_path.exists():
            with _repository(settings) as repository:
                runs = repository.list_worker_runs(issue_id=issue.id)
            if runs:
                lines.extend(["", "Worker runs:"])
                for run in runs:
                    finished = run.finished_at.isoformat() if run.finished_at else "-"
                    lines.append(
                        f"  run={run.run_id} endpoint={run.endpoint_name} "
                        f"outcome={run.outcome or 'running'} exit_code={run.exit_code} "
                        f"started={run.started_at.isoformat()} finished={finished}",
                    )
        return CommandResult(lines=lines, success=True)

    def endpoints(self, command: EndpointsCommand) -> CommandResult:
        settings = _settings(command.project_root)
        try:
            settings.validate()
        except ValueError as error:
            return CommandResult(lines=[str(error)], success=False)
        return asyncio.run(self._endpoints(settings))

    def recover(self, command: RecoverCommand) -> CommandResult:
        settings = _settings(command.project_root)
        return asyncio.run(self._recover(settings))

    def chat(self, command: ChatCommand, io: ChatIO) -> CommandResult:
        settings = _settings(command.project_root)
        if command.yolo:
            settings.manager.yolo_mode = True
        try:
            settings.validate()
        except ValueError as error:
            return CommandResult(lines=[str(error)], success=False)
        return asyncio.run(ChatSession(settings, io).run())

    async def _endpoints(self, settings: Settings) -> CommandResult:
        router = _router(settings)
        try:
            await router.check_all_health()
            lines = [
                f"{state.name}: {'healthy' if state.healthy else 'unhealthy'} "
                f"url={state.url} in_use={state.current_requests + state.reserved_slots}"
                f"/{state.max_concurrent} last_check={state.last_check.isoformat()}"
                for state in router.health()
            ]
            lines.append(f"Summary: {router.healthy_summary()}")
            return CommandResult(lines=lines, success=router.has_healthy_endpoint())
        finally:
            await router.aclose()

    async def _recover(self, settings: Settings) -> CommandResult:
        vcs = GitCoordinator(settings.project_root)
        if not await vcs.is_repository():
            return CommandResult(
                lines=[f"Not a git repository: {settings.project_root}"],
                success=False,
            )
        router = _router(settings)
        try:
            manager = Manager(
                settings=settings,
                router=router,
                store=_issue_store(settings),
                vcs=vcs,
            )
            report = await manager.recover()
        finally:
            await router.aclose()
        if not report.recovered:
            return CommandResult(lines=["No orphaned issues found."], success=True)
        return CommandResult(lines=report.lines, success=True)


class ChatSession:
    """One interactive manager session bound to a terminal."""

    def __init__(self, settings: Settings, io: ChatIO) -> None:
        self.settings = settings
        self.io = io
        self._user_turn_active = False

    async def run(self) -> CommandResult:  # noqa: C901
        vcs = GitCoordinator(self.settings.project_root)
        if not await vcs.is_repository():
            return CommandResult(
                lines=[f"Not a git repository: {self.settings.project_root}"],
                success=False,
            )
        for path in initialize_project(self.settings).created:
            self.io.write(f"Created {path.relative_to(self.settings.project_root).as_posix()}")

        router = _router(self.settings)
        await router.start()
        if not router.has_healthy_endpoint():
            await router.aclose()
            return CommandResult(
                lines=[f"No reachable LLM endpoint ({router.healthy_summary()})."],
                success=False,
            )

        repository = ManagerRepository(self.settings.db_path)
        repository.init_schema()
        manager = Manager(
            settings=self.settings,
            router=router,
            store=_issue_store(self.settings),
            vcs=vcs,
            repository=repository,
            approval_callback=self.approve,
        )
        manager.initialize()
        logger.info("Chat session started in %s", self.settings.project_root)
        manager.subscribe(lambda event: self.io.write(render_event(event)))
        try:
            report = await manager.recover()
            for line in report.lines:
                self.io.write(line)
            self.io.write(
                f"Endpoints: {router.healthy_summary()}. "
                f"Yolo mode: {'ON' if manager.yolo_mode else 'OFF'}. "
                "Commands: /yolo, /status, /quit",
            )
            while True:
                line = await asyncio.to_thread(self.io.read_line)
                if line is None:
                    break
                text = line.strip()
                if not text:
                    continue
                if text == "/quit":
                    break
                if text == "/yolo":
                    enabled = manager.toggle_yolo_mode()
                    self.io.write(f"Yolo mode: {'ON' if enabled else 'OFF'}")
                    continue
                if text == "/status":
                    self.io.write(f"Endpoints: {router.healthy_summary()}")
                    self.io.write(await manager.execute_tool("worker_status", {}))
                    continue
                self._user_turn_active = True
                try:
                    await manager.chat(text)
                finally:
                    self._user_turn_active = False
        finally:
            await manager.shutdown()
            await router.aclose()
            repository.close()
            logger.info("Chat session ended")
        return CommandResult(lines=["Session ended."], success=True)

    async def approve(self, description: str) -> bool:
        if not self._user_turn_active:
            self.io.write(f"Declined without a user present: {description}")
            return False
        return await asyncio.to_thread(self.io.confirm, f"Allow: {description}?")


def render_event(event: ManagerEvent) -> str:
    """One terminal line for a manager event."""

    if event.kind == ManagerEventKind.TEXT:
        return event.text
    if event.kind == ManagerEventKind.TOOL_CALL:
        return f"> {event.text}"
    if event.kind == ManagerEventKind.TOOL_RESULT:
        preview = event.text.strip().splitlines()[0] if event.text.strip() else "(empty)"
        if len(preview) > TOOL_RESULT_PREVIEW_CHARS:
            preview = preview[:TOOL_RESULT_PREVIEW_CHARS] + "..."
        return f"  {preview}"
    if event.kind == ManagerEventKind.ERROR:
        return f"Error: {event.text}"
    return f"[worker] {event.text}"


def _settings(project_root: Path | None) -> Settings:
    return Settings.from_env(project_root=project_root)


def _issue_store(settings: Settings) -> IssueStore:
    return IssueStore(settings.state_dir / "issues")


def _router(settings: Settings) -> EndpointRouter:
    return EndpointRouter(
        settings.llm.endpoints,
        health_check_interval_seconds=settings.llm.health_check_interval_seconds,
        backend_factory=_backend_factory(settings),
    )


def _backend_factory(settings: Settings) -> Callable[[EndpointSettings], LlmBackend]:
    def build(endpoint: EndpointSettings) -> LlmBackend:
        return HttpLlmBackend(
            endpoint.url,
            timeout_seconds=settings.llm.request_timeout_seconds,
        )

    return build


@contextmanager
def _repository(settings: Settings) -> Iterator[ManagerRepository]:
    repository = ManagerRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
