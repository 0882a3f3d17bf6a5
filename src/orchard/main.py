"""CLI entrypoint for orchard."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import rich_click as click

from orchard import __version__
from orchard.config import Settings
from orchard.issues import IssueStatus
from orchard.orchestrator.controllers import (
    ChatCommand,
    EndpointsCommand,
    InitCommand,
    IssueShowCommand,
    IssuesListCommand,
    OrchardCliController,
    RecoverCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchardCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_log_handler: logging.Handler | None = None


@dataclass(slots=True)
class CliContext:
    """Options shared by every subcommand."""

    project_root: Path | None
    log_level: str


class TerminalChatIO:
    """Chat session IO over click prompts."""

    def read_line(self) -> str | None:
        try:
            return click.prompt("you", default="", show_default=False, prompt_suffix="> ")
        except click.Abort:
            return None

    def write(self, line: str) -> None:
        click.echo(line)

    def confirm(self, question: str) -> bool:
        try:
            return click.confirm(question, default=False)
        except click.Abort:
            return False


@click.group()
@click.version_option(version=__version__, prog_name="orchard")
@click.option(
    "--project-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    envvar="ORCHARD_PROJECT_ROOT",
    help="Project directory (defaults to the current directory).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Level for `.orchard/orchard.log`.",
)
@click.pass_context
def orchard(ctx: click.Context, project_root: Path | None, log_level: str) -> None:
    """Orchard: a manager agent that delegates issues to parallel coding workers."""

    ctx.obj = CliContext(project_root=project_root, log_level=log_level.upper())
    try:
        _configure_logging(ctx.obj)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@orchard.command("init")
@click.pass_obj
def init(context: CliContext) -> None:
    """Create `.orchard/`, `specs/` and the default manager prompts."""

    _emit_lines(CONTROLLER.init(InitCommand(project_root=context.project_root)))
    _configure_logging(context)


@orchard.command("chat")
@click.option("--yolo", is_flag=True, default=False, help="Skip approval prompts.")
@click.pass_obj
def chat(context: CliContext, yolo: bool) -> None:
    """Start an interactive session with the manager.

    Type `/yolo` to toggle approval prompts, `/status` to show workers and
    `/quit` to leave.
    """

    result = CONTROLLER.chat(
        ChatCommand(project_root=context.project_root, yolo=yolo),
        TerminalChatIO(),
    )
    if not result.success:
        raise click.ClickException("\n".join(result.lines))
    _emit_lines(result.lines)


@orchard.group()
def issues() -> None:
    """Issue inspection commands."""


@issues.command("list")
@click.option(
    "--status",
    type=click.Choice([status.value for status in IssueStatus]),
    default=None,
    help="Only show issues in this status.",
)
@click.pass_obj
def issues_list(context: CliContext, status: str | None) -> None:
    """List tracked issues."""

    _emit_lines(
        CONTROLLER.list_issues(
            IssuesListCommand(
                project_root=context.project_root,
                status=IssueStatus(status) if status else None,
            ),
        ),
    )


@issues.command("show")
@click.argument("issue_id")
@click.pass_obj
def issues_show(context: CliContext, issue_id: str) -> None:
    """Show one issue with its agent log and worker runs."""

    result = CONTROLLER.show_issue(
        IssueShowCommand(project_root=context.project_root, issue_id=issue_id),
    )
    if not result.success:
        raise click.ClickException("\n".join(result.lines))
    _emit_lines(result.lines)


@orchard.command("endpoints")
@click.pass_obj
def endpoints(context: CliContext) -> None:
    """Probe every configured LLM endpoint and show its health."""

    result = CONTROLLER.endpoints(EndpointsCommand(project_root=context.project_root))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("No reachable LLM endpoint.")


@orchard.command("recover")
@click.pass_obj
def recover(context: CliContext) -> None:
    """Reset issues left in progress by a previous session."""

    result = CONTROLLER.recover(RecoverCommand(project_root=context.project_root))
    if not result.success:
        raise click.ClickException("\n".join(result.lines))
    _emit_lines(result.lines)


def _configure_logging(context: CliContext) -> None:
    """Send log records to the project log file once `.orchard/` exists."""

    global _log_handler  # noqa: PLW0603
    settings = Settings.from_env(project_root=context.project_root)
    if not settings.state_dir.is_dir():
        return
    root_logger = logging.getLogger()
    if _log_handler is not None:
        root_logger.removeHandler(_log_handler)
        _log_handler.close()
    _log_handler = logging.FileHandler(settings.log_path, encoding="utf-8")
    _log_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(_log_handler)
    root_logger.setLevel(context.log_level)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    orchard()
