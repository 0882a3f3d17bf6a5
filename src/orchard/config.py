"""Runtime configuration for the manager, workers and LLM endpoint pool."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

STATE_DIR_NAME = ".orchard"


@dataclass(slots=True)
class EndpointSettings:
    """One LLM backend reachable over HTTP."""

    name: str
    url: str
    weight: int = 1
    max_concurrent: int = 1


def _default_endpoints() -> tuple[EndpointSettings, ...]:
    return (EndpointSettings(name="local", url="http://localhost:11434", max_concurrent=2),)


@dataclass(slots=True)
class LlmSettings:
    """Endpoint pool and request settings."""

    endpoints: tuple[EndpointSettings, ...] = field(default_factory=_default_endpoints)
    model: str = "qwen2.5-coder-32b"
    max_tokens: int = 4096
    health_check_interval_seconds: float = 30.0
    request_timeout_seconds: float = 600.0


@dataclass(slots=True)
class ManagerSettings:
    """Conversational manager settings."""

    system_prompt_file: str = f"{STATE_DIR_NAME}/manager-system.md"
    yolo_mode: bool = False
    max_turn_iterations: int = 25
    history_replay_messages: int = 50
    completion_tail_lines: int = 20


@dataclass(slots=True)
class WorkerSettings:
    """Worker subprocess settings."""

    command_template: str = (
        'claude -p "Execute the task described in the context piped via stdin. '
        'Follow all instructions exactly." --dangerously-skip-permissions --model {model}'
    )
    max_concurrent: int = 1
    kill_grace_seconds: float = 5.0
    test_command: str = "pytest"
    build_command: str = "python -m build"
    test_timeout_seconds: float = 60.0


@dataclass(slots=True)
class ProjectSettings:
    """Layout of the managed project."""

    specs_dir: str = "specs"
    main_branch: str = "main"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_root: Path = Path()
    llm: LlmSettings = field(default_factory=LlmSettings)
    manager: ManagerSettings = field(default_factory=ManagerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    project: ProjectSettings = field(default_factory=ProjectSettings)

    @property
    def state_dir(self) -> Path:
        return self.project_root / STATE_DIR_NAME

    @property
    def db_path(self) -> Path:
        return self.state_dir / "orchard.db"

    @property
    def log_path(self) -> Path:
        return self.state_dir / "orchard.log"

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        root = project_root or Path(os.getenv("ORCHARD_PROJECT_ROOT", "."))
        llm_defaults = LlmSettings()
        manager_defaults = ManagerSettings()
        worker_defaults = WorkerSettings()
        return cls(
            project_root=root.resolve(),
            llm=LlmSettings(
                endpoints=_collect_endpoints() or llm_defaults.endpoints,
                model=os.getenv("ORCHARD_LLM_MODEL", llm_defaults.model),
                max_tokens=int(os.getenv("ORCHARD_LLM_MAX_TOKENS", "4096")),
                health_check_interval_seconds=float(
                    os.getenv("ORCHARD_LLM_HEALTH_CHECK_INTERVAL_SECONDS", "30"),
                ),
                request_timeout_seconds=float(
                    os.getenv("ORCHARD_LLM_REQUEST_TIMEOUT_SECONDS", "600"),
                ),
            ),
            manager=ManagerSettings(
                system_prompt_file=os.getenv(
                    "ORCHARD_MANAGER_SYSTEM_PROMPT_FILE",
                    manager_defaults.system_prompt_file,
                ),
                yolo_mode=_env_bool("ORCHARD_YOLO_MODE", default=False),
                max_turn_iterations=int(os.getenv("ORCHARD_MAX_TURN_ITERATIONS", "25")),
                history_replay_messages=int(
                    os.getenv("ORCHARD_HISTORY_REPLAY_MESSAGES", "50"),
                ),
                completion_tail_lines=int(os.getenv("ORCHARD_COMPLETION_TAIL_LINES", "20")),
            ),
            worker=WorkerSettings(
                command_template=os.getenv(
                    "ORCHARD_WORKER_COMMAND_TEMPLATE",
                    worker_defaults.command_template,
                ),
                max_concurrent=int(os.getenv("ORCHARD_WORKER_MAX_CONCURRENT", "1")),
                kill_grace_seconds=float(os.getenv("ORCHARD_WORKER_KILL_GRACE_SECONDS", "5")),
                test_command=os.getenv("ORCHARD_TEST_COMMAND", worker_defaults.test_command),
                build_command=os.getenv("ORCHARD_BUILD_COMMAND", worker_defaults.build_command),
                test_timeout_seconds=float(os.getenv("ORCHARD_TEST_TIMEOUT_SECONDS", "60")),
            ),
            project=ProjectSettings(
                specs_dir=os.getenv("ORCHARD_SPECS_DIR", "specs"),
                main_branch=os.getenv("ORCHARD_MAIN_BRANCH", "main"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if settings cannot drive a session."""

        if not self.llm.endpoints:
            raise ValueError("At least one LLM endpoint is required. Set ORCHARD_LLM_ENDPOINTS.")
        names: set[str] = set()
        for endpoint in self.llm.endpoints:
            _validate_endpoint_url(endpoint.url)
            if endpoint.name in names:
                raise ValueError(f"Duplicate LLM endpoint name: {endpoint.name!r}")
            names.add(endpoint.name)
            if endpoint.weight <= 0:
                raise ValueError(
                    f"LLM endpoint weight must be positive: {endpoint.name!r} -> {endpoint.weight}",
                )
            if endpoint.max_concurrent <= 0:
                raise ValueError(
                    "LLM endpoint max_concurrent must be positive: "
                    f"{endpoint.name!r} -> {endpoint.max_concurrent}",
                )
        if self.llm.health_check_interval_seconds <= 0:
            raise ValueError("ORCHARD_LLM_HEALTH_CHECK_INTERVAL_SECONDS must be > 0.")
        if self.manager.max_turn_iterations <= 0:
            raise ValueError("ORCHARD_MAX_TURN_ITERATIONS must be > 0.")
        if self.manager.history_replay_messages < 0:
            raise ValueError("ORCHARD_HISTORY_REPLAY_MESSAGES must be >= 0.")
        if self.worker.max_concurrent <= 0:
            raise ValueError("ORCHARD_WORKER_MAX_CONCURRENT must be > 0.")
        if "{model}" not in self.worker.command_template:
            raise ValueError("ORCHARD_WORKER_COMMAND_TEMPLATE must include {model}.")


def _collect_endpoints() -> tuple[EndpointSettings, ...]:
    raw = os.getenv("ORCHARD_LLM_ENDPOINTS", "").strip()
    if not raw:
        return ()

    endpoints: list[EndpointSettings] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        fields = [value.strip() for value in token.split("|")]
        if len(fields) not in (2, 3, 4):
            raise ValueError(
                "Invalid ORCHARD_LLM_ENDPOINTS entry: "
                f"{token!r}. Expected format '<name>|<url>[|<weight>[|<max_concurrent>]]'.",
            )
        name, url = fields[0], fields[1]
        try:
            weight = int(fields[2]) if len(fields) > 2 else 1  # noqa: PLR2004
            max_concurrent = int(fields[3]) if len(fields) > 3 else 1  # noqa: PLR2004
        except ValueError as error:
            raise ValueError(
                f"Invalid ORCHARD_LLM_ENDPOINTS numbers for {name!r}: {token!r}",
            ) from error
        endpoints.append(
            EndpointSettings(name=name, url=url, weight=weight, max_concurrent=max_concurrent),
        )
    return tuple(endpoints)


def _validate_endpoint_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid LLM endpoint URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
