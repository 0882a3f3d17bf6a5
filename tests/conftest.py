"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from orchard.config import EndpointSettings, LlmSettings, Settings
from orchard.issues import IssueStore


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary project with one local endpoint."""

    return Settings(
        project_root=tmp_path,
        llm=LlmSettings(
            endpoints=(
                EndpointSettings(name="local", url="http://localhost:11434", max_concurrent=2),
            ),
        ),
    )


@pytest.fixture()
def store(settings: Settings) -> IssueStore:
    return IssueStore(settings.state_dir / "issues")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "ORCHARD_PROJECT_ROOT",
        "ORCHARD_LLM_ENDPOINTS",
        "ORCHARD_YOLO_MODE",
        "ORCHARD_WORKER_MAX_CONCURRENT",
        "ORCHARD_WORKER_COMMAND_TEMPLATE",
    ):
        monkeypatch.delenv(name, raising=False)
