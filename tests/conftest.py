"""Shared test fixtures and utilities."""

import itertools
import json
import sys
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_workflow_engine.client import WorkerClient, WorkerResponse
from agent_workflow_engine.config import EngineSettings
from agent_workflow_engine.engine import WorkflowEngine
from agent_workflow_engine.registry import InMemoryAgentRegistry
from agent_workflow_engine.store import InMemoryWorkflowStore

FAKE_WORKER = Path(__file__).parent / "fake_worker.py"


def planner_reply(command: dict[str, Any], session_id: str = "planner-session") -> WorkerResponse:
    """Worker response carrying a planner command as JSON text."""
    return WorkerResponse(text=json.dumps(command), session_id=session_id)


def worker_reply(text: str, session_id: str = "worker-session") -> WorkerResponse:
    return WorkerResponse(text=text, session_id=session_id)


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    """Create engine settings that launch the fake worker.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        EngineSettings with short timeouts and output folders under tmp_path
    """
    settings = EngineSettings()
    settings.worker.command = [sys.executable, str(FAKE_WORKER)]
    settings.worker.inactivity_timeout = 10.0
    settings.worker.planner_timeout = 10.0
    settings.worker.exit_grace = 2.0
    settings.media.image_output_dir = str(tmp_path / "image-output")
    settings.media.audio_output_dir = str(tmp_path / "audio-output")
    settings.recovery.requests_dir = str(tmp_path / "active-requests")
    return settings


@pytest.fixture
def scenario(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Return a function that installs a fake worker scenario.

    The returned function accepts the scenario dict and returns the paths of
    the argv and stdin capture files.
    """

    def install(data: dict[str, Any]) -> tuple[Path, Path]:
        argv_file = tmp_path / "argv.json"
        stdin_file = tmp_path / "stdin.jsonl"
        full = {
            "argv_file": str(argv_file),
            "stdin_file": str(stdin_file),
            "counter_file": str(tmp_path / "turn-counter"),
            **data,
        }
        monkeypatch.setenv("FAKE_WORKER_SCENARIO", json.dumps(full))
        return argv_file, stdin_file

    return install


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def registry() -> InMemoryAgentRegistry:
    return InMemoryAgentRegistry()


@pytest.fixture
def mock_client() -> MagicMock:
    """Create mock WorkerClient.

    Returns:
        Mocked WorkerClient whose ``invoke`` is an AsyncMock; tests set its
        ``side_effect`` to the sequence of worker responses
    """
    client = MagicMock(spec=WorkerClient)
    client.invoke = AsyncMock()
    return client


@pytest.fixture
def events() -> list[tuple[str, dict]]:
    return []


@pytest.fixture
def engine(
    settings: EngineSettings,
    mock_client: MagicMock,
    store: InMemoryWorkflowStore,
    registry: InMemoryAgentRegistry,
    events: list,
) -> WorkflowEngine:
    """Create a WorkflowEngine wired to the mock client and in-memory stores.

    Progress events are appended to the ``events`` fixture.
    """
    ticks = itertools.count(1700000000.0, 1.0)
    return WorkflowEngine(
        settings,
        mock_client,
        store,
        registry,
        on_progress=lambda event, data: events.append((event, data)),
        clock=lambda: next(ticks),
    )
