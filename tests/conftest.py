"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from claw_core.config import GlobalConfig, MemoryConfig
from claw_core.events import AgentEvent, EventEmitter
from claw_core.memory import SessionManager


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Temporary directory for memory and session files."""
    d = tmp_path / "memory"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Run without configuration coming from the environment."""
    for var in ["CLAW_CONFIG", "CLAW_WORKSPACE", "OPENROUTER_API_KEY", "OPENROUTER_MODEL"]:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(scope="function")
def config(tmp_path: Path, tmp_data_dir: Path) -> GlobalConfig:
    return GlobalConfig(
        workspace=str(tmp_path),
        memory=MemoryConfig(persist_path=str(tmp_data_dir)),
    )


@pytest.fixture(scope="function")
def sessions(tmp_data_dir: Path) -> SessionManager:
    return SessionManager(str(tmp_data_dir))


@pytest.fixture(scope="function")
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture(scope="function")
def events(emitter: EventEmitter) -> List[AgentEvent]:
    """Every event emitted through ``emitter``, in order."""
    collected: List[AgentEvent] = []
    emitter.subscribe(collected.append)
    return collected
