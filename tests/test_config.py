import json

import pytest

from claw_core.config import (
    ConfigError,
    GlobalConfig,
    GoalConfig,
    get_config_summary,
    load_config,
)
from claw_core.config.loader import AutonomyConfig


@pytest.fixture
def isolated(tmp_path, monkeypatch, clean_env):
    """No config file in cwd or home."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return tmp_path


def write_config(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_defaults_without_any_file(isolated):
    config = load_config()
    assert config.llm.model == "nvidia/nemotron-nano-9b-v2:free"
    assert config.llm.max_retries == 3
    assert config.max_tool_iterations == 20
    assert config.memory.max_context_tokens == 8000
    assert config.goals == []


def test_explicit_path_is_loaded(isolated):
    path = write_config(isolated / "agent.json", {
        "llm": {"api_key": "k", "model": "m"},
        "identity": {"name": "Scout"},
        "goals": [{"id": "g1", "description": "Tidy", "priority": "high"}],
        "schedules": [{"id": "s1", "cron": "0 * * * *", "action": "Check"}],
        "logging": {"level": "DEBUG"},
    })

    config = load_config(str(path))

    assert config.llm.api_key == "k"
    assert config.llm.model == "m"
    assert config.identity.name == "Scout"
    assert config.goals[0].priority == "high"
    assert config.schedules[0].cron == "0 * * * *"
    assert config.logging_level == "DEBUG"


def test_workspace_config_in_cwd(isolated):
    write_config(isolated / ".claw" / "config.json", {"identity": {"name": "Local"}})
    assert load_config().identity.name == "Local"


def test_openrouter_section_alias(isolated):
    path = write_config(isolated / "c.json", {"openrouter": {"apiKey": "abc"}})
    assert load_config(str(path)).llm.api_key == "abc"


def test_environment_overrides(isolated, monkeypatch):
    path = write_config(isolated / "c.json", {"llm": {"api_key": "file", "model": "file-model"}})
    monkeypatch.setenv("OPENROUTER_API_KEY", "env-key")
    monkeypatch.setenv("OPENROUTER_MODEL", "env-model")
    monkeypatch.setenv("CLAW_WORKSPACE", "/srv/work")

    config = load_config(str(path))

    assert config.llm.api_key == "env-key"
    assert config.llm.model == "env-model"
    assert config.workspace == "/srv/work"


def test_missing_explicit_path_raises(isolated):
    with pytest.raises(ConfigError):
        load_config(str(isolated / "nope.json"))


def test_unreadable_explicit_path_raises(isolated):
    path = isolated / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_invalid_goal_priority_rejected():
    with pytest.raises(ConfigError):
        GoalConfig(id="g", description="x", priority="urgent")


def test_invalid_failure_policy_rejected():
    with pytest.raises(ConfigError):
        AutonomyConfig(scheduled_failure_policy="ignore")


def test_summary_hides_api_key():
    config = GlobalConfig.from_dict({"llm": {"api_key": "secret"}, "workspace": "/w"})
    summary = get_config_summary(config)
    assert summary["has_api_key"] is True
    assert "secret" not in json.dumps(summary)


def test_dict_round_trip_keeps_goals():
    config = GlobalConfig.from_dict({
        "goals": [{"id": "g", "description": "d", "status": "paused", "context": "c"}],
        "workspace": "/w",
    })
    again = GlobalConfig.from_dict(config.to_dict())
    assert again.goals[0].status == "paused"
    assert again.goals[0].context == "c"
    assert not again.goals[0].is_active
