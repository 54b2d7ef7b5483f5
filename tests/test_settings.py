from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from ralph.config import (
    DEFAULT_MAX_ITERATIONS,
    RalphSettings,
    load_agent_profile,
    resolve_max_iterations,
    resolve_repo_root,
    tracker_command_from_env,
)
from ralph.errors import ConfigError

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Loop Settings"),
]


def test_load_resolves_paths_against_repo_root(ralph_workspace) -> None:
    settings = ralph_workspace.settings()

    assert settings.repo_root == ralph_workspace.root.resolve()
    assert settings.database_path == ralph_workspace.db_path.resolve()
    assert settings.execution.max_iterations == 10
    assert settings.execution.log_dir == settings.repo_root / "logs" / "ralph"
    assert settings.profiles_dir.name == "agents"
    assert settings.base_instructions_path.name == "AGENTS.md"
    assert settings.agents["engineering"] == "engineering-agent.json"


def test_load_uses_default_config_location(ralph_workspace) -> None:
    settings = RalphSettings.load()

    assert settings.config_path == ralph_workspace.config_path.resolve()


def test_env_overrides_iterations_and_log_dir(
    ralph_workspace,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RALPH_MAX_ITERATIONS", "3")
    monkeypatch.setenv("RALPH_LOG_DIR", str(tmp_path / "custom-logs"))

    settings = ralph_workspace.settings()

    assert settings.execution.max_iterations == 3
    assert settings.execution.log_dir == tmp_path / "custom-logs"


def test_ralph_config_env_selects_config_file(
    ralph_workspace,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RALPH_CONFIG", str(ralph_workspace.config_path))

    settings = RalphSettings.load(repo_root=tmp_path)

    assert settings.config_path == ralph_workspace.config_path


def test_missing_config_file_is_reported(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        RalphSettings.load(tmp_path / "nope.json", repo_root=tmp_path)


def test_config_without_project_manager_is_rejected(tmp_path: Path) -> None:
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"agents": {"engineering": "eng.json"}}), "utf-8")

    with pytest.raises(ConfigError, match="'project-manager' agent"):
        RalphSettings.load(config, repo_root=tmp_path)


def test_config_without_agents_is_rejected(tmp_path: Path) -> None:
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"ai_tool": {"name": "agent"}}), "utf-8")

    with pytest.raises(ConfigError, match="'agents' mapping"):
        RalphSettings.load(config, repo_root=tmp_path)


def test_malformed_config_json_is_reported(tmp_path: Path) -> None:
    config = tmp_path / "config.json"
    config.write_text("{not json", "utf-8")

    with pytest.raises(ConfigError, match="Failed to parse JSON"):
        RalphSettings.load(config, repo_root=tmp_path)


def test_public_dict_strips_ai_tool_env(ralph_workspace) -> None:
    public = ralph_workspace.settings().to_public_dict()

    assert public["ai_tool"] == {"name": "agent", "command": "agent"}
    assert "config-secret" not in json.dumps(public)


def test_role_name_falls_back_to_label_and_project_manager(ralph_workspace) -> None:
    settings = ralph_workspace.settings()

    assert settings.role_name("qa") == "QA Reviewer"
    assert settings.role_name("design") == "design"
    assert settings.role_name(None) == "Project Manager"


def test_load_profile_reads_profiles_directory(ralph_workspace) -> None:
    profile = ralph_workspace.settings().load_profile("engineering-agent.json")

    assert profile.name == "Eve"
    assert profile.label == "engineering"
    assert profile.model_tier == "quality"
    assert profile.ai_tool.env == {"PROFILE_TOKEN": "eng-profile"}
    assert "env" not in profile.to_public_dict()["ai_tool"]


def test_profile_missing_required_fields(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text(json.dumps({"name": "X", "label": "x"}), "utf-8")

    with pytest.raises(ConfigError, match="missing required fields in broken.json"):
        load_agent_profile(path)


def test_profile_not_found(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Agent profile not found"):
        load_agent_profile(tmp_path / "ghost.json")


@pytest.mark.parametrize(
    ("configured", "expected"),
    [(None, DEFAULT_MAX_ITERATIONS), (0, DEFAULT_MAX_ITERATIONS), (7, 7), ("12", 12)],
)
def test_resolve_max_iterations(
    configured: object,
    expected: int,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("RALPH_MAX_ITERATIONS", raising=False)

    assert resolve_max_iterations(configured) == expected


@pytest.mark.parametrize("raw", ["abc", "0", "-2"])
def test_invalid_iteration_env_is_rejected(raw: str, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RALPH_MAX_ITERATIONS", raw)

    with pytest.raises(ConfigError, match="Invalid RALPH_MAX_ITERATIONS"):
        resolve_max_iterations(5)


def test_repo_root_walks_up_to_git_marker(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("REPO_ROOT", raising=False)
    (tmp_path / ".git").mkdir()
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert resolve_repo_root(nested) == tmp_path.resolve()


def test_repo_root_env_wins(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REPO_ROOT", str(tmp_path))

    assert resolve_repo_root(Path("/")) == tmp_path


def test_tracker_command_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RALPH_BD_COMMAND", raising=False)
    assert tracker_command_from_env() == ("bd",)

    monkeypatch.setenv("RALPH_BD_COMMAND", "python '/tmp/fake bd.py'")
    assert tracker_command_from_env() == ("python", "/tmp/fake bd.py")
