"""Shared test fixtures."""

from __future__ import annotations

import json
import shlex
import sqlite3
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from ralph.config import RalphSettings
from ralph.orchestrator.backend.agents import AgentKind, register_agent_kind

FAKE_BD_SCRIPT = Path(__file__).with_name("fake_bd.py")
FAKE_AGENT_SCRIPT = Path(__file__).with_name("fake_agent.py")
FAKE_AGENT_KIND = "fake-python"


def _fake_agent_args(prompt: str, extra_args: Sequence[str]) -> list[str]:
    return [str(FAKE_AGENT_SCRIPT), *extra_args, prompt]


register_agent_kind(
    AgentKind(name=FAKE_AGENT_KIND, command=sys.executable, build_args=_fake_agent_args),
)


@dataclass(slots=True)
class FakeBd:
    """Handle on the JSON state behind ``tests/fake_bd.py``."""

    state_path: Path

    @property
    def command(self) -> tuple[str, ...]:
        return (sys.executable, str(FAKE_BD_SCRIPT))

    def seed(self, issues: Sequence[dict[str, Any]], *, prefix: str = "devagent") -> None:
        state = {"issues": {issue["id"]: issue for issue in issues}, "calls": [], "prefix": prefix}
        self.state_path.write_text(json.dumps(state), "utf-8")

    def state(self) -> dict[str, Any]:
        return json.loads(self.state_path.read_text("utf-8"))

    def issue(self, issue_id: str) -> dict[str, Any]:
        return self.state()["issues"][issue_id]

    def comments(self, issue_id: str) -> list[str]:
        return self.state().get("comments", {}).get(issue_id, [])


@dataclass(slots=True)
class RalphWorkspace:
    """Repository layout with plugin config, agent profiles and a tracker database."""

    root: Path
    config_path: Path
    db_path: Path

    def settings(self) -> RalphSettings:
        return RalphSettings.load(self.config_path, repo_root=self.root)

    def add_issues(self, *issue_ids: str) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.executemany(
                "INSERT OR IGNORE INTO issues (id) VALUES (?)",
                [(issue_id,) for issue_id in issue_ids],
            )

    def update_config(self, **updates: Any) -> None:
        payload = json.loads(self.config_path.read_text("utf-8"))
        payload.update(updates)
        self.config_path.write_text(json.dumps(payload, indent=2), "utf-8")


@pytest.fixture()
def fake_bd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeBd:
    handle = FakeBd(state_path=tmp_path / "bd-state.json")
    handle.seed([])
    monkeypatch.setenv("FAKE_BD_STATE", str(handle.state_path))
    monkeypatch.setenv("FAKE_BD_SCRIPT", str(FAKE_BD_SCRIPT))
    monkeypatch.setenv(
        "RALPH_BD_COMMAND",
        " ".join(shlex.quote(part) for part in handle.command),
    )
    return handle


@pytest.fixture()
def ralph_workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> RalphWorkspace:
    for name in ("RALPH_CONFIG", "RALPH_MAX_ITERATIONS", "RALPH_LOG_DIR", "REPO_ROOT"):
        monkeypatch.delenv(name, raising=False)

    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    plugin_dir = root / ".devagent" / "plugins" / "ralph"
    tools_dir = plugin_dir / "tools"
    agents_dir = plugin_dir / "agents"
    tools_dir.mkdir(parents=True)
    agents_dir.mkdir()
    (plugin_dir / "AGENTS.md").write_text("Shared rules for every agent.\n", "utf-8")
    (root / "docs").mkdir()
    (root / "docs" / "engineering.md").write_text("Write tests first.\n", "utf-8")

    fake_tool = {"name": FAKE_AGENT_KIND, "command": sys.executable}
    profiles = {
        "project-manager-agent.json": {
            "name": "Pat",
            "label": "project-manager",
            "ai_tool": {**fake_tool, "env": {"PROFILE_TOKEN": "pm-profile"}},
            "instructions_path": "docs/missing-pm.md",
        },
        "engineering-agent.json": {
            "name": "Eve",
            "label": "engineering",
            "ai_tool": {**fake_tool, "env": {"PROFILE_TOKEN": "eng-profile"}},
            "instructions_path": "docs/engineering.md",
            "model_tier": "quality",
        },
        "qa-agent.json": {
            "name": "Quinn",
            "label": "qa",
            "ai_tool": fake_tool,
            "instructions_path": "docs/qa.md",
        },
    }
    for filename, profile in profiles.items():
        (agents_dir / filename).write_text(json.dumps(profile), "utf-8")

    config_path = tools_dir / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "ai_tool": {
                    "name": "agent",
                    "command": "agent",
                    "env": {"CONFIG_TOKEN": "config-secret"},
                },
                "agents": {
                    "project-manager": "project-manager-agent.json",
                    "engineering": "engineering-agent.json",
                    "qa": "qa-agent.json",
                },
                "roles": {"engineering": "Engineer", "qa": "QA Reviewer"},
                "execution": {"max_iterations": 10, "log_dir": "logs/ralph"},
                "beads": {"database_path": ".beads/beads.db"},
            },
            indent=2,
        ),
        "utf-8",
    )

    db_path = root / ".beads" / "beads.db"
    db_path.parent.mkdir()
    with sqlite3.connect(db_path) as connection:
        connection.execute("CREATE TABLE issues (id TEXT PRIMARY KEY)")

    monkeypatch.chdir(root)
    return RalphWorkspace(root=root, config_path=config_path, db_path=db_path)
