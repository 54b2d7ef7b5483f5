"""Runtime configuration for the execution loop and agent profiles."""

from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ralph.errors import ConfigError

FALLBACK_LABEL = "project-manager"
DEFAULT_CONFIG_RELATIVE_PATH = Path(".devagent/plugins/ralph/tools/config.json")
DEFAULT_MAX_ITERATIONS = 50
DEFAULT_DATABASE_PATH = ".beads/beads.db"
DEFAULT_LOG_DIR = "logs/ralph"
REPO_ROOT_MARKERS = (".git", "turbo.json")
REPO_ROOT_SEARCH_DEPTH = 12


@dataclass(frozen=True, slots=True)
class AiToolSettings:
    """Worker invocation descriptor: kind name, executable and env overrides."""

    name: str
    command: str
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, payload: Any, *, source: str) -> AiToolSettings:
        if not isinstance(payload, dict):
            raise ConfigError(f"Invalid ai_tool in {source}: expected an object.")
        name = str(payload.get("name") or "").strip()
        command = str(payload.get("command") or name).strip()
        if not name or not command:
            raise ConfigError(f"Invalid ai_tool in {source}: 'name' and 'command' are required.")
        env_payload = payload.get("env") or {}
        if not isinstance(env_payload, dict):
            raise ConfigError(f"Invalid ai_tool.env in {source}: expected an object.")
        return cls(
            name=name,
            command=command,
            env={str(key): str(value) for key, value in env_payload.items()},
        )

    def to_public_dict(self) -> dict[str, str]:
        """Serialize without ``env`` so secrets never reach stdout."""

        return {"name": self.name, "command": self.command}


@dataclass(frozen=True, slots=True)
class AgentProfile:
    """One routing target loaded from the profiles directory."""

    name: str
    label: str
    ai_tool: AiToolSettings
    instructions_path: str
    model_tier: str | None = None
    filename: str = ""

    def to_public_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "label": self.label,
            "ai_tool": self.ai_tool.to_public_dict(),
            "model_tier": self.model_tier,
            "instructions_path": self.instructions_path,
        }


@dataclass(slots=True)
class ExecutionSettings:
    """Loop limits and log placement."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    log_dir: Path = Path(DEFAULT_LOG_DIR)
    agent_timeout_seconds: int = 7_200
    max_failures: int = 5


@dataclass(slots=True)
class RalphSettings:
    """Loop settings grouped by concern, resolved against the repo root."""

    repo_root: Path
    config_path: Path
    ai_tool: AiToolSettings
    agents: dict[str, str]
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    database_path: Path = Path(DEFAULT_DATABASE_PATH)
    roles: dict[str, str] = field(default_factory=dict)
    role_briefs: dict[str, str] = field(default_factory=dict)
    preamble_path: Path | None = None
    profiles_dir: Path = Path("agents")
    base_instructions_path: Path = Path("AGENTS.md")
    tracker_command: tuple[str, ...] = ("bd",)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def load(
        cls,
        config_path: Path | None = None,
        *,
        repo_root: Path | None = None,
    ) -> RalphSettings:
        """Read ``config.json`` and apply ``RALPH_*`` environment overrides."""

        root = (repo_root or resolve_repo_root()).resolve()
        env_config = os.getenv("RALPH_CONFIG", "").strip()
        path = config_path or (Path(env_config) if env_config else DEFAULT_CONFIG_RELATIVE_PATH)
        path = _resolve_against(root, path)
        if not path.exists():
            raise ConfigError(f"Config file not found at {path}")
        payload = _read_json_file(path, context=f"config file at {path}")
        if not isinstance(payload, dict):
            raise ConfigError(f"Config file at {path} must contain a JSON object.")

        agents = payload.get("agents")
        if not isinstance(agents, dict) or not agents:
            raise ConfigError("Config missing required 'agents' mapping")
        if not agents.get(FALLBACK_LABEL):
            raise ConfigError(
                f"Config missing required '{FALLBACK_LABEL}' agent in agents mapping",
            )

        execution_payload = payload.get("execution") or {}
        beads_payload = payload.get("beads") or {}
        prompts_payload = payload.get("prompts") or {}
        plugin_dir = path.parent.parent

        configured_log_dir = str(execution_payload.get("log_dir") or "").strip()
        env_log_dir = os.getenv("RALPH_LOG_DIR", "").strip()
        if env_log_dir:
            log_dir = Path(env_log_dir)
        else:
            log_dir = _resolve_against(root, Path(configured_log_dir or DEFAULT_LOG_DIR))

        preamble = str(prompts_payload.get("preamble_path") or "").strip()

        return cls(
            repo_root=root,
            config_path=path,
            ai_tool=AiToolSettings.from_mapping(
                payload.get("ai_tool") or {"name": "agent", "command": "agent"},
                source=str(path),
            ),
            agents={str(label): str(filename) for label, filename in agents.items()},
            execution=ExecutionSettings(
                max_iterations=resolve_max_iterations(execution_payload.get("max_iterations")),
                log_dir=log_dir,
            ),
            database_path=_resolve_against(
                root,
                Path(str(beads_payload.get("database_path") or DEFAULT_DATABASE_PATH)),
            ),
            roles=_string_mapping(payload.get("roles"), name="roles"),
            role_briefs=_string_mapping(payload.get("role_briefs"), name="role_briefs"),
            preamble_path=_resolve_against(root, Path(preamble)) if preamble else None,
            profiles_dir=plugin_dir / "agents",
            base_instructions_path=plugin_dir / "AGENTS.md",
            tracker_command=tracker_command_from_env(),
            raw=payload,
        )

    def role_name(self, label: str | None) -> str:
        if label:
            return self.roles.get(label) or label
        return self.roles.get(FALLBACK_LABEL) or "Project Manager"

    def load_profile(self, filename: str) -> AgentProfile:
        return load_agent_profile(self.profiles_dir / filename, filename=filename)

    def to_public_dict(self) -> dict[str, Any]:
        """Config payload as loaded, with ``ai_tool.env`` stripped."""

        public = dict(self.raw)
        public["ai_tool"] = self.ai_tool.to_public_dict()
        return public


def resolve_max_iterations(configured: object) -> int:
    """Return the iteration limit, preferring ``RALPH_MAX_ITERATIONS`` when set."""

    raw = os.getenv("RALPH_MAX_ITERATIONS")
    if raw is not None and raw.strip():
        try:
            value = int(raw.strip())
        except ValueError as error:
            raise ConfigError(f"Invalid RALPH_MAX_ITERATIONS value: {raw!r}") from error
        if value < 1:
            raise ConfigError(f"Invalid RALPH_MAX_ITERATIONS value: {raw!r} (must be >= 1)")
        return value
    if configured in (None, "", 0):
        return DEFAULT_MAX_ITERATIONS
    try:
        value = int(configured)  # type: ignore[arg-type]
    except (TypeError, ValueError) as error:
        raise ConfigError(f"Invalid execution.max_iterations value: {configured!r}") from error
    if value < 1:
        raise ConfigError(f"Invalid execution.max_iterations value: {configured!r}")
    return value


def tracker_command_from_env() -> tuple[str, ...]:
    """``RALPH_BD_COMMAND`` split with shell quoting rules, else ``bd``."""

    configured = os.getenv("RALPH_BD_COMMAND", "").strip()
    return tuple(shlex.split(configured)) if configured else ("bd",)


def load_agent_profile(path: Path, *, filename: str | None = None) -> AgentProfile:
    """Load and validate a single agent profile JSON file."""

    display_name = filename or path.name
    if not path.exists():
        raise ConfigError(f"Agent profile not found at {path}")
    payload = _read_json_file(path, context=f"agent profile {display_name} at {path}")
    if not isinstance(payload, dict):
        raise ConfigError(f"Invalid agent profile: expected a JSON object in {display_name}")
    required = ("name", "label", "ai_tool", "instructions_path")
    if any(not payload.get(key) for key in required):
        raise ConfigError(f"Invalid agent profile: missing required fields in {display_name}")
    return AgentProfile(
        name=str(payload["name"]),
        label=str(payload["label"]),
        ai_tool=AiToolSettings.from_mapping(payload["ai_tool"], source=display_name),
        instructions_path=str(payload["instructions_path"]),
        model_tier=payload.get("model_tier"),
        filename=display_name,
    )


def resolve_repo_root(start: Path | None = None) -> Path:
    """``REPO_ROOT`` env, else the nearest ancestor holding ``.git`` or ``turbo.json``."""

    env_root = os.getenv("REPO_ROOT", "").strip()
    if env_root:
        return Path(env_root)
    current = (start or Path.cwd()).resolve()
    for _ in range(REPO_ROOT_SEARCH_DEPTH):
        if any((current / marker).exists() for marker in REPO_ROOT_MARKERS):
            return current
        if current.parent == current:
            break
        current = current.parent
    return (start or Path.cwd()).resolve()


def _read_json_file(path: Path, *, context: str) -> Any:
    text = path.read_text("utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError as error:
        raise ConfigError(f"Failed to parse JSON ({context}): {error}") from error


def _resolve_against(root: Path, value: Path) -> Path:
    return value if value.is_absolute() else root / value


def _string_mapping(value: object, *, name: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Invalid '{name}' in config: expected an object.")
    return {str(key): str(item) for key, item in value.items()}
