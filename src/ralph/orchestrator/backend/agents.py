"""Worker-kind strategy table: how each agent CLI takes a prompt."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from ralph.orchestrator.backend.base import AgentInvocation

ArgsBuilder = Callable[[str, Sequence[str]], list[str]]


@dataclass(frozen=True, slots=True)
class AgentKind:
    """Registered worker kind with a pure argument builder."""

    name: str
    command: str
    build_args: ArgsBuilder
    failure_patterns: tuple[re.Pattern[str], ...] = ()
    env_overrides: Mapping[str, str] = field(default_factory=dict)
    default_timeout_seconds: float | None = None

    def build_invocation(
        self,
        prompt: str,
        extra_args: Sequence[str] = (),
        *,
        command: str | None = None,
    ) -> AgentInvocation:
        return AgentInvocation(
            command=command or self.command,
            args=self.build_args(prompt, list(extra_args)),
            env=dict(self.env_overrides),
        )


def _has_model_flag(extra_args: Sequence[str]) -> bool:
    return any(arg in ("--model", "-m") for arg in extra_args)


def _cursor_args(prompt: str, extra_args: Sequence[str]) -> list[str]:
    model_args = [] if _has_model_flag(extra_args) else ["--model", "auto"]
    return [
        "-p",
        *model_args,
        "--output-format",
        "text",
        "--approve-mcps",
        "--force",
        *extra_args,
        prompt,
    ]


def _claude_args(prompt: str, extra_args: Sequence[str]) -> list[str]:
    return [
        "-p",
        prompt,
        "--allowedTools",
        "computer,mcp",
        "--output-format",
        "text",
        *extra_args,
    ]


def _opencode_args(prompt: str, extra_args: Sequence[str]) -> list[str]:
    return ["run", prompt, *extra_args]


def _prompt_flag_args(prompt: str, extra_args: Sequence[str]) -> list[str]:
    return ["-p", prompt, *extra_args]


def _jules_args(prompt: str, extra_args: Sequence[str]) -> list[str]:
    return ["run", "-p", prompt, *extra_args]


def _generic_args(prompt: str, extra_args: Sequence[str]) -> list[str]:
    return [*extra_args, prompt]


_CONNECTION_STALLED = (re.compile(r"Connection stalled", re.IGNORECASE),)

_AGENT_KINDS: dict[str, AgentKind] = {}


def register_agent_kind(kind: AgentKind, *, aliases: Sequence[str] = ()) -> None:
    for name in (kind.name, *aliases):
        _AGENT_KINDS[name] = kind


def get_agent_kind(name: str) -> AgentKind | None:
    return _AGENT_KINDS.get(name.strip().lower())


def list_agent_kinds() -> list[str]:
    return sorted(_AGENT_KINDS)


def resolve_agent_kind(name: str, *, command: str | None = None) -> AgentKind:
    """Registered kind for ``name``, else a generic kind that appends the prompt."""

    kind = get_agent_kind(name)
    if kind is not None:
        return kind
    return AgentKind(name=name, command=command or name, build_args=_generic_args)


register_agent_kind(
    AgentKind(
        name="cursor",
        command="agent",
        build_args=_cursor_args,
        failure_patterns=_CONNECTION_STALLED,
    ),
    aliases=("agent",),
)
register_agent_kind(AgentKind(name="claude", command="claude", build_args=_claude_args))
register_agent_kind(
    AgentKind(
        name="opencode",
        command="opencode",
        build_args=_opencode_args,
        env_overrides={"OPENCODE_CLI": "1"},
    ),
)
register_agent_kind(AgentKind(name="gemini", command="gemini", build_args=_prompt_flag_args))
register_agent_kind(AgentKind(name="jules", command="jules", build_args=_jules_args))
