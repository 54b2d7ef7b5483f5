"""Agent process backends."""

from ralph.orchestrator.backend.agents import (
    AgentKind,
    get_agent_kind,
    list_agent_kinds,
    resolve_agent_kind,
)
from ralph.orchestrator.backend.base import (
    AgentInvocation,
    AgentRunner,
    AgentRunRequest,
    AgentRunResult,
)
from ralph.orchestrator.backend.process import AgentProcessRunner, BackendRunError
from ralph.orchestrator.backend.retry import (
    DelegationOptions,
    DelegationResult,
    DelegationRunner,
    calculate_next_delay,
    run_agent_with_retries,
)

__all__ = [
    "AgentInvocation",
    "AgentKind",
    "AgentProcessRunner",
    "AgentRunRequest",
    "AgentRunResult",
    "AgentRunner",
    "BackendRunError",
    "DelegationOptions",
    "DelegationResult",
    "DelegationRunner",
    "calculate_next_delay",
    "get_agent_kind",
    "list_agent_kinds",
    "resolve_agent_kind",
    "run_agent_with_retries",
]
