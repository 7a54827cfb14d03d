"""Agentic task execution engine.

Tool catalog and executor, execution log stream, adapters that drive the
model loop, and the per-user relay to locally running agents.
"""

from kanban_agents.lib.agents.adapter import (
    ADAPTERS,
    AGENT_TYPES,
    AgentAdapter,
    ClaudeAdapter,
    UnsupportedAgentError,
    build_adapter,
)
from kanban_agents.lib.agents.executor import ToolExecutor
from kanban_agents.lib.agents.relay import LocalAgentRelay, RelayRegistry
from kanban_agents.lib.agents.stream import ExecutionStream, get_logs_since
from kanban_agents.lib.agents.tools import AGENT_TOOLS

__all__ = [
    "ADAPTERS",
    "AGENT_TOOLS",
    "AGENT_TYPES",
    "AgentAdapter",
    "ClaudeAdapter",
    "ExecutionStream",
    "LocalAgentRelay",
    "RelayRegistry",
    "ToolExecutor",
    "UnsupportedAgentError",
    "build_adapter",
    "get_logs_since",
]
