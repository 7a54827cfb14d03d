"""Error taxonomy for agent executions.

Only some of these abort a run. Tool failures are caught inside the tool
executor and fed back to the model; provider and credential failures end the
execution immediately; relay failures are returned to the caller as-is.
"""

from __future__ import annotations

from enum import StrEnum

__all__ = [
    "AgentEngineError",
    "CredentialMissingError",
    "ErrorKind",
    "ProviderError",
    "RelayUnavailableError",
    "ToolExecutionError",
]


class ErrorKind(StrEnum):
    """Machine-readable reason attached to a failed or cancelled execution."""

    CREDENTIAL_MISSING = "credential_missing"
    PROVIDER_ERROR = "provider_error"
    TOOL_ERROR = "tool_error"
    ITERATION_BUDGET_EXCEEDED = "iteration_budget_exceeded"
    RELAY_UNAVAILABLE = "relay_unavailable"
    CANCELLED = "cancelled"


class AgentEngineError(Exception):
    """Base class for engine errors that carry an ``ErrorKind``."""

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR


class CredentialMissingError(AgentEngineError):
    """A required API key or token is not configured."""

    kind = ErrorKind.CREDENTIAL_MISSING


class ProviderError(AgentEngineError):
    """The LLM call failed or returned a response we cannot interpret."""

    kind = ErrorKind.PROVIDER_ERROR


class ToolExecutionError(AgentEngineError):
    """A single tool call failed; the message is shown to the model."""

    kind = ErrorKind.TOOL_ERROR


class RelayUnavailableError(AgentEngineError):
    """No local agent is connected to receive a relayed command."""

    kind = ErrorKind.RELAY_UNAVAILABLE
