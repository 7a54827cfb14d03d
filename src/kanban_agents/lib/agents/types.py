"""Data model for agent executions.

Tool definitions and results, log entries, execution state and the
parameter/result payloads exchanged with adapters.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from kanban_agents.lib.errors import ErrorKind

__all__ = [
    "AgentType",
    "ExecuteParams",
    "ExecutionResult",
    "ExecutionState",
    "ExecutionStatus",
    "FileContent",
    "LogEntry",
    "LogType",
    "RepoInfo",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolDefinition",
    "ToolParameter",
    "utc_now",
]


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


class AgentType(StrEnum):
    """Executor kinds a session can be bound to."""

    CLAUDE_API = "CLAUDE_API"
    OPENAI_API = "OPENAI_API"
    GEMINI_API = "GEMINI_API"
    LOCAL_RELAY = "LOCAL_RELAY"


class ExecutionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)
_ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING} | _TERMINAL_STATUSES),
    ExecutionStatus.RUNNING: _TERMINAL_STATUSES,
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


class LogType(StrEnum):
    START = "start"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    MESSAGE = "message"
    FILE_CHANGE = "file_change"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ToolParameter:
    """One named parameter in a tool's input schema."""

    type: str
    description: str
    required: bool = False


@dataclass(frozen=True)
class ToolDefinition:
    """A tool the model may call, with its parameter schema."""

    name: str
    description: str
    parameters: tuple[tuple[str, ToolParameter], ...]

    @property
    def required(self) -> list[str]:
        return [name for name, param in self.parameters if param.required]

    def input_schema(self) -> dict[str, Any]:
        """Return the JSON schema object describing the tool's arguments."""
        return {
            "type": "object",
            "properties": {
                name: {"type": param.type, "description": param.description}
                for name, param in self.parameters
            },
            "required": self.required,
        }


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool invocation requested by the model in one assistant turn."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallResult:
    """Outcome of one tool call, fed back to the model as a tool result.

    ``file_action`` is set by file-mutating tools on success
    (``create``/``update``/``delete``).
    """

    tool_call_id: str
    name: str
    result: Any = None
    error: str | None = None
    file_action: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def result_text(self, limit: int | None = None) -> str:
        """Render ``result`` as text for logs, optionally truncated."""
        if isinstance(self.result, str):
            text = self.result
        elif self.result is None:
            text = ""
        else:
            text = json.dumps(self.result, ensure_ascii=False)
        return text[:limit] if limit is not None else text

    def to_payload(self) -> dict[str, Any]:
        """Payload sent back to the model (``{result}`` or ``{error}``)."""
        if self.error is not None:
            return {"error": self.error}
        return {"result": self.result}


@dataclass(frozen=True)
class LogEntry:
    """One append-only event in an execution's log."""

    type: LogType
    timestamp: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "timestamp": self.timestamp, "data": self.data}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LogEntry:
        return cls(
            type=LogType(raw["type"]),
            timestamp=str(raw.get("timestamp", "")),
            data=dict(raw.get("data") or {}),
        )


@dataclass(frozen=True)
class FileContent:
    """A file inlined into the first prompt for context."""

    path: str
    content: str
    language: str | None = None


@dataclass(frozen=True)
class RepoInfo:
    """Repository coordinates for the session under execution."""

    owner: str
    name: str
    branch: str
    default_branch: str = "main"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass
class ExecuteParams:
    """Inputs for one adapter run."""

    session_id: str
    task_description: str
    repo: RepoInfo
    agent_type: AgentType = AgentType.CLAUDE_API
    files: list[FileContent] = field(default_factory=list)
    execution_id: str | None = None
    api_key: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form used to hand a run to a background worker."""
        payload = asdict(self)
        payload["agent_type"] = str(self.agent_type)
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ExecuteParams:
        return cls(
            session_id=raw["session_id"],
            task_description=raw["task_description"],
            repo=RepoInfo(**raw["repo"]),
            agent_type=AgentType(raw.get("agent_type", AgentType.CLAUDE_API)),
            files=[FileContent(**f) for f in raw.get("files", [])],
            execution_id=raw.get("execution_id"),
            api_key=raw.get("api_key"),
            max_tokens=raw.get("max_tokens"),
            temperature=raw.get("temperature"),
        )


@dataclass
class ExecutionResult:
    """Terminal (or in-flight) view of an execution returned to callers."""

    id: str
    session_id: str
    status: ExecutionStatus
    started_at: str
    completed_at: str | None = None
    summary: str | None = None
    files_changed: list[str] = field(default_factory=list)
    tokens_used: int = 0
    cost_usd: float | None = None
    error: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = str(self.status)
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ExecutionResult:
        return cls(
            id=raw["id"],
            session_id=raw["session_id"],
            status=ExecutionStatus(raw["status"]),
            started_at=raw["started_at"],
            completed_at=raw.get("completed_at"),
            summary=raw.get("summary"),
            files_changed=list(raw.get("files_changed") or []),
            tokens_used=int(raw.get("tokens_used") or 0),
            cost_usd=raw.get("cost_usd"),
            error=raw.get("error"),
            error_kind=raw.get("error_kind"),
        )


@dataclass
class ExecutionState:
    """Mutable state of one execution, owned by exactly one adapter run.

    Status only moves forward (pending → running → terminal), token usage
    only grows, and ``files_changed`` keeps first-touch order without
    duplicates.
    """

    id: str
    session_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: str = field(default_factory=utc_now)
    completed_at: str | None = None
    summary: str = ""
    files_changed: list[str] = field(default_factory=list)
    tokens_used: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None

    def advance(self, status: ExecutionStatus) -> None:
        """Move to ``status`` or raise ``ValueError`` for a backward step."""
        if status == self.status:
            return
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            msg = f"illegal status transition {self.status} -> {status}"
            raise ValueError(msg)
        self.status = status
        if status.is_terminal:
            self.completed_at = utc_now()

    def add_tokens(self, count: int) -> None:
        if count < 0:
            raise ValueError("token usage cannot decrease")
        self.tokens_used += count

    def touch_file(self, path: str) -> bool:
        """Record ``path`` as changed; return True on first touch."""
        if path in self.files_changed:
            return False
        self.files_changed.append(path)
        return True

    def fail(self, message: str, kind: ErrorKind) -> None:
        self.advance(ExecutionStatus.FAILED)
        self.error = message
        self.error_kind = kind

    def to_result(self, *, cost_usd: float | None = None) -> ExecutionResult:
        return ExecutionResult(
            id=self.id,
            session_id=self.session_id,
            status=self.status,
            started_at=self.started_at,
            completed_at=self.completed_at,
            summary=self.summary or None,
            files_changed=list(self.files_changed),
            tokens_used=self.tokens_used,
            cost_usd=cost_usd,
            error=self.error,
            error_kind=str(self.error_kind) if self.error_kind else None,
        )
