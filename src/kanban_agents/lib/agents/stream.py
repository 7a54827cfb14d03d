"""Execution log streaming for live viewers.

An ``ExecutionStream`` is the single writer of one execution's log. Each
append rewrites two keys in the key-value store:

- ``execution:<id>:logs``   the whole log as a JSON list
- ``execution:<id>:latest`` a ``{count, lastUpdate, status}`` pointer

Readers never see partial state: they poll ``get_logs_since`` with a cursor,
either directly (REST) or through ``iter_stream_events`` (SSE). The push
surface is polling underneath, so it needs no background timers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from kanban_agents.lib.agents.types import (
    ExecutionResult,
    ExecutionStatus,
    LogEntry,
    LogType,
    utc_now,
)
from kanban_agents.lib.store import KeyValueStore, get_json, put_json

__all__ = [
    "DEFAULT_LOG_TTL_SECONDS",
    "ExecutionStream",
    "LogPage",
    "SSEMessage",
    "cancel_key",
    "get_logs_since",
    "iter_stream_events",
    "load_execution_result",
    "save_execution_result",
]

logger = logging.getLogger(__name__)

DEFAULT_LOG_TTL_SECONDS = 86400
_FIRST_POLL_DELAY_SECONDS = 0.1


def logs_key(execution_id: str) -> str:
    return f"execution:{execution_id}:logs"


def latest_key(execution_id: str) -> str:
    return f"execution:{execution_id}:latest"


def result_key(execution_id: str) -> str:
    return f"execution:{execution_id}"


def cancel_key(execution_id: str) -> str:
    return f"execution:{execution_id}:cancel"


class ExecutionStream:
    """Append-only log writer for one execution."""

    def __init__(
        self,
        store: KeyValueStore,
        execution_id: str,
        *,
        ttl: int = DEFAULT_LOG_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.execution_id = execution_id
        self.ttl = ttl
        self._logs: list[LogEntry] = []
        self._status = ExecutionStatus.PENDING

    @property
    def status(self) -> ExecutionStatus:
        return self._status

    def get_logs(self) -> list[LogEntry]:
        return list(self._logs)

    def _next_status(self, requested: str | None) -> ExecutionStatus:
        if self._status.is_terminal:
            return self._status
        if requested is None:
            return ExecutionStatus.RUNNING
        return ExecutionStatus(requested)

    async def add_log(self, log_type: LogType, data: dict[str, Any]) -> LogEntry:
        """Append an entry and persist the full log plus the status pointer."""
        entry = LogEntry(type=log_type, timestamp=utc_now(), data=dict(data))
        self._logs.append(entry)
        self._status = self._next_status(data.get("status"))

        await put_json(
            self.store,
            logs_key(self.execution_id),
            [log.to_dict() for log in self._logs],
            ttl=self.ttl,
        )
        await put_json(
            self.store,
            latest_key(self.execution_id),
            {
                "count": len(self._logs),
                "lastUpdate": entry.timestamp,
                "status": str(self._status),
            },
            ttl=self.ttl,
        )
        return entry

    async def log_start(self, message: str) -> LogEntry:
        return await self.add_log(
            LogType.START, {"message": message, "status": "running"}
        )

    async def log_thinking(self, message: str) -> LogEntry:
        return await self.add_log(LogType.THINKING, {"message": message})

    async def log_tool_call(
        self, tool_call_id: str, name: str, arguments: dict[str, Any]
    ) -> LogEntry:
        return await self.add_log(
            LogType.TOOL_CALL,
            {"tool_call": {"id": tool_call_id, "name": name, "arguments": arguments}},
        )

    async def log_tool_result(
        self,
        tool_call_id: str,
        name: str,
        result: str,
        error: str | None = None,
    ) -> LogEntry:
        tool_result: dict[str, Any] = {
            "tool_call_id": tool_call_id,
            "name": name,
            "result": result,
        }
        if error is not None:
            tool_result["error"] = error
        return await self.add_log(LogType.TOOL_RESULT, {"tool_result": tool_result})

    async def log_message(self, message: str) -> LogEntry:
        return await self.add_log(LogType.MESSAGE, {"message": message})

    async def log_file_change(self, path: str, action: str) -> LogEntry:
        return await self.add_log(
            LogType.FILE_CHANGE, {"file_change": {"path": path, "action": action}}
        )

    async def log_error(self, error: str, *, kind: str | None = None) -> LogEntry:
        data: dict[str, Any] = {"error": error, "status": "failed"}
        if kind:
            data["error_kind"] = kind
        return await self.add_log(LogType.ERROR, data)

    async def log_complete(self, tokens_used: int | None = None) -> LogEntry:
        return await self.add_log(
            LogType.COMPLETE,
            {
                "message": "Execution completed successfully",
                "tokens_used": tokens_used,
                "status": "completed",
            },
        )

    async def log_cancelled(self, tokens_used: int | None = None) -> LogEntry:
        return await self.add_log(
            LogType.COMPLETE,
            {
                "message": "Execution cancelled",
                "tokens_used": tokens_used,
                "status": "cancelled",
            },
        )


@dataclass(frozen=True)
class LogPage:
    """Entries from a cursor onward, and whether more may arrive."""

    logs: list[dict[str, Any]]
    has_more: bool


async def get_logs_since(
    store: KeyValueStore, execution_id: str, since: int
) -> LogPage:
    """Return entries ``[since:]`` and whether the execution is still running.

    A reader that advances its cursor by ``len(page.logs)`` sees every entry
    exactly once; ``since=0`` replays the full history.

    The pointer is read before the log. Writers append the log first, so a
    terminal pointer guarantees the terminal entry is already in the log.
    """
    latest = await get_json(store, latest_key(execution_id), default={})
    logs = await get_json(store, logs_key(execution_id), default=[])
    status = latest.get("status", "unknown") if isinstance(latest, dict) else "unknown"
    return LogPage(
        logs=list(logs[max(since, 0) :]),
        has_more=status == str(ExecutionStatus.RUNNING),
    )


async def save_execution_result(
    store: KeyValueStore,
    result: ExecutionResult,
    *,
    ttl: int = DEFAULT_LOG_TTL_SECONDS,
) -> None:
    await put_json(store, result_key(result.id), result.to_dict(), ttl=ttl)


async def load_execution_result(
    store: KeyValueStore, execution_id: str
) -> ExecutionResult | None:
    raw = await get_json(store, result_key(execution_id))
    if not isinstance(raw, dict):
        return None
    return ExecutionResult.from_dict(raw)


@dataclass(frozen=True)
class SSEMessage:
    """One server-sent event, or a comment line when ``event`` is None."""

    event: str | None = None
    data: Any = None
    comment: str | None = None

    def encode(self) -> str:
        if self.event is None:
            return f": {self.comment or ''}\n\n"
        payload = self.data if isinstance(self.data, str) else json.dumps(self.data)
        return f"event: {self.event}\ndata: {payload}\n\n"


async def iter_stream_events(
    store: KeyValueStore,
    execution_id: str,
    *,
    poll_interval: float = 1.0,
    first_poll_delay: float = _FIRST_POLL_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[SSEMessage]:
    """Yield SSE messages for an execution until it stops running.

    Sequence: ``connected``, then per poll one ``log`` per new entry and a
    heartbeat comment, then ``done`` once the status pointer leaves
    ``running``. A failing poll yields ``error`` and ends the stream.
    The generator is single-consumer and not resumable; reconnecting
    viewers start again from index 0.
    """
    cursor = 0
    yield SSEMessage(event="connected", data={"executionId": execution_id})
    await sleep(first_poll_delay)

    while True:
        try:
            page = await get_logs_since(store, execution_id, cursor)
        except Exception:
            logger.exception("SSE polling error for execution %s", execution_id)
            yield SSEMessage(event="error", data={"error": "Stream error"})
            return

        for entry in page.logs:
            yield SSEMessage(event="log", data=entry)
        cursor += len(page.logs)

        if not page.has_more:
            yield SSEMessage(event="done", data={"status": "complete"})
            return

        yield SSEMessage(comment="heartbeat")
        await sleep(poll_interval)
