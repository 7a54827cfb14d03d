"""Tool executor: satisfies model tool calls against the GitHub API.

Every call is independent and is not retried. Expected failures (missing
files, bad arguments, GitHub API errors) come back as an error-flagged
``ToolCallResult`` so the adapter can show them to the model and keep going.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from kanban_agents.lib.agents.tools import AGENT_TOOLS, COMPLETE_TASK_TOOL
from kanban_agents.lib.agents.types import RepoInfo, ToolCallResult, ToolDefinition
from kanban_agents.lib.errors import ToolExecutionError
from kanban_agents.lib.github import GitHubClient

__all__ = ["RUN_COMMAND_UNAVAILABLE", "ToolExecutor"]

logger = logging.getLogger(__name__)

RUN_COMMAND_UNAVAILABLE = (
    "Command execution is not available in cloud mode. "
    "Please use a connected development environment."
)
_SEARCH_LIMIT = 10


def _require_str(args: dict[str, Any], key: str) -> str:
    raw = args.get(key)
    if not isinstance(raw, str) or not raw.strip():
        raise ToolExecutionError(f"{key} must be a non-empty string")
    return raw


def _optional_str(args: dict[str, Any], key: str) -> str | None:
    raw = args.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ToolExecutionError(f"{key} must be a string")
    return raw.strip() or None


def _normalize_dir(path: str) -> str:
    normalized = path.strip().replace("\\", "/").strip("/")
    return "" if normalized in ("", ".") else normalized


class ToolExecutor:
    """Runs catalog tools for one repository context."""

    def __init__(
        self,
        github: GitHubClient,
        tools: tuple[ToolDefinition, ...] = AGENT_TOOLS,
    ) -> None:
        self.github = github
        self.tools = tools
        self._handlers = {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "delete_file": self._delete_file,
            "search_code": self._search_code,
            "list_directory": self._list_directory,
            "get_file_diff": self._get_file_diff,
            "run_command": self._run_command,
        }

    def get_tools(self) -> tuple[ToolDefinition, ...]:
        return self.tools

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        repo: RepoInfo,
        *,
        tool_call_id: str = "",
    ) -> ToolCallResult:
        """Run one tool call and return its result or a structured error."""
        handler = self._handlers.get(name)
        if handler is None or name == COMPLETE_TASK_TOOL:
            return ToolCallResult(
                tool_call_id=tool_call_id, name=name, error=f"Unknown tool: {name}"
            )
        try:
            result, file_action = await handler(arguments, repo)
        except ToolExecutionError as exc:
            logger.info("Tool %s failed: %s", name, exc)
            return ToolCallResult(tool_call_id=tool_call_id, name=name, error=str(exc))
        return ToolCallResult(
            tool_call_id=tool_call_id,
            name=name,
            result=result,
            file_action=file_action,
        )

    # ------------------------------------------------------------------
    # Handlers return (result, file_action)
    # ------------------------------------------------------------------

    async def _read_file(
        self, args: dict[str, Any], repo: RepoInfo
    ) -> tuple[Any, str | None]:
        path = _require_str(args, "path")
        found = await asyncio.to_thread(
            self.github.get_file, repo.full_name, path, ref=repo.branch
        )
        if found is None:
            raise ToolExecutionError(f"File not found: {path}")
        return found.content, None

    async def _write_file(
        self, args: dict[str, Any], repo: RepoInfo
    ) -> tuple[Any, str | None]:
        path = _require_str(args, "path")
        content = args.get("content")
        if not isinstance(content, str):
            raise ToolExecutionError("content must be a string")
        message = _optional_str(args, "message") or f"Update {path}"

        sha = await asyncio.to_thread(
            self.github.get_file_sha, repo.full_name, path, ref=repo.branch
        )
        action = await asyncio.to_thread(
            self.github.put_file,
            repo.full_name,
            path,
            content,
            message=message,
            branch=repo.branch,
            sha=sha,
        )
        file_action = "update" if action == "updated" else "create"
        return f"Successfully {action} {path}", file_action

    async def _delete_file(
        self, args: dict[str, Any], repo: RepoInfo
    ) -> tuple[Any, str | None]:
        path = _require_str(args, "path")
        message = _optional_str(args, "message") or f"Delete {path}"
        sha = await asyncio.to_thread(
            self.github.get_file_sha, repo.full_name, path, ref=repo.branch
        )
        if sha is None:
            raise ToolExecutionError(f"File not found: {path}")
        await asyncio.to_thread(
            self.github.delete_file,
            repo.full_name,
            path,
            message=message,
            branch=repo.branch,
            sha=sha,
        )
        return f"Successfully deleted {path}", "delete"

    async def _search_code(
        self, args: dict[str, Any], repo: RepoInfo
    ) -> tuple[Any, str | None]:
        query = _require_str(args, "query")
        pattern = _optional_str(args, "file_pattern")
        search = f"{query} repo:{repo.full_name}"
        if pattern:
            search += f" filename:{pattern}"
        matches = await asyncio.to_thread(
            self.github.search_code, search, limit=_SEARCH_LIMIT
        )
        return matches, None

    async def _list_directory(
        self, args: dict[str, Any], repo: RepoInfo
    ) -> tuple[Any, str | None]:
        raw = args.get("path") or ""
        if not isinstance(raw, str):
            raise ToolExecutionError("path must be a string")
        path = _normalize_dir(raw)
        entries = await asyncio.to_thread(
            self.github.list_directory, repo.full_name, path, ref=repo.branch
        )
        if entries is None:
            raise ToolExecutionError(f"Directory not found: {raw}")
        return entries, None

    async def _get_file_diff(
        self, args: dict[str, Any], repo: RepoInfo
    ) -> tuple[Any, str | None]:
        path = _require_str(args, "path")
        diff = await asyncio.to_thread(
            self.github.compare_file,
            repo.full_name,
            path,
            base=repo.default_branch,
            head=repo.branch,
        )
        if diff is None:
            return (
                f"No changes to {path} between {repo.default_branch} "
                f"and {repo.branch}"
            ), None
        return diff, None

    async def _run_command(
        self, args: dict[str, Any], repo: RepoInfo
    ) -> tuple[Any, str | None]:
        del args, repo
        return RUN_COMMAND_UNAVAILABLE, None
