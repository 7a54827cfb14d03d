"""Wire a GitHub client, tool executor and adapter together for one run.

Shared by the HTTP server (inline runs), the Celery worker (background runs)
and the CLI.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from pathlib import PurePosixPath

from kanban_agents.lib.agents.adapter import (
    ProviderFactory,
    build_adapter,
    calculate_cost,
)
from kanban_agents.lib.agents.executor import ToolExecutor
from kanban_agents.lib.agents.sessions import SessionDirectory
from kanban_agents.lib.agents.stream import ExecutionStream, save_execution_result
from kanban_agents.lib.agents.types import (
    ExecuteParams,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    FileContent,
    RepoInfo,
)
from kanban_agents.lib.config import Config
from kanban_agents.lib.errors import AgentEngineError, ErrorKind
from kanban_agents.lib.github import GitHubClient
from kanban_agents.lib.store import KeyValueStore

__all__ = ["guess_language", "load_context_files", "run_execution"]

logger = logging.getLogger(__name__)

_LANGUAGES = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "jsx",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".rb": "ruby",
    ".md": "markdown",
    ".json": "json",
    ".toml": "toml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".sql": "sql",
    ".sh": "bash",
    ".html": "html",
    ".css": "css",
}


def guess_language(path: str) -> str | None:
    """Map a file extension to a fenced-code language tag."""
    return _LANGUAGES.get(PurePosixPath(path).suffix.lower())


async def load_context_files(
    executor: ToolExecutor, repo: RepoInfo, paths: list[str]
) -> list[FileContent]:
    """Fetch ``paths`` at the session branch; unreadable paths are skipped."""
    files: list[FileContent] = []
    for path in paths:
        result = await executor.execute("read_file", {"path": path}, repo)
        if result.is_error:
            logger.warning("Skipping context file %s: %s", path, result.error)
            continue
        files.append(
            FileContent(
                path=path,
                content=result.result_text(),
                language=guess_language(path),
            )
        )
    return files


async def _record_setup_failure(
    params: ExecuteParams,
    exc: Exception,
    *,
    store: KeyValueStore,
    config: Config,
) -> None:
    kind = exc.kind if isinstance(exc, AgentEngineError) else ErrorKind.TOOL_ERROR
    message = str(exc) or type(exc).__name__
    logger.warning(
        "Execution %s could not start (%s): %s", params.execution_id, kind, message
    )
    if params.execution_id:
        state = ExecutionState(id=params.execution_id, session_id=params.session_id)
        state.fail(message, kind)
        stream = ExecutionStream(store, state.id, ttl=config.log_ttl_seconds)
        await stream.log_error(message, kind=str(kind))
        await save_execution_result(
            store,
            state.to_result(cost_usd=calculate_cost(state.tokens_used)),
            ttl=config.log_ttl_seconds,
        )
    await SessionDirectory(store).set_status(
        params.session_id, ExecutionStatus.FAILED, ttl=config.log_ttl_seconds
    )


async def run_execution(
    params: ExecuteParams,
    *,
    store: KeyValueStore,
    config: Config,
    github_token: str | None = None,
    context_files: list[str] | None = None,
    github_factory: Callable[..., GitHubClient] = GitHubClient,
    provider_factory: ProviderFactory | None = None,
) -> ExecutionResult:
    """Run one execution end to end and mirror its status onto the session.

    A failure before the adapter takes over (no GitHub token, unknown agent
    type, context files) is recorded as a failed execution and re-raised.
    """
    sessions = SessionDirectory(store)
    started = False
    try:
        with github_factory(token=github_token or "") as github:
            executor = ToolExecutor(github)
            adapter = build_adapter(
                params.agent_type,
                executor=executor,
                store=store,
                config=config,
                provider_factory=provider_factory,
            )
            if context_files:
                loaded = await load_context_files(executor, params.repo, context_files)
                params = dataclasses.replace(params, files=[*params.files, *loaded])

            await sessions.set_status(
                params.session_id, ExecutionStatus.RUNNING, ttl=config.log_ttl_seconds
            )
            started = True
            result = await adapter.execute(params)
    except Exception as exc:
        if not started:
            await _record_setup_failure(params, exc, store=store, config=config)
        raise

    await sessions.set_status(
        params.session_id, result.status, ttl=config.log_ttl_seconds
    )
    return result
