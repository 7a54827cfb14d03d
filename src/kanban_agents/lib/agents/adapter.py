"""Agent adapters: drive an LLM through a bounded tool-use loop.

An adapter owns one execution at a time. It is the only writer of that
execution's log stream and result record, so readers can poll the store
without coordination.

Loop per iteration:

1. Stop with ``cancelled`` if a cancel flag was set for the execution.
2. Ask the model for the next turn, with the full conversation so far.
3. Log any text, then end on ``complete_task`` or a turn without tool calls.
4. Otherwise run each requested tool in order and feed all results back as
   a single user turn.

Running out of iterations fails the execution with
``iteration_budget_exceeded``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import uuid
from collections.abc import AsyncIterator, Callable, Mapping
from typing import Any, Protocol

from kanban_agents.lib.agents.executor import ToolExecutor
from kanban_agents.lib.agents.prompts import build_system_prompt, build_user_message
from kanban_agents.lib.agents.stream import (
    ExecutionStream,
    cancel_key,
    get_logs_since,
    save_execution_result,
)
from kanban_agents.lib.agents.tools import (
    COMPLETE_TASK_TOOL,
    FILE_MUTATING_TOOLS,
    to_anthropic_tools,
)
from kanban_agents.lib.agents.types import (
    AgentType,
    ExecuteParams,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    LogEntry,
    ToolCallRequest,
)
from kanban_agents.lib.ai_providers import AIProvider, AnthropicProvider
from kanban_agents.lib.config import Config
from kanban_agents.lib.errors import (
    AgentEngineError,
    CredentialMissingError,
    ErrorKind,
    ProviderError,
)
from kanban_agents.lib.store import KeyValueStore

__all__ = [
    "ADAPTERS",
    "AGENT_TYPES",
    "AgentAdapter",
    "ClaudeAdapter",
    "UnsupportedAgentError",
    "build_adapter",
    "calculate_cost",
]

logger = logging.getLogger(__name__)

_LOG_TEXT_LIMIT = 500
_TASK_PREVIEW_CHARS = 100
# Blended Sonnet pricing: ($3 input + $15 output) / 2 per million tokens.
_USD_PER_TOKEN = (3 + 15) / 2 / 1_000_000

ProviderFactory = Callable[[str], AIProvider]


def calculate_cost(tokens_used: int) -> float:
    """Approximate USD cost for a token count."""
    return tokens_used * _USD_PER_TOKEN


class AgentAdapter(Protocol):
    """Capability shared by every executor kind."""

    agent_type: AgentType

    async def execute(self, params: ExecuteParams) -> ExecutionResult: ...

    def stream(self, params: ExecuteParams) -> AsyncIterator[LogEntry]: ...


class UnsupportedAgentError(ValueError):
    """Requested agent type has no adapter yet."""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _block_to_dict(block: Any) -> dict[str, Any]:
    """Convert an SDK content block into a plain message-history dict."""
    block_type = _field(block, "type")
    if block_type == "text":
        return {"type": "text", "text": str(_field(block, "text") or "")}
    if block_type == "tool_use":
        raw_input = _field(block, "input") or {}
        if not isinstance(raw_input, Mapping):
            raise ProviderError(f"tool_use block has non-object input: {raw_input!r}")
        return {
            "type": "tool_use",
            "id": str(_field(block, "id") or ""),
            "name": str(_field(block, "name") or ""),
            "input": dict(raw_input),
        }
    if isinstance(block, Mapping):
        return dict(block)
    if hasattr(block, "model_dump"):
        return block.model_dump(exclude_none=True)
    raise ProviderError(f"Unsupported content block type: {block_type!r}")


def _parse_response(response: Any) -> tuple[list[dict[str, Any]], int]:
    """Return ``(content_blocks, tokens_used)`` from a Messages API response."""
    content = _field(response, "content")
    if not isinstance(content, list):
        raise ProviderError("Claude API returned a response without content blocks")
    blocks = [_block_to_dict(block) for block in content]

    usage = _field(response, "usage")
    tokens = 0
    if usage is not None:
        tokens = int(_field(usage, "input_tokens", 0) or 0) + int(
            _field(usage, "output_tokens", 0) or 0
        )
    return blocks, tokens


def _string_list(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, str) and item]


# ---------------------------------------------------------------------------
# Claude adapter
# ---------------------------------------------------------------------------


class ClaudeAdapter:
    """Runs tasks against the Anthropic Messages API with tool use."""

    agent_type = AgentType.CLAUDE_API
    api_key_env_var = "ANTHROPIC_API_KEY"

    def __init__(
        self,
        executor: ToolExecutor,
        store: KeyValueStore,
        *,
        config: Config | None = None,
        provider_factory: ProviderFactory | None = None,
    ) -> None:
        self.executor = executor
        self.store = store
        self.config = config or Config()
        self._provider_factory = provider_factory or (
            lambda key: AnthropicProvider(api_key=key)
        )

    async def execute(self, params: ExecuteParams) -> ExecutionResult:
        """Run the task to a terminal status and return the result record."""
        execution_id = params.execution_id or str(uuid.uuid4())
        state = ExecutionState(id=execution_id, session_id=params.session_id)
        stream = ExecutionStream(
            self.store, execution_id, ttl=self.config.log_ttl_seconds
        )

        state.advance(ExecutionStatus.RUNNING)
        await stream.log_start(
            "Starting Claude agent execution for task: "
            f"{params.task_description[:_TASK_PREVIEW_CHARS]}..."
        )
        await self._save(state)
        logger.info(
            "Execution %s started for session %s on %s@%s",
            execution_id,
            params.session_id,
            params.repo.full_name,
            params.repo.branch,
        )

        try:
            api_key = params.api_key or os.environ.get(self.api_key_env_var)
            if not api_key:
                raise CredentialMissingError(
                    f"Claude API key not configured. Set {self.api_key_env_var}."
                )
            try:
                provider = self._provider_factory(api_key)
            except Exception as exc:
                raise ProviderError(f"Claude client setup failed: {exc}") from exc
            return await self._run_loop(provider, params, state, stream)
        except Exception as exc:
            if state.status.is_terminal:
                # Only persisting the terminal record failed.
                logger.error(
                    "Execution %s reached %s but could not be saved",
                    execution_id,
                    state.status,
                )
                raise
            if isinstance(exc, AgentEngineError):
                logger.warning(
                    "Execution %s failed (%s): %s", execution_id, exc.kind, exc
                )
                return await self._finish_failed(state, stream, str(exc), exc.kind)
            logger.exception("Execution %s aborted", execution_id)
            message = str(exc) or type(exc).__name__
            return await self._finish_failed(
                state, stream, message, ErrorKind.TOOL_ERROR
            )

    async def stream(self, params: ExecuteParams) -> AsyncIterator[LogEntry]:
        """Run ``execute`` in the background and yield its log entries.

        Polls the same store cursor viewers use, so the sequence is exactly
        the persisted log. Single-consumer and not restartable.
        """
        if not params.execution_id:
            params = dataclasses.replace(params, execution_id=str(uuid.uuid4()))
        execution_id = params.execution_id
        task = asyncio.create_task(self.execute(params))
        cursor = 0
        while True:
            finished = task.done()
            page = await get_logs_since(self.store, execution_id, cursor)
            for raw in page.logs:
                yield LogEntry.from_dict(raw)
            cursor += len(page.logs)
            if finished:
                break
            await asyncio.sleep(self.config.poll_interval_seconds)
        await task

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(
        self,
        provider: AIProvider,
        params: ExecuteParams,
        state: ExecutionState,
        stream: ExecutionStream,
    ) -> ExecutionResult:
        system = build_system_prompt(params)
        messages: list[dict[str, Any]] = [
            {"role": "user", "content": build_user_message(params)}
        ]
        await stream.log_thinking("Analyzing task and codebase...")

        for iteration in range(1, self.config.max_iterations + 1):
            if await self._cancel_requested(state.id):
                return await self._finish_cancelled(state, stream)

            await stream.log_thinking(f"Iteration {iteration}: Processing...")
            blocks, tokens = await self._call_model(provider, system, messages, params)
            state.add_tokens(tokens)
            messages.append({"role": "assistant", "content": blocks})

            texts = [b["text"] for b in blocks if b.get("type") == "text" and b["text"]]
            for text in texts:
                await stream.log_message(text[:_LOG_TEXT_LIMIT])

            calls = [
                ToolCallRequest(id=b["id"], name=b["name"], arguments=b["input"])
                for b in blocks
                if b.get("type") == "tool_use"
            ]
            completion = next((c for c in calls if c.name == COMPLETE_TASK_TOOL), None)
            if completion is not None:
                state.summary = str(completion.arguments.get("summary") or "")
                for path in _string_list(completion.arguments.get("files_changed")):
                    state.touch_file(path)
                return await self._finish_completed(state, stream)

            if not calls:
                state.summary = texts[-1] if texts else ""
                return await self._finish_completed(state, stream)

            tool_results = []
            for call in calls:
                tool_results.append(await self._run_tool(call, params, state, stream))
            messages.append({"role": "user", "content": tool_results})

        return await self._finish_failed(
            state,
            stream,
            f"Iteration budget exhausted after {self.config.max_iterations} "
            "iterations without completing the task",
            ErrorKind.ITERATION_BUDGET_EXCEEDED,
        )

    async def _call_model(
        self,
        provider: AIProvider,
        system: str,
        messages: list[dict[str, Any]],
        params: ExecuteParams,
    ) -> tuple[list[dict[str, Any]], int]:
        try:
            response = await provider.acomplete(
                messages,
                model=self.config.model,
                system=system,
                tools=to_anthropic_tools(),
                max_tokens=params.max_tokens or self.config.max_tokens,
                temperature=(
                    params.temperature
                    if params.temperature is not None
                    else self.config.temperature
                ),
            )
        except AgentEngineError:
            raise
        except Exception as exc:
            raise ProviderError(f"Claude API error: {exc}") from exc
        return _parse_response(response)

    async def _run_tool(
        self,
        call: ToolCallRequest,
        params: ExecuteParams,
        state: ExecutionState,
        stream: ExecutionStream,
    ) -> dict[str, Any]:
        await stream.log_tool_call(call.id, call.name, call.arguments)
        result = await self.executor.execute(
            call.name, call.arguments, params.repo, tool_call_id=call.id
        )
        await stream.log_tool_result(
            call.id, call.name, result.result_text(_LOG_TEXT_LIMIT), result.error
        )

        path = call.arguments.get("path")
        if (
            call.name in FILE_MUTATING_TOOLS
            and not result.is_error
            and result.file_action
            and isinstance(path, str)
            and state.touch_file(path)
        ):
            await stream.log_file_change(path, result.file_action)

        return {
            "type": "tool_result",
            "tool_use_id": call.id,
            "content": json.dumps(result.to_payload(), ensure_ascii=False),
            "is_error": result.is_error,
        }

    async def _cancel_requested(self, execution_id: str) -> bool:
        return bool(await self.store.get(cancel_key(execution_id)))

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _save(self, state: ExecutionState) -> ExecutionResult:
        cost = calculate_cost(state.tokens_used) if state.status.is_terminal else None
        result = state.to_result(cost_usd=cost)
        await save_execution_result(
            self.store, result, ttl=self.config.log_ttl_seconds
        )
        return result

    async def _finish_completed(
        self, state: ExecutionState, stream: ExecutionStream
    ) -> ExecutionResult:
        state.advance(ExecutionStatus.COMPLETED)
        await stream.log_complete(state.tokens_used)
        logger.info(
            "Execution %s completed (%d tokens, %d files)",
            state.id,
            state.tokens_used,
            len(state.files_changed),
        )
        return await self._save(state)

    async def _finish_failed(
        self,
        state: ExecutionState,
        stream: ExecutionStream,
        message: str,
        kind: ErrorKind,
    ) -> ExecutionResult:
        state.fail(message, kind)
        await stream.log_error(message, kind=str(kind))
        return await self._save(state)

    async def _finish_cancelled(
        self, state: ExecutionState, stream: ExecutionStream
    ) -> ExecutionResult:
        state.error_kind = ErrorKind.CANCELLED
        state.advance(ExecutionStatus.CANCELLED)
        await stream.log_cancelled(state.tokens_used)
        logger.info("Execution %s cancelled", state.id)
        return await self._save(state)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

AGENT_TYPES: tuple[dict[str, Any], ...] = (
    {
        "type": str(AgentType.CLAUDE_API),
        "name": "Claude (Anthropic)",
        "description": "Advanced AI assistant with strong coding capabilities",
        "requires_api_key": True,
        "capabilities": ["code_generation", "code_review", "refactoring", "debugging"],
        "status": "available",
    },
    {
        "type": str(AgentType.OPENAI_API),
        "name": "GPT-4 (OpenAI)",
        "description": "Powerful language model with function calling",
        "requires_api_key": True,
        "capabilities": ["code_generation", "code_review", "refactoring"],
        "status": "coming_soon",
    },
    {
        "type": str(AgentType.GEMINI_API),
        "name": "Gemini (Google)",
        "description": "Google's multimodal AI model",
        "requires_api_key": True,
        "capabilities": ["code_generation", "code_review"],
        "status": "coming_soon",
    },
    {
        "type": str(AgentType.LOCAL_RELAY),
        "name": "Local Agent (via Relay)",
        "description": "Connect a locally running agent for CLI execution",
        "requires_api_key": False,
        "capabilities": ["full_cli_access", "all_agents"],
        "status": "available",
    },
)

ADAPTERS: dict[AgentType, type[ClaudeAdapter]] = {
    AgentType.CLAUDE_API: ClaudeAdapter,
}


def build_adapter(
    agent_type: AgentType | str,
    *,
    executor: ToolExecutor,
    store: KeyValueStore,
    config: Config | None = None,
    provider_factory: ProviderFactory | None = None,
) -> AgentAdapter:
    """Return the cloud adapter for ``agent_type``.

    Raises:
        UnsupportedAgentError: For agent types without a cloud adapter,
            including ``LOCAL_RELAY`` (handled by the relay instead).
    """
    try:
        resolved = AgentType(agent_type)
    except ValueError as exc:
        raise UnsupportedAgentError(f"Unknown agent type: {agent_type}") from exc
    adapter_cls = ADAPTERS.get(resolved)
    if adapter_cls is None:
        raise UnsupportedAgentError(f"Agent type {resolved} not yet supported")
    return adapter_cls(
        executor,
        store,
        config=config,
        provider_factory=provider_factory,
    )
