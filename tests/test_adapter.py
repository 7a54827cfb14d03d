"""Tests for the Claude adapter loop with a scripted model."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any

import pytest
from conftest import (
    FakeGitHub,
    ScriptedProvider,
    claude_response,
    text_block,
    tool_use,
)

from kanban_agents.lib.agents.adapter import (
    ClaudeAdapter,
    UnsupportedAgentError,
    build_adapter,
    calculate_cost,
)
from kanban_agents.lib.agents.executor import ToolExecutor
from kanban_agents.lib.agents.stream import (
    cancel_key,
    get_logs_since,
    load_execution_result,
)
from kanban_agents.lib.agents.types import (
    AgentType,
    ExecuteParams,
    ExecutionResult,
    ExecutionStatus,
    FileContent,
    RepoInfo,
)
from kanban_agents.lib.config import Config
from kanban_agents.lib.store import MemoryStore

REPO = RepoInfo(owner="octo", name="widgets", branch="feat/x", default_branch="main")


def _params(**overrides: Any) -> ExecuteParams:
    values: dict[str, Any] = {
        "session_id": "s1",
        "task_description": "Add a widget",
        "repo": REPO,
        "execution_id": "e1",
        "api_key": "sk-test",
    }
    values.update(overrides)
    return ExecuteParams(**values)


def _adapter(
    github: FakeGitHub,
    provider: Any,
    *,
    store: MemoryStore | None = None,
    config: Config | None = None,
) -> ClaudeAdapter:
    return ClaudeAdapter(
        ToolExecutor(github),  # type: ignore[arg-type]
        store or MemoryStore(),
        config=config or Config(),
        provider_factory=lambda key: provider,
    )


def _run(
    github: FakeGitHub, provider: Any, store: MemoryStore
) -> ExecutionResult:
    return asyncio.run(_adapter(github, provider, store=store).execute(_params()))


def _log_types(store: MemoryStore, execution_id: str = "e1") -> list[str]:
    page = asyncio.run(get_logs_since(store, execution_id, 0))
    return [entry["type"] for entry in page.logs]


def _logs(store: MemoryStore, execution_id: str = "e1") -> list[dict[str, Any]]:
    return asyncio.run(get_logs_since(store, execution_id, 0)).logs


class TestCompletion:
    def test_complete_task_on_first_turn(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = ScriptedProvider(
            claude_response(
                text_block("All done."),
                tool_use(
                    "t1",
                    "complete_task",
                    summary="Added widget",
                    files_changed=["a.py"],
                ),
            )
        )

        result = _run(fake_github, provider, store)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.summary == "Added widget"
        assert result.files_changed == ["a.py"]
        assert result.tokens_used == 15
        assert result.cost_usd == pytest.approx(calculate_cost(15))
        assert result.completed_at is not None
        assert _log_types(store) == [
            "start",
            "thinking",
            "thinking",
            "message",
            "complete",
        ]
        assert len(provider.calls) == 1

    def test_complete_task_skips_sibling_tools(self, fake_github: FakeGitHub) -> None:
        provider = ScriptedProvider(
            claude_response(
                tool_use("t1", "write_file", path="a.py", content="x"),
                tool_use("t2", "complete_task", summary="done"),
            )
        )
        store = MemoryStore()

        result = _run(fake_github, provider, store)

        assert result.status == ExecutionStatus.COMPLETED
        assert fake_github.commits == []
        assert "tool_call" not in _log_types(store)

    def test_turn_without_tools_is_natural_stop(self, fake_github: FakeGitHub) -> None:
        provider = ScriptedProvider(
            claude_response(text_block("Looking..."), text_block("Nothing to change."))
        )

        result = asyncio.run(_adapter(fake_github, provider).execute(_params()))

        assert result.status == ExecutionStatus.COMPLETED
        assert result.summary == "Nothing to change."

    def test_sdk_objects_are_accepted(self, fake_github: FakeGitHub) -> None:
        response = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="ok"),
                SimpleNamespace(
                    type="tool_use",
                    id="t1",
                    name="complete_task",
                    input={"summary": "from sdk"},
                ),
            ],
            usage=SimpleNamespace(input_tokens=3, output_tokens=4),
        )

        result = asyncio.run(
            _adapter(fake_github, ScriptedProvider(response)).execute(_params())
        )

        assert result.summary == "from sdk"
        assert result.tokens_used == 7

    def test_result_record_is_persisted(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = ScriptedProvider(
            claude_response(tool_use("t1", "complete_task", summary="ok"))
        )

        result = _run(fake_github, provider, store)

        assert asyncio.run(load_execution_result(store, "e1")) == result


class TestToolRounds:
    def test_tool_results_return_as_one_user_turn(
        self, fake_github: FakeGitHub
    ) -> None:
        provider = ScriptedProvider(
            claude_response(
                tool_use("t1", "read_file", path="README.md"),
                tool_use("t2", "read_file", path="missing.py"),
            ),
            claude_response(tool_use("t3", "complete_task", summary="done")),
        )

        asyncio.run(_adapter(fake_github, provider).execute(_params()))

        second_call = provider.calls[1]["messages"]
        assert [m["role"] for m in second_call] == ["user", "assistant", "user"]
        results = second_call[-1]["content"]
        assert [r["tool_use_id"] for r in results] == ["t1", "t2"]
        assert json.loads(results[0]["content"]) == {"result": "# Widgets\n"}
        assert results[0]["is_error"] is False
        assert json.loads(results[1]["content"]) == {
            "error": "File not found: missing.py"
        }
        assert results[1]["is_error"] is True

    def test_tool_call_precedes_its_result(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = ScriptedProvider(
            claude_response(tool_use("t1", "list_directory", path="")),
            claude_response(tool_use("t2", "complete_task", summary="done")),
        )

        _run(fake_github, provider, store)

        logs = _logs(store)
        call_index = next(i for i, e in enumerate(logs) if e["type"] == "tool_call")
        assert logs[call_index + 1]["type"] == "tool_result"
        assert logs[call_index + 1]["data"]["tool_result"]["tool_call_id"] == "t1"

    def test_file_change_once_per_path(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = ScriptedProvider(
            claude_response(tool_use("t1", "write_file", path="new.py", content="a")),
            claude_response(tool_use("t2", "write_file", path="new.py", content="b")),
            claude_response(
                tool_use("t3", "write_file", path="README.md", content="c")
            ),
            claude_response(
                tool_use(
                    "t4",
                    "complete_task",
                    summary="done",
                    files_changed=["new.py", "docs.md"],
                )
            ),
        )

        result = _run(fake_github, provider, store)

        changes = [
            e["data"]["file_change"] for e in _logs(store) if e["type"] == "file_change"
        ]
        assert changes == [
            {"path": "new.py", "action": "create"},
            {"path": "README.md", "action": "update"},
        ]
        assert result.files_changed == ["new.py", "README.md", "docs.md"]

    def test_failed_write_is_not_a_file_change(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = ScriptedProvider(
            claude_response(tool_use("t1", "delete_file", path="ghost.py")),
            claude_response(tool_use("t2", "complete_task", summary="done")),
        )

        result = _run(fake_github, provider, store)

        assert "file_change" not in _log_types(store)
        assert result.files_changed == []
        assert result.status == ExecutionStatus.COMPLETED

    def test_long_text_is_truncated_in_logs(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = ScriptedProvider(claude_response(text_block("y" * 2000)))

        _run(fake_github, provider, store)

        messages = [e for e in _logs(store) if e["type"] == "message"]
        assert len(messages[0]["data"]["message"]) == 500

    def test_request_shape(self, fake_github: FakeGitHub) -> None:
        provider = ScriptedProvider(
            claude_response(tool_use("t1", "complete_task", summary="done"))
        )
        params = _params(
            files=[
                FileContent(
                    path="src/app.py", content="print('hi')", language="python"
                )
            ],
            max_tokens=1024,
        )

        asyncio.run(_adapter(fake_github, provider).execute(params))

        call = provider.calls[0]
        assert call["model"] == "claude-sonnet-4-20250514"
        assert call["max_tokens"] == 1024
        assert call["temperature"] == 0.7
        assert len(call["tools"]) == 8
        assert "octo" in call["system"] and "feat/x" in call["system"]
        first = call["messages"][0]["content"]
        assert first.startswith("## Task\nAdd a widget")
        assert "```python\nprint('hi')\n```" in first


class TestFailures:
    def test_iteration_budget_exhausted(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = ScriptedProvider(
            claude_response(tool_use("t1", "read_file", path="README.md"))
        )

        result = _run(fake_github, provider, store)

        assert len(provider.calls) == 20
        assert result.status == ExecutionStatus.FAILED
        assert result.error_kind == "iteration_budget_exceeded"
        assert result.tokens_used == 20 * 15
        assert _log_types(store)[-1] == "error"

    def test_budget_follows_config(self, fake_github: FakeGitHub) -> None:
        provider = ScriptedProvider(
            claude_response(tool_use("t1", "read_file", path="README.md"))
        )

        result = asyncio.run(
            _adapter(fake_github, provider, config=Config(max_iterations=3)).execute(
                _params()
            )
        )

        assert len(provider.calls) == 3
        assert result.error_kind == "iteration_budget_exceeded"

    def test_missing_api_key(
        self, fake_github: FakeGitHub, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        store = MemoryStore()
        built: list[str] = []

        adapter = ClaudeAdapter(
            ToolExecutor(fake_github),  # type: ignore[arg-type]
            store,
            provider_factory=built.append,  # type: ignore[arg-type]
        )
        result = asyncio.run(adapter.execute(_params(api_key=None)))

        assert result.status == ExecutionStatus.FAILED
        assert result.error_kind == "credential_missing"
        assert "ANTHROPIC_API_KEY" in (result.error or "")
        assert built == []
        assert _log_types(store) == ["start", "error"]

    def test_env_api_key_is_used(
        self, fake_github: FakeGitHub, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        seen: list[str] = []
        provider = ScriptedProvider(
            claude_response(tool_use("t1", "complete_task", summary="done"))
        )

        def factory(key: str) -> ScriptedProvider:
            seen.append(key)
            return provider

        adapter = ClaudeAdapter(
            ToolExecutor(fake_github),  # type: ignore[arg-type]
            MemoryStore(),
            provider_factory=factory,  # type: ignore[arg-type]
        )
        asyncio.run(adapter.execute(_params(api_key=None)))

        assert seen == ["sk-env"]

    def test_provider_exception_aborts(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = ScriptedProvider(
            claude_response(tool_use("t1", "read_file", path="README.md")),
            RuntimeError("overloaded"),
        )

        result = _run(fake_github, provider, store)

        assert result.status == ExecutionStatus.FAILED
        assert result.error == "Claude API error: overloaded"
        assert result.error_kind == "provider_error"
        assert result.tokens_used == 15
        last = _logs(store)[-1]
        assert last["type"] == "error"
        assert last["data"]["status"] == "failed"

    def test_store_failure_after_completion_propagates(
        self, fake_github: FakeGitHub
    ) -> None:
        class FlakyStore(MemoryStore):
            async def put(
                self, key: str, value: str, *, ttl: int | None = None
            ) -> None:
                if key == "execution:e1" and json.loads(value)["status"] != "running":
                    raise ConnectionError("store went away")
                await super().put(key, value, ttl=ttl)

        store = FlakyStore()
        provider = ScriptedProvider(
            claude_response(tool_use("t1", "complete_task", summary="done"))
        )

        with pytest.raises(ConnectionError, match="store went away"):
            _run(fake_github, provider, store)

        assert _log_types(store)[-1] == "complete"
        assert "error" not in _log_types(store)

    def test_malformed_response(self, fake_github: FakeGitHub) -> None:
        provider = ScriptedProvider({"content": None})

        result = asyncio.run(_adapter(fake_github, provider).execute(_params()))

        assert result.status == ExecutionStatus.FAILED
        assert result.error_kind == "provider_error"


class _CancellingProvider(ScriptedProvider):
    """Raises the cancel flag while the model call is in flight."""

    def __init__(self, store: MemoryStore, *responses: Any) -> None:
        super().__init__(*responses)
        self.store = store

    async def acomplete(self, messages: list[dict[str, Any]], **kwargs: Any) -> Any:
        await self.store.put(cancel_key("e1"), "1")
        return await super().acomplete(messages, **kwargs)


class TestCancellation:
    def test_cancel_before_start(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        asyncio.run(store.put(cancel_key("e1"), "1"))
        provider = ScriptedProvider(claude_response(text_block("never")))

        result = _run(fake_github, provider, store)

        assert result.status == ExecutionStatus.CANCELLED
        assert result.error_kind == "cancelled"
        assert provider.calls == []

    def test_cancel_honoured_between_iterations(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = _CancellingProvider(
            store, claude_response(tool_use("t1", "read_file", path="README.md"))
        )

        result = _run(fake_github, provider, store)

        assert result.status == ExecutionStatus.CANCELLED
        assert len(provider.calls) == 1
        logs = _logs(store)
        assert "tool_result" in [e["type"] for e in logs]
        assert logs[-1]["data"]["status"] == "cancelled"
        page = asyncio.run(get_logs_since(store, "e1", 0))
        assert page.has_more is False

    def test_completion_in_flight_wins(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = _CancellingProvider(
            store, claude_response(tool_use("t1", "complete_task", summary="done"))
        )

        result = _run(fake_github, provider, store)

        assert result.status == ExecutionStatus.COMPLETED


class TestStream:
    def test_yields_persisted_log(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = ScriptedProvider(
            claude_response(tool_use("t1", "read_file", path="README.md")),
            claude_response(tool_use("t2", "complete_task", summary="done")),
        )
        adapter = _adapter(
            fake_github,
            provider,
            store=store,
            config=Config(poll_interval_seconds=0.01),
        )

        async def collect() -> list[str]:
            return [str(entry.type) async for entry in adapter.stream(_params())]

        types = asyncio.run(collect())

        assert types == _log_types(store)
        assert types[0] == "start"
        assert types[-1] == "complete"

    def test_assigns_execution_id(self, fake_github: FakeGitHub) -> None:
        store = MemoryStore()
        provider = ScriptedProvider(claude_response(text_block("done")))
        adapter = _adapter(
            fake_github,
            provider,
            store=store,
            config=Config(poll_interval_seconds=0.01),
        )

        async def collect() -> int:
            return len([e async for e in adapter.stream(_params(execution_id=None))])

        assert asyncio.run(collect()) > 0


class TestRegistry:
    def test_builds_claude_adapter(self, fake_github: FakeGitHub) -> None:
        adapter = build_adapter(
            AgentType.CLAUDE_API,
            executor=ToolExecutor(fake_github),  # type: ignore[arg-type]
            store=MemoryStore(),
        )
        assert isinstance(adapter, ClaudeAdapter)
        assert adapter.agent_type == AgentType.CLAUDE_API

    @pytest.mark.parametrize("agent_type", ["OPENAI_API", "GEMINI_API", "LOCAL_RELAY"])
    def test_other_types_not_supported(
        self, fake_github: FakeGitHub, agent_type: str
    ) -> None:
        with pytest.raises(UnsupportedAgentError, match="not yet supported"):
            build_adapter(
                agent_type,
                executor=ToolExecutor(fake_github),  # type: ignore[arg-type]
                store=MemoryStore(),
            )

    def test_unknown_type(self, fake_github: FakeGitHub) -> None:
        with pytest.raises(UnsupportedAgentError, match="Unknown agent type"):
            build_adapter(
                "COBOL_API",
                executor=ToolExecutor(fake_github),  # type: ignore[arg-type]
                store=MemoryStore(),
            )


def test_cost_uses_blended_rate() -> None:
    assert calculate_cost(1_000_000) == pytest.approx(9.0)
    assert calculate_cost(0) == 0
