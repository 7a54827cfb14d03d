"""Shared fakes for the GitHub API and the Claude Messages API."""

from __future__ import annotations

import copy
from typing import Any

import pytest

import kanban_agents.lib.config as config_module


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host ``.env`` files and engine env vars out of every test."""
    monkeypatch.setattr(config_module, "_load_env_files", lambda: None)
    for name in (
        "KANBAN_AGENTS_MODEL",
        "KANBAN_AGENTS_MAX_ITERATIONS",
        "KANBAN_AGENTS_MAX_TOKENS",
        "KANBAN_AGENTS_TEMPERATURE",
        "KANBAN_AGENTS_STORE_URL",
        "KANBAN_AGENTS_LOG_TTL_SECONDS",
        "KANBAN_AGENTS_HEARTBEAT_WINDOW_SECONDS",
        "KANBAN_AGENTS_POLL_INTERVAL_SECONDS",
        "KANBAN_AGENTS_VERBOSE",
        "REDIS_URL",
        "ANTHROPIC_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


class FakeGitHub:
    """In-memory stand-in for ``GitHubClient`` keyed by path.

    ``files`` maps path to ``(content, sha)`` on the working branch.
    """

    def __init__(self, token: str = "", files: dict[str, str] | None = None) -> None:
        self.token = token
        self.files: dict[str, tuple[str, str]] = {}
        self.diffs: dict[str, dict[str, Any]] = {}
        self.search_results: list[dict[str, str]] = []
        self.search_queries: list[str] = []
        self.commits: list[tuple[str, str, str]] = []
        self.closed = False
        self._revision = 0
        for path, content in (files or {}).items():
            self._store(path, content)

    def _store(self, path: str, content: str) -> None:
        self._revision += 1
        self.files[path] = (content, f"sha{self._revision}")

    def get_file(self, full_name: str, path: str, *, ref: str) -> Any:
        from kanban_agents.lib.github import RepoFile

        if path not in self.files:
            return None
        content, sha = self.files[path]
        return RepoFile(path=path, content=content, sha=sha)

    def get_file_sha(self, full_name: str, path: str, *, ref: str) -> str | None:
        entry = self.files.get(path)
        return entry[1] if entry else None

    def put_file(
        self,
        full_name: str,
        path: str,
        content: str,
        *,
        message: str,
        branch: str,
        sha: str | None = None,
    ) -> str:
        action = "updated" if sha else "created"
        self._store(path, content)
        self.commits.append((action, path, message))
        return action

    def delete_file(
        self, full_name: str, path: str, *, message: str, branch: str, sha: str
    ) -> None:
        del self.files[path]
        self.commits.append(("deleted", path, message))

    def list_directory(
        self, full_name: str, path: str, *, ref: str
    ) -> list[dict[str, str]] | None:
        prefix = f"{path}/" if path else ""
        children: dict[str, dict[str, str]] = {}
        for file_path in sorted(self.files):
            if not file_path.startswith(prefix):
                continue
            rest = file_path[len(prefix) :]
            name, _, remainder = rest.partition("/")
            kind = "dir" if remainder else "file"
            children.setdefault(
                name, {"name": name, "type": kind, "path": f"{prefix}{name}"}
            )
        if path and not children:
            return None
        return list(children.values())

    def search_code(self, query: str, *, limit: int = 10) -> list[dict[str, str]]:
        self.search_queries.append(query)
        return self.search_results[:limit]

    def compare_file(
        self, full_name: str, path: str, *, base: str, head: str
    ) -> dict[str, Any] | None:
        return self.diffs.get(path)

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> FakeGitHub:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()


def text_block(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def tool_use(call_id: str, name: str, **arguments: Any) -> dict[str, Any]:
    return {"type": "tool_use", "id": call_id, "name": name, "input": arguments}


def claude_response(
    *blocks: dict[str, Any], input_tokens: int = 10, output_tokens: int = 5
) -> dict[str, Any]:
    return {
        "content": list(blocks),
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
    }


class ScriptedProvider:
    """Replays canned Messages API responses; the last one repeats forever.

    An ``Exception`` instance in the script is raised instead of returned.
    """

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def acomplete(self, messages: list[dict[str, Any]], **kwargs: Any) -> Any:
        self.calls.append({"messages": copy.deepcopy(messages), **kwargs})
        index = min(len(self.calls), len(self.responses)) - 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture()
def fake_github() -> FakeGitHub:
    return FakeGitHub(
        files={
            "README.md": "# Widgets\n",
            "src/app.py": "print('hi')\n",
            "src/util/helpers.py": "def helper():\n    return 1\n",
        }
    )
