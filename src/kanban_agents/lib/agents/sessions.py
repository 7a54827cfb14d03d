"""Session lookup for executions.

A session binds one task to an executor type and a branch of the workspace's
connected repository. Session records are written by the surrounding
application (task/workspace CRUD lives elsewhere) as JSON under
``session:<id>``; this module reads them and mirrors execution status to
``session:<id>:status``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from kanban_agents.lib.agents.types import AgentType, ExecutionStatus, RepoInfo
from kanban_agents.lib.store import KeyValueStore, get_json, put_json

__all__ = ["SessionDirectory", "SessionRecord"]

logger = logging.getLogger(__name__)


@dataclass
class SessionRecord:
    """Everything an execution needs to know about its session."""

    id: str
    task_title: str
    repo_owner: str
    repo_name: str
    branch: str
    executor: AgentType = AgentType.CLAUDE_API
    task_description: str = ""
    default_branch: str = "main"
    github_token: str | None = None

    @property
    def repo(self) -> RepoInfo:
        return RepoInfo(
            owner=self.repo_owner,
            name=self.repo_name,
            branch=self.branch,
            default_branch=self.default_branch,
        )

    def task_prompt(self) -> str:
        """Default task text: title, blank line, description."""
        return f"{self.task_title}\n\n{self.task_description}"

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["executor"] = str(self.executor)
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, object]) -> SessionRecord:
        return cls(
            id=str(raw["id"]),
            task_title=str(raw.get("task_title") or ""),
            repo_owner=str(raw["repo_owner"]),
            repo_name=str(raw["repo_name"]),
            branch=str(raw["branch"]),
            executor=AgentType(raw.get("executor") or AgentType.CLAUDE_API),
            task_description=str(raw.get("task_description") or ""),
            default_branch=str(raw.get("default_branch") or "main"),
            github_token=raw.get("github_token") or None,  # type: ignore[arg-type]
        )


def _session_key(session_id: str) -> str:
    return f"session:{session_id}"


def _status_key(session_id: str) -> str:
    return f"session:{session_id}:status"


class SessionDirectory:
    """Session records stored in the key-value store."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def get(self, session_id: str) -> SessionRecord | None:
        raw = await get_json(self.store, _session_key(session_id))
        if not isinstance(raw, dict):
            return None
        try:
            return SessionRecord.from_dict(raw)
        except (KeyError, ValueError):
            logger.warning("Ignoring malformed session record %s", session_id)
            return None

    async def save(self, record: SessionRecord) -> None:
        await put_json(self.store, _session_key(record.id), record.to_dict())

    async def set_status(
        self, session_id: str, status: ExecutionStatus, *, ttl: int | None = None
    ) -> None:
        await self.store.put(_status_key(session_id), str(status), ttl=ttl)

    async def get_status(self, session_id: str) -> ExecutionStatus | None:
        raw = await self.store.get(_status_key(session_id))
        return ExecutionStatus(raw) if raw else None
