"""FastAPI application for the agent execution engine.

Routes live under ``/agents``. Callers are identified by the ``X-User-Id``
header, which the upstream auth layer sets after validating the session.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

from fastapi import Body, FastAPI, Header, HTTPException, Query, Request
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from kanban_agents.lib.agents.adapter import ADAPTERS, AGENT_TYPES, ProviderFactory
from kanban_agents.lib.agents.relay import RelayRegistry
from kanban_agents.lib.agents.runner import run_execution
from kanban_agents.lib.agents.sessions import SessionDirectory
from kanban_agents.lib.agents.stream import (
    cancel_key,
    get_logs_since,
    iter_stream_events,
    load_execution_result,
    save_execution_result,
)
from kanban_agents.lib.agents.tools import to_public_listing
from kanban_agents.lib.agents.types import (
    AgentType,
    ExecuteParams,
    ExecutionResult,
    ExecutionStatus,
    utc_now,
)
from kanban_agents.lib.config import Config
from kanban_agents.lib.errors import RelayUnavailableError
from kanban_agents.lib.github import GitHubClient
from kanban_agents.lib.store import KeyValueStore, build_store
from kanban_agents.server.celery_app import execute_agent, resolve_github_token
from kanban_agents.server.task_result import normalize_task_result

logger = logging.getLogger(__name__)

app = FastAPI(
    title="kanban_agents",
    description="Agentic task execution engine: run, stream and relay agents.",
    version="0.1.0",
)

_config: Config | None = None
_store: KeyValueStore | None = None
_relays: RelayRegistry | None = None
# Swappable in tests.
_github_factory: Any = GitHubClient
_provider_factory: ProviderFactory | None = None


def _get_config() -> Config:
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def _get_store() -> KeyValueStore:
    global _store
    if _store is None:
        _store = build_store(_get_config().store_url)
    return _store


def _get_relays() -> RelayRegistry:
    global _relays
    if _relays is None:
        _relays = RelayRegistry(
            heartbeat_window=_get_config().heartbeat_window_seconds
        )
    return _relays


def _require_user(user_id: str | None) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


# --- Models ---


class ExecuteRequest(BaseModel):
    """Request body for ``POST /agents/execute``."""

    session_id: str = Field(min_length=1)
    agent_type: AgentType | None = None
    task_description: str | None = None
    context_files: list[str] = Field(default_factory=list)
    api_key: str | None = None
    background: bool = False


class ExecutionResponse(BaseModel):
    """Execution record as returned to callers."""

    id: str
    session_id: str
    status: ExecutionStatus
    started_at: str
    completed_at: str | None = None
    summary: str | None = None
    files_changed: list[str] = Field(default_factory=list)
    tokens_used: int = 0
    cost_usd: float | None = None
    error: str | None = None
    error_kind: str | None = None
    task_id: str | None = None

    @classmethod
    def from_result(
        cls, result: ExecutionResult, *, task_id: str | None = None
    ) -> ExecutionResponse:
        return cls(**result.to_dict(), task_id=task_id)


class CancelResponse(BaseModel):
    execution_id: str
    status: str


class LogsResponse(BaseModel):
    """One page of an execution's log."""

    execution_id: str
    logs: list[dict[str, Any]]
    has_more: bool
    next_index: int


class TaskStatus(BaseModel):
    """Response for checking a background task."""

    task_id: str
    status: str
    result: dict[str, Any] | None = None


# --- Health ---


@app.get("/health")
def health() -> dict[str, str]:
    """Health check."""
    return {"status": "ok"}


# --- Executions ---


@app.post("/agents/execute", response_model=ExecutionResponse)
async def execute(
    req: ExecuteRequest,
    x_user_id: str | None = Header(default=None),
) -> ExecutionResponse:
    """Start an execution for a session.

    Runs inline and returns the terminal record, or with ``background=true``
    enqueues it on a worker and returns the pending record immediately.
    """
    user_id = _require_user(x_user_id)
    config = _get_config()
    store = _get_store()

    session = await SessionDirectory(store).get(req.session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    agent_type = req.agent_type or session.executor
    if agent_type == AgentType.LOCAL_RELAY:
        raise HTTPException(
            status_code=400,
            detail="LOCAL_RELAY sessions run through /agents/local/execute",
        )
    if agent_type not in ADAPTERS:
        raise HTTPException(
            status_code=400, detail=f"Agent type {agent_type} not yet supported"
        )

    github_token = resolve_github_token(session.github_token)
    if not github_token:
        raise HTTPException(
            status_code=403,
            detail="GitHub not connected. Please connect GitHub first.",
        )

    params = ExecuteParams(
        session_id=session.id,
        task_description=req.task_description or session.task_prompt(),
        repo=session.repo,
        agent_type=agent_type,
        execution_id=str(uuid.uuid4()),
        api_key=req.api_key,
    )
    logger.info(
        "User %s starting execution %s for session %s (%s)",
        user_id,
        params.execution_id,
        session.id,
        agent_type,
    )

    if req.background:
        if config.store_url.startswith("memory://"):
            raise HTTPException(
                status_code=400,
                detail="Background execution requires a shared store (set REDIS_URL)",
            )
        pending = ExecutionResult(
            id=params.execution_id,
            session_id=session.id,
            status=ExecutionStatus.PENDING,
            started_at=utc_now(),
        )
        await save_execution_result(store, pending, ttl=config.log_ttl_seconds)
        await SessionDirectory(store).set_status(
            session.id, ExecutionStatus.PENDING, ttl=config.log_ttl_seconds
        )
        task = execute_agent.delay(params.to_dict(), req.context_files)
        return ExecutionResponse.from_result(pending, task_id=task.id)

    result = await run_execution(
        params,
        store=store,
        config=config,
        github_token=github_token,
        context_files=req.context_files,
        github_factory=_github_factory,
        provider_factory=_provider_factory,
    )
    return ExecutionResponse.from_result(result)


@app.get("/agents/executions/{execution_id}", response_model=ExecutionResponse)
async def get_execution(execution_id: str) -> ExecutionResponse:
    """Return the stored execution record."""
    result = await load_execution_result(_get_store(), execution_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return ExecutionResponse.from_result(result)


@app.delete("/agents/executions/{execution_id}", response_model=CancelResponse)
async def cancel_execution(execution_id: str) -> CancelResponse:
    """Request cancellation; honoured before the next iteration starts."""
    store = _get_store()
    config = _get_config()
    result = await load_execution_result(store, execution_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    if result.status.is_terminal:
        raise HTTPException(status_code=400, detail="Execution is not running")

    await store.put(cancel_key(execution_id), "1", ttl=config.log_ttl_seconds)
    logger.info("Cancellation requested for execution %s", execution_id)
    return CancelResponse(execution_id=execution_id, status="cancelling")


@app.get("/agents/executions/{execution_id}/logs", response_model=LogsResponse)
async def get_execution_logs(
    execution_id: str,
    since: int = Query(default=0),
) -> LogsResponse:
    """Return log entries from index ``since`` onward."""
    start = max(since, 0)
    page = await get_logs_since(_get_store(), execution_id, start)
    return LogsResponse(
        execution_id=execution_id,
        logs=page.logs,
        has_more=page.has_more,
        next_index=start + len(page.logs),
    )


@app.get("/agents/executions/{execution_id}/stream")
async def stream_execution(execution_id: str) -> StreamingResponse:
    """Server-sent events for a live execution log."""
    config = _get_config()

    async def _events() -> AsyncIterator[str]:
        async for message in iter_stream_events(
            _get_store(),
            execution_id,
            poll_interval=config.poll_interval_seconds,
        ):
            yield message.encode()

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/agents/tasks/{task_id}", response_model=TaskStatus)
def get_task(task_id: str) -> TaskStatus:
    """Check the status of a background execution task."""
    result = execute_agent.AsyncResult(task_id)
    raw_result = result.result if result.ready() else result.info
    return TaskStatus(
        task_id=task_id,
        status=result.status,
        result=normalize_task_result(result.status, raw_result),
    )


# --- Catalogues ---


@app.get("/agents/tools")
def list_tools() -> dict[str, Any]:
    """List the tools agents may call."""
    return {"tools": to_public_listing()}


@app.get("/agents/types")
def list_agent_types() -> dict[str, Any]:
    """List agent types and their availability."""
    return {"agents": list(AGENT_TYPES)}


# --- Local agent relay ---


@app.post("/agents/local/register")
def register_local_agent(
    request: Request,
    x_user_id: str | None = Header(default=None),
) -> dict[str, str]:
    """Tell a local agent where to open its WebSocket."""
    _require_user(x_user_id)
    scheme = "wss" if request.url.scheme == "https" else "ws"
    endpoint = request.url.replace(
        scheme=scheme, path=request.url.path.replace("/register", "/ws"), query=""
    )
    return {
        "endpoint": str(endpoint),
        "message": "Connect via WebSocket with your existing auth credentials",
    }


@app.websocket("/agents/local/ws")
async def local_agent_ws(websocket: WebSocket) -> None:
    """Long-lived connection from a user's local agent process."""
    user_id = websocket.headers.get("x-user-id")
    if not user_id:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    relay = _get_relays().get(user_id)
    relay.accept(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await relay.handle_message(websocket, raw)
    except WebSocketDisconnect:
        logger.debug("Local agent socket closed for user %s", user_id)
    finally:
        relay.disconnect(websocket)


@app.post("/agents/local/execute")
async def local_execute(
    payload: dict[str, Any] = Body(...),
    x_user_id: str | None = Header(default=None),
) -> dict[str, str]:
    """Forward a command to the caller's connected local agent."""
    user_id = _require_user(x_user_id)
    try:
        return await _get_relays().get(user_id).execute(payload)
    except RelayUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.get("/agents/local/status")
def local_status(x_user_id: str | None = Header(default=None)) -> dict[str, Any]:
    """Connection and liveness of the caller's local agent."""
    user_id = _require_user(x_user_id)
    return _get_relays().get(user_id).status()
