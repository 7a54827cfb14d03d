"""Celery application and task definitions."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from celery import Celery

logger = logging.getLogger(__name__)


def _resolve_celery_urls() -> tuple[str, str]:
    """Resolve broker/result backend URLs with sensible env fallbacks.

    Priority order:
    1. `CELERY_BROKER_URL` / `CELERY_RESULT_BACKEND`
    2. shared `REDIS_URL`
    3. local default (`redis://localhost:6379/0`)
    """
    redis_url = os.environ.get("REDIS_URL")
    broker_url = (
        os.environ.get("CELERY_BROKER_URL") or redis_url or "redis://localhost:6379/0"
    )
    # Fall back to broker URL so polling still works when only broker is set.
    backend_url = os.environ.get("CELERY_RESULT_BACKEND") or redis_url or broker_url
    return broker_url, backend_url


_BROKER_URL, _RESULT_BACKEND_URL = _resolve_celery_urls()

celery_app = Celery(
    "kanban_agents",
    broker=_BROKER_URL,
    backend=_RESULT_BACKEND_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)


def resolve_github_token(session_token: str | None) -> str | None:
    """Session-scoped token first, then ``GITHUB_TOKEN`` / ``GH_TOKEN``."""
    return (
        session_token
        or os.environ.get("GITHUB_TOKEN")
        or os.environ.get("GH_TOKEN")
        or None
    )


async def _run_in_worker(
    params_payload: dict[str, Any],
    context_files: list[str],
) -> dict[str, Any]:
    from kanban_agents.lib.agents.runner import run_execution
    from kanban_agents.lib.agents.sessions import SessionDirectory
    from kanban_agents.lib.agents.types import ExecuteParams
    from kanban_agents.lib.config import Config
    from kanban_agents.lib.store import build_store

    config = Config.from_env()
    store = build_store(config.store_url)
    params = ExecuteParams.from_dict(params_payload)
    try:
        session = await SessionDirectory(store).get(params.session_id)
        token = resolve_github_token(session.github_token if session else None)
        result = await run_execution(
            params,
            store=store,
            config=config,
            github_token=token,
            context_files=context_files,
        )
    finally:
        close = getattr(store, "close", None)
        if callable(close):
            await close()
    return result.to_dict()


@celery_app.task(bind=True, name="kanban_agents.execute_agent")
def execute_agent(
    self: object,
    params: dict[str, Any],
    context_files: list[str] | None = None,
) -> dict[str, Any]:  # pragma: no cover - exercised in integration
    """Run one agent execution in a worker.

    The execution id is assigned by the API before enqueueing, so viewers
    can attach to the log stream while the task is still queued.
    """
    task_id = getattr(getattr(self, "request", None), "id", None)
    logger.info(
        "Worker task %s running execution %s",
        task_id,
        params.get("execution_id"),
    )
    return asyncio.run(_run_in_worker(params, list(context_files or [])))
