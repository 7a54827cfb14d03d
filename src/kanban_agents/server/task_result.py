"""Shape ``execute_agent`` task results for ``GET /agents/tasks/{task_id}``."""

from __future__ import annotations

from typing import Any

__all__ = ["normalize_task_result"]


def _failure_payload(status: str, exc: BaseException) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": str(exc) or type(exc).__name__,
        "error_type": type(exc).__name__,
        "status": status,
    }
    kind = getattr(exc, "kind", None)
    if kind is not None:
        payload["error_kind"] = str(kind)
    return payload


def normalize_task_result(status: str, raw_result: Any) -> dict[str, Any] | None:
    """Return a JSON-safe view of a worker task's result.

    A finished task yields the execution record dict, returned as is. A
    failed task yields the exception; engine errors (for example a missing
    GitHub token raised before the run starts) also report their
    ``error_kind`` so clients can branch on it like on execution records.
    """
    if raw_result is None:
        return None
    if isinstance(raw_result, dict):
        return raw_result
    if isinstance(raw_result, BaseException):
        return _failure_payload(status, raw_result)
    return {
        "value": str(raw_result),
        "value_type": type(raw_result).__name__,
        "status": status,
    }
