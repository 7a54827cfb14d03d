"""Base class for the model backends agent adapters talk to.

An adapter only needs one call: send the running conversation (plain text
turns plus tool-use and tool-result blocks) and get the raw SDK response
back. The SDK client itself stays reachable through ``provider.inner``.
"""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Mapping, Sequence
from typing import Any

PromptInput = str | Sequence[Mapping[str, Any]]

# The system prompt travels separately from the turns.
_TURN_ROLES = frozenset({"user", "assistant"})


def normalize_messages(prompt_or_messages: PromptInput) -> list[dict[str, Any]]:
    """Turn a bare prompt or a turn list into ``[{role, content}]`` dicts.

    Content-block lists (tool calls, tool results) pass through untouched;
    anything else is coerced to text. A missing role means ``user``.
    """
    if isinstance(prompt_or_messages, str):
        return [{"role": "user", "content": prompt_or_messages}]

    turns: list[dict[str, Any]] = []
    for turn in prompt_or_messages:
        role = str(turn.get("role") or "user")
        if role not in _TURN_ROLES:
            raise ValueError(
                f"unsupported message role {role!r}; pass system text separately"
            )
        content = turn.get("content", "")
        turns.append(
            {
                "role": role,
                "content": content if isinstance(content, list) else str(content),
            }
        )
    return turns


class AIProvider(abc.ABC):
    """A model backend whose SDK client is built on first use."""

    name: str
    api_key_env_var: str
    default_model: str
    install_hint: str

    def __init__(self, *, inner: Any | None = None) -> None:
        self._inner = inner

    @property
    def inner(self) -> Any:
        if self._inner is None:
            self._inner = self._build_inner()
        return self._inner

    @abc.abstractmethod
    def _build_inner(self) -> Any:
        """Create the SDK client."""

    @abc.abstractmethod
    def _complete_impl(
        self,
        *,
        inner: Any,
        messages: list[dict[str, Any]],
        model: str,
        **kwargs: Any,
    ) -> Any:
        """Send one request; ``kwargs`` carry ``system``, ``tools`` and limits."""

    def complete(
        self,
        prompt_or_messages: PromptInput,
        *,
        model: str | None = None,
        **kwargs: Any,
    ) -> Any:
        return self._complete_impl(
            inner=self.inner,
            messages=normalize_messages(prompt_or_messages),
            model=model or self.default_model,
            **kwargs,
        )

    async def acomplete(
        self,
        prompt_or_messages: PromptInput,
        *,
        model: str | None = None,
        **kwargs: Any,
    ) -> Any:
        """``complete`` on a worker thread; SDK clients here are blocking."""
        return await asyncio.to_thread(
            self.complete, prompt_or_messages, model=model, **kwargs
        )
