"""Anthropic provider wrapper."""

from __future__ import annotations

__all__ = ["AnthropicProvider"]

import os
from typing import Any

from kanban_agents.lib.ai_providers.types import AIProvider


class AnthropicProvider(AIProvider):
    """Wrapper around the Anthropic Python SDK client."""

    name = "anthropic"
    api_key_env_var = "ANTHROPIC_API_KEY"
    default_model = "claude-sonnet-4-20250514"
    install_hint = "pip install anthropic"

    def __init__(self, *, api_key: str | None = None, inner: Any | None = None) -> None:
        super().__init__(inner=inner)
        self._api_key = api_key

    def _build_inner(self) -> Any:
        """Lazily construct an ``anthropic.Anthropic`` client.

        Uses the explicit ``api_key`` when given, then ``ANTHROPIC_API_KEY``
        from the environment, otherwise the SDK's default auth resolution.
        """
        try:
            from anthropic import Anthropic
        except ImportError as exc:
            raise RuntimeError(
                f"Anthropic SDK is not installed. Install with: {self.install_hint}"
            ) from exc

        api_key = self._api_key or os.environ.get(self.api_key_env_var)
        if api_key:
            return Anthropic(api_key=api_key)
        return Anthropic()

    def _complete_impl(
        self,
        *,
        inner: Any,
        messages: list[dict[str, Any]],
        model: str,
        **kwargs: Any,
    ) -> Any:
        """Call the Anthropic Messages API via ``inner.messages.create``.

        Defaults ``max_tokens`` to 4096 when not supplied in *kwargs*.
        """
        max_tokens = kwargs.pop("max_tokens", 4096)
        return inner.messages.create(
            model=model,
            max_tokens=max_tokens,
            messages=messages,
            **kwargs,
        )
