"""Provider wrapper layer for LLM backends used by agent adapters.

Related interfaces:
- Used by ``kanban_agents.lib.agents.adapter`` to issue tool-use completions.
"""

from kanban_agents.lib.ai_providers.anthropic import AnthropicProvider
from kanban_agents.lib.ai_providers.types import AIProvider, normalize_messages

__all__ = [
    "AIProvider",
    "AnthropicProvider",
    "normalize_messages",
]
