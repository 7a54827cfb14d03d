"""Core library: configuration, storage, GitHub access, providers and agents.

Primary namespaces:
- ``kanban_agents.lib.agents`` for the execution engine and local relay.
- ``kanban_agents.lib.ai_providers`` for LLM provider wrappers.
"""
