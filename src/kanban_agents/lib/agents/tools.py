"""Built-in tool catalog shared with the model.

``complete_task`` is listed like any other tool so the model can call it, but
it is a loop-termination signal: adapters handle it themselves and never send
it to the tool executor.
"""

from __future__ import annotations

from typing import Any

from kanban_agents.lib.agents.types import ToolDefinition, ToolParameter

__all__ = [
    "AGENT_TOOLS",
    "COMPLETE_TASK_TOOL",
    "FILE_MUTATING_TOOLS",
    "get_tool",
    "to_anthropic_tools",
    "to_public_listing",
]

COMPLETE_TASK_TOOL = "complete_task"
FILE_MUTATING_TOOLS = frozenset({"write_file", "delete_file"})

_PATH = ToolParameter(
    type="string",
    description="The path to the file relative to repository root",
    required=True,
)

AGENT_TOOLS: tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name="read_file",
        description="Read the contents of a file from the repository",
        parameters=(("path", _PATH),),
    ),
    ToolDefinition(
        name="write_file",
        description="Create or update a file in the repository",
        parameters=(
            ("path", _PATH),
            (
                "content",
                ToolParameter(
                    type="string",
                    description="The content to write to the file",
                    required=True,
                ),
            ),
            (
                "message",
                ToolParameter(
                    type="string", description="Commit message for the change"
                ),
            ),
        ),
    ),
    ToolDefinition(
        name="delete_file",
        description="Delete a file from the repository",
        parameters=(
            (
                "path",
                ToolParameter(
                    type="string",
                    description="The path to the file to delete",
                    required=True,
                ),
            ),
            (
                "message",
                ToolParameter(
                    type="string", description="Commit message for the deletion"
                ),
            ),
        ),
    ),
    ToolDefinition(
        name="search_code",
        description="Search for code patterns in the repository",
        parameters=(
            (
                "query",
                ToolParameter(
                    type="string",
                    description="Search query (supports regex)",
                    required=True,
                ),
            ),
            (
                "file_pattern",
                ToolParameter(
                    type="string",
                    description='Optional glob pattern to filter files (e.g., "*.py")',
                ),
            ),
        ),
    ),
    ToolDefinition(
        name="list_directory",
        description="List files and directories at a path",
        parameters=(
            (
                "path",
                ToolParameter(
                    type="string",
                    description='The directory path (use "" or "/" for root)',
                    required=True,
                ),
            ),
        ),
    ),
    ToolDefinition(
        name="get_file_diff",
        description="Get the diff of changes made to a file",
        parameters=(
            (
                "path",
                ToolParameter(
                    type="string", description="The path to the file", required=True
                ),
            ),
        ),
    ),
    ToolDefinition(
        name="run_command",
        description="Run a shell command (sandboxed, for tests/builds)",
        parameters=(
            (
                "command",
                ToolParameter(
                    type="string",
                    description='The command to run (e.g., "pytest", "make build")',
                    required=True,
                ),
            ),
            (
                "working_directory",
                ToolParameter(
                    type="string", description="Working directory for the command"
                ),
            ),
        ),
    ),
    ToolDefinition(
        name=COMPLETE_TASK_TOOL,
        description="Mark the task as complete with a summary",
        parameters=(
            (
                "summary",
                ToolParameter(
                    type="string",
                    description="Summary of changes made",
                    required=True,
                ),
            ),
            (
                "files_changed",
                ToolParameter(
                    type="array", description="List of files that were changed"
                ),
            ),
        ),
    ),
)

_TOOLS_BY_NAME = {tool.name: tool for tool in AGENT_TOOLS}


def get_tool(name: str) -> ToolDefinition | None:
    """Look up a tool definition by name."""
    return _TOOLS_BY_NAME.get(name)


def to_anthropic_tools(
    tools: tuple[ToolDefinition, ...] = AGENT_TOOLS,
) -> list[dict[str, Any]]:
    """Convert tool definitions to the Anthropic Messages API format."""
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.input_schema(),
        }
        for tool in tools
    ]


def to_public_listing(
    tools: tuple[ToolDefinition, ...] = AGENT_TOOLS,
) -> list[dict[str, Any]]:
    """Describe tools for API consumers: name, description, parameter names."""
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "parameters": [name for name, _ in tool.parameters],
        }
        for tool in tools
    ]
