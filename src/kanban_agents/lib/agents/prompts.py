"""Prompt builders for agent executions."""

from __future__ import annotations

from kanban_agents.lib.agents.types import ExecuteParams


def build_system_prompt(params: ExecuteParams) -> str:
    """Build the system prompt describing the repo and working rules."""
    repo = params.repo
    file_list = "\n".join(f"- {f.path}" for f in params.files) or "- (none)"
    return (
        "You are an expert software developer assistant working on a coding task.\n\n"
        "## Repository Context\n"
        f"- Owner: {repo.owner}\n"
        f"- Repository: {repo.name}\n"
        f"- Current Branch: {repo.branch}\n"
        f"- Default Branch: {repo.default_branch}\n\n"
        "## Your Capabilities\n"
        "You have access to tools to read files, write files, search code, "
        "and run commands.\n"
        "Use these tools to complete the task given to you.\n\n"
        "## Guidelines\n"
        "1. Start by understanding the codebase - read relevant files first\n"
        "2. Make minimal, focused changes\n"
        "3. Follow existing code style and conventions\n"
        "4. Write clear commit messages\n"
        "5. Test your changes when possible\n"
        "6. Call `complete_task` when finished with a summary\n\n"
        "## Files Provided for Context\n"
        f"{file_list}\n"
    )


def build_user_message(params: ExecuteParams) -> str:
    """Build the first user turn: the task plus any inlined context files."""
    message = f"## Task\n{params.task_description}\n\n"
    if params.files:
        message += "## Relevant Files\n"
        for item in params.files:
            message += (
                f"\n### {item.path}\n```{item.language or ''}\n{item.content}\n```\n"
            )
    return message
