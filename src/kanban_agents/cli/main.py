"""CLI entry point: run an agent execution and print its log as it grows."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import re
import sys
import uuid

from kanban_agents.lib.agents.adapter import ClaudeAdapter
from kanban_agents.lib.agents.executor import ToolExecutor
from kanban_agents.lib.agents.stream import load_execution_result
from kanban_agents.lib.agents.tools import to_public_listing
from kanban_agents.lib.agents.types import (
    AgentType,
    ExecuteParams,
    ExecutionStatus,
    LogEntry,
    LogType,
    RepoInfo,
)
from kanban_agents.lib.config import Config
from kanban_agents.lib.errors import CredentialMissingError
from kanban_agents.lib.github import GitHubClient
from kanban_agents.lib.store import MemoryStore

_REPO_PATTERN = re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)$")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for CLI mode."""
    parser = argparse.ArgumentParser(
        prog="kanban-agents",
        description="Run coding agents against GitHub repositories.",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    run = subcommands.add_parser("run", help="Run one agent execution.")
    run.add_argument("repo", help="GitHub repository as owner/name.")
    run.add_argument("--branch", required=True, help="Working branch.")
    run.add_argument("--prompt", required=True, help="Task description.")
    run.add_argument(
        "--default-branch",
        default="main",
        help="Base branch used for diffs (default: main).",
    )
    run.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum model turns before giving up.",
    )
    run.add_argument(
        "--model",
        default=None,
        help="Claude model to use (overrides env/config).",
    )
    run.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=None,
        help="Enable verbose output.",
    )

    subcommands.add_parser("tools", help="List the tools agents may call.")
    return parser


def _parse_repo(raw: str, *, branch: str, default_branch: str) -> RepoInfo:
    match = _REPO_PATTERN.match(raw)
    if match is None:
        raise ValueError(f"{raw} is not an owner/repo reference")
    return RepoInfo(
        owner=match.group(1),
        name=match.group(2),
        branch=branch,
        default_branch=default_branch,
    )


def format_log_entry(entry: LogEntry) -> str:
    """Render one log entry as a single terminal line."""
    data = entry.data
    if entry.type == LogType.TOOL_CALL:
        call = data.get("tool_call", {})
        args = json.dumps(call.get("arguments", {}), ensure_ascii=False)
        return f"[tool_call] {call.get('name')} {args}"
    if entry.type == LogType.TOOL_RESULT:
        result = data.get("tool_result", {})
        if result.get("error"):
            return f"[tool_result] {result.get('name')} error: {result['error']}"
        return f"[tool_result] {result.get('name')} {result.get('result', '')}"
    if entry.type == LogType.FILE_CHANGE:
        change = data.get("file_change", {})
        return f"[file_change] {change.get('action')} {change.get('path')}"
    if entry.type == LogType.ERROR:
        return f"[error] {data.get('error')}"
    if entry.type == LogType.COMPLETE:
        status = data.get("status", "complete")
        return f"[{status}] tokens_used={data.get('tokens_used')}"
    return f"[{entry.type}] {data.get('message', '')}"


async def _run_execution(adapter: ClaudeAdapter, params: ExecuteParams) -> int:
    async for entry in adapter.stream(params):
        print(format_log_entry(entry), flush=True)

    result = await load_execution_result(adapter.store, params.execution_id or "")
    if result is None:
        return 1
    if result.summary:
        print(f"\nSummary: {result.summary}")
    if result.files_changed:
        print("Files changed: " + ", ".join(result.files_changed))
    if result.cost_usd is not None:
        print(f"Tokens: {result.tokens_used} (~${result.cost_usd:.4f})")
    return 0 if result.status == ExecutionStatus.COMPLETED else 1


def main(argv: list[str] | None = None) -> None:
    """Entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "tools":
        for tool in to_public_listing():
            params = ", ".join(tool["parameters"])
            print(f"{tool['name']}({params}): {tool['description']}")
        return

    config = Config.from_env(
        overrides={
            "model": args.model,
            "max_iterations": args.max_iterations,
            "verbose": args.verbose or None,
        }
    )
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        repo = _parse_repo(
            args.repo, branch=args.branch, default_branch=args.default_branch
        )
        github = GitHubClient()
    except (ValueError, CredentialMissingError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    store = MemoryStore()
    params = ExecuteParams(
        session_id=f"cli-{uuid.uuid4()}",
        task_description=args.prompt,
        repo=repo,
        agent_type=AgentType.CLAUDE_API,
        execution_id=str(uuid.uuid4()),
    )
    with github:
        adapter = ClaudeAdapter(ToolExecutor(github), store, config=config)
        try:
            code = asyncio.run(_run_execution(adapter, params))
        except KeyboardInterrupt:
            print("\nInterrupted by user.")
            code = 130
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
