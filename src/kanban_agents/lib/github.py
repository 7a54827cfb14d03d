"""GitHub integration: repository contents, code search, and diffs.

This module is used by the tool executor to satisfy model tool calls. It
wraps PyGithub for the REST API. Every call goes straight to GitHub; nothing
is cached locally besides repository handles.
"""

from __future__ import annotations

import itertools
import logging
import os
from dataclasses import dataclass, field
from typing import Any

from github import Auth, Github, GithubException
from github.Repository import Repository

from kanban_agents.lib.errors import CredentialMissingError, ToolExecutionError

logger = logging.getLogger(__name__)

_USER_AGENT = "Kanban-Agents"


class GitHubAPIError(ToolExecutionError):
    """A GitHub REST call failed; the message carries the HTTP status and hint."""


def _github_error_message(action: str, exc: GithubException) -> str:
    """Build a clear error message from a PyGithub exception.

    Args:
        action: Human-readable description of what was attempted.
        exc: The caught GithubException.

    Returns:
        An actionable error string including the HTTP status and detail.
    """
    status = getattr(exc, "status", None)
    detail = getattr(exc, "data", {})
    message = ""
    if isinstance(detail, dict):
        message = detail.get("message", "")
    hints: dict[int, str] = {
        401: "check the GitHub token is valid and not expired",
        403: "check token permissions or GitHub rate limits",
        404: "resource not found, verify repo name, path and branch",
        409: "conflict, the file changed since its sha was read",
        422: "validation failed, inputs may be invalid",
    }
    hint = hints.get(status, "") if status else ""
    parts = [f"GitHub API error: failed to {action}"]
    if status:
        parts.append(f"(HTTP {status})")
    if message:
        parts.append(f"- {message}")
    if hint:
        parts.append(f"[hint: {hint}]")
    return " ".join(parts)


def _is_not_found(exc: GithubException) -> bool:
    return getattr(exc, "status", None) == 404


@dataclass
class RepoFile:
    """A file's decoded text and its blob sha at one ref."""

    path: str
    content: str
    sha: str


@dataclass
class GitHubClient:
    """Authenticated GitHub client for repository content operations.

    The token is read from the ``token`` field, or falls back to the
    ``GITHUB_TOKEN`` / ``GH_TOKEN`` environment variable.
    """

    token: str = ""
    _gh: Github = field(init=False, repr=False)
    _repos: dict[str, Repository] = field(init=False, repr=False, default_factory=dict)

    def __post_init__(self) -> None:
        resolved = self.token or os.environ.get(
            "GITHUB_TOKEN", os.environ.get("GH_TOKEN", "")
        )
        if not resolved:
            msg = (
                "No GitHub token provided. Set GITHUB_TOKEN or GH_TOKEN, "
                "or pass token= explicitly."
            )
            raise CredentialMissingError(msg)
        self.token = resolved
        self._gh = Github(auth=Auth.Token(self.token), user_agent=_USER_AGENT)

    # ------------------------------------------------------------------
    # Repository
    # ------------------------------------------------------------------

    def get_repo(self, full_name: str) -> Repository:
        """Get a repository by owner/name (e.g. ``"octo/widgets"``)."""
        cached = self._repos.get(full_name)
        if cached is not None:
            return cached
        try:
            repo = self._gh.get_repo(full_name)
        except GithubException as exc:
            msg = _github_error_message(f"access repo '{full_name}'", exc)
            logger.error(msg)
            raise GitHubAPIError(msg) from exc
        self._repos[full_name] = repo
        return repo

    # ------------------------------------------------------------------
    # Contents
    # ------------------------------------------------------------------

    def get_file(self, full_name: str, path: str, *, ref: str) -> RepoFile | None:
        """Fetch a file at ``ref``; ``None`` if it does not exist."""
        repo = self.get_repo(full_name)
        try:
            contents = repo.get_contents(path, ref=ref)
        except GithubException as exc:
            if _is_not_found(exc):
                return None
            msg = _github_error_message(f"read '{path}' at '{ref}'", exc)
            logger.error(msg)
            raise GitHubAPIError(msg) from exc
        if isinstance(contents, list):
            # A directory, not a file.
            return None
        return RepoFile(
            path=contents.path,
            content=contents.decoded_content.decode("utf-8", errors="replace"),
            sha=contents.sha,
        )

    def get_file_sha(self, full_name: str, path: str, *, ref: str) -> str | None:
        """Return the blob sha of ``path`` at ``ref``, or ``None`` if absent."""
        existing = self.get_file(full_name, path, ref=ref)
        return existing.sha if existing else None

    def put_file(
        self,
        full_name: str,
        path: str,
        content: str,
        *,
        message: str,
        branch: str,
        sha: str | None = None,
    ) -> str:
        """Create ``path`` (no sha) or update it (with its current sha).

        Returns:
            ``"created"`` or ``"updated"``.
        """
        repo = self.get_repo(full_name)
        try:
            if sha:
                repo.update_file(path, message, content, sha, branch=branch)
            else:
                repo.create_file(path, message, content, branch=branch)
        except GithubException as exc:
            verb = "update" if sha else "create"
            msg = _github_error_message(f"{verb} '{path}' on '{branch}'", exc)
            logger.error(msg)
            raise GitHubAPIError(msg) from exc
        action = "updated" if sha else "created"
        logger.info("%s %s on %s:%s", action.capitalize(), path, full_name, branch)
        return action

    def delete_file(
        self,
        full_name: str,
        path: str,
        *,
        message: str,
        branch: str,
        sha: str,
    ) -> None:
        """Delete ``path`` given its current blob sha."""
        repo = self.get_repo(full_name)
        try:
            repo.delete_file(path, message, sha, branch=branch)
        except GithubException as exc:
            msg = _github_error_message(f"delete '{path}' on '{branch}'", exc)
            logger.error(msg)
            raise GitHubAPIError(msg) from exc
        logger.info("Deleted %s on %s:%s", path, full_name, branch)

    def list_directory(
        self, full_name: str, path: str, *, ref: str
    ) -> list[dict[str, str]] | None:
        """List the immediate children of a directory; ``None`` if absent."""
        repo = self.get_repo(full_name)
        try:
            contents = repo.get_contents(path, ref=ref)
        except GithubException as exc:
            if _is_not_found(exc):
                return None
            msg = _github_error_message(f"list '{path or '/'}' at '{ref}'", exc)
            logger.error(msg)
            raise GitHubAPIError(msg) from exc
        entries = contents if isinstance(contents, list) else [contents]
        return [
            {"name": item.name, "type": item.type, "path": item.path}
            for item in entries
        ]

    # ------------------------------------------------------------------
    # Search / compare
    # ------------------------------------------------------------------

    def search_code(self, query: str, *, limit: int = 10) -> list[dict[str, str]]:
        """Run a GitHub code search; results keep GitHub's ordering."""
        try:
            results = self._gh.search_code(query)
            items = list(itertools.islice(iter(results), limit))
        except GithubException as exc:
            msg = _github_error_message(f"search code for {query!r}", exc)
            logger.error(msg)
            raise GitHubAPIError(msg) from exc
        return [{"path": item.path, "url": item.html_url} for item in items]

    def compare_file(
        self, full_name: str, path: str, *, base: str, head: str
    ) -> dict[str, Any] | None:
        """Return the diff of one file between two refs; ``None`` if unchanged."""
        repo = self.get_repo(full_name)
        try:
            comparison = repo.compare(base, head)
        except GithubException as exc:
            msg = _github_error_message(f"compare '{base}...{head}'", exc)
            logger.error(msg)
            raise GitHubAPIError(msg) from exc
        for changed in comparison.files:
            if changed.filename == path:
                return {
                    "path": changed.filename,
                    "status": changed.status,
                    "additions": changed.additions,
                    "deletions": changed.deletions,
                    "patch": changed.patch or "",
                }
        return None

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the underlying GitHub connection."""
        self._gh.close()

    def __enter__(self) -> GitHubClient:
        """Enter the context manager and return self."""
        return self

    def __exit__(self, *_: Any) -> None:
        """Exit the context manager and close the connection."""
        self.close()
