"""Git command shapes used by the publishing pipeline.

Each helper issues exactly one git invocation through the shared runner and
hands back its :class:`~sfgit.schemas.CommandResult`; nothing here raises for
a failing git command.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sfgit.command_runner import Runner, quote_arg
from sfgit.schemas import CommandResult

logger = logging.getLogger(__name__)

DEFAULT_REMOTE = "origin"


class GitTools:
    """Thin wrapper issuing git commands inside one working tree."""

    def __init__(self, runner: Runner, repo: str | Path, *, binary: str = "git") -> None:
        self.runner = runner
        self.repo = Path(repo)
        self.binary = binary

    def _git(self, *args: str, suppress_log: bool = False) -> CommandResult:
        return self.runner.run(self.binary, list(args), suppress_log=suppress_log, cwd=self.repo)

    # -- queries --

    def branch_exists(self, branch: str) -> bool:
        """Return True when a local branch named ``branch`` exists."""
        result = self._git("show-ref", "--verify", "--quiet", quote_arg(f"refs/heads/{branch}"))
        return result.exit_code == 0

    def remote_info(self, remote: str = DEFAULT_REMOTE) -> CommandResult:
        return self._git("remote", "show", quote_arg(remote))

    def is_repository(self) -> bool:
        return (self.repo / ".git").exists()

    # -- mutations --

    def create_branch(self, branch: str) -> CommandResult:
        return self._git("branch", quote_arg(branch))

    def checkout(self, branch: str) -> CommandResult:
        return self._git("checkout", quote_arg(branch))

    def add(self, path: str) -> CommandResult:
        return self._git("add", quote_arg(path))

    def commit_all(self, message: str) -> CommandResult:
        """Commit staged files plus every tracked modification."""
        return self._git("commit", "-m", quote_arg(message), "-a")

    def push_head(self, remote: str = DEFAULT_REMOTE) -> CommandResult:
        """Publish HEAD to the same-named branch on ``remote`` and track it."""
        return self._git("push", "-u", quote_arg(remote), "HEAD")

    def clone_into_repo(self, url: str) -> CommandResult:
        """Clone ``url`` into the (empty) working-tree directory.

        Output is suppressed because the URL may carry credentials.
        """
        self.repo.mkdir(parents=True, exist_ok=True)
        return self._git("clone", quote_arg(url), ".", suppress_log=True)
