"""Branch management for work units."""

from __future__ import annotations

import logging

from sfgit.git_tools import GitTools
from sfgit.log_sink import AuditLog
from sfgit.schemas import CommandResult, derive_branch_name

logger = logging.getLogger(__name__)


class BranchManager:
    """Create-if-absent and check out the branch derived from a label."""

    def __init__(self, git: GitTools, log: AuditLog) -> None:
        self.git = git
        self.log = log

    def ensure_branch(self, label: str) -> CommandResult:
        branch = derive_branch_name(label)
        if self.git.branch_exists(branch):
            self.log.info(f"Branch {branch} already exists. Skipping creation")
            return CommandResult(exit_code=0, output=f"branch {branch} already exists")
        self.log.info(f"Creating branch {branch}")
        return self.git.create_branch(branch)

    def checkout(self, label: str) -> CommandResult:
        branch = derive_branch_name(label)
        self.log.info(f"Changing to branch {branch}")
        return self.git.checkout(branch)
