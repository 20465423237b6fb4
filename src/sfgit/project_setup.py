"""One-time setup helpers: repository clone, SFDX project, org and GitHub auth.

Precondition problems (an existing ``.git`` or ``.sfdx`` folder) are reported
and the operation is skipped; they never abort the session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sfgit.command_runner import Runner, quote_arg
from sfgit.config import PipelineConfig
from sfgit.credentials import inject_credentials, resolve_github_token
from sfgit.git_tools import GitTools
from sfgit.log_sink import AuditLog
from sfgit.schemas import CommandResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetupStep:
    """Outcome of one setup operation."""

    name: str
    result: CommandResult | None = None
    skipped_reason: str = ""

    @property
    def ok(self) -> bool:
        if self.result is None:
            return bool(self.skipped_reason)
        return self.result.ok


class ProjectSetup:
    """Setup operations that precede any publishing run."""

    def __init__(self, config: PipelineConfig, runner: Runner, log: AuditLog) -> None:
        self.config = config
        self.runner = runner
        self.log = log
        self.git = GitTools(runner, config.project_path, binary=config.git_binary)

    def connect_repository(self, repo_url: str = "", username: str = "", token: str = "") -> SetupStep:
        """Clone the remote repository into the project folder."""
        repo_url = repo_url or self.config.github_repo_url
        username = username or self.config.git_username
        if self.git.is_repository():
            reason = (
                f"A .git folder already exists in {self.config.project_path}. "
                "Delete it before cloning the repository again."
            )
            self.log.warn(reason)
            return SetupStep(name="connect", skipped_reason=reason)
        if not repo_url:
            reason = "No repository URL was provided"
            self.log.error(reason)
            return SetupStep(name="connect", result=CommandResult(exit_code=1, output=reason))

        secret = resolve_github_token(token or self.config.github_token.get_secret_value())
        self.log.add_secret(secret)
        self.log.progress(f"Cloning {repo_url} into {self.config.project_path}")
        result = self.git.clone_into_repo(inject_credentials(repo_url, username, secret))
        if result.ok:
            self.log.progress("Repository cloned")
        else:
            self.log.error(f"Clone failed with exit code {result.exit_code}")
        return SetupStep(name="connect", result=result)

    def repository_info(self) -> SetupStep:
        return SetupStep(name="repo-info", result=self.git.remote_info())

    def setup_sfdx_project(self, project_name: str = "") -> SetupStep:
        """Create the SFDX project (with manifest) unless one already exists."""
        name = project_name or self.config.project_path.name
        self.log.progress(f"Setting up Salesforce DX project {name}")
        if (self.config.project_path / ".sfdx").exists():
            reason = "SFDX project folder already exists. Skipping project creation"
            self.log.warn(reason)
            return SetupStep(name="setup-project", skipped_reason=reason)
        self.config.project_path.parent.mkdir(parents=True, exist_ok=True)
        result = self.runner.run(
            self.config.sfdx_binary,
            ["force:project:create", "-n", quote_arg(name), "--manifest"],
            cwd=self.config.project_path.parent,
        )
        return SetupStep(name="setup-project", result=result)

    def authorize_org(self, login_url: str = "") -> SetupStep:
        """Open the browser login flow and make the org the default user."""
        url = login_url or self.config.salesforce_login_url
        self.log.progress(f"Authorizing org at {url}. Wait for the browser window to open and log in...")
        result = self.runner.run(
            self.config.sfdx_binary,
            ["auth:web:login", "--instanceurl", quote_arg(url), "--setdefaultusername"],
            cwd=self.config.project_path,
        )
        return SetupStep(name="authorize-org", result=result)

    def authorize_github(self, token: str = "") -> SetupStep:
        """Log the GitHub CLI in with a personal access token passed on stdin."""
        secret = resolve_github_token(token or self.config.github_token.get_secret_value())
        if not secret:
            reason = "No GitHub token found in config, environment or keyring"
            self.log.error(reason)
            return SetupStep(name="auth-github", result=CommandResult(exit_code=1, output=reason))
        self.log.add_secret(secret)
        self.log.progress("Authorizing GitHub CLI with personal access token")
        result = self.runner.run(self.config.gh_binary, ["auth", "login", "--with-token"], stdin_text=secret)
        return SetupStep(name="auth-github", result=result)

    def run_wizard(self) -> list[SetupStep]:
        """Full first-time setup: gh auth, clone, SFDX project, org login."""
        self.config.project_path.mkdir(parents=True, exist_ok=True)
        steps = [self.authorize_github(), self.connect_repository()]
        steps.append(self.setup_sfdx_project())
        steps.append(self.authorize_org())
        if all(step.ok for step in steps):
            self.log.progress("Salesforce connected and git repo configured!")
        else:
            failed = ", ".join(step.name for step in steps if not step.ok)
            self.log.error(f"Setup finished with failures: {failed}")
        return steps
