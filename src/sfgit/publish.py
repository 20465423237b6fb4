"""Commit/publish stage: stage watched files, commit, push, open a pull request."""

from __future__ import annotations

import logging
import re
import webbrowser
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from sfgit.command_runner import Runner, quote_arg
from sfgit.config import PipelineConfig
from sfgit.git_tools import GitTools
from sfgit.log_sink import AuditLog
from sfgit.package_xml import ManifestError, read_package_description
from sfgit.schemas import CommandResult, WorkUnit, WorkUnitKind, derive_branch_name

logger = logging.getLogger(__name__)

_URL_PATTERN = re.compile(r"https?://\S+")


def extract_url(output: str) -> str:
    """Return the first URL in ``output``, or ``""`` when there is none."""
    match = _URL_PATTERN.search(str(output or ""))
    return match.group(0).rstrip(".,;)'\"") if match else ""


@dataclass(frozen=True)
class PullRequestSubmission:
    result: CommandResult
    url: str = ""


class PublishStage:
    """Turns a retrieved work unit into a pushed commit (and optional PR)."""

    def __init__(
        self,
        config: PipelineConfig,
        git: GitTools,
        runner: Runner,
        log: AuditLog,
        *,
        open_url: Callable[[str], object] = webbrowser.open,
    ) -> None:
        self.config = config
        self.git = git
        self.runner = runner
        self.log = log
        self.open_url = open_url

    def commit_message_for(self, unit: WorkUnit) -> str:
        """Return the commit message for ``unit``.

        Changesets use the retrieved manifest's description; manifest units
        carry the message the user typed. Raises :class:`ManifestError` when
        neither yields a non-blank message.
        """
        if unit.kind is WorkUnitKind.MANIFEST:
            message = str(unit.commit_message or "").strip()
            if not message:
                raise ManifestError(f'No commit message was supplied for "{unit.label}"')
            return message
        return read_package_description(self.config.download_path / unit.label)

    def stage_files(self, paths: Iterable[str]) -> CommandResult:
        """Stage each path on its own; stop at the first failure."""
        self.log.progress("Staging modified/created files")
        last = CommandResult(exit_code=0, output="nothing to stage")
        for path in paths:
            self.log.progress(f"Adding file {path} to branch")
            last = self.git.add(path)
            if not last.ok:
                self.log.error(f"Could not stage {path} (exit code {last.exit_code})")
                return last
        return last

    def commit(self, message: str) -> CommandResult:
        self.log.info(f"Committing branch: {message}")
        return self.git.commit_all(message)

    def push(self, label: str) -> CommandResult:
        self.log.info(f"Pushing branch to remote {derive_branch_name(label)}")
        return self.git.push_head()

    def pull_request_args(self, branch: str, title: str | None, description: str | None) -> list[str]:
        args = ["pr", "create", "-H", quote_arg(branch)]
        title = str(title or "").strip()
        if self.config.autofill_pull_request_details or not title:
            args.append("--fill")
            return args
        args.extend(["--title", quote_arg(title), "--body", quote_arg(str(description or "").strip())])
        return args

    def submit_pull_request(
        self,
        label: str,
        title: str | None = None,
        description: str | None = None,
    ) -> PullRequestSubmission:
        branch = derive_branch_name(label)
        self.log.info(f"Submitting pull request for branch {branch}")
        result = self.runner.run(
            self.config.gh_binary,
            self.pull_request_args(branch, title, description),
            cwd=self.config.project_path,
        )
        if not result.ok:
            return PullRequestSubmission(result=result)

        url = extract_url(result.output)
        if not url:
            self.log.warn("Pull request created but no URL was found in the output")
            return PullRequestSubmission(result=result)
        self.log.progress(f"Pull request: {url}")
        if self.config.open_pull_request_url:
            self.open_url(url)
        return PullRequestSubmission(result=result, url=url)
