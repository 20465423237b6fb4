"""Pipeline orchestrator - runs work units through branch, retrieval and publish.

Units are processed strictly in input order, one at a time, because they all
share one working tree and checkout. A failing unit is recorded and the
batch moves on; commits already pushed by earlier units are never undone.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
import webbrowser
from collections.abc import Callable, Iterable

from sfgit.branches import BranchManager
from sfgit.command_runner import CommandRunner, Runner
from sfgit.config import PipelineConfig
from sfgit.git_tools import GitTools
from sfgit.log_sink import AuditLog
from sfgit.package_xml import ManifestError
from sfgit.publish import PublishStage
from sfgit.retrieval import RetrievalStage
from sfgit.schemas import (
    BatchReport,
    CommandResult,
    FailureKind,
    UnitOutcome,
    UnitStage,
    UnitStatus,
    WorkUnit,
)
from sfgit.watcher import ChangeWatcher, WatchdogChangeWatcher

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_CHARS = 2000


def _tail(text: str, limit: int = _OUTPUT_TAIL_CHARS) -> str:
    clean = str(text or "").strip()
    return clean if len(clean) <= limit else "..." + clean[-(limit - 3) :]


class PipelineOrchestrator:
    """Sequences every stage for each work unit and aggregates outcomes.

    Parameters
    ----------
    config:
        Immutable run configuration.
    log:
        Audit log shared by all stages.
    runner:
        Command runner; defaults to a :class:`CommandRunner` rooted at the
        project working tree.
    watcher:
        Change watcher; defaults to the watchdog-backed implementation.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        log: AuditLog,
        runner: Runner | None = None,
        watcher: ChangeWatcher | None = None,
        open_url: Callable[[str], object] = webbrowser.open,
    ) -> None:
        self.config = config
        self.log = log
        self.runner = runner or CommandRunner(
            log,
            cwd=config.project_path,
            timeout_seconds=config.command_timeout_seconds,
        )
        self.watcher = watcher or WatchdogChangeWatcher(config.watch_suffixes)
        self.git = GitTools(self.runner, config.project_path, binary=config.git_binary)
        self.branches = BranchManager(self.git, log)
        self.retrieval = RetrievalStage(config, self.runner, self.watcher, log)
        self.publisher = PublishStage(config, self.git, self.runner, log, open_url=open_url)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, units: Iterable[WorkUnit]) -> BatchReport:
        """Run every unit in order and return their outcomes."""
        work = list(units)
        report = BatchReport()
        if not self.git.is_repository():
            message = (
                f"{self.config.project_path} is not a git working tree. "
                "Connect the repository before publishing."
            )
            self.log.error(message)
            for unit in work:
                report.outcomes.append(
                    UnitOutcome(
                        label=unit.label,
                        branch=unit.branch_name,
                        kind=unit.kind,
                        failure_kind=FailureKind.PRECONDITION,
                        error_message=message,
                    )
                )
            report.finished_at = dt.datetime.now(dt.timezone.utc).isoformat()
            return report

        for unit in work:
            report.outcomes.append(self.run_unit(unit))
        report.finished_at = dt.datetime.now(dt.timezone.utc).isoformat()
        self._log_summary(report)
        return report

    def run_unit(self, unit: WorkUnit) -> UnitOutcome:
        """Drive one unit through the stage sequence, stopping at its first failure."""
        started = time.monotonic()
        outcome = UnitOutcome(label=unit.label, branch=unit.branch_name, kind=unit.kind)
        self.log.banner(f"PROCESSING BRANCH {unit.label}")
        try:
            self._advance(unit, outcome)
        finally:
            outcome.duration_seconds = round(time.monotonic() - started, 3)
        return outcome

    # ------------------------------------------------------------------
    # Stage sequence
    # ------------------------------------------------------------------

    def _advance(self, unit: WorkUnit, outcome: UnitOutcome) -> None:
        if self.retrieval.already_retrieved(unit):
            self._skip(outcome, f'"{unit.label}" was already downloaded; skipping')
            return

        result = self.branches.ensure_branch(unit.label)
        if not result.ok:
            self._tool_failure(outcome, f"Could not create branch {unit.branch_name}", result)
            return
        outcome.stage = UnitStage.BRANCH_READY

        result = self.branches.checkout(unit.label)
        if not result.ok:
            self._tool_failure(outcome, f"Could not check out branch {unit.branch_name}", result)
            return
        outcome.stage = UnitStage.CHECKED_OUT

        retrieved = self.retrieval.retrieve(unit)
        outcome.touched_files = list(retrieved.touched_files)
        if retrieved.skipped:
            self._skip(outcome, f'"{unit.label}" was already downloaded; skipping')
            return
        if not retrieved.ok:
            self._fail(
                outcome,
                FailureKind.TOOL,
                f"Retrieval failed (exit code {retrieved.exit_code}): {_tail(retrieved.output_text)}",
            )
            return
        outcome.stage = UnitStage.RETRIEVED
        if not retrieved.touched_files:
            self.log.warn(f'No metadata files were written while retrieving "{unit.label}"')

        try:
            message = self.publisher.commit_message_for(unit)
        except ManifestError as exc:
            self._fail(outcome, FailureKind.DATA_QUALITY, str(exc))
            return
        outcome.commit_message = message

        result = self.publisher.stage_files(retrieved.touched_files)
        if not result.ok:
            self._tool_failure(outcome, "Staging failed", result)
            return
        outcome.stage = UnitStage.STAGED

        result = self.publisher.commit(message)
        if not result.ok:
            self._tool_failure(outcome, "Commit failed", result)
            return
        outcome.stage = UnitStage.COMMITTED

        result = self.publisher.push(unit.label)
        if not result.ok:
            self._tool_failure(outcome, f"Push of {unit.branch_name} failed", result)
            return
        outcome.stage = UnitStage.PUSHED

        if self.config.auto_create_pull_request:
            submission = self.publisher.submit_pull_request(
                unit.label,
                unit.pr_title or unit.label,
                unit.pr_description or message,
            )
            if not submission.result.ok:
                self._tool_failure(outcome, "Pull request submission failed", submission.result)
                return
            outcome.pull_request_url = submission.url
            outcome.stage = UnitStage.PR_SUBMITTED

        outcome.status = UnitStatus.SUCCEEDED
        self.log.progress(f"Published {unit.branch_name} ({outcome.stage.value})")

    # ------------------------------------------------------------------
    # Outcome helpers
    # ------------------------------------------------------------------

    def _skip(self, outcome: UnitOutcome, message: str) -> None:
        outcome.status = UnitStatus.SKIPPED
        self.log.warn(message)

    def _tool_failure(self, outcome: UnitOutcome, summary: str, result: CommandResult) -> None:
        detail = f"{summary} (exit code {result.exit_code})"
        if result.command:
            detail += f": {result.command}"
        tail = _tail(result.output)
        if tail:
            detail += f"\n{tail}"
        self._fail(outcome, FailureKind.TOOL, detail)

    def _fail(self, outcome: UnitOutcome, kind: FailureKind, message: str) -> None:
        outcome.status = UnitStatus.FAILED
        outcome.failure_kind = kind
        outcome.error_message = message
        label = "DATA ERROR" if kind is FailureKind.DATA_QUALITY else "FAILED"
        self.log.error(f"{label} [{outcome.label}] at stage {outcome.stage.value}: {message}")

    def _log_summary(self, report: BatchReport) -> None:
        summary = (
            f"Batch finished: {report.succeeded} published, "
            f"{report.failed} failed, {report.skipped} skipped"
        )
        if report.failed:
            self.log.error(summary)
            for outcome in report.outcomes:
                if outcome.status is UnitStatus.FAILED:
                    self.log.error(f"  - {outcome.label}: {outcome.error_message.splitlines()[0]}")
        else:
            self.log.progress(summary)
