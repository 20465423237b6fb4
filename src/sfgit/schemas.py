"""Pydantic models for structured data throughout the publishing pipeline."""

from __future__ import annotations

import datetime as dt
import logging
import os
import re
import tempfile
from contextlib import suppress
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, computed_field

logger = logging.getLogger(__name__)

_WHITESPACE_RUN = re.compile(r"\s+")


def derive_branch_name(label: str) -> str:
    """Return the branch-safe identifier for a work-unit label.

    Every run of whitespace collapses to a single hyphen. Applying the
    derivation to its own output is a no-op.
    """
    return _WHITESPACE_RUN.sub("-", str(label or ""))


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


class CommandResult(BaseModel):
    """Outcome of one external command invocation."""

    model_config = ConfigDict(frozen=True)

    exit_code: int
    output: str = ""
    command: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# Work units
# ---------------------------------------------------------------------------


class WorkUnitKind(str, Enum):
    """How a work unit is retrieved from the org."""

    CHANGESET = "changeset"
    MANIFEST = "manifest"


class WorkUnit(BaseModel):
    """A named piece of metadata content published as one branch and commit."""

    model_config = ConfigDict(frozen=True)

    label: str
    kind: WorkUnitKind = WorkUnitKind.CHANGESET
    manifest_path: str | None = None
    commit_message: str | None = None
    pr_title: str | None = None
    pr_description: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def branch_name(self) -> str:
        return derive_branch_name(self.label)

    @classmethod
    def changeset(cls, label: str) -> WorkUnit:
        return cls(label=label.strip(), kind=WorkUnitKind.CHANGESET)

    @classmethod
    def manifest(
        cls,
        manifest_path: str | Path,
        *,
        branch_label: str,
        commit_message: str,
        pr_title: str | None = None,
        pr_description: str | None = None,
    ) -> WorkUnit:
        return cls(
            label=branch_label.strip(),
            kind=WorkUnitKind.MANIFEST,
            manifest_path=str(manifest_path),
            commit_message=commit_message,
            pr_title=pr_title,
            pr_description=pr_description,
        )


class RetrievalResult(BaseModel):
    """Outcome of one retrieval stage invocation."""

    exit_code: int = 0
    output_text: str = ""
    touched_files: list[str] = Field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# Per-unit progress and batch reporting
# ---------------------------------------------------------------------------


class UnitStage(str, Enum):
    """Forward-only progress of a single work unit."""

    NOT_STARTED = "not_started"
    BRANCH_READY = "branch_ready"
    CHECKED_OUT = "checked_out"
    RETRIEVED = "retrieved"
    STAGED = "staged"
    COMMITTED = "committed"
    PUSHED = "pushed"
    PR_SUBMITTED = "pr_submitted"


class UnitStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureKind(str, Enum):
    """Which error class stopped a unit."""

    TOOL = "tool"
    DATA_QUALITY = "data_quality"
    PRECONDITION = "precondition"


class UnitOutcome(BaseModel):
    """Recorded result of running one work unit through the pipeline."""

    label: str
    branch: str
    kind: WorkUnitKind = WorkUnitKind.CHANGESET
    status: UnitStatus = UnitStatus.FAILED
    stage: UnitStage = UnitStage.NOT_STARTED
    failure_kind: FailureKind | None = None
    error_message: str = ""
    touched_files: list[str] = Field(default_factory=list)
    commit_message: str = ""
    pull_request_url: str = ""
    duration_seconds: float = 0.0


class BatchReport(BaseModel):
    """Ordered outcomes for one orchestrator pass."""

    started_at: str = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc).isoformat())
    finished_at: str | None = None
    outcomes: list[UnitOutcome] = Field(default_factory=list)

    def _count(self, status: UnitStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(UnitStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(UnitStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(UnitStatus.SKIPPED)

    def save(self, path: str | Path) -> None:
        """Write the report as JSON, replacing any previous file atomically."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f"{target.name}.", suffix=".tmp", dir=str(target.parent))
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self.model_dump_json(indent=2))
            tmp_path.replace(target)
        finally:
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)
        logger.debug("Wrote batch report to %s", target)
