"""Metadata retrieval stage.

Runs the Salesforce CLI for one work unit while a change watcher records
which files it wrote, and optionally merges the retrieved package into the
project source tree.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from sfgit.command_runner import Runner, quote_arg
from sfgit.config import PipelineConfig
from sfgit.log_sink import AuditLog
from sfgit.schemas import RetrievalResult, WorkUnit, WorkUnitKind
from sfgit.watcher import ChangeWatcher, watching

logger = logging.getLogger(__name__)


def merge_copy_tree(source: Path, target: Path) -> list[str]:
    """Copy every file under ``source`` into ``target``, overwriting same paths.

    Directories are created as needed and files already in ``target`` that
    are absent from ``source`` are left alone. Returns the copied paths
    relative to ``target``.
    """
    copied: list[str] = []
    for src_file in sorted(p for p in source.rglob("*") if p.is_file()):
        rel = src_file.relative_to(source)
        dest = target / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src_file, dest)
        copied.append(rel.as_posix())
    return copied


class RetrievalStage:
    """Fetch one work unit's metadata with the Salesforce CLI."""

    def __init__(
        self,
        config: PipelineConfig,
        runner: Runner,
        watcher: ChangeWatcher,
        log: AuditLog,
    ) -> None:
        self.config = config
        self.runner = runner
        self.watcher = watcher
        self.log = log

    def download_dir(self, unit: WorkUnit) -> Path:
        return self.config.download_path / unit.label

    def already_retrieved(self, unit: WorkUnit) -> bool:
        """True when the skip policy applies to ``unit``."""
        return self.config.skip_existing_work and self.download_dir(unit).is_dir()

    def retrieve_command(self, unit: WorkUnit) -> tuple[str, list[str]]:
        user = quote_arg(self.config.salesforce_username)
        if unit.kind is WorkUnitKind.MANIFEST:
            return self.config.sfdx_binary, [
                "force:source:retrieve",
                "-x",
                quote_arg(unit.manifest_path or ""),
                "-u",
                user,
            ]
        return self.config.sfdx_binary, [
            "force:mdapi:retrieve",
            "-s",
            "-u",
            user,
            "-r",
            quote_arg(self.config.download_path),
            "-p",
            quote_arg(unit.label),
            "--unzip",
            "--zipfilename",
            quote_arg(f"{unit.label}.zip"),
        ]

    def retrieve(self, unit: WorkUnit) -> RetrievalResult:
        if self.already_retrieved(unit):
            self.log.warn(
                f'"{unit.label}" already exists in {self.config.download_path} and '
                "skipExistingWork is enabled. Skipping download"
            )
            return RetrievalResult(skipped=True)

        self.config.download_path.mkdir(parents=True, exist_ok=True)
        command, args = self.retrieve_command(unit)
        self.log.progress(f'Fetching "{unit.label}"...')

        relocate = self.config.copy_to_project and unit.kind is WorkUnitKind.CHANGESET
        with watching(self.watcher, self.config.project_path) as session:
            result = self.runner.run(command, args, cwd=self.config.project_path)
        touched = session.touched_files

        if result.ok and relocate:
            # Stage what landed in the project tree, not the download area.
            with watching(self.watcher, self.config.project_path) as copy_session:
                self.relocate(unit)
            touched = self.outside_download_area(copy_session.touched_files)

        if not result.ok:
            self.log.error(f'Retrieval of "{unit.label}" failed with exit code {result.exit_code}')
        return RetrievalResult(
            exit_code=result.exit_code,
            output_text=result.output,
            touched_files=touched,
        )

    def outside_download_area(self, paths: list[str]) -> list[str]:
        """Drop project-relative paths that live under the download root."""
        try:
            prefix = self.config.download_path.relative_to(self.config.project_path).as_posix()
        except ValueError:
            return list(paths)
        return [p for p in paths if p != prefix and not p.startswith(prefix + "/")]

    def relocate(self, unit: WorkUnit) -> list[str]:
        source = self.download_dir(unit)
        target = self.config.source_path
        if not source.is_dir():
            self.log.warn(f"Nothing to copy: {source} does not exist")
            return []
        self.log.progress(f"Copying {source} into {target}")
        copied = merge_copy_tree(source, target)
        logger.debug("Copied %d file(s) into %s", len(copied), target)
        return copied
