"""Tests for the metadata retrieval stage."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from conftest import FakeRunner, ScriptedWatcher
from sfgit.config import PipelineConfig
from sfgit.log_sink import AuditLog
from sfgit.retrieval import RetrievalStage, merge_copy_tree
from sfgit.schemas import CommandResult, WorkUnit
from sfgit.watcher import WatchdogChangeWatcher


def _stage(config: PipelineConfig, runner: FakeRunner, watcher: ScriptedWatcher, log: AuditLog) -> RetrievalStage:
    return RetrievalStage(config, runner, watcher, log)


def test_changeset_retrieve_command_shape(
    make_config: Callable[..., PipelineConfig],
    fake_runner: FakeRunner,
    scripted_watcher: ScriptedWatcher,
    audit_log: AuditLog,
) -> None:
    config = make_config()
    stage = _stage(config, fake_runner, scripted_watcher, audit_log)

    binary, args = stage.retrieve_command(WorkUnit.changeset("CS One"))

    assert binary == "sfdx"
    assert args[:4] == ["force:mdapi:retrieve", "-s", "-u", "admin@example.com"]
    assert "'CS One'" in args
    assert args[-3:] == ["--unzip", "--zipfilename", "'CS One.zip'"]
    assert str(config.download_path) in " ".join(args)


def test_manifest_retrieve_command_shape(
    make_config: Callable[..., PipelineConfig],
    fake_runner: FakeRunner,
    scripted_watcher: ScriptedWatcher,
    audit_log: AuditLog,
) -> None:
    stage = _stage(make_config(), fake_runner, scripted_watcher, audit_log)
    unit = WorkUnit.manifest("/work/manifest/package.xml", branch_label="story/x", commit_message="m")

    binary, args = stage.retrieve_command(unit)

    assert binary == "sfdx"
    assert args == ["force:source:retrieve", "-x", "/work/manifest/package.xml", "-u", "admin@example.com"]


def test_skip_policy_performs_no_invocation(
    make_config: Callable[..., PipelineConfig],
    fake_runner: FakeRunner,
    scripted_watcher: ScriptedWatcher,
    audit_log: AuditLog,
) -> None:
    config = make_config(skip_existing_work=True)
    (config.download_path / "CS One").mkdir(parents=True)
    stage = _stage(config, fake_runner, scripted_watcher, audit_log)

    result = stage.retrieve(WorkUnit.changeset("CS One"))

    assert result.skipped
    assert fake_runner.calls == []
    assert scripted_watcher.started == 0


def test_existing_download_is_refetched_when_skip_disabled(
    make_config: Callable[..., PipelineConfig],
    fake_runner: FakeRunner,
    scripted_watcher: ScriptedWatcher,
    audit_log: AuditLog,
) -> None:
    config = make_config(skip_existing_work=False)
    (config.download_path / "CS One").mkdir(parents=True)
    stage = _stage(config, fake_runner, scripted_watcher, audit_log)

    result = stage.retrieve(WorkUnit.changeset("CS One"))

    assert not result.skipped
    assert len(fake_runner.calls_matching("force:mdapi:retrieve")) == 1


def test_touched_files_come_from_watcher(
    make_config: Callable[..., PipelineConfig],
    fake_runner: FakeRunner,
    scripted_watcher: ScriptedWatcher,
    audit_log: AuditLog,
    project: Path,
) -> None:
    fake_runner.on(
        "force:mdapi:retrieve",
        effect=lambda: scripted_watcher.emit(
            str(project / "packages/CS One/package.xml"),
            str(project / "packages/CS One/objects/Invoice__c.object"),
            str(project / "packages/CS One/package.xml"),
        ),
    )
    stage = _stage(make_config(), fake_runner, scripted_watcher, audit_log)

    result = stage.retrieve(WorkUnit.changeset("CS One"))

    assert result.ok
    assert result.touched_files == ["packages/CS One/package.xml"]
    assert not scripted_watcher.active


def test_failed_retrieval_still_stops_watcher(
    make_config: Callable[..., PipelineConfig],
    fake_runner: FakeRunner,
    scripted_watcher: ScriptedWatcher,
    audit_log: AuditLog,
) -> None:
    fake_runner.on("force:mdapi:retrieve", CommandResult(exit_code=1, output="ERROR: no such changeset"))
    stage = _stage(make_config(), fake_runner, scripted_watcher, audit_log)

    result = stage.retrieve(WorkUnit.changeset("Missing"))

    assert result.exit_code == 1
    assert "no such changeset" in result.output_text
    assert scripted_watcher.started == scripted_watcher.stopped == 1
    assert not scripted_watcher.active


def test_relocation_replaces_download_paths_with_project_paths(
    make_config: Callable[..., PipelineConfig],
    fake_runner: FakeRunner,
    audit_log: AuditLog,
) -> None:
    config = make_config(copy_to_project=True)
    watcher = ScriptedWatcher(suffixes=(".xml", ".cls"))

    def fake_download() -> None:
        package = config.download_path / "CS One"
        (package / "classes").mkdir(parents=True)
        (package / "package.xml").write_text("<Package/>", encoding="utf-8")
        (package / "classes" / "Invoice.cls").write_text("class Invoice {}", encoding="utf-8")
        watcher.emit(str(package / "package.xml"), str(package / "classes" / "Invoice.cls"))

    fake_runner.on("force:mdapi:retrieve", effect=fake_download)
    stage = _stage(config, fake_runner, watcher, audit_log)
    copy_into_project = stage.relocate

    def relocate_and_notify(unit: WorkUnit) -> list[str]:
        copied = copy_into_project(unit)
        watcher.emit(*(str(config.source_path / rel) for rel in copied))
        return copied

    stage.relocate = relocate_and_notify  # type: ignore[method-assign]

    result = stage.retrieve(WorkUnit.changeset("CS One"))

    assert result.ok
    assert (config.source_path / "classes" / "Invoice.cls").read_text(encoding="utf-8") == "class Invoice {}"
    assert result.touched_files == [
        "force-app/main/default/classes/Invoice.cls",
        "force-app/main/default/package.xml",
    ]


def test_relocation_uses_separate_watch_for_the_copy(
    make_config: Callable[..., PipelineConfig],
    fake_runner: FakeRunner,
    audit_log: AuditLog,
) -> None:
    config = make_config(copy_to_project=True)
    watcher = ScriptedWatcher()

    def fake_download() -> None:
        package = config.download_path / "CS One"
        package.mkdir(parents=True)
        (package / "package.xml").write_text("<Package/>", encoding="utf-8")
        watcher.emit(str(package / "package.xml"))

    fake_runner.on("force:mdapi:retrieve", effect=fake_download)

    result = _stage(config, fake_runner, watcher, audit_log).retrieve(WorkUnit.changeset("CS One"))

    assert result.ok
    assert result.touched_files == []
    assert watcher.started == watcher.stopped == 2


def test_outside_download_area_filters_download_paths(
    make_config: Callable[..., PipelineConfig],
    fake_runner: FakeRunner,
    scripted_watcher: ScriptedWatcher,
    audit_log: AuditLog,
) -> None:
    stage = _stage(make_config(), fake_runner, scripted_watcher, audit_log)

    kept = stage.outside_download_area(
        ["packages/CS One/package.xml", "packages-old/a.xml", "force-app/main/default/package.xml"]
    )

    assert kept == ["packages-old/a.xml", "force-app/main/default/package.xml"]


@pytest.mark.integration
def test_relocation_with_real_watcher_stages_only_project_copies(
    make_config: Callable[..., PipelineConfig],
    fake_runner: FakeRunner,
    audit_log: AuditLog,
) -> None:
    config = make_config(copy_to_project=True)
    watcher = WatchdogChangeWatcher([".xml"], settle_seconds=0.5)
    config.source_path.mkdir(parents=True)

    def fake_download() -> None:
        objects = config.download_path / "CS One" / "objects"
        objects.mkdir(parents=True)
        (objects.parent / "package.xml").write_text("<Package/>", encoding="utf-8")
        for index in range(20):
            (objects / f"O{index}.object.xml").write_text("<CustomObject/>", encoding="utf-8")

    fake_runner.on("force:mdapi:retrieve", effect=fake_download)

    result = RetrievalStage(config, fake_runner, watcher, audit_log).retrieve(WorkUnit.changeset("CS One"))

    assert result.ok
    assert [p for p in result.touched_files if p.startswith("packages/")] == []
    assert "force-app/main/default/package.xml" in result.touched_files
    assert (config.source_path / "objects" / "O19.object.xml").is_file()


def test_merge_copy_tree_is_idempotent(tmp_path: Path) -> None:
    source = tmp_path / "src"
    (source / "objects").mkdir(parents=True)
    (source / "objects" / "Invoice__c.object").write_text("<CustomObject/>", encoding="utf-8")
    (source / "package.xml").write_text("<Package/>", encoding="utf-8")
    target = tmp_path / "dst"
    (target / "classes").mkdir(parents=True)
    (target / "classes" / "Keep.cls").write_text("keep", encoding="utf-8")

    first = merge_copy_tree(source, target)
    snapshot = {p.relative_to(target).as_posix(): p.read_bytes() for p in target.rglob("*") if p.is_file()}
    second = merge_copy_tree(source, target)
    again = {p.relative_to(target).as_posix(): p.read_bytes() for p in target.rglob("*") if p.is_file()}

    assert first == second == ["objects/Invoice__c.object", "package.xml"]
    assert snapshot == again
    assert again["classes/Keep.cls"] == b"keep"


def test_merge_copy_tree_overwrites_changed_files(tmp_path: Path) -> None:
    source = tmp_path / "src"
    source.mkdir()
    (source / "package.xml").write_text("new", encoding="utf-8")
    target = tmp_path / "dst"
    target.mkdir()
    (target / "package.xml").write_text("old", encoding="utf-8")

    merge_copy_tree(source, target)

    assert (target / "package.xml").read_text(encoding="utf-8") == "new"
