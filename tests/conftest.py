"""Shared pytest configuration, marker registration and pipeline fakes."""

from __future__ import annotations

import io
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console

from sfgit.command_runner import build_command_line
from sfgit.config import PipelineConfig
from sfgit.log_sink import AuditLog
from sfgit.schemas import CommandResult
from sfgit.watcher import ChangeRecorder


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive tests that may call external APIs")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


Responder = Callable[[str, Path | None], CommandResult | None]


class FakeRunner:
    """Records command lines and answers them from scripted responders.

    Responders are tried in registration order; the first one returning a
    result wins. Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.stdin: list[str | None] = []
        self._responders: list[Responder] = []

    def on(self, fragment: str, result: CommandResult | None = None, *, effect: Callable[[], None] | None = None) -> None:
        def _respond(command: str, cwd: Path | None) -> CommandResult | None:
            if fragment not in command:
                return None
            if effect is not None:
                effect()
            return result or CommandResult(exit_code=0, command=command)

        self._responders.append(_respond)

    def run(
        self,
        command_line: str,
        args: Sequence[str] = (),
        *,
        suppress_log: bool = False,
        stdin_text: str | None = None,
        cwd: str | Path | None = None,
    ) -> CommandResult:
        command = build_command_line(command_line, args)
        self.calls.append(command)
        self.stdin.append(stdin_text)
        for responder in self._responders:
            result = responder(command, Path(cwd) if cwd is not None else None)
            if result is not None:
                return result
        return CommandResult(exit_code=0, command=command)

    def calls_matching(self, fragment: str) -> list[str]:
        return [call for call in self.calls if fragment in call]


class ScriptedWatcher:
    """Deterministic change watcher fed by explicit ``emit`` calls."""

    def __init__(self, suffixes: Sequence[str] = (".xml",)) -> None:
        self.suffixes = tuple(suffixes)
        self.started = 0
        self.stopped = 0
        self._active: ChangeRecorder | None = None

    @property
    def active(self) -> bool:
        return self._active is not None

    def start(self, root: Path) -> ChangeRecorder:
        self.started += 1
        self._active = ChangeRecorder(root, self.suffixes)
        return self._active

    def stop(self, handle: ChangeRecorder) -> set[str]:
        self.stopped += 1
        self._active = None
        return handle.paths

    def emit(self, *paths: str) -> None:
        assert self._active is not None, "emit() called while no watch is active"
        for path in paths:
            self._active.record(path)


@pytest.fixture
def audit_log(tmp_path: Path) -> AuditLog:
    return AuditLog(tmp_path / "log.txt", console=Console(file=io.StringIO(), highlight=False))


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def scripted_watcher() -> ScriptedWatcher:
    return ScriptedWatcher()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / ".git").mkdir(parents=True)
    return root


@pytest.fixture
def make_config(project: Path) -> Callable[..., PipelineConfig]:
    def _make(**overrides: Any) -> PipelineConfig:
        values: dict[str, Any] = {
            "project_root": str(project),
            "download_root": "packages",
            "salesforce_username": "admin@example.com",
            "skip_existing_work": False,
            "auto_create_pull_request": False,
        }
        values.update(overrides)
        return PipelineConfig(**values)

    return _make


def write_package_xml(package_dir: Path, description: str | None) -> Path:
    package_dir.mkdir(parents=True, exist_ok=True)
    desc = f"    <description>{description}</description>\n" if description is not None else ""
    path = package_dir / "package.xml"
    path.write_text(
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<Package xmlns="http://soap.sforce.com/2006/04/metadata">\n'
        f"{desc}"
        "    <types>\n"
        "        <members>Account</members>\n"
        "        <name>CustomObject</name>\n"
        "    </types>\n"
        "    <version>57.0</version>\n"
        "</Package>\n",
        encoding="utf-8",
    )
    return path


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def init_git_repo(repo: Path, remote: Path) -> None:
    """Create ``repo`` with one commit and a bare ``origin`` at ``remote``."""
    repo.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init", "--bare", str(remote)], check=True, capture_output=True, text=True)
    git(repo, "init")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "user.email", "test@example.com")
    (repo / "README.md").write_text("init\n", encoding="utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "-m", "init")
    git(repo, "remote", "add", "origin", str(remote))
