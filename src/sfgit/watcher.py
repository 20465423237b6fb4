"""Filesystem change watching around a single retrieval.

The retrieval tool's own manifest does not reliably describe what it wrote,
so the files observed changing on disk while it runs are what gets staged.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from watchdog.events import (
    DirCreatedEvent,
    DirModifiedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
    FileSystemMovedEvent,
)
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

_IGNORED_DIR_NAMES = frozenset({".git"})


class ChangeRecorder:
    """Collects de-duplicated relative paths of matching files under ``root``."""

    def __init__(self, root: str | Path, suffixes: Iterable[str]) -> None:
        self.root = Path(root).resolve()
        self.suffixes = tuple(s.lower() for s in suffixes)
        self._paths: set[str] = set()
        self._lock = threading.Lock()

    def relative(self, path: str | Path) -> str | None:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        try:
            rel = candidate.resolve().relative_to(self.root)
        except ValueError:
            return None
        if not rel.parts or any(part in _IGNORED_DIR_NAMES for part in rel.parts):
            return None
        return rel.as_posix()

    def matches(self, path: str | Path) -> bool:
        return str(path).lower().endswith(self.suffixes)

    def record(self, path: str | Path) -> bool:
        """Record ``path`` if it lives under root and has a recognized suffix."""
        rel = self.relative(path)
        if rel is None or not self.matches(rel):
            return False
        with self._lock:
            self._paths.add(rel)
        return True

    @property
    def paths(self) -> set[str]:
        with self._lock:
            return set(self._paths)


class _RecordingHandler(FileSystemEventHandler):
    """Watchdog handler feeding create/modify/move-target events to a recorder."""

    def __init__(self, recorder: ChangeRecorder) -> None:
        super().__init__()
        self.recorder = recorder

    def on_created(self, event: FileSystemEvent) -> None:
        if not isinstance(event, DirCreatedEvent):
            self.recorder.record(_as_text(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not isinstance(event, DirModifiedEvent):
            self.recorder.record(_as_text(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileSystemMovedEvent) and not event.is_directory:
            self.recorder.record(_as_text(event.dest_path))


def _as_text(path: str | bytes) -> str:
    return path.decode("utf-8", errors="replace") if isinstance(path, bytes) else str(path)


class ChangeWatcher(Protocol):
    """Capability interface: start observing a tree, stop and collect paths."""

    def start(self, root: Path) -> Any: ...

    def stop(self, handle: Any) -> set[str]: ...


@dataclass
class _ObserverHandle:
    observer: Any
    recorder: ChangeRecorder


class WatchdogChangeWatcher:
    """:class:`ChangeWatcher` backed by a recursive watchdog observer."""

    def __init__(self, suffixes: Iterable[str], *, settle_seconds: float = 0.2) -> None:
        self.suffixes = tuple(suffixes)
        self.settle_seconds = max(0.0, float(settle_seconds))

    def start(self, root: Path) -> _ObserverHandle:
        root = Path(root)
        root.mkdir(parents=True, exist_ok=True)
        recorder = ChangeRecorder(root, self.suffixes)
        observer = Observer()
        observer.schedule(_RecordingHandler(recorder), str(root), recursive=True)
        observer.start()
        logger.debug("Watching %s for %s", root, ", ".join(self.suffixes))
        return _ObserverHandle(observer=observer, recorder=recorder)

    def stop(self, handle: _ObserverHandle) -> set[str]:
        if self.settle_seconds:
            # Late inotify/FSEvents deliveries for writes that just finished.
            time.sleep(self.settle_seconds)
        handle.observer.stop()
        handle.observer.join(timeout=5.0)
        paths = handle.recorder.paths
        logger.debug("Watcher stopped with %d matching path(s)", len(paths))
        return paths


@dataclass
class WatchSession:
    """Result holder filled in when a :func:`watching` block exits."""

    handle: Any = None
    touched_files: list[str] = field(default_factory=list)


@contextmanager
def watching(watcher: ChangeWatcher, root: Path) -> Iterator[WatchSession]:
    """Watch ``root`` for the duration of the block, stopping on every exit path."""
    session = WatchSession(handle=watcher.start(root))
    try:
        yield session
    finally:
        session.touched_files = sorted(watcher.stop(session.handle))
