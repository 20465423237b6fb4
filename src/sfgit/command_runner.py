"""Shell command execution with combined output capture.

Every external tool (git, sfdx, gh) is driven through :class:`CommandRunner`.
A non-zero exit is a normal outcome and is returned as a
:class:`~sfgit.schemas.CommandResult`, never raised.
"""

from __future__ import annotations

import logging
import os
import queue
import shlex
import subprocess
import threading
import time
from collections.abc import Sequence
from contextlib import suppress
from pathlib import Path
from typing import Any, Protocol

from sfgit.log_sink import AuditLog
from sfgit.schemas import CommandResult

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

TIMED_OUT_EXIT_CODE = -1
LAUNCH_FAILED_EXIT_CODE = -1


def quote_arg(value: str | Path) -> str:
    """Quote one argument for the platform shell."""
    text = str(value)
    if os.name == "nt":
        return subprocess.list2cmdline([text])
    return shlex.quote(text)


def build_command_line(command_line: str, args: Sequence[str] = ()) -> str:
    """Join a command with pre-quoted arguments, as the shell will see it."""
    parts = [str(command_line).strip(), *(str(a) for a in args if str(a).strip())]
    return " ".join(part for part in parts if part)


def _process_isolation_kwargs() -> dict[str, object]:
    """Keep terminal Ctrl+C aimed at the parent away from the child on Windows."""
    if os.name == "nt":
        new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        return {"creationflags": new_pg} if new_pg else {}
    return {"start_new_session": True}


class Runner(Protocol):
    """Anything that can execute a command line and report a CommandResult."""

    def run(
        self,
        command_line: str,
        args: Sequence[str] = (),
        *,
        suppress_log: bool = False,
        stdin_text: str | None = None,
        cwd: str | Path | None = None,
    ) -> CommandResult: ...


class CommandRunner:
    """Run shell commands one at a time, streaming output into the audit log.

    Parameters
    ----------
    log:
        Audit log receiving the command line, each output chunk and the
        exit status.
    cwd:
        Default working directory for commands.
    timeout_seconds:
        Inactivity timeout; ``0`` waits for process exit indefinitely.
    """

    def __init__(
        self,
        log: AuditLog,
        *,
        cwd: str | Path | None = None,
        timeout_seconds: int = 0,
        env: dict[str, str] | None = None,
    ) -> None:
        self.log = log
        self.cwd = Path(cwd) if cwd is not None else None
        self.timeout_seconds = max(0, int(timeout_seconds))
        self.env = env

    def run(
        self,
        command_line: str,
        args: Sequence[str] = (),
        *,
        suppress_log: bool = False,
        stdin_text: str | None = None,
        cwd: str | Path | None = None,
    ) -> CommandResult:
        full_command = build_command_line(command_line, args)
        masked_command = self.log.mask(full_command)
        work_dir = Path(cwd) if cwd is not None else self.cwd
        logger.debug("run %s (cwd=%s)", masked_command, work_dir)
        if not suppress_log:
            self.log.quiet(f"> {masked_command}")

        try:
            proc = subprocess.Popen(
                full_command,
                shell=True,
                cwd=str(work_dir) if work_dir is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.PIPE if stdin_text is not None else None,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=self.env,
                **_process_isolation_kwargs(),
            )
        except OSError as exc:
            message = f"Could not start command: {exc}"
            if not suppress_log:
                self.log.error(message)
            return CommandResult(
                exit_code=LAUNCH_FAILED_EXIT_CODE,
                output=message,
                command=masked_command,
            )

        output, timed_out = self._collect(proc, stdin_text=stdin_text, suppress_log=suppress_log)
        exit_code = TIMED_OUT_EXIT_CODE if timed_out else int(proc.returncode or 0)
        if timed_out and not suppress_log:
            self.log.error(
                f"Command produced no output for {self.timeout_seconds}s and was stopped: {masked_command}"
            )
        if not suppress_log:
            self.log.quiet(f"< exit code {exit_code}")
        return CommandResult(
            exit_code=exit_code,
            output=self.log.mask(output),
            command=masked_command,
            timed_out=timed_out,
        )

    def _collect(
        self,
        proc: subprocess.Popen[str],
        *,
        stdin_text: str | None,
        suppress_log: bool,
    ) -> tuple[str, bool]:
        """Drain stdout and stderr in arrival order until the process exits."""
        stream_queue: queue.Queue[tuple[str, str | object]] = queue.Queue()
        done_sentinel = object()
        chunks: list[str] = []

        def _pump_stream(name: str, stream: Any) -> None:
            try:
                for line in stream:
                    stream_queue.put((name, line))
            finally:
                stream_queue.put((name, done_sentinel))

        def _pump_stdin(stream: Any, text: str) -> None:
            try:
                stream.write(text)
                if text and not text.endswith("\n"):
                    stream.write("\n")
                stream.flush()
            except OSError:  # pragma: no cover - child closed stdin early
                logger.debug("stdin write failed")
            finally:
                with suppress(OSError):
                    stream.close()

        threads = [
            threading.Thread(target=_pump_stream, args=("stdout", proc.stdout), daemon=True),
            threading.Thread(target=_pump_stream, args=("stderr", proc.stderr), daemon=True),
        ]
        if stdin_text is not None and proc.stdin is not None:
            threads.append(threading.Thread(target=_pump_stdin, args=(proc.stdin, stdin_text), daemon=True))
        for thread in threads:
            thread.start()

        inactivity_timeout = self.timeout_seconds or None
        last_activity = time.monotonic()
        closed_streams: set[str] = set()
        timed_out = False

        try:
            while len(closed_streams) < 2:
                if inactivity_timeout is not None and time.monotonic() - last_activity >= inactivity_timeout:
                    timed_out = True
                    _terminate(proc)
                    break
                try:
                    name, payload = stream_queue.get(timeout=0.25)
                except queue.Empty:
                    continue
                if payload is done_sentinel:
                    closed_streams.add(name)
                    continue
                last_activity = time.monotonic()
                chunk = str(payload)
                chunks.append(chunk)
                if not suppress_log:
                    self.log.output_chunk(chunk)

            proc.wait()

            while True:
                try:
                    _name, payload = stream_queue.get_nowait()
                except queue.Empty:
                    break
                if payload is done_sentinel:
                    continue
                chunks.append(str(payload))
                if not suppress_log:
                    self.log.output_chunk(str(payload))
        finally:
            for thread in threads:
                thread.join(timeout=1.0)
            for stream in (proc.stdin, proc.stdout, proc.stderr):
                if stream is not None and not stream.closed:
                    with suppress(OSError):
                        stream.close()

        return "".join(chunks), timed_out


def _terminate(proc: subprocess.Popen[str]) -> None:
    """Stop a hung child (and its process group), force-killing if needed."""
    if proc.poll() is not None:
        return
    if os.name != "nt":
        with suppress(OSError):
            os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
    with suppress(OSError):
        proc.terminate()
    try:
        proc.wait(timeout=1.5)
        return
    except subprocess.TimeoutExpired:
        logger.warning("Command did not exit after terminate; forcing kill.")
    if os.name != "nt":
        with suppress(OSError):
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
    with suppress(OSError):
        proc.kill()
    with suppress(subprocess.TimeoutExpired):
        proc.wait(timeout=5.0)
