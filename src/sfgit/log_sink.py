"""Append-only audit log with colored terminal echo.

Every command line, every chunk of external-process output and every
stage transition goes through :class:`AuditLog`. Lines are masked for
registered secrets before they reach the file, the terminal or the
stdlib logger.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from collections.abc import Iterable
from pathlib import Path

from rich.console import Console

from sfgit.credentials import mask_secrets

logger = logging.getLogger(__name__)

_LINE_ENDING = "\n"
_LEVEL_BY_STYLE = {
    "red": logging.ERROR,
    "yellow": logging.WARNING,
}


class AuditLog:
    """Text log sink shared by every pipeline stage."""

    def __init__(
        self,
        path: str | Path,
        *,
        console: Console | None = None,
        echo: bool = True,
        secrets: Iterable[str] = (),
    ) -> None:
        self.path = Path(path)
        self.console = console or Console(highlight=False)
        self.echo = echo
        self._secrets: set[str] = {s for s in secrets if s}
        self._lock = threading.Lock()

    def add_secret(self, secret: str) -> None:
        if secret:
            self._secrets.add(secret)

    def mask(self, text: str) -> str:
        return mask_secrets(text, self._secrets)

    # -- writers --

    def record(self, message: str, *, style: str | None = None, echo: bool | None = None) -> None:
        """Append ``message`` to the log file and optionally echo it."""
        text = self.mask(str(message))
        self._append(text)
        if self.echo if echo is None else echo:
            self.console.print(text, style=style, markup=False, highlight=False, soft_wrap=True)
        logger.log(_LEVEL_BY_STYLE.get(style or "", logging.DEBUG), "%s", text.rstrip())

    def info(self, message: str) -> None:
        self.record(message)

    def progress(self, message: str) -> None:
        self.record(message, style="green")

    def warn(self, message: str) -> None:
        self.record(message, style="yellow")

    def error(self, message: str) -> None:
        self.record(message, style="red")

    def quiet(self, message: str) -> None:
        """Write to the file only."""
        self.record(message, echo=False)

    def output_chunk(self, chunk: str) -> None:
        """Record one chunk of external-process output verbatim."""
        text = str(chunk)
        if not text:
            return
        self.record(text.rstrip("\r\n"))

    def banner(self, title: str) -> None:
        stamp = dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self.record(f"------------------------- {title} ({stamp}) -------------------------", style="green")

    def _append(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(text + _LINE_ENDING)
