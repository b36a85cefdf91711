from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from rich.console import Console
from rich.markup import escape

from stanbridge.types import Diagnostic

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """
    Fire-and-forget notifications towards whatever UI hosts the bridge.

    Implementations must not raise; nothing is acknowledged.
    """

    def status(self, text: str | None, *, command: str | None = None) -> None: ...

    def require_login(self) -> None: ...

    def port_discovered(self, port: int) -> None: ...

    def publish_diagnostics(self, path: Path, diagnostics: Sequence[Diagnostic]) -> None: ...

    def show_error(self, message: str) -> None: ...


class LoggingNotifier:
    """Default for headless use: every notification becomes a log record."""

    def status(self, text: str | None, *, command: str | None = None) -> None:
        if text:
            logger.info("status: %s", text)

    def require_login(self) -> None:
        logger.info("PHPStan Pro requires login")

    def port_discovered(self, port: int) -> None:
        logger.info("PHPStan Pro listening on port %d", port)

    def publish_diagnostics(self, path: Path, diagnostics: Sequence[Diagnostic]) -> None:
        logger.info("%s: %d diagnostic(s)", path, len(diagnostics))

    def show_error(self, message: str) -> None:
        logger.error("%s", message)


@dataclass
class RecordingNotifier:
    """Keeps every notification in order; handy for embedding and tests."""

    events: list[tuple[str, object]] = field(default_factory=list)

    def status(self, text: str | None, *, command: str | None = None) -> None:
        self.events.append(("status", text))

    def require_login(self) -> None:
        self.events.append(("require_login", None))

    def port_discovered(self, port: int) -> None:
        self.events.append(("port", port))

    def publish_diagnostics(self, path: Path, diagnostics: Sequence[Diagnostic]) -> None:
        self.events.append(("diagnostics", (path, tuple(diagnostics))))

    def show_error(self, message: str) -> None:
        self.events.append(("error", message))

    def of_kind(self, kind: str) -> list[object]:
        return [payload for k, payload in self.events if k == kind]


class ConsoleNotifier:
    def __init__(self, console: Console) -> None:
        self._console = console

    def status(self, text: str | None, *, command: str | None = None) -> None:
        if text:
            self._console.print(f"[dim]{escape(text)}[/dim]")

    def require_login(self) -> None:
        self._console.print("[yellow]PHPStan Pro requires you to log in (open it in a browser).[/yellow]")

    def port_discovered(self, port: int) -> None:
        self._console.print(f"PHPStan Pro is available at [bold]http://127.0.0.1:{port}[/bold]")

    def publish_diagnostics(self, path: Path, diagnostics: Sequence[Diagnostic]) -> None:
        self._console.print(f"{escape(str(path))}: {len(diagnostics)} diagnostic(s)")

    def show_error(self, message: str) -> None:
        self._console.print(f"[red]{escape(message)}[/red]")
