from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from watchdog.observers import Observer

from stanbridge.check import CheckRunner
from stanbridge.notifications import LoggingNotifier, Notifier
from stanbridge.pro import ProLauncher, ProSession
from stanbridge.reader import ConfigReaderRegistry
from stanbridge.resolver import ConfigurationResolver
from stanbridge.result import Result
from stanbridge.settings import BridgeSettings, load_settings
from stanbridge.spawner import ProcessSpawner
from stanbridge.types import Diagnostic, Disposable, ProgressUpdate

logger = logging.getLogger(__name__)

OPEN_PRO_COMMAND = "stanbridge.openPro"
DEFAULT_PORT_TIMEOUT_SECONDS = 5.0


class Workspace:
    """
    Everything the bridge needs for one project root.

    Owns the config readers (and their file watches), the resolver, the
    spawner and any running PHPStan Pro session. `dispose()` releases all of
    it and may be called any number of times.

    `error_monitor(port)` is started for every Pro session once its port is
    known (for example a poller of the Pro web UI); it is disposed with the
    session.
    """

    def __init__(
        self,
        project_root: Path | str,
        settings: BridgeSettings | None = None,
        notifier: Notifier | None = None,
        *,
        spawner: ProcessSpawner | None = None,
        observer_factory: Callable[[], Any] = Observer,
        error_monitor: Callable[[int], Disposable] | None = None,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.settings = settings if settings is not None else load_settings(self.project_root)
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.spawner = spawner or ProcessSpawner()
        self.readers = ConfigReaderRegistry(observer_factory=observer_factory)
        self.resolver = ConfigurationResolver(self.readers)
        self._checker = CheckRunner(self.project_root, self.settings, self.resolver, self.spawner)
        self._error_monitor = error_monitor
        self._disposables: list[Disposable] = [self.readers]
        self._pro: ProSession | None = None
        self._lock = threading.Lock()
        self._disposed = False

    @property
    def pro_session(self) -> ProSession | None:
        return self._pro

    def check(self, file_path: Path | str, text: str | None = None) -> Result[list[Diagnostic]]:
        path = Path(file_path)
        if not path.is_absolute():
            path = self.project_root / path
        result = self._checker.check(path, text)
        if result.ok:
            by_path: dict[Path, list[Diagnostic]] = {path: []}
            for diagnostic in result.unwrap():
                by_path.setdefault(diagnostic.path, []).append(diagnostic)
            for reported, diagnostics in by_path.items():
                self.notifier.publish_diagnostics(reported, diagnostics)
        else:
            self.notifier.show_error(f"PHPStan check failed: {result.error}")
        return result

    def start_pro(self, *, port_timeout: float = DEFAULT_PORT_TIMEOUT_SECONDS) -> ProSession | None:
        """
        Launch PHPStan Pro and report its progress through the notifier.

        Returns the running session, or None when Pro is disabled or failed
        to come up (the failure has already been reported).
        """

        if not self.settings.enabled:
            logger.info("Not starting pro since extension has been disabled")
            return None

        self.notifier.status("PHPStan Pro starting...")

        def _on_progress(progress: ProgressUpdate) -> None:
            self.notifier.status(
                f"PHPStan Pro starting {progress.done}/{progress.total} ({progress.percentage}%)"
            )

        launcher = ProLauncher(self.project_root, self.settings, spawner=self.spawner)
        result = launcher.launch(on_progress=_on_progress)
        if not result.ok:
            self.notifier.show_error(f"Failed to start PHPStan Pro: {result.error or '?'}")
            self.notifier.status(None)
            return None

        session = result.unwrap()
        port = session.wait_for_port(port_timeout)
        if port is None:
            session.dispose(kill=True)
            self.notifier.show_error("Failed to find PHPStan Pro port")
            self.notifier.status(None)
            return None

        with self._lock:
            if self._disposed:
                session.dispose(kill=True)
                return None
            self._pro = session
            self._disposables.append(session)

        if self._error_monitor is not None:
            session.monitor_errors(self._error_monitor, timeout=port_timeout)

        self.notifier.port_discovered(port)
        if not session.is_logged_in():
            self.notifier.require_login()
        self.notifier.status("PHPStan Pro running", command=OPEN_PRO_COMMAND)
        return session

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            disposables = list(reversed(self._disposables))
            self._disposables.clear()
            self._pro = None

        for disposable in disposables:
            try:
                disposable.dispose()
            except Exception:
                logger.exception("Failed to dispose %r", disposable)
