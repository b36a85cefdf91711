from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from stanbridge.progress import parse_progress
from stanbridge.result import Result
from stanbridge.settings import (
    PRO_CONFIG_DIR_NAME,
    BridgeSettings,
    build_analyse_args,
    collect_launch_configuration,
    default_pro_tmp_dir,
)
from stanbridge.spawner import (
    ExitEvent,
    LineAssembler,
    OutputEvent,
    ProcessSpawner,
    SpawnedProcess,
    SpawnError,
)
from stanbridge.types import Disposable, ProgressUpdate

logger = logging.getLogger(__name__)

READY_MARKER = "Open your web browser at:"
PORT_FILE = "port.json"
LOGIN_FILE = "login_payload.jwt"
READY_GRACE_SECONDS = 0.1
TMP_DIR_MISSING = "Failed to launch PHPStan Pro (tmp folder does not exist)"


class ProState(Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    WAITING_FOR_READY = "waiting-for-ready"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


class ProStateError(RuntimeError):
    """Raised on a transition the Pro session lifecycle does not allow."""


_ALLOWED: dict[ProState, frozenset[ProState]] = {
    ProState.IDLE: frozenset({ProState.LAUNCHING, ProState.STOPPED}),
    ProState.LAUNCHING: frozenset({ProState.WAITING_FOR_READY, ProState.FAILED, ProState.STOPPED}),
    ProState.WAITING_FOR_READY: frozenset({ProState.RUNNING, ProState.FAILED, ProState.STOPPED}),
    ProState.RUNNING: frozenset({ProState.FAILED, ProState.STOPPED}),
    ProState.FAILED: frozenset(),
    ProState.STOPPED: frozenset(),
}


class ProStateMachine:
    """
    Lifecycle of one PHPStan Pro launch.

    IDLE -> LAUNCHING -> WAITING_FOR_READY -> RUNNING, with FAILED reachable
    from every live state and STOPPED on disposal. FAILED carries `failure`.
    """

    def __init__(self) -> None:
        self._state = ProState.IDLE
        self._failure: str | None = None
        self._ready_seen = False
        self._lock = threading.Lock()

    @property
    def state(self) -> ProState:
        return self._state

    @property
    def failure(self) -> str | None:
        return self._failure

    @property
    def ready_marker_seen(self) -> bool:
        return self._ready_seen

    def begin_launch(self) -> None:
        self._move(ProState.LAUNCHING)

    def spawned(self) -> None:
        self._move(ProState.WAITING_FOR_READY)

    def ready_seen(self) -> None:
        with self._lock:
            if self._state is not ProState.WAITING_FOR_READY:
                raise ProStateError(f"readiness marker unexpected in state {self._state.value}")
            self._ready_seen = True

    def config_dir_checked(self, exists: bool) -> None:
        if not self._ready_seen:
            raise ProStateError("config directory checked before the readiness marker")
        if exists:
            self._move(ProState.RUNNING)
        else:
            self.fail(TMP_DIR_MISSING)

    def fail(self, cause: str) -> None:
        self._move(ProState.FAILED, failure=cause)

    def fail_if_running(self, cause: str) -> bool:
        """Move RUNNING to FAILED in one step; returns False from any other state."""

        with self._lock:
            if self._state is not ProState.RUNNING:
                return False
            logger.debug("pro state: %s -> %s", self._state.value, ProState.FAILED.value)
            self._state = ProState.FAILED
            self._failure = cause
            return True

    def stop(self) -> None:
        with self._lock:
            if self._state in (ProState.STOPPED, ProState.FAILED):
                return
            logger.debug("pro state: %s -> %s", self._state.value, ProState.STOPPED.value)
            self._state = ProState.STOPPED

    def _move(self, target: ProState, *, failure: str | None = None) -> None:
        with self._lock:
            if target not in _ALLOWED[self._state]:
                raise ProStateError(f"cannot go from {self._state.value} to {target.value}")
            logger.debug("pro state: %s -> %s", self._state.value, target.value)
            self._state = target
            if failure is not None:
                self._failure = failure


class ProSession:
    """
    A running PHPStan Pro process plus the files it publishes.

    `port.json` and the login payload appear in `config_dir` some time after
    startup, so both are re-read on every query. Output keeps being drained
    (and logged) in the background until `dispose()`.
    """

    def __init__(
        self,
        process: SpawnedProcess,
        config_dir: Path,
        *,
        machine: ProStateMachine | None = None,
        assembler: LineAssembler | None = None,
    ) -> None:
        self._process = process
        self._config_dir = config_dir
        self._machine = machine
        self._assembler = assembler or LineAssembler()
        self._disposables: list[Disposable] = []
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._drain_thread = threading.Thread(target=self._drain, daemon=True)
        self._drain_thread.start()

    @property
    def process(self) -> SpawnedProcess:
        return self._process

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def state(self) -> ProState | None:
        return self._machine.state if self._machine is not None else None

    @property
    def disposed(self) -> bool:
        return self._stopped.is_set()

    def get_port(self) -> int | None:
        try:
            data = json.loads((self._config_dir / PORT_FILE).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError, UnicodeDecodeError):
            return None
        port = data.get("port") if isinstance(data, dict) else None
        if isinstance(port, bool) or not isinstance(port, int):
            return None
        return port

    def is_logged_in(self) -> bool:
        return (self._config_dir / LOGIN_FILE).exists()

    def wait_for_port(self, timeout: float, *, initial_interval: float = 0.1, max_interval: float = 1.0) -> int | None:
        """Poll for `port.json` with a doubling interval until `timeout` passes or the session is disposed."""

        deadline = time.monotonic() + timeout
        interval = initial_interval
        while True:
            port = self.get_port()
            if port is not None:
                return port
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            if self._stopped.wait(min(interval, remaining)):
                return None
            interval = min(max_interval, interval * 2)

    def attach(self, disposable: Disposable) -> None:
        with self._lock:
            if not self._stopped.is_set():
                self._disposables.append(disposable)
                return
        disposable.dispose()

    def monitor_errors(self, factory: Callable[[int], Disposable], *, timeout: float = 30.0) -> threading.Thread:
        """Attach `factory(port)` once the port is known; the result is disposed with the session."""

        def _run() -> None:
            port = self.wait_for_port(timeout)
            if port is None:
                if not self._stopped.is_set():
                    logger.warning("PHPStan Pro port not found; error monitoring disabled.")
                return
            self.attach(factory(port))

        thread = threading.Thread(target=_run, daemon=True)
        thread.start()
        return thread

    def dispose(self, *, kill: bool = False) -> None:
        with self._lock:
            if self._stopped.is_set():
                return
            self._stopped.set()
            disposables = list(self._disposables)
            self._disposables.clear()

        for disposable in disposables:
            disposable.dispose()
        self._process.dispose(kill=kill)
        if self._machine is not None:
            self._machine.stop()

    def _drain(self) -> None:
        while not self._stopped.is_set():
            event = self._process.next_event(timeout=0.5)
            if event is None:
                continue
            if isinstance(event, ExitEvent):
                cause = f"PHPStan Pro exited with code {event.status.describe()}: {self._process.stderr_text}"
                logger.warning("%s", cause)
                if self._machine is not None:
                    self._machine.fail_if_running(cause)
                return
            if event.stream == "stdout":
                for line in self._assembler.feed(event.text):
                    logger.debug("[pro] %s", line)


class ProLauncher:
    """
    Start PHPStan Pro (`analyse --watch`) for a project and wait until it serves.

    Every outcome is returned as a `Result`; the state machine of the latest
    attempt stays available as `machine`.
    """

    def __init__(
        self,
        project_dir: Path,
        settings: BridgeSettings,
        *,
        spawner: ProcessSpawner | None = None,
        grace_seconds: float = READY_GRACE_SECONDS,
    ) -> None:
        self._project_dir = project_dir
        self._settings = settings
        self._spawner = spawner or ProcessSpawner()
        self._grace_seconds = grace_seconds
        self.machine = ProStateMachine()

    @property
    def tmp_path(self) -> Path:
        if self._settings.pro_tmp_dir:
            return Path(self._settings.pro_tmp_dir)
        return default_pro_tmp_dir()

    def launch(self, on_progress: Callable[[ProgressUpdate], None] | None = None) -> Result[ProSession]:
        machine = self.machine = ProStateMachine()
        machine.begin_launch()

        launch = collect_launch_configuration(self._project_dir, self._settings)
        if launch is None:
            return self._fail(machine, "Failed to find launch configuration")

        tmp_path = self.tmp_path
        try:
            tmp_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return self._fail(machine, f"Failed to create PHPStan Pro tmp dir {tmp_path}: {exc}")

        args = [*build_analyse_args(launch, self._settings, error_format=None, progress=True), "--watch"]
        logger.info(
            "Spawning PHPStan Pro with the following configuration: %s",
            json.dumps({"binary": launch.binary, "args": args}),
        )
        env = {**os.environ, "TMPDIR": str(tmp_path)}
        try:
            proc = self._spawner.spawn_with_robust_timeout(launch.binary, args, 0, cwd=launch.cwd, env=env)
        except SpawnError as exc:
            return self._fail(machine, f"Failed to launch PHPStan Pro: {exc.reason or exc}")

        machine.spawned()
        return self._await_ready(machine, proc, tmp_path, on_progress)

    def _await_ready(
        self,
        machine: ProStateMachine,
        proc: SpawnedProcess,
        tmp_path: Path,
        on_progress: Callable[[ProgressUpdate], None] | None,
    ) -> Result[ProSession]:
        assembler = LineAssembler()
        ready_timeout = self._settings.pro_ready_timeout
        deadline = time.monotonic() + ready_timeout if ready_timeout else None

        while True:
            remaining: float | None = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    proc.dispose(kill=True)
                    return self._fail(machine, f"PHPStan Pro did not become ready within {ready_timeout:g}s")

            event = proc.next_event(timeout=remaining)
            if event is None:
                continue
            if isinstance(event, ExitEvent):
                proc.dispose()
                return self._fail(machine, f"PHPStan Pro exited with code {event.status.describe()}: {proc.stderr_text}")
            if not isinstance(event, OutputEvent) or event.stream != "stdout":
                continue

            lines = assembler.feed(event.text)
            for line in lines:
                logger.debug("[pro] %s", line)

            progress = parse_progress("\n".join(lines))
            if progress is not None and on_progress is not None:
                on_progress(progress)

            if any(READY_MARKER in line for line in lines):
                machine.ready_seen()
                # PHPStan needs a moment to switch over to the Pro part.
                time.sleep(self._grace_seconds)
                config_dir = tmp_path / PRO_CONFIG_DIR_NAME
                exists = config_dir.is_dir()
                machine.config_dir_checked(exists)
                if not exists:
                    proc.dispose()
                    logger.warning("%s: %s", TMP_DIR_MISSING, config_dir)
                    return Result.failure(TMP_DIR_MISSING)
                return Result.success(ProSession(proc, config_dir, machine=machine, assembler=assembler))

    def _fail(self, machine: ProStateMachine, cause: str) -> Result[ProSession]:
        machine.fail(cause)
        logger.warning("%s", cause)
        return Result.failure(cause)
