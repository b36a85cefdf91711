from __future__ import annotations

import codecs
import logging
import queue
import random
import re
import subprocess
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Literal

logger = logging.getLogger(__name__)

Stream = Literal["stdout", "stderr"]

_CHUNK_SIZE = 8192
_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")
_READER_JOIN_SECONDS = 1.0
_TERMINATE_GRACE_SECONDS = 2.0


class SpawnError(RuntimeError):
    """Raised when the OS refuses to start a process (missing binary, permissions, ...)."""

    def __init__(self, message: str, *, command: str, reason: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.reason = reason


class ProcessExitError(RuntimeError):
    """Raised when a process terminates before producing what the caller expected."""

    def __init__(self, message: str, *, status: ExitStatus, stderr: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.stderr = stderr


class ProcessTimeoutError(TimeoutError):
    """Raised when a process shows no sign of life (or does not finish) within its time bound."""


@dataclass(frozen=True, slots=True)
class ExitStatus:
    exit_code: int | None = None
    signal: int | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> ExitStatus:
        # Popen reports "killed by signal N" as -N on POSIX.
        if returncode < 0:
            return cls(exit_code=None, signal=-returncode)
        return cls(exit_code=returncode)

    def describe(self) -> str:
        if self.exit_code is not None:
            return str(self.exit_code)
        if self.signal is not None:
            return f"signal {self.signal}"
        return "?"


@dataclass(frozen=True, slots=True)
class OutputEvent:
    stream: Stream
    text: str


@dataclass(frozen=True, slots=True)
class ExitEvent:
    status: ExitStatus


ProcessEvent = OutputEvent | ExitEvent


@dataclass(frozen=True, slots=True)
class CompletedRun:
    stdout: str
    stderr: str
    status: ExitStatus


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    How often `spawn_with_robust_timeout` may try again.

    `max_attempts` counts the first attempt. OS-level spawn failures are only
    retried when `retry_spawn_errors` is set; a missing binary rarely appears
    between attempts.
    """

    max_attempts: int = 1
    backoff_base_seconds: float = 0.5
    backoff_cap_seconds: float = 8.0
    retry_spawn_errors: bool = False

    def sleep_seconds(self, attempt: int) -> float:
        """
        Compute an exponential backoff delay with jitter.

        attempt=0 is the first retry after the initial failure.
        """

        upper = min(self.backoff_cap_seconds, self.backoff_base_seconds * (2**attempt))
        # "Equal jitter": sleep in [upper/2, upper]
        return float((upper / 2.0) + random.uniform(0.0, upper / 2.0))


class LineAssembler:
    """
    Rebuild logical lines from arbitrarily split output chunks.

    `\\n`, `\\r\\n` and a bare `\\r` (progress bar redraws) all end a line.
    Empty lines are dropped.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[str]:
        self._buffer += text
        parts = _LINE_SPLIT_RE.split(self._buffer)
        self._buffer = parts.pop()
        return [p for p in parts if p]

    def flush(self) -> list[str]:
        rest, self._buffer = self._buffer, ""
        return [rest] if rest else []


class SpawnedProcess:
    """
    Handle to a running OS process and its output.

    One reader thread per pipe pushes decoded chunks onto a queue as they
    arrive; a waiter thread appends the `ExitEvent` once the process ends.
    Output events always precede the exit event. `dispose()` stops listening
    but leaves the process alone unless `kill=True`.
    """

    def __init__(self, popen: subprocess.Popen[bytes], *, command: str, listen: bool = True) -> None:
        self._popen = popen
        self._command = command
        self._events: queue.Queue[ProcessEvent] = queue.Queue()
        self._listening = listen
        self._activity = threading.Event()
        self._exited = threading.Event()
        self._exit_status: ExitStatus | None = None
        self._lock = threading.Lock()
        self._output: dict[Stream, list[str]] = {"stdout": [], "stderr": []}
        self._disposed = False

        self._readers = [
            self._start_thread(self._pump, popen.stdout, "stdout"),
            self._start_thread(self._pump, popen.stderr, "stderr"),
        ]
        self._start_thread(self._wait_for_exit)

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def command(self) -> str:
        return self._command

    @property
    def alive(self) -> bool:
        return self._popen.poll() is None

    @property
    def exit_status(self) -> ExitStatus | None:
        return self._exit_status

    @property
    def stdout_text(self) -> str:
        with self._lock:
            return "".join(self._output["stdout"])

    @property
    def stderr_text(self) -> str:
        with self._lock:
            return "".join(self._output["stderr"])

    def next_event(self, timeout: float | None = None) -> ProcessEvent | None:
        """Return the next output/exit event, or None if nothing arrived within `timeout`."""

        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def events(self, *, timeout: float | None = None) -> Iterator[ProcessEvent]:
        """Yield events until the exit event (inclusive) or until `timeout` passes without one."""

        while True:
            event = self.next_event(timeout)
            if event is None:
                return
            yield event
            if isinstance(event, ExitEvent):
                return

    def wait_for_activity(self, timeout: float | None) -> bool:
        """True once any output or the exit has been observed."""

        return self._activity.wait(timeout)

    def wait(self, timeout: float | None = None) -> ExitStatus | None:
        if self._exited.wait(timeout):
            return self._exit_status
        return None

    def terminate(self) -> None:
        if self._popen.poll() is not None:
            return
        self._popen.terminate()
        try:
            self._popen.wait(timeout=_TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.debug("%s ignored SIGTERM; killing pid %d", self._command, self._popen.pid)
            self._popen.kill()

    def dispose(self, *, kill: bool = False) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._listening = False
        if kill:
            self.terminate()

    def _start_thread(self, target: Callable[..., None], *args: object) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        return thread

    def _pump(self, pipe: IO[bytes] | None, stream: Stream) -> None:
        if pipe is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = pipe.read1(_CHUNK_SIZE)  # type: ignore[attr-defined]
                if not chunk:
                    break
                self._deliver(stream, decoder.decode(chunk))
            self._deliver(stream, decoder.decode(b"", final=True))
        except (OSError, ValueError) as exc:
            logger.debug("stopped reading %s of %s: %s", stream, self._command, exc)
        finally:
            pipe.close()

    def _deliver(self, stream: Stream, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._output[stream].append(text)
        self._activity.set()
        if self._listening:
            self._events.put(OutputEvent(stream=stream, text=text))

    def _wait_for_exit(self) -> None:
        returncode = self._popen.wait()
        # A grandchild holding the pipes open must not delay the exit event forever.
        for reader in self._readers:
            reader.join(timeout=_READER_JOIN_SECONDS)
        status = ExitStatus.from_returncode(returncode)
        self._exit_status = status
        logger.debug("%s (pid %d) exited with %s", self._command, self._popen.pid, status.describe())
        self._exited.set()
        self._activity.set()
        if self._listening:
            self._events.put(ExitEvent(status=status))


class ProcessSpawner:
    """Launch external processes and expose their output as events."""

    def spawn(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        listen: bool = True,
    ) -> SpawnedProcess:
        argv = [command, *args]
        logger.debug("spawning: %s (cwd=%s)", " ".join(argv), cwd or ".")
        try:
            popen = subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            reason = exc.strerror or str(exc)
            raise SpawnError(f"Failed to launch {command}: {reason}", command=command, reason=reason) from exc
        return SpawnedProcess(popen, command=command, listen=listen)

    def spawn_with_robust_timeout(
        self,
        command: str,
        args: Sequence[str],
        timeout: float,
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        retry: RetryPolicy | None = None,
    ) -> SpawnedProcess:
        """
        Spawn `command` and make sure it comes alive.

        With `timeout > 0`, an attempt that produces neither output nor an exit
        within `timeout` seconds is killed and retried according to `retry`.
        `timeout == 0` disables the wall clock: the process is expected to
        signal readiness through its own output, however long that takes.
        """

        policy = retry or RetryPolicy()
        attempts = max(1, int(policy.max_attempts))
        for attempt in range(attempts):
            last_attempt = attempt >= attempts - 1
            try:
                proc = self.spawn(command, args, cwd=cwd, env=env)
            except SpawnError as exc:
                if policy.retry_spawn_errors and not last_attempt:
                    logger.info("%s; retrying (attempt %d/%d)", exc, attempt + 2, attempts)
                    time.sleep(policy.sleep_seconds(attempt))
                    continue
                raise

            if timeout <= 0 or proc.wait_for_activity(timeout):
                return proc

            logger.warning("%s showed no activity within %gs (attempt %d/%d)", command, timeout, attempt + 1, attempts)
            proc.dispose(kill=True)
            if not last_attempt:
                time.sleep(policy.sleep_seconds(attempt))

        raise ProcessTimeoutError(f"{command} did not respond within {timeout:g}s after {attempts} attempt(s)")

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        timeout: float | None = None,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CompletedRun:
        """Run to completion and return the collected output; kills the process on timeout."""

        proc = self.spawn(command, args, cwd=cwd, env=env, listen=False)
        status = proc.wait(timeout)
        if status is None:
            proc.dispose(kill=True)
            raise ProcessTimeoutError(f"{command} did not finish within {timeout:g}s")
        return CompletedRun(stdout=proc.stdout_text, stderr=proc.stderr_text, status=status)
