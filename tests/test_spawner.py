from __future__ import annotations

import sys
import types

import pytest

import stanbridge.spawner as spawner_mod
from stanbridge.spawner import (
    ExitEvent,
    ExitStatus,
    LineAssembler,
    OutputEvent,
    ProcessSpawner,
    ProcessTimeoutError,
    RetryPolicy,
    SpawnError,
)


def _collect(proc) -> tuple[str, str, ExitStatus | None]:  # noqa: ANN001
    out: list[str] = []
    err: list[str] = []
    status = None
    for event in proc.events(timeout=10):
        if isinstance(event, OutputEvent):
            (out if event.stream == "stdout" else err).append(event.text)
        elif isinstance(event, ExitEvent):
            status = event.status
    return "".join(out), "".join(err), status


def test_spawn_streams_output_then_exit() -> None:
    proc = ProcessSpawner().spawn(
        sys.executable,
        ["-c", "import sys; print('hello'); sys.stderr.write('oops'); sys.exit(4)"],
    )
    out, err, status = _collect(proc)
    assert out.strip() == "hello"
    assert err == "oops"
    assert status == ExitStatus(exit_code=4)
    assert proc.exit_status == status
    assert not proc.alive


def test_spawn_missing_binary_raises_spawn_error(tmp_path) -> None:
    with pytest.raises(SpawnError) as excinfo:
        ProcessSpawner().spawn(str(tmp_path / "does-not-exist"))
    assert "Failed to launch" in str(excinfo.value)


def test_exit_status_from_signal() -> None:
    status = ExitStatus.from_returncode(-9)
    assert status.signal == 9 and status.exit_code is None
    assert status.describe() == "signal 9"
    assert ExitStatus().describe() == "?"


def test_line_assembler_handles_split_chunks() -> None:
    assembler = LineAssembler()
    assert assembler.feed("Open your web ") == []
    assert assembler.feed("browser at: x\n 1/2 [>] 50%\r") == ["Open your web browser at: x", " 1/2 [>] 50%"]
    assert assembler.feed("\r\n\ntail") == []
    assert assembler.flush() == ["tail"]
    assert assembler.flush() == []


def test_robust_timeout_returns_active_process() -> None:
    proc = ProcessSpawner().spawn_with_robust_timeout(sys.executable, ["-c", "print('up')"], 10)
    out, _err, status = _collect(proc)
    assert out.strip() == "up"
    assert status is not None and status.exit_code == 0


def test_robust_timeout_zero_returns_immediately() -> None:
    proc = ProcessSpawner().spawn_with_robust_timeout(sys.executable, ["-c", "import time; time.sleep(5)"], 0)
    try:
        assert proc.alive
    finally:
        proc.dispose(kill=True)
    assert proc.wait(5) is not None


def test_robust_timeout_retries_silent_process_then_gives_up(monkeypatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr(spawner_mod, "time", types.SimpleNamespace(sleep=sleeps.append))

    spawned = []
    real_spawn = ProcessSpawner.spawn

    def counting_spawn(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        proc = real_spawn(self, *args, **kwargs)
        spawned.append(proc)
        return proc

    monkeypatch.setattr(ProcessSpawner, "spawn", counting_spawn)

    with pytest.raises(ProcessTimeoutError):
        ProcessSpawner().spawn_with_robust_timeout(
            sys.executable,
            ["-c", "import time; time.sleep(30)"],
            0.3,
            retry=RetryPolicy(max_attempts=3, backoff_base_seconds=0.1),
        )

    assert len(spawned) == 3
    assert len(sleeps) == 2
    for proc in spawned:
        assert proc.wait(5) is not None


def test_spawn_errors_are_retried_only_when_asked(monkeypatch, tmp_path) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr(spawner_mod, "time", types.SimpleNamespace(sleep=sleeps.append))
    missing = str(tmp_path / "missing")

    with pytest.raises(SpawnError):
        ProcessSpawner().spawn_with_robust_timeout(missing, [], 1, retry=RetryPolicy(max_attempts=3))
    assert sleeps == []

    with pytest.raises(SpawnError):
        ProcessSpawner().spawn_with_robust_timeout(
            missing, [], 1, retry=RetryPolicy(max_attempts=3, retry_spawn_errors=True)
        )
    assert len(sleeps) == 2


def test_retry_policy_backoff_is_bounded() -> None:
    policy = RetryPolicy(backoff_base_seconds=1.0, backoff_cap_seconds=4.0)
    for attempt in range(6):
        delay = policy.sleep_seconds(attempt)
        upper = min(4.0, 2.0**attempt)
        assert upper / 2 <= delay <= upper


def test_run_collects_output() -> None:
    run = ProcessSpawner().run(sys.executable, ["-c", "print('{}')"], timeout=10)
    assert run.stdout.strip() == "{}"
    assert run.status.exit_code == 0


def test_run_kills_on_timeout() -> None:
    with pytest.raises(ProcessTimeoutError):
        ProcessSpawner().run(sys.executable, ["-c", "import time; time.sleep(30)"], timeout=0.3)


def test_dispose_stops_listening_without_killing() -> None:
    proc = ProcessSpawner().spawn(sys.executable, ["-c", "import time; time.sleep(0.5); print('late')"])
    proc.dispose()
    proc.dispose()
    status = proc.wait(10)
    assert status is not None and status.exit_code == 0
    assert proc.next_event(timeout=0.1) is None
    assert "late" in proc.stdout_text
