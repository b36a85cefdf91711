from __future__ import annotations

from pathlib import Path

import pytest

from stanbridge.settings import BridgeSettings


class FakeObserver:
    """In-memory stand-in for a watchdog observer; tests fire events by hand."""

    instances: list[FakeObserver] = []

    def __init__(self) -> None:
        self.scheduled: list[tuple[object, str]] = []
        self.unscheduled: list[object] = []
        self.started = False
        self.stopped = False
        self.joined = False
        FakeObserver.instances.append(self)

    def schedule(self, event_handler, path: str, *, recursive: bool) -> object:  # noqa: ANN001
        self.scheduled.append((event_handler, path))
        return object()

    def unschedule(self, watch: object) -> None:
        self.unscheduled.append(watch)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def join(self, timeout: float | None = None) -> None:
        self.joined = True


@pytest.fixture(autouse=True)
def _reset_fake_observers() -> None:
    FakeObserver.instances.clear()


@pytest.fixture()
def fake_observer_factory():
    return FakeObserver


@pytest.fixture()
def pro_settings(tmp_path: Path) -> BridgeSettings:
    return BridgeSettings(pro_tmp_dir=str(tmp_path / "pro-tmp"), pro_ready_timeout=20.0, timeout=30.0)
