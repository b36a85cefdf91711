from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, cast

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class _ObserverProto(Protocol):
    def schedule(self, event_handler: Any, path: str, *, recursive: bool) -> object: ...

    def unschedule(self, watch: object) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def join(self, timeout: float | None = None) -> None: ...


class CachedConfigReader:
    """
    Read a config file once and serve the cached text until it changes on disk.

    The owning registry calls `invalidate()` from its watcher thread; the next
    `read()` goes back to disk. Reads are serialized behind the cached-value
    check, so concurrent readers of the same path share one fetch.
    """

    def __init__(self, path: Path, *, on_first_read: Callable[[CachedConfigReader], None] | None = None) -> None:
        self._path = path
        self._on_first_read = on_first_read
        self._lock = threading.Lock()
        self._cached: str | None = None
        self._watching = False
        self._disposed = False
        self._reads = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def disk_reads(self) -> int:
        return self._reads

    def read(self) -> str:
        with self._lock:
            if self._cached is not None:
                return self._cached

            if not self._watching and not self._disposed:
                self._watching = True
                if self._on_first_read is not None:
                    self._on_first_read(self)

            content = self._path.read_text(encoding="utf-8")
            self._reads += 1
            self._cached = content
            return content

    def invalidate(self) -> None:
        with self._lock:
            if self._cached is not None:
                logger.debug("config changed, dropping cached copy: %s", self._path)
            self._cached = None

    def dispose(self) -> None:
        self._disposed = True
        self._watching = False


class _ConfigEventHandler(FileSystemEventHandler):
    def __init__(self, registry: ConfigReaderRegistry) -> None:
        super().__init__()
        self._registry = registry

    def on_any_event(self, event: FileSystemEvent) -> None:
        if getattr(event, "is_directory", False):
            return
        for attr in ("src_path", "dest_path"):
            raw = getattr(event, attr, None)
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            if isinstance(raw, str) and raw:
                self._registry.notify_changed(Path(raw))


class ConfigReaderRegistry:
    """
    One `CachedConfigReader` per config path, for the lifetime of a workspace.

    Watching is done per directory with a single watchdog observer; events
    are routed to the reader of the changed file. `dispose()` removes every
    watch and stops the observer.
    """

    def __init__(self, *, observer_factory: Callable[[], Any] = Observer) -> None:
        self._observer_factory = observer_factory
        self._observer: _ObserverProto | None = None
        self._handler = _ConfigEventHandler(self)
        self._lock = threading.RLock()
        self._readers: dict[Path, CachedConfigReader] = {}
        self._watches: dict[Path, object] = {}
        self._disposed = False

    def reader_for(self, path: Path | str) -> CachedConfigReader:
        key = _normalize(Path(path))
        with self._lock:
            if self._disposed:
                raise RuntimeError("config reader registry has been disposed")
            reader = self._readers.get(key)
            if reader is None:
                reader = CachedConfigReader(key, on_first_read=self._start_watching)
                self._readers[key] = reader
            return reader

    def read(self, path: Path | str) -> str:
        return self.reader_for(path).read()

    def notify_changed(self, path: Path) -> None:
        with self._lock:
            reader = self._readers.get(_normalize(path))
        if reader is not None:
            reader.invalidate()

    def paths(self) -> tuple[Path, ...]:
        with self._lock:
            return tuple(self._readers)

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            readers = list(self._readers.values())
            self._readers.clear()
            watches = list(self._watches.values())
            self._watches.clear()
            observer = self._observer
            self._observer = None

        for reader in readers:
            reader.dispose()
        if observer is None:
            return
        for watch in watches:
            try:
                observer.unschedule(watch)
            except (KeyError, OSError):
                logger.debug("watch already removed")
        observer.stop()
        observer.join(timeout=2.0)

    def _start_watching(self, reader: CachedConfigReader) -> None:
        directory = reader.path.parent
        with self._lock:
            if self._disposed or directory in self._watches:
                return
            if not directory.is_dir():
                # The read that follows fails with FileNotFoundError.
                return
            if self._observer is None:
                self._observer = cast(_ObserverProto, self._observer_factory())
                self._observer.start()
            try:
                self._watches[directory] = self._observer.schedule(self._handler, str(directory), recursive=False)
            except OSError as exc:
                # e.g. inotify watch limit reached; reads still work, edits go unnoticed.
                logger.warning("Could not watch %s for changes: %s", directory, exc)
                return
            logger.debug("watching config directory: %s", directory)


def _normalize(path: Path) -> Path:
    try:
        return path.resolve()
    except OSError:
        return path.absolute()
