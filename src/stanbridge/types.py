from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol

Severity = Literal["error", "warning", "information", "hint"]


@dataclass(frozen=True, slots=True)
class Position:
    line: int  # 0-based
    character: int  # 0-based


@dataclass(frozen=True, slots=True)
class Range:
    start: Position
    end: Position

    @classmethod
    def for_line(cls, line: int, *, length: int = 0) -> Range:
        """Build a range covering `length` characters of a 1-based PHPStan line number."""

        line0 = max(0, int(line) - 1)
        return cls(start=Position(line0, 0), end=Position(line0, max(0, length)))


@dataclass(frozen=True, slots=True)
class Diagnostic:
    message: str
    range: Range
    path: Path
    severity: Severity = "error"
    identifier: str | None = None
    tip: str | None = None


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    done: int
    total: int
    percentage: int


class Disposable(Protocol):
    def dispose(self) -> None: ...
