from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from stanbridge.neon import InvalidValue


@dataclass(frozen=True, slots=True)
class StringMatch:
    """Matches when `text` occurs anywhere in the diagnostic message."""

    text: str

    def matches(self, message: str) -> bool:
        return self.text in message

    def describe(self) -> str:
        return self.text


@dataclass(frozen=True, slots=True)
class PatternMatch:
    pattern: re.Pattern[str]

    def matches(self, message: str) -> bool:
        return self.pattern.search(message) is not None

    def describe(self) -> str:
        return f"#{self.pattern.pattern}#"


Matcher = StringMatch | PatternMatch


@dataclass(slots=True)
class StructuredRule:
    """
    An `ignoreErrors` entry written as a mapping.

    `count` is a quota consumed by each suppression; None means unlimited and
    0 means the rule never matches again (it stays in the set). `path` and
    `paths` scope the rule to files whose path contains one of them.
    """

    message: Matcher
    count: int | None = None
    path: str | None = None
    paths: tuple[str, ...] = ()

    def scoped_paths(self) -> tuple[str, ...]:
        scoped = list(self.paths)
        if self.path is not None:
            scoped.insert(0, self.path)
        return tuple(scoped)

    def applies_to(self, file_path: str) -> bool:
        scoped = self.scoped_paths()
        if not scoped:
            return True
        return any(p in file_path for p in scoped)

    @property
    def exhausted(self) -> bool:
        return self.count is not None and self.count <= 0

    def matches(self, message: str) -> bool:
        if self.exhausted:
            return False
        return self.message.matches(message)

    def consume(self) -> None:
        if self.count is not None:
            self.count -= 1

    def clone(self) -> StructuredRule:
        return replace(self)

    def describe(self) -> str:
        return self.message.describe()


IgnoreRule = StringMatch | PatternMatch | StructuredRule
IgnoreEntry = IgnoreRule | InvalidValue


@dataclass(frozen=True, slots=True)
class ResolvedIgnoreSet:
    """
    Flattened `ignoreErrors` from a root config and everything it includes.

    The set itself is never mutated by filtering: `applicable_to()` hands out
    fresh copies of structured rules so quotas only count within one pass.
    """

    entries: tuple[IgnoreEntry, ...] = ()
    source: Path | None = None

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def rules(self) -> tuple[IgnoreRule, ...]:
        return tuple(e for e in self.entries if not isinstance(e, InvalidValue))

    @property
    def invalid(self) -> tuple[InvalidValue, ...]:
        return tuple(e for e in self.entries if isinstance(e, InvalidValue))

    def applicable_to(self, file_path: str) -> list[IgnoreRule]:
        out: list[IgnoreRule] = []
        for rule in self.rules:
            if isinstance(rule, StructuredRule):
                if rule.applies_to(file_path):
                    out.append(rule.clone())
                continue
            out.append(rule)
        return out


def parse_ignore_entry(raw: Any) -> IgnoreEntry | None:
    """
    Interpret one raw `parameters.ignoreErrors` value.

    Returns None for empty entries; anything malformed becomes an
    `InvalidValue` carrying the raw text.
    """

    if raw is None:
        return None
    if isinstance(raw, InvalidValue):
        return raw
    if isinstance(raw, str):
        return StringMatch(raw) if raw else None
    if isinstance(raw, re.Pattern):
        return PatternMatch(raw)
    if not isinstance(raw, dict):
        return InvalidValue(source=repr(raw), reason="expected a string, pattern or mapping")

    message = _parse_matcher(raw.get("message"))
    if isinstance(message, InvalidValue):
        return message
    if message is None:
        return InvalidValue(source=repr(raw), reason="`message` must be a string or pattern")

    count = raw.get("count")
    if count is not None and (isinstance(count, bool) or not isinstance(count, int) or count < 0):
        return InvalidValue(source=repr(raw), reason="`count` must be an integer >= 0")

    path = raw.get("path")
    if path is not None and not isinstance(path, str):
        return InvalidValue(source=repr(raw), reason="`path` must be a string")

    paths_raw = raw.get("paths")
    paths: tuple[str, ...] = ()
    if paths_raw is not None:
        if not isinstance(paths_raw, list) or any(not isinstance(p, str) for p in paths_raw):
            return InvalidValue(source=repr(raw), reason="`paths` must be a list of strings")
        paths = tuple(paths_raw)

    return StructuredRule(message=message, count=count, path=path, paths=paths)


def build_ignore_set(raw_entries: Iterable[Any], *, source: Path | None = None) -> ResolvedIgnoreSet:
    entries: list[IgnoreEntry] = []
    for raw in raw_entries:
        entry = parse_ignore_entry(raw)
        if entry is not None:
            entries.append(entry)
    return ResolvedIgnoreSet(entries=tuple(entries), source=source)


def _parse_matcher(value: Any) -> Matcher | InvalidValue | None:
    if isinstance(value, InvalidValue):
        return value
    if isinstance(value, str) and value:
        return StringMatch(value)
    if isinstance(value, re.Pattern):
        return PatternMatch(value)
    return None
