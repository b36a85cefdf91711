from __future__ import annotations

import re
from pathlib import Path

from stanbridge.baseline import filter_baseline_errors
from stanbridge.ignore_rules import build_ignore_set
from stanbridge.neon import InvalidValue
from stanbridge.types import Diagnostic, Range

FILE = Path("/project/src/Foo.php")


def _d(message: str, *, line: int = 1) -> Diagnostic:
    return Diagnostic(message=message, range=Range.for_line(line), path=FILE)


def test_no_rules_returns_everything() -> None:
    diagnostics = [_d("a"), _d("b")]
    assert filter_baseline_errors(diagnostics, build_ignore_set([]), FILE) == diagnostics


def test_plain_and_pattern_rules_suppress_without_limit() -> None:
    diagnostics = [_d("Undefined variable $a"), _d("Undefined variable $b"), _d("Call to undefined method")]
    ignore_set = build_ignore_set(["Undefined variable", re.compile("^Call to")])
    assert filter_baseline_errors(diagnostics, ignore_set, FILE) == []


def test_quota_limits_suppressions_per_pass() -> None:
    diagnostics = [
        _d("Undefined variable $foo", line=3),
        _d("Undefined variable $foo", line=7),
        _d("Undefined variable $foo", line=9),
    ]
    ignore_set = build_ignore_set([{"message": "Undefined variable $foo", "count": 2}])

    out = filter_baseline_errors(diagnostics, ignore_set, FILE)
    assert out == [diagnostics[2]]

    # The quota belongs to one pass; a second check starts from the full count.
    assert filter_baseline_errors(diagnostics, ignore_set, FILE) == [diagnostics[2]]


def test_count_zero_rule_suppresses_nothing() -> None:
    diagnostics = [_d("Undefined variable $foo")]
    ignore_set = build_ignore_set([{"message": "Undefined variable", "count": 0}])
    assert filter_baseline_errors(diagnostics, ignore_set, FILE) == diagnostics


def test_exhausted_rule_falls_through_to_later_rules() -> None:
    diagnostics = [_d("Undefined variable $foo"), _d("Undefined variable $foo")]
    ignore_set = build_ignore_set(
        [
            {"message": "Undefined variable", "count": 1},
            {"message": "$foo", "count": 1},
        ]
    )
    assert filter_baseline_errors(diagnostics, ignore_set, FILE) == []


def test_path_scoped_rules_only_apply_to_matching_files() -> None:
    diagnostics = [_d("Undefined variable $foo")]
    elsewhere = build_ignore_set([{"message": "Undefined variable", "path": "src/Bar.php"}])
    here = build_ignore_set([{"message": "Undefined variable", "paths": ["lib/", "src/Foo.php"]}])

    assert filter_baseline_errors(diagnostics, elsewhere, FILE) == diagnostics
    assert filter_baseline_errors(diagnostics, here, FILE) == []


def test_invalid_entries_never_match() -> None:
    diagnostics = [_d("#([unclosed#")]
    ignore_set = build_ignore_set([InvalidValue(source="#([unclosed#", reason="bad")])
    assert filter_baseline_errors(diagnostics, ignore_set, FILE) == diagnostics


def test_result_is_an_ordered_subsequence() -> None:
    diagnostics = [_d("keep 1"), _d("drop"), _d("keep 2"), _d("drop"), _d("keep 3")]
    ignore_set = build_ignore_set(["drop"])
    out = filter_baseline_errors(diagnostics, ignore_set, FILE)
    assert [d.message for d in out] == ["keep 1", "keep 2", "keep 3"]
