from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from stanbridge.ignore_rules import IgnoreRule, ResolvedIgnoreSet, StructuredRule
from stanbridge.types import Diagnostic

logger = logging.getLogger(__name__)


def filter_baseline_errors(
    diagnostics: Sequence[Diagnostic],
    ignore_set: ResolvedIgnoreSet,
    file_path: Path | str,
) -> list[Diagnostic]:
    """
    Drop diagnostics matched by the project's `ignoreErrors` rules.

    PHPStan already applies these rules itself, but when an unsaved buffer is
    analysed from a temporary copy, path-scoped rules are compared against
    the temp path and never match. This re-applies them against the real
    `file_path`.

    The result is always a subsequence of `diagnostics`. Each structured rule
    suppresses at most `count` diagnostics per call.
    """

    rules = ignore_set.applicable_to(str(file_path))
    if not rules:
        return list(diagnostics)

    out: list[Diagnostic] = []
    for diagnostic in diagnostics:
        if not _is_ignored(diagnostic, rules):
            out.append(diagnostic)

    dropped = len(diagnostics) - len(out)
    if dropped:
        logger.debug("ignoreErrors suppressed %d of %d diagnostic(s) in %s", dropped, len(diagnostics), file_path)
    return out


def _is_ignored(diagnostic: Diagnostic, rules: Sequence[IgnoreRule]) -> bool:
    for rule in rules:
        if isinstance(rule, StructuredRule):
            # Exhausted quotas are skipped, not treated as a match.
            if rule.exhausted:
                continue
            if rule.matches(diagnostic.message):
                rule.consume()
                return True
            continue
        if rule.matches(diagnostic.message):
            return True
    return False
