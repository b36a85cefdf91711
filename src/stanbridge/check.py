from __future__ import annotations

import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any

from stanbridge.baseline import filter_baseline_errors
from stanbridge.ignore_rules import ResolvedIgnoreSet
from stanbridge.resolver import ConfigurationResolver
from stanbridge.result import Result
from stanbridge.settings import BridgeSettings, build_analyse_args, collect_launch_configuration
from stanbridge.spawner import (
    CompletedRun,
    ProcessExitError,
    ProcessSpawner,
    ProcessTimeoutError,
    SpawnError,
)
from stanbridge.types import Diagnostic, Range

logger = logging.getLogger(__name__)


def parse_phpstan_json(
    run: CompletedRun,
    *,
    analysed_path: Path | None = None,
    original_path: Path | None = None,
) -> list[Diagnostic]:
    """
    Parse the report of `phpstan analyse --error-format=json`.

    Messages reported for `analysed_path` are attributed to `original_path`
    (the temp-copy case). File-less `errors` (bootstrap problems, internal
    errors) are logged rather than returned.
    """

    try:
        data = json.loads(run.stdout)
    except json.JSONDecodeError as exc:
        raise ProcessExitError(
            f"PHPStan did not produce a JSON report (exit code {run.status.describe()})",
            status=run.status,
            stderr=run.stderr,
        ) from exc
    if not isinstance(data, dict):
        raise ProcessExitError("Unexpected PHPStan report", status=run.status, stderr=run.stderr)

    analysed_key = _key(analysed_path) if analysed_path is not None else None
    diagnostics: list[Diagnostic] = []
    files = data.get("files")
    if isinstance(files, dict):
        for reported, file_info in files.items():
            path = Path(reported)
            if analysed_key is not None and original_path is not None and _key(path) == analysed_key:
                path = original_path
            messages = file_info.get("messages", []) if isinstance(file_info, dict) else []
            for msg in messages:
                if isinstance(msg, dict):
                    diagnostics.append(_to_diagnostic(msg, path))

    for error in data.get("errors") or []:
        logger.warning("PHPStan: %s", error)
    return diagnostics


def _to_diagnostic(msg: dict[str, Any], path: Path) -> Diagnostic:
    line = msg.get("line")
    if isinstance(line, bool) or not isinstance(line, int):
        line = 1
    identifier = msg.get("identifier")
    tip = msg.get("tip")
    return Diagnostic(
        message=str(msg.get("message", "")),
        range=Range.for_line(line),
        path=path,
        identifier=identifier if isinstance(identifier, str) else None,
        tip=tip if isinstance(tip, str) else None,
    )


def filter_per_file(diagnostics: list[Diagnostic], ignore_set: ResolvedIgnoreSet) -> list[Diagnostic]:
    """
    Apply `ignoreErrors` to each reported file against its own path.

    A report may carry messages for files other than the analysed one; a rule
    scoped to one file must not suppress another file's messages. Groups keep
    the report's order.
    """

    by_path: dict[Path, list[Diagnostic]] = {}
    for diagnostic in diagnostics:
        by_path.setdefault(diagnostic.path, []).append(diagnostic)

    out: list[Diagnostic] = []
    for path, group in by_path.items():
        out.extend(filter_baseline_errors(group, ignore_set, path))
    return out


def _key(path: Path) -> Path:
    try:
        return path.resolve()
    except OSError:
        return path.absolute()


class CheckRunner:
    """Run a one-shot `phpstan analyse` on a single file."""

    def __init__(
        self,
        project_dir: Path,
        settings: BridgeSettings,
        resolver: ConfigurationResolver,
        spawner: ProcessSpawner | None = None,
    ) -> None:
        self._project_dir = project_dir
        self._settings = settings
        self._resolver = resolver
        self._spawner = spawner or ProcessSpawner()

    def check(self, file_path: Path | str, text: str | None = None) -> Result[list[Diagnostic]]:
        """
        Analyse `file_path` and return its diagnostics after `ignoreErrors` filtering.

        With `text` (unsaved editor contents) a temporary copy is analysed and
        the results are mapped back onto `file_path`.
        """

        original = Path(file_path)
        if not original.is_absolute():
            original = self._project_dir / original

        launch = collect_launch_configuration(self._project_dir, self._settings)
        if launch is None:
            return Result.failure("Failed to find launch configuration")

        tmp_dir: Path | None = None
        target = original
        if text is not None:
            tmp_dir = Path(tempfile.mkdtemp(prefix="stanbridge-"))
            target = tmp_dir / original.name
            target.write_text(text, encoding="utf-8")

        try:
            args = build_analyse_args(launch, self._settings, targets=[str(target)])
            try:
                run = self._spawner.run(launch.binary, args, timeout=self._settings.timeout, cwd=launch.cwd)
            except ProcessTimeoutError:
                logger.warning("PHPStan timed out after %gs on %s", self._settings.timeout, original)
                return Result.failure("PHPStan timed out")
            except SpawnError as exc:
                return Result.failure(str(exc))

            try:
                diagnostics = parse_phpstan_json(run, analysed_path=target, original_path=original)
            except ProcessExitError as exc:
                detail = exc.stderr.strip() or run.stdout.strip()
                logger.warning("%s: %s", exc, detail)
                return Result.failure(f"{exc}: {detail}" if detail else str(exc))
        finally:
            if tmp_dir is not None:
                shutil.rmtree(tmp_dir, ignore_errors=True)

        ignore_set = self._resolver.resolve_ignore_set(launch.config_file)
        return Result.success(filter_per_file(diagnostics, ignore_set))
