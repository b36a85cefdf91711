from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from helpers import install_fake_phpstan, write_file
from stanbridge.check import CheckRunner, filter_per_file, parse_phpstan_json
from stanbridge.ignore_rules import build_ignore_set
from stanbridge.reader import ConfigReaderRegistry
from stanbridge.resolver import ConfigurationResolver
from stanbridge.settings import BridgeSettings
from stanbridge.spawner import CompletedRun, ExitStatus, ProcessExitError, ProcessSpawner, ProcessTimeoutError
from stanbridge.types import Diagnostic, Range


@pytest.fixture()
def resolver(fake_observer_factory):
    registry = ConfigReaderRegistry(observer_factory=fake_observer_factory)
    yield ConfigurationResolver(registry)
    registry.dispose()


def _messages(monkeypatch, *messages: dict) -> None:
    monkeypatch.setenv("FAKE_PHPSTAN_MESSAGES", json.dumps(list(messages)))


def test_parse_phpstan_json_maps_temp_copy_back(tmp_path: Path, caplog) -> None:
    temp = tmp_path / "tmp" / "Foo.php"
    original = tmp_path / "src" / "Foo.php"
    report = {
        "files": {
            str(temp): {
                "messages": [
                    {"message": "Undefined variable $x", "line": 4, "identifier": "variable.undefined", "tip": "Declare it"},
                    {"message": "No line"},
                ]
            }
        },
        "errors": ["Internal error: something broke"],
    }
    run = CompletedRun(stdout=json.dumps(report), stderr="", status=ExitStatus(exit_code=1))
    with caplog.at_level(logging.WARNING, logger="stanbridge.check"):
        diagnostics = parse_phpstan_json(run, analysed_path=temp, original_path=original)

    first, second = diagnostics
    assert first.path == original
    assert first.range.start.line == 3
    assert first.identifier == "variable.undefined"
    assert first.tip == "Declare it"
    assert second.range.start.line == 0
    assert "Internal error" in caplog.text


def test_parse_phpstan_json_rejects_non_json() -> None:
    run = CompletedRun(stdout="PHP Fatal error", stderr="boom", status=ExitStatus(exit_code=255))
    with pytest.raises(ProcessExitError) as excinfo:
        parse_phpstan_json(run)
    assert excinfo.value.stderr == "boom"
    assert excinfo.value.status.exit_code == 255


def test_check_returns_diagnostics(tmp_path: Path, monkeypatch, resolver) -> None:
    install_fake_phpstan(tmp_path)
    target = write_file(tmp_path / "src" / "Foo.php", "<?php\n")
    _messages(monkeypatch, {"message": "Undefined variable $foo", "line": 2})

    result = CheckRunner(tmp_path, BridgeSettings(), resolver).check(target)
    assert result.ok, result.error
    (diagnostic,) = result.unwrap()
    assert diagnostic.message == "Undefined variable $foo"
    assert diagnostic.path == target


def test_check_unsaved_text_applies_path_scoped_ignores(tmp_path: Path, monkeypatch, resolver) -> None:
    install_fake_phpstan(tmp_path)
    write_file(
        tmp_path / "phpstan.neon",
        "parameters:\n"
        "    ignoreErrors:\n"
        "        - message: 'Undefined variable $foo'\n"
        "          path: src/Foo.php\n"
        "          count: 1\n",
    )
    target = write_file(tmp_path / "src" / "Foo.php", "<?php\n")
    _messages(
        monkeypatch,
        {"message": "Undefined variable $foo", "line": 2},
        {"message": "Undefined variable $foo", "line": 5},
    )

    result = CheckRunner(tmp_path, BridgeSettings(), resolver).check(target, text="<?php echo $foo;\n")
    assert result.ok, result.error
    (remaining,) = result.unwrap()
    assert remaining.path == target
    assert remaining.range.start.line == 4


def test_check_scopes_ignores_to_each_reported_file(tmp_path: Path, monkeypatch, resolver) -> None:
    install_fake_phpstan(tmp_path)
    write_file(
        tmp_path / "phpstan.neon",
        "parameters:\n    ignoreErrors:\n        - message: 'Undefined variable'\n          path: src/Foo.php\n",
    )
    target = write_file(tmp_path / "src" / "Foo.php", "<?php\n")
    other = write_file(tmp_path / "src" / "Bar.php", "<?php\n")
    _messages(monkeypatch, {"message": "Undefined variable $a", "line": 1})
    monkeypatch.setenv("FAKE_PHPSTAN_OTHER", json.dumps({str(other): [{"message": "Undefined variable $a", "line": 3}]}))

    result = CheckRunner(tmp_path, BridgeSettings(), resolver).check(target)
    assert result.ok, result.error
    (remaining,) = result.unwrap()
    assert remaining.path == other
    assert remaining.range.start.line == 2


def test_filter_per_file_keeps_report_order() -> None:
    foo, bar = Path("/p/src/Foo.php"), Path("/p/src/Bar.php")
    diagnostics = [
        Diagnostic(message="Dead code", range=Range.for_line(1), path=foo),
        Diagnostic(message="Undefined variable $a", range=Range.for_line(2), path=foo),
        Diagnostic(message="Undefined variable $a", range=Range.for_line(1), path=bar),
        Diagnostic(message="Dead code", range=Range.for_line(4), path=bar),
    ]
    ignore_set = build_ignore_set([{"message": "Undefined variable", "path": "src/Foo.php"}])

    kept = filter_per_file(diagnostics, ignore_set)
    assert [(d.path.name, d.message) for d in kept] == [
        ("Foo.php", "Dead code"),
        ("Bar.php", "Undefined variable $a"),
        ("Bar.php", "Dead code"),
    ]


def test_check_reports_non_json_output(tmp_path: Path, monkeypatch, resolver) -> None:
    install_fake_phpstan(tmp_path)
    target = write_file(tmp_path / "Foo.php", "<?php\n")
    monkeypatch.setenv("FAKE_PHPSTAN_STDOUT", "not json")

    result = CheckRunner(tmp_path, BridgeSettings(), resolver).check(target)
    assert not result.ok
    assert "PHP Fatal error: boom" in (result.error or "")


def test_check_times_out(tmp_path: Path, monkeypatch, resolver) -> None:
    install_fake_phpstan(tmp_path)
    target = write_file(tmp_path / "Foo.php", "<?php\n")

    def fake_run(self, command, args=(), **kwargs):  # type: ignore[no-untyped-def]
        raise ProcessTimeoutError("slow")

    monkeypatch.setattr(ProcessSpawner, "run", fake_run)
    result = CheckRunner(tmp_path, BridgeSettings(), resolver).check(target)
    assert result.error == "PHPStan timed out"


def test_check_without_binary(tmp_path: Path, monkeypatch, resolver) -> None:
    monkeypatch.setattr("stanbridge.settings.shutil.which", lambda _name: None)
    result = CheckRunner(tmp_path, BridgeSettings(), resolver).check(tmp_path / "Foo.php")
    assert result.error == "Failed to find launch configuration"
