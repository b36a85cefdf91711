from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Annotated

import click
import typer
from rich.console import Console
from rich.markup import escape

from stanbridge import __version__
from stanbridge.logging_utils import configure_logging
from stanbridge.notifications import ConsoleNotifier
from stanbridge.settings import BridgeSettings, SettingsError, find_config_file, load_settings
from stanbridge.types import Diagnostic
from stanbridge.workspace import Workspace

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="StanBridge: run PHPStan and PHPStan Pro for editors and terminals.",
)
console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def _main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Verbose logs (printed to stderr)."),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Reduce non-essential output."),
    ] = False,
) -> None:
    """StanBridge CLI."""

    if verbose and quiet:
        raise typer.BadParameter("Choose at most one: --verbose or --quiet.")
    configure_logging(verbose=verbose, quiet=quiet)
    ctx.obj = {"verbose": verbose, "quiet": quiet}


def _cli_settings() -> dict[str, bool]:
    ctx = click.get_current_context(silent=True)
    if ctx is None or not isinstance(ctx.obj, dict):
        return {"verbose": False, "quiet": False}
    return {"verbose": bool(ctx.obj.get("verbose", False)), "quiet": bool(ctx.obj.get("quiet", False))}


def _load_settings_or_exit(project: Path) -> BridgeSettings:
    try:
        return load_settings(project)
    except SettingsError as exc:
        err_console.print(f"Invalid configuration: {escape(str(exc))}")
        raise typer.Exit(code=2) from exc


def _diagnostic_row(diagnostic: Diagnostic, *, project_root: Path) -> dict[str, object]:
    try:
        shown = diagnostic.path.relative_to(project_root)
    except ValueError:
        shown = diagnostic.path
    return {
        "path": shown.as_posix(),
        "line": diagnostic.range.start.line + 1,
        "message": diagnostic.message,
        "identifier": diagnostic.identifier,
        "tip": diagnostic.tip,
    }


@app.command()
def check(
    file: Annotated[
        Path,
        typer.Argument(exists=True, file_okay=True, dir_okay=False, resolve_path=True, help="PHP file to analyse."),
    ],
    project: Annotated[
        Path,
        typer.Option(
            "--project",
            exists=True,
            file_okay=False,
            dir_okay=True,
            resolve_path=True,
            help="Project directory (default: current directory).",
        ),
    ] = Path("."),
    config: Annotated[
        Path | None,
        typer.Option("--config", help="PHPStan config file (default: phpstan.neon / .dist in the project).", show_default=False),
    ] = None,
    binary: Annotated[
        str | None,
        typer.Option("--binary", help="PHPStan binary (default: vendor/bin/phpstan, then PATH).", show_default=False),
    ] = None,
    output_format: Annotated[
        str,
        typer.Option("--format", help="Output format: terminal, json.", show_default=True),
    ] = "terminal",
) -> None:
    """
    Analyse one file with PHPStan and print the diagnostics left after `ignoreErrors`.

    Exit codes: 0 = clean, 1 = diagnostics reported, 2 = PHPStan could not run.
    """

    normalized = output_format.strip().lower()
    if normalized not in {"terminal", "json"}:
        raise typer.BadParameter("Unsupported format. Use: terminal, json.")

    settings = _load_settings_or_exit(project)
    if config is not None:
        settings = replace(settings, config_file=str(config))
    if binary is not None:
        settings = replace(settings, binary=binary)

    workspace = Workspace(project, settings)
    try:
        result = workspace.check(file)
    finally:
        workspace.dispose()

    if not result.ok:
        err_console.print(f"[red]{escape(result.error or 'PHPStan failed')}[/red]")
        raise typer.Exit(code=2)

    diagnostics = result.unwrap()
    rows = [_diagnostic_row(d, project_root=workspace.project_root) for d in diagnostics]
    if normalized == "json":
        typer.echo(json.dumps(rows, indent=2, sort_keys=True))
    elif not rows:
        if not _cli_settings()["quiet"]:
            console.print("[green]No errors[/green]")
    else:
        for row in rows:
            console.print(f"[bold]{escape(str(row['path']))}:{row['line']}[/bold] {escape(str(row['message']))}")
            if row["tip"]:
                console.print(f"  [dim]tip: {escape(str(row['tip']))}[/dim]")
        console.print(f"{len(rows)} error(s)")

    if rows:
        raise typer.Exit(code=1)


@app.command()
def ignores(
    project: Annotated[
        Path,
        typer.Option(
            "--project",
            exists=True,
            file_okay=False,
            dir_okay=True,
            resolve_path=True,
            help="Project directory (default: current directory).",
        ),
    ] = Path("."),
    config: Annotated[
        Path | None,
        typer.Option("--config", help="PHPStan config file (default: phpstan.neon / .dist in the project).", show_default=False),
    ] = None,
    file: Annotated[
        Path | None,
        typer.Option("--file", help="Only show rules that apply to this file.", show_default=False),
    ] = None,
) -> None:
    """
    Show the `ignoreErrors` rules PHPStan would apply, after resolving includes.
    """

    from rich.table import Table

    settings = _load_settings_or_exit(project)
    root = config
    if root is None and settings.config_file:
        root = Path(settings.config_file)
    if root is not None and not root.is_absolute():
        root = project / root
    if root is None:
        root = find_config_file(project)
    if root is None:
        err_console.print("No PHPStan config file found.")
        raise typer.Exit(code=2)

    workspace = Workspace(project, settings)
    try:
        ignore_set = workspace.resolver.resolve_ignore_set(root)
    finally:
        workspace.dispose()

    if file is not None:
        target = file if file.is_absolute() else project / file
        rules = ignore_set.applicable_to(str(target))
    else:
        rules = list(ignore_set.rules)

    table = Table(title=f"ignoreErrors ({root.name})")
    table.add_column("#", justify="right")
    table.add_column("Rule")
    for index, rule in enumerate(rules, start=1):
        table.add_row(str(index), escape(rule.describe()))
    console.print(table)
    if ignore_set.invalid:
        err_console.print(f"{len(ignore_set.invalid)} invalid entr{'y' if len(ignore_set.invalid) == 1 else 'ies'} skipped.")


@app.command()
def pro(
    project: Annotated[
        Path,
        typer.Option(
            "--project",
            exists=True,
            file_okay=False,
            dir_okay=True,
            resolve_path=True,
            help="Project directory (default: current directory).",
        ),
    ] = Path("."),
    tmp_dir: Annotated[
        Path | None,
        typer.Option("--tmp-dir", help="Directory PHPStan Pro uses as TMPDIR.", show_default=False),
    ] = None,
) -> None:
    """
    Start PHPStan Pro for the project and keep it running until Ctrl-C.
    """

    settings = _load_settings_or_exit(project)
    if tmp_dir is not None:
        settings = replace(settings, pro_tmp_dir=str(tmp_dir))

    workspace = Workspace(project, settings, ConsoleNotifier(console))
    try:
        session = workspace.start_pro()
        if session is None:
            raise typer.Exit(code=0 if not settings.enabled else 2)
        try:
            while session.process.wait(timeout=0.5) is None:
                pass
        except KeyboardInterrupt:
            session.dispose(kill=True)
            return
        status = session.process.exit_status
        err_console.print(f"PHPStan Pro exited with code {status.describe() if status else '?'}")
        raise typer.Exit(code=2)
    finally:
        workspace.dispose()
