from __future__ import annotations

import shutil
import tempfile
import tomllib
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class SettingsError(ValueError):
    """Raised when the `[tool.stanbridge]` table is invalid."""


DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_MEMORY_LIMIT = "1G"
CONFIG_FILE_CANDIDATES: tuple[str, ...] = ("phpstan.neon", "phpstan.neon.dist", "phpstan.dist.neon")
PRO_CONFIG_DIR_NAME = "phpstan-fixer"


@dataclass(frozen=True, slots=True)
class BridgeSettings:
    enabled: bool = True
    binary: str | None = None
    config_file: str | None = None
    paths: tuple[str, ...] = ()
    memory_limit: str | None = DEFAULT_MEMORY_LIMIT
    level: str | None = None
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    extra_args: tuple[str, ...] = ()
    pro_tmp_dir: str | None = None
    pro_ready_timeout: float | None = None


@dataclass(frozen=True, slots=True)
class LaunchConfiguration:
    cwd: Path
    binary: str
    config_file: Path | None = None


def load_settings(project_dir: Path | str = ".") -> BridgeSettings:
    """
    Load settings from `pyproject.toml` within `project_dir`.

    If no file / no `[tool.stanbridge]` table exists, returns defaults.
    """

    pyproject_path = Path(project_dir) / "pyproject.toml"
    if not pyproject_path.exists():
        return BridgeSettings()

    try:
        data = tomllib.loads(pyproject_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise SettingsError(f"Invalid TOML in {pyproject_path}: {exc}") from exc

    tool_table = data.get("tool", {})
    if not isinstance(tool_table, dict):
        return BridgeSettings()
    table = tool_table.get("stanbridge", {})
    if not isinstance(table, dict) or not table:
        return BridgeSettings()
    return _parse_table(table)


def _parse_table(table: dict[str, Any]) -> BridgeSettings:
    enabled = table.get("enabled", True)
    if not isinstance(enabled, bool):
        raise SettingsError("`tool.stanbridge.enabled` must be a boolean.")

    timeout = table.get("timeout", DEFAULT_TIMEOUT_SECONDS)
    if isinstance(timeout, bool) or not isinstance(timeout, int | float) or timeout <= 0:
        raise SettingsError("`tool.stanbridge.timeout` must be a number of seconds > 0.")

    ready_timeout = table.get("pro-ready-timeout", table.get("pro_ready_timeout"))
    if ready_timeout is not None and (
        isinstance(ready_timeout, bool) or not isinstance(ready_timeout, int | float) or ready_timeout < 0
    ):
        raise SettingsError("`tool.stanbridge.pro-ready-timeout` must be a number of seconds >= 0.")

    level = table.get("level")
    if level is not None:
        if isinstance(level, bool) or not isinstance(level, int | str):
            raise SettingsError("`tool.stanbridge.level` must be an integer or string.")
        level = str(level).strip() or None

    return BridgeSettings(
        enabled=enabled,
        binary=_optional_str(table, "binary"),
        config_file=_optional_str(table, "config-file", "config_file"),
        paths=_str_list(table.get("paths"), field_name="tool.stanbridge.paths"),
        memory_limit=_optional_str(table, "memory-limit", "memory_limit", default=DEFAULT_MEMORY_LIMIT),
        level=level,
        timeout=float(timeout),
        extra_args=_str_list(table.get("extra-args", table.get("extra_args")), field_name="tool.stanbridge.extra-args"),
        pro_tmp_dir=_optional_str(table, "pro-tmp-dir", "pro_tmp_dir"),
        pro_ready_timeout=float(ready_timeout) if ready_timeout is not None else None,
    )


def _optional_str(table: dict[str, Any], *keys: str, default: str | None = None) -> str | None:
    for key in keys:
        if key not in table:
            continue
        value = table[key]
        if not isinstance(value, str):
            raise SettingsError(f"`tool.stanbridge.{keys[0]}` must be a string.")
        return value.strip() or None
    return default


def _str_list(value: Any, *, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or any(not isinstance(v, str) for v in value):
        raise SettingsError(f"`{field_name}` must be a list of strings.")
    return tuple(v.strip() for v in value if v.strip())


def default_pro_tmp_dir() -> Path:
    return Path(tempfile.gettempdir()) / PRO_CONFIG_DIR_NAME


def find_config_file(project_dir: Path) -> Path | None:
    for name in CONFIG_FILE_CANDIDATES:
        candidate = project_dir / name
        if candidate.is_file():
            return candidate
    return None


def collect_launch_configuration(project_dir: Path, settings: BridgeSettings) -> LaunchConfiguration | None:
    """
    Work out which PHPStan binary and config file to use for `project_dir`.

    Binary lookup order: `binary` setting, `vendor/bin/phpstan`, `phpstan`
    on PATH. Returns None when no binary can be found.
    """

    binary = _resolve_binary(project_dir, settings.binary)
    if binary is None:
        return None

    config_file: Path | None
    if settings.config_file:
        config_file = Path(settings.config_file)
        if not config_file.is_absolute():
            config_file = project_dir / config_file
    else:
        config_file = find_config_file(project_dir)

    return LaunchConfiguration(cwd=project_dir, binary=binary, config_file=config_file)


def _resolve_binary(project_dir: Path, configured: str | None) -> str | None:
    if configured:
        candidate = Path(configured)
        if not candidate.is_absolute() and (project_dir / candidate).exists():
            return str(project_dir / candidate)
        # Let the spawner report a missing binary with the OS error.
        return configured

    vendored = project_dir / "vendor" / "bin" / "phpstan"
    if vendored.is_file():
        return str(vendored)
    return shutil.which("phpstan")


def build_analyse_args(
    launch: LaunchConfiguration,
    settings: BridgeSettings,
    *,
    targets: Sequence[str] = (),
    error_format: str | None = "json",
    progress: bool = False,
) -> list[str]:
    args = ["analyse"]
    if launch.config_file is not None:
        args += ["-c", str(launch.config_file)]
    if error_format:
        args.append(f"--error-format={error_format}")
    args.append("--no-interaction")
    if not progress:
        args.append("--no-progress")
    if settings.memory_limit:
        args.append(f"--memory-limit={settings.memory_limit}")
    if settings.level:
        args.append(f"--level={settings.level}")
    args += list(settings.extra_args)
    args += list(targets) if targets else list(settings.paths)
    return args
