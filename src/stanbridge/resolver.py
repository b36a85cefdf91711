from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from stanbridge.ignore_rules import ResolvedIgnoreSet, build_ignore_set
from stanbridge.neon import NeonError, parse_neon
from stanbridge.reader import ConfigReaderRegistry

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the root PHPStan config cannot be read or parsed."""


@dataclass(frozen=True, slots=True)
class Configuration:
    path: Path
    data: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    files: tuple[Path, ...] = ()

    @property
    def parameters(self) -> Mapping[str, Any]:
        params = self.data.get("parameters")
        return params if isinstance(params, Mapping) else {}

    @property
    def ignore_errors(self) -> list[Any]:
        raw = self.parameters.get("ignoreErrors")
        return list(raw) if isinstance(raw, list) else []


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """
    Merge `override` into `base` without mutating either.

    Nested mappings merge recursively, lists concatenate (base first), and
    any other value from `override` replaces the one in `base`.
    """

    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        current = result.get(key)
        if key in result and isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = deep_merge(current, value)
        elif key in result and isinstance(current, list) and isinstance(value, list):
            result[key] = [*current, *value]
        else:
            result[key] = value
    return result


class ConfigurationResolver:
    """
    Resolve a PHPStan config and the files it `includes` into one mapping.

    The root document is merged first, then every include in declaration
    order; an included file's own includes are merged right after it.
    """

    def __init__(self, readers: ConfigReaderRegistry) -> None:
        self._readers = readers

    def resolve(self, root: Path | str) -> Configuration:
        root_path = Path(root)
        try:
            document = self._load(root_path)
        except OSError as exc:
            raise ConfigError(f"Failed to read config {root_path}: {exc}") from exc
        except NeonError as exc:
            raise ConfigError(f"Failed to parse config {root_path}: {exc}") from exc

        loaded: list[Path] = [_key(root_path)]
        merged = self._merge_includes(_without_includes(document), document, root_path, loaded)
        return Configuration(path=root_path, data=MappingProxyType(merged), files=tuple(loaded))

    def resolve_ignore_set(self, root: Path | str | None) -> ResolvedIgnoreSet:
        """
        Resolve only the effective `ignoreErrors` rules for one check pass.

        Config problems degrade to an empty set; each invalid entry is logged
        once here.
        """

        if root is None:
            return ResolvedIgnoreSet()
        try:
            config = self.resolve(root)
        except ConfigError as exc:
            logger.warning("%s; not filtering ignored errors.", exc)
            return ResolvedIgnoreSet(source=Path(root))

        ignore_set = build_ignore_set(config.ignore_errors, source=config.path)
        for invalid in ignore_set.invalid:
            detail = f" ({invalid.reason})" if invalid.reason else ""
            logger.warning('Failed to parse "ignoreErrors" value in config%s. Source string: %s', detail, invalid.source)
        return ignore_set

    def _load(self, path: Path) -> dict[str, Any]:
        document = parse_neon(self._readers.read(path))
        if not isinstance(document, dict):
            raise NeonError(f"top level of {path} is not a mapping")
        return document

    def _merge_includes(
        self,
        accumulator: dict[str, Any],
        document: Mapping[str, Any],
        document_path: Path,
        loaded: list[Path],
    ) -> dict[str, Any]:
        includes = document.get("includes")
        if includes is None:
            return accumulator
        if not isinstance(includes, list):
            logger.warning("`includes` in %s must be a list; ignoring it.", document_path)
            return accumulator

        for include in includes:
            if not isinstance(include, str) or not include.strip():
                logger.warning("Skipping invalid include %r in %s", include, document_path)
                continue
            include_path = document_path.parent / include.strip()
            key = _key(include_path)
            if key in loaded:
                logger.debug("Skipping %s: already included", include_path)
                continue
            loaded.append(key)

            try:
                included = self._load(include_path)
            except (OSError, NeonError) as exc:
                logger.warning("Skipping include %s: %s", include_path, exc)
                continue

            accumulator = deep_merge(accumulator, _without_includes(included))
            accumulator = self._merge_includes(accumulator, included, include_path, loaded)
        return accumulator


def _without_includes(document: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in document.items() if k != "includes"}


def _key(path: Path) -> Path:
    try:
        return path.resolve()
    except OSError:
        return path.absolute()
