from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import yaml


class NeonError(ValueError):
    """Raised when a NEON document cannot be parsed at all."""


@dataclass(frozen=True, slots=True)
class InvalidValue:
    """
    Marker for a single value that could not be interpreted.

    Parsing continues around it; consumers treat it as non-matching and log
    `source` once.
    """

    source: str
    reason: str = ""


# PHPStan regex literals are PCRE patterns wrapped in `#` or `~` delimiters.
# `/` is deliberately not recognised: absolute paths would look like patterns.
_REGEX_LITERAL_RE = re.compile(r"^(?P<delim>[#~])(?P<body>.*)(?P=delim)(?P<flags>[a-zA-Z]*)$", re.DOTALL)
_PCRE_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
    "u": 0,
}
# PCRE named groups `(?<name>...)` / `(?'name'...)` become Python `(?P<name>...)`.
_PCRE_NAMED_GROUP_RE = re.compile(r"\(\?(?:<(?![=!])(?P<a>\w+)>|'(?P<b>\w+)')")

_LEADING_TABS_RE = re.compile(r"^[ \t]+")
# A plain value starting with `%` or `@` is fine in NEON but reserved in YAML.
_RESERVED_PLAIN_RE = re.compile(r"^(?P<lead>[ ]*(?:-[ ]+)*(?:[^\s'\"\[{#-][^:#]*:[ ]+)?)(?P<value>[%@`][^\n]*)$")
_RESERVED_START = "%@`"


def parse_neon(text: str) -> Any:
    """
    Parse a NEON document (PHPStan's config format) into plain Python values.

    Mappings become dicts, sequences become lists. Regex literals such as
    `'#^Call to an undefined method#i'` become compiled `re.Pattern` objects;
    a literal that fails to compile becomes an `InvalidValue`.
    """

    try:
        data = yaml.safe_load(neon_to_yaml(text))
    except yaml.YAMLError as exc:
        raise NeonError(f"Invalid NEON: {exc}") from exc
    if data is None:
        return {}
    return _convert(data)


def neon_to_yaml(text: str) -> str:
    """
    Rewrite the NEON constructs YAML rejects.

    - Tab indentation (the NEON default) is expanded to spaces.
    - Plain values starting with `%`/`@` (parameter and service references)
      are single-quoted, both as block values and as items of single-line
      `[...]` / `{...}` collections.
    """

    out: list[str] = []
    for line in text.splitlines():
        match = _LEADING_TABS_RE.match(line)
        if match and "\t" in match.group(0):
            indent = match.group(0).replace("\t", "    ")
            line = indent + line[match.end() :]

        reserved = _RESERVED_PLAIN_RE.match(line)
        if reserved:
            value = _strip_neon_comment(reserved.group("value"))
            line = reserved.group("lead") + "'" + value.replace("'", "''") + "'"
        elif "[" in line or "{" in line:
            line = _quote_flow_references(line)
        out.append(line)
    return "\n".join(out) + "\n"


def compile_regex_literal(value: str) -> re.Pattern[str] | InvalidValue | None:
    """
    Compile a PCRE-style literal (`#pattern#flags`).

    Returns None when `value` is not a regex literal at all.
    """

    match = _REGEX_LITERAL_RE.match(value)
    if match is None:
        return None

    body = match.group("body")
    if not body:
        return None

    flags = 0
    for flag in match.group("flags"):
        if flag not in _PCRE_FLAGS:
            return InvalidValue(source=value, reason=f"unsupported regex flag {flag!r}")
        flags |= _PCRE_FLAGS[flag]

    body = _PCRE_NAMED_GROUP_RE.sub(lambda m: f"(?P<{m.group('a') or m.group('b')}>", body)
    try:
        return re.compile(body, flags)
    except re.error as exc:
        return InvalidValue(source=value, reason=str(exc))


def _convert(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _convert(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_convert(v) for v in value]
    if isinstance(value, str):
        compiled = compile_regex_literal(value)
        return value if compiled is None else compiled
    return value


def _strip_neon_comment(value: str) -> str:
    # NEON comments need whitespace before `#`.
    idx = value.find(" #")
    if idx != -1:
        value = value[:idx]
    return value.rstrip()


def _quote_flow_references(line: str) -> str:
    # Quotes reserved plain scalars that start a flow item or a flow mapping value.
    out: list[str] = []
    depth = 0
    quote: str | None = None
    item_start = False
    i = 0
    while i < len(line):
        ch = line[i]
        if quote is not None:
            if quote == '"' and ch == "\\" and i + 1 < len(line):
                out.append(line[i : i + 2])
                i += 2
                continue
            if ch == quote:
                quote = None
            out.append(ch)
            i += 1
            continue

        if ch == "#" and (i == 0 or line[i - 1] in " \t"):
            out.append(line[i:])
            break
        if ch in "'\"":
            quote = ch
            item_start = False
        elif ch in "[{":
            depth += 1
            item_start = True
        elif ch in "]}":
            depth = max(depth - 1, 0)
            item_start = False
        elif depth and ch == ",":
            item_start = True
        elif depth and ch == ":" and (i + 1 == len(line) or line[i + 1] == " "):
            item_start = True
        elif ch == " ":
            pass
        elif depth and item_start and ch in _RESERVED_START:
            end = i
            while end < len(line) and line[end] not in ",]}":
                end += 1
            scalar = _strip_neon_comment(line[i:end])
            out.append("'" + scalar.replace("'", "''") + "'")
            i += len(scalar)
            item_start = False
            continue
        else:
            item_start = False
        out.append(ch)
        i += 1
    return "".join(out)
