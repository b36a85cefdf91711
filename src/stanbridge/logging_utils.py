from __future__ import annotations

import logging
import sys


def configure_logging(*, verbose: bool, quiet: bool) -> None:
    """
    Configure process-wide logging defaults for CLI usage.

    - Default: INFO
    - --verbose: DEBUG (includes raw PHPStan / PHPStan Pro output)
    - --quiet: WARNING

    Logging is written to stderr so it does not corrupt machine-readable stdout
    outputs (`check --format json`).
    """

    if verbose and quiet:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    fmt = "StanBridge: %(message)s"
    if verbose:
        fmt = "StanBridge [%(levelname)s] %(name)s: %(message)s"

    logging.basicConfig(level=level, format=fmt, stream=sys.stderr, force=True)

    # watchdog logs every inotify event at DEBUG.
    logging.getLogger("watchdog").setLevel(logging.WARNING)
