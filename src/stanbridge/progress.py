from __future__ import annotations

import re

from stanbridge.types import ProgressUpdate

# e.g. " 12/50 [====>-----------------------]  24%"
PROGRESS_RE = re.compile(r"(\d+)/(\d+)\s+\[.*?\]\s+(\d+)%")


def parse_progress(text: str) -> ProgressUpdate | None:
    """
    Return the last progress marker in `text`, if any.

    A single output chunk can carry several redraws of the progress bar;
    only the most recent one matters.
    """

    last: re.Match[str] | None = None
    for last in PROGRESS_RE.finditer(text):
        pass
    if last is None:
        return None
    done, total, percentage = (int(g) for g in last.groups())
    return ProgressUpdate(done=done, total=total, percentage=percentage)
