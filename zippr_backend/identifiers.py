"""Archive ids derived from wall-clock time.

An id is the integer number of seconds since the epoch at creation, e.g.
"1760700000". A retry within the same second carries a numeric suffix
("1760700000-1") so two uploads landing in one second still get distinct ids.
The sweeper parses ids back into creation times to compute their age.
"""
from __future__ import annotations

import time
from typing import Callable

from .errors import InvalidIdentifierError
from .security import normalize_archive_id


class IdentifierGenerator:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def next(self, attempt: int = 0) -> str:
        """Return the id for the current second; attempt > 0 adds a suffix."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        seconds = int(self._clock())
        if attempt == 0:
            return str(seconds)
        return f"{seconds}-{attempt}"


def parse_created_at(archive_id: str) -> float | None:
    """Creation time (epoch seconds) encoded in an id, or None if it does not parse."""
    try:
        normalized = normalize_archive_id(archive_id)
    except InvalidIdentifierError:
        return None
    return float(int(normalized.split("-", 1)[0]))
