from __future__ import annotations

import math
import re
from datetime import datetime

_DEFAULT_ESTIMATE_MIN = 30.0
_ESTIMATE_PATTERN = re.compile(
    r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>m|min|mins|minute|minutes|h|hr|hrs|hour|hours|d|day|days)?\s*$",
    re.IGNORECASE,
)
_UNIT_MINUTES = {"m": 1.0, "h": 60.0, "d": 480.0}


def now_iso() -> str:
    """Return timezone-aware current local time in ISO format."""
    return datetime.now().astimezone().isoformat(timespec="seconds")


def duration_sec(start: datetime, end: datetime) -> float:
    """Calculate elapsed seconds."""
    return round((end - start).total_seconds(), 3)


def parse_estimate_minutes(value: object, default: float = _DEFAULT_ESTIMATE_MIN) -> float:
    """
    Convert an estimate such as ``"15min"``, ``"2hours"`` or ``45`` to minutes.

    Bare numbers are minutes. A day counts as one 8 hour working day.
    Returns ``default`` for anything unparseable.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) and value >= 0 else default
    if not isinstance(value, str):
        return default
    match = _ESTIMATE_PATTERN.match(value)
    if match is None:
        return default
    unit = (match.group("unit") or "m")[0].lower()
    return float(match.group("value")) * _UNIT_MINUTES[unit]
