"""
Small helpers shared across modules.
"""

import re
from datetime import UTC, datetime, timedelta

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DURATION_RE = re.compile(
    r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$"
)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form stored in the database."""
    return datetime.now(UTC).replace(tzinfo=None)


def parse_duration(value: str) -> timedelta:
    """
    Parse duration strings like '20s', '5m', '1h30m', '2d3h' or a bare number of seconds.

    Raises:
        ValueError: On empty or malformed input.
    """
    if not value or not value.strip():
        raise ValueError("duration string is empty")

    stripped = value.strip()
    if stripped.isdigit():
        return timedelta(seconds=int(stripped))

    match = DURATION_RE.match(stripped)
    if not match or not any(match.groups()):
        raise ValueError(f"Invalid duration format: {value!r}")

    days, hours, minutes, seconds = (int(g) if g else 0 for g in match.groups())
    return timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)
