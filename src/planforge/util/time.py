from __future__ import annotations

from datetime import datetime


def now_iso() -> str:
    """Return timezone-aware current local time in ISO format."""
    return datetime.now().astimezone().isoformat(timespec="milliseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def duration_sec(start: datetime, end: datetime) -> float:
    """Calculate elapsed seconds."""
    return round((end - start).total_seconds(), 3)


def elapsed_between(start_iso: str | None, end_iso: str | None) -> float | None:
    start = parse_iso(start_iso)
    end = parse_iso(end_iso)
    if start is None or end is None:
        return None
    return duration_sec(start, end)
