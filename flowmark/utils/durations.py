"""ISO 8601 duration, date and repeating-interval helpers used for timers."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

_DURATION_RE = re.compile(
    r"^P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)
_CYCLE_RE = re.compile(r"^R(?P<repeats>\d*)/(?P<interval>P.+)$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_duration(text: str) -> timedelta:
    """Parse an ISO 8601 duration such as ``PT30S`` or ``P1DT2H``.

    Years and months are not supported since they have no fixed length.
    """
    match = _DURATION_RE.match(text.strip().upper()) if text else None
    if not match or text.strip().upper() in ("P", "PT"):
        raise ValueError(f"Invalid ISO 8601 duration: {text!r}")
    parts = {k: float(v) for k, v in match.groupdict().items() if v}
    if not parts:
        raise ValueError(f"Invalid ISO 8601 duration: {text!r}")
    return timedelta(
        weeks=parts.get("weeks", 0),
        days=parts.get("days", 0),
        hours=parts.get("hours", 0),
        minutes=parts.get("minutes", 0),
        seconds=parts.get("seconds", 0),
    )


def parse_cycle(text: str) -> tuple[Optional[int], timedelta]:
    """Parse a repeating interval like ``R3/PT1H``.

    Returns ``(repeats, interval)`` where ``repeats`` is None for unbounded
    cycles (``R/PT1H``).
    """
    match = _CYCLE_RE.match(text.strip().upper()) if text else None
    if not match:
        raise ValueError(f"Invalid ISO 8601 repeating interval: {text!r}")
    repeats = int(match.group("repeats")) if match.group("repeats") else None
    return repeats, parse_duration(match.group("interval"))


def parse_datetime(text: str) -> datetime:
    """Parse an ISO 8601 timestamp, assuming UTC when no offset is given."""
    value = text.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
