from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso(seconds: bool = True) -> str:
    """
    Return current UTC time in ISO-8601 format.
    - If seconds is True, use seconds precision (stable strings).
    - Else, use milliseconds precision.
    """
    if seconds:
        return utc_now().isoformat(timespec="seconds")
    return utc_now().isoformat(timespec="milliseconds")


def parse_iso_utc(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: Optional[datetime], timespec: str = "seconds") -> str:
    if dt is None:
        return ""
    return dt.astimezone(timezone.utc).isoformat(timespec=timespec)


def soak_remaining(entered: datetime, soak_hours: float, now: datetime) -> timedelta:
    """Time left before the soak period ends; zero or negative once it has elapsed."""
    return (entered + timedelta(hours=soak_hours)) - now


def whole_hours_remaining(remaining: timedelta) -> int:
    """Remaining soak time in whole hours, rounded up."""
    seconds = remaining.total_seconds()
    if seconds <= 0:
        return 0
    return int(math.ceil(seconds / 3600 - 1e-9))
