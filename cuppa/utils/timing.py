# =============================================
# File: cuppa/utils/timing.py
# Purpose: Timers and calendar helpers (UTC everywhere)
# =============================================
from __future__ import annotations

import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional


@contextmanager
def timer():
    t0 = time.perf_counter()
    yield lambda: (time.perf_counter() - t0) * 1000.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(ts: datetime) -> datetime:
    # SQLite hands back naive datetimes; we only ever store UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Accept datetimes, ISO-8601 strings (incl. trailing 'Z') and epoch seconds/millis."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return as_utc(raw)
    if isinstance(raw, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(raw, (int, float)):
        secs = float(raw)
        if secs > 1e11:  # epoch millis
            secs /= 1000.0
        return datetime.fromtimestamp(secs, tz=timezone.utc)
    if isinstance(raw, str):
        s = raw.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        return as_utc(datetime.fromisoformat(s))
    raise ValueError(f"unsupported timestamp type: {type(raw).__name__}")


def time_of_day(ts: datetime) -> str:
    hour = ts.hour
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


def season(ts: datetime) -> str:
    # northern hemisphere meteorological seasons
    month = ts.month
    if 3 <= month <= 5:
        return "spring"
    if 6 <= month <= 8:
        return "summer"
    if 9 <= month <= 11:
        return "fall"
    return "winter"
