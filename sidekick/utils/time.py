"""Time utilities (UTC now, epoch-millisecond conversions, elapsed formatting)."""
from __future__ import annotations
import time
from datetime import datetime, timezone, timedelta

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def now_ms() -> int:
    return int(time.time() * 1000)

# latest epoch millisecond still rendered as an ISO timestamp (start of the last representable day)
MAX_EPOCH_MS = int(datetime(9999, 12, 31, tzinfo=timezone.utc).timestamp()) * 1000

def ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)

def ms_to_iso(ms: int) -> str:
    """ISO-8601 with millisecond precision and a trailing Z (as JS Date.toISOString)."""
    return ms_to_datetime(ms).isoformat(timespec="milliseconds").replace("+00:00", "Z")

def format_elapsed(start: datetime, end: datetime | None = None) -> str:
    end_ts = end or utc_now()
    delta: timedelta = end_ts - start
    ms = int(delta.total_seconds() * 1000)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms/1000:.2f}s"
    return f"{delta.total_seconds()/60:.2f}m"

__all__ = ["MAX_EPOCH_MS", "utc_now", "now_ms", "ms_to_datetime", "ms_to_iso", "format_elapsed"]
