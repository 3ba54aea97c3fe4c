from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

# all timestamps in the pipeline are epoch seconds (float, UTC)

def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()

def utc_dt(ts: float | int, tz_name: Optional[str] = None) -> datetime:
    """Epoch seconds -> aware datetime, UTC unless `tz_name` is given."""
    dt = datetime.fromtimestamp(float(ts), tz=timezone.utc)
    return dt if tz_name is None else dt.astimezone(ZoneInfo(tz_name))

def epoch_ms(ts: float) -> int:
    """Epoch seconds -> integer milliseconds (RedisTimeSeries / PX units)."""
    return int(ts * 1000)
