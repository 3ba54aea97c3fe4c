# src/storage/redis_metrics.py
from __future__ import annotations

from redis.asyncio import Redis

from pricewatch.utils.time import epoch_ms
from pricewatch.utils.types import RunSummary

SERIES_PREFIX = "ts:pricewatch"
FIELDS = ["evaluated", "updated", "notified", "failed", "conflicts", "fetch_errors", "duration_ms"]

def key(field: str, prefix: str = SERIES_PREFIX) -> str:
    # ts:pricewatch:{FIELD}
    return f"{prefix}:{field}"

async def ensure_series(
    r: Redis,
    fields: list[str] = FIELDS,
    prefix: str = SERIES_PREFIX,
    retention_ms: int = 30 * 86_400_000,
):
    """
    Idempotently create TS series with labels & retention for given fields.
    """
    ts = r.ts()
    for f in fields:
        try:
            await ts.create(
                key(f, prefix),
                retention_msecs=retention_ms,
                labels={"app": "pricewatch", "field": f},
                duplicate_policy="last",
            )
        except Exception:
            # likely already exists
            pass

async def write_run_summary(r: Redis, summary: RunSummary, prefix: str = SERIES_PREFIX) -> None:
    """
    Append one point per count for a finished run, timestamped at the run's end.
    Skipped runs (lock held elsewhere) write nothing.
    """
    if summary.skipped:
        return
    ts = r.ts()
    at_ms = epoch_ms(summary.finished_at)
    values = dict(summary.counts())
    values["duration_ms"] = int(summary.duration_s * 1000)
    for field, v in values.items():
        await ts.add(key(field, prefix), at_ms, float(v), duplicate_policy="last")
