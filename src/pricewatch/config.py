# src/pricewatch/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from pricewatch.utils.batching import MAX_FETCH_BATCH
from pricewatch.utils.types import DEFAULT_COOLDOWN_SECONDS


@dataclass(slots=True)
class RunConfig:
    """Knobs for one MonitorRunner.run_once() pass."""
    batch_size: int = 500            # snapshots loaded per run; backlog spills to later ticks
    fetch_batch_size: int = MAX_FETCH_BATCH
    fetch_concurrency: int = 4
    fetch_timeout_s: float = 10.0
    notify_concurrency: int = 4
    notify_timeout_s: float = 10.0

    def __post_init__(self) -> None:
        for name in ("batch_size", "fetch_batch_size", "fetch_concurrency", "notify_concurrency"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.fetch_batch_size > MAX_FETCH_BATCH:
            raise ValueError(f"fetch_batch_size must be <= {MAX_FETCH_BATCH}")
        for name in ("fetch_timeout_s", "notify_timeout_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")


@dataclass(slots=True)
class ServiceConfig:
    """Everything the scheduler entrypoint needs to wire a runner."""
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "pricewatch"
    interval_s: float = 900.0        # 15 minutes between runs
    lock_ttl_s: float = 900.0
    default_cooldown_s: int = DEFAULT_COOLDOWN_SECONDS
    write_metrics: bool = True
    alert_tz: str = "UTC"
    run: RunConfig = field(default_factory=RunConfig)

    def __post_init__(self) -> None:
        if self.interval_s <= 0:
            raise ValueError("interval_s must be positive")
        if self.lock_ttl_s <= 0:
            raise ValueError("lock_ttl_s must be positive")
        if self.default_cooldown_s < 0:
            raise ValueError("default_cooldown_s must be non-negative")


def _flag(v: Optional[str], default: bool) -> bool:
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def run_config_from_env(env: Optional[dict] = None) -> RunConfig:
    env = os.environ if env is None else env
    d = RunConfig()
    return RunConfig(
        batch_size=int(env.get("PRICEWATCH_BATCH_SIZE", d.batch_size)),
        fetch_batch_size=int(env.get("PRICEWATCH_FETCH_BATCH_SIZE", d.fetch_batch_size)),
        fetch_concurrency=int(env.get("PRICEWATCH_FETCH_CONCURRENCY", d.fetch_concurrency)),
        fetch_timeout_s=float(env.get("PRICEWATCH_FETCH_TIMEOUT_S", d.fetch_timeout_s)),
        notify_concurrency=int(env.get("PRICEWATCH_NOTIFY_CONCURRENCY", d.notify_concurrency)),
        notify_timeout_s=float(env.get("PRICEWATCH_NOTIFY_TIMEOUT_S", d.notify_timeout_s)),
    )


def service_config_from_env(env: Optional[dict] = None) -> ServiceConfig:
    env = os.environ if env is None else env
    d = ServiceConfig()
    interval_s = float(env.get("PRICEWATCH_INTERVAL_S", d.interval_s))
    return ServiceConfig(
        redis_url=env.get("REDIS_URL", d.redis_url),
        key_prefix=env.get("PRICEWATCH_KEY_PREFIX", d.key_prefix),
        interval_s=interval_s,
        # lock ttl defaults to one scheduler interval; runs extend it between phases
        lock_ttl_s=float(env.get("PRICEWATCH_LOCK_TTL_S", interval_s)),
        default_cooldown_s=int(env.get("PRICEWATCH_COOLDOWN_S", d.default_cooldown_s)),
        write_metrics=_flag(env.get("PRICEWATCH_WRITE_METRICS"), d.write_metrics),
        alert_tz=env.get("PRICEWATCH_ALERT_TZ", d.alert_tz),
        run=run_config_from_env(env),
    )
