# src/pricewatch/main.py
import asyncio
import functools

import structlog
from dotenv import load_dotenv
from redis.asyncio import Redis

from pricewatch.alerts.formatting import format_alert_pretty
from pricewatch.config import ServiceConfig, service_config_from_env
from pricewatch.errors import StoreUnavailable
from pricewatch.fetch.http import HttpPriceFetcher, fetcher_config_from_env
from pricewatch.notify.console import ConsoleDispatcher
from pricewatch.notify.telegram import TelegramDispatcher, config_from_env as telegram_config_from_env
from pricewatch.notify.webhook import WebhookDispatcher, webhook_config_from_env
from pricewatch.runner import MonitorRunner

from storage.redis_lock import RedisRunLock
from storage.redis_metrics import ensure_series, write_run_summary
from storage.redis_snapshots import RedisSnapshotStore

load_dotenv()
log = structlog.get_logger()


# ---------------------------
# Wiring
# ---------------------------

def build_dispatcher(cfg: ServiceConfig):
    """
    Telegram if TELEGRAM_* is set, else a webhook if WEBHOOK_URL is set,
    else print to the console.
    """
    try:
        tg_cfg = telegram_config_from_env()  # raises if env missing
        log.info("telegram_enabled")
        return TelegramDispatcher(tg_cfg, format_fn=lambda a: format_alert_pretty(a, cfg.alert_tz))
    except KeyError:
        log.info("telegram_disabled_missing_env")
    try:
        wh_cfg = webhook_config_from_env()
        log.info("webhook_enabled", url=wh_cfg.url)
        return WebhookDispatcher(wh_cfg)
    except KeyError:
        log.info("webhook_disabled_missing_env")
    return ConsoleDispatcher(format_fn=lambda a: format_alert_pretty(a, cfg.alert_tz))


async def run_forever(runner: MonitorRunner, cfg: ServiceConfig, stop: asyncio.Event) -> None:
    """Scheduler loop: one run per interval, never two at once."""
    while not stop.is_set():
        try:
            await runner.run_once(cfg.run)
        except StoreUnavailable:
            # already logged by the runner; next tick starts from scratch
            pass
        try:
            await asyncio.wait_for(stop.wait(), timeout=cfg.interval_s)
        except asyncio.TimeoutError:
            pass


# ---------------------------
# Main
# ---------------------------

async def main():
    cfg = service_config_from_env()
    redis_client = Redis.from_url(cfg.redis_url, decode_responses=True)

    store = RedisSnapshotStore(redis_client, prefix=cfg.key_prefix, default_cooldown_s=cfg.default_cooldown_s)
    lock = RedisRunLock(redis_client, key=f"{cfg.key_prefix}:run-lock", ttl_s=cfg.lock_ttl_s)
    fetcher = HttpPriceFetcher(fetcher_config_from_env())
    dispatcher = build_dispatcher(cfg)

    on_summary = None
    if cfg.write_metrics:
        await ensure_series(redis_client)
        on_summary = functools.partial(write_run_summary, redis_client)

    runner = MonitorRunner(store, fetcher, dispatcher, lock=lock, on_summary=on_summary)
    log.info("pricewatch_started", interval_s=cfg.interval_s, batch_size=cfg.run.batch_size)

    stop = asyncio.Event()
    try:
        await fetcher.start()
        await run_forever(runner, cfg, stop)
    finally:
        # graceful shutdown to avoid unclosed sessions
        for obj in (fetcher, dispatcher):
            stop_fn = getattr(obj, "stop", None)
            if stop_fn is None:
                continue
            try:
                await stop_fn()
            except Exception as e:
                log.warning("shutdown_failed", component=type(obj).__name__, err=str(e))
        await redis_client.aclose()


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
