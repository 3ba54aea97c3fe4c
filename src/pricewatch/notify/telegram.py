from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

import aiohttp
import structlog

from pricewatch.alerts.formatting import format_alert_plain
from pricewatch.errors import DispatchFailed
from pricewatch.notify.base import DispatchResult
from pricewatch.utils.backoff import jitter, retry_delays
from pricewatch.utils.types import PriceDropAlert

log = structlog.get_logger("telegram")

# Telegram allows roughly one message per second per chat


class RateLimiter:
    """Token bucket; acquire() waits until a token is available."""

    def __init__(self, rate_per_sec: float, burst: int = 1, clock: Callable[[], float] = time.monotonic):
        self.rate = float(rate_per_sec)
        self.capacity = float(burst)
        self.tokens = float(burst)
        self._clock = clock
        self._last = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self.tokens = min(self.capacity, self.tokens + (now - self._last) * self.rate)
        self._last = now

    async def acquire(self) -> None:
        async with self._lock:
            self._refill()
            if self.tokens < 1.0:
                await asyncio.sleep((1.0 - self.tokens) / self.rate)
                self._refill()
            self.tokens = max(0.0, self.tokens - 1.0)


@dataclass(slots=True)
class TelegramConfig:
    bot_token: str
    chat_id: str                      # user or group chat receiving the alerts
    parse_mode: Optional[str] = None  # "HTML", "MarkdownV2" or None for plain text
    api_base: str = "https://api.telegram.org"
    timeout_s: float = 8.0
    per_chat_rate_per_sec: float = 1.0
    per_chat_burst: int = 3
    max_retries: int = 5
    initial_backoff_s: float = 0.5
    max_backoff_s: float = 8.0


def config_from_env(env: Optional[dict] = None) -> TelegramConfig:
    """Build a TelegramConfig from TELEGRAM_* variables; KeyError if token/chat are missing."""
    env = os.environ if env is None else env
    token = env.get("TELEGRAM_BOT_TOKEN")
    chat_id = env.get("TELEGRAM_CHAT_ID")
    if not token or not chat_id:
        raise KeyError("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID are required")
    return TelegramConfig(
        bot_token=token,
        chat_id=chat_id,
        parse_mode=env.get("TELEGRAM_PARSE_MODE") or None,
        max_retries=int(env.get("TELEGRAM_MAX_RETRIES", "5")),
    )


class TelegramDispatcher:
    """
    Sends price-drop alerts to one Telegram chat.

    Retry policy (bounded by max_retries attempts):
      - 429: wait Telegram's retry_after when given, else back off
      - 5xx / network errors / timeouts: jittered exponential backoff
      - other 4xx (bad token, unknown chat): give up at once
    """

    def __init__(
        self,
        cfg: TelegramConfig,
        format_fn: Optional[Callable[[PriceDropAlert], str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None
        self._rl = RateLimiter(rate_per_sec=cfg.per_chat_rate_per_sec, burst=cfg.per_chat_burst)
        self._format_fn = format_fn or format_alert_plain

    @property
    def url(self) -> str:
        return f"{self.cfg.api_base}/bot{self.cfg.bot_token}/sendMessage"

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.cfg.timeout_s))
            self._owns_session = True

    async def stop(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def send(self, alert: PriceDropAlert) -> DispatchResult:
        if self._session is None:
            await self.start()
        payload = {"chat_id": self.cfg.chat_id, "text": self._format_fn(alert)}
        if self.cfg.parse_mode:
            payload["parse_mode"] = self.cfg.parse_mode

        await self._rl.acquire()
        try:
            await self._post_with_retries(payload)
        except DispatchFailed as e:
            log.warning("telegram_dispatch_failed", item_id=alert.item_id, reason=str(e))
            return DispatchResult.failure(str(e))
        return DispatchResult.success()

    async def _post_with_retries(self, payload: dict) -> None:
        assert self._session is not None
        delays = retry_delays(self.cfg.max_retries, self.cfg.initial_backoff_s, self.cfg.max_backoff_s)
        last_err = "no attempt made"
        for attempt in range(1, self.cfg.max_retries + 1):
            wait: Optional[float] = None
            try:
                async with self._session.post(self.url, data=payload) as resp:
                    if resp.status == 200:
                        return
                    last_err = f"status {resp.status}"
                    log.warning("telegram_send_failed", status=resp.status, body=await _maybe_text(resp),
                                attempt=attempt)
                    if resp.status == 429:
                        wait = await _retry_after(resp)
                    elif resp.status < 500:
                        raise DispatchFailed(last_err)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_err = f"network error: {e}"
                log.warning("telegram_network_error", err=str(e), attempt=attempt)

            delay = next(delays, None)
            if delay is None:
                break
            await asyncio.sleep(wait if wait is not None else jitter(delay))

        log.error("telegram_give_up_after_retries", attempts=self.cfg.max_retries, reason=last_err)
        raise DispatchFailed(f"gave up after {self.cfg.max_retries} attempts ({last_err})")


async def _retry_after(resp: aiohttp.ClientResponse) -> Optional[float]:
    try:
        data = await resp.json()
        ra = data.get("parameters", {}).get("retry_after")
        return float(ra) if ra else None
    except Exception:
        return None


async def _maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except Exception:
        return "<no body>"
