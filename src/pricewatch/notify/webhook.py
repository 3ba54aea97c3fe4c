# src/pricewatch/notify/webhook.py
from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Optional

import aiohttp
import structlog

from pricewatch.notify.base import DispatchResult
from pricewatch.utils.backoff import jitter, retry_delays
from pricewatch.utils.types import PriceDropAlert

log = structlog.get_logger("webhook")


@dataclass(slots=True)
class WebhookConfig:
    url: str
    secret: Optional[str] = None      # sent as X-Pricewatch-Secret
    timeout_s: float = 8.0
    max_retries: int = 3
    initial_backoff_s: float = 0.5
    max_backoff_s: float = 8.0


def webhook_config_from_env(env: Optional[dict] = None) -> WebhookConfig:
    env = os.environ if env is None else env
    url = env.get("WEBHOOK_URL")
    if not url:
        raise KeyError("WEBHOOK_URL is required")
    return WebhookConfig(
        url=url,
        secret=env.get("WEBHOOK_SECRET") or None,
        max_retries=int(env.get("WEBHOOK_MAX_RETRIES", "3")),
    )


class WebhookDispatcher:
    """
    POSTs alert.to_payload() as JSON. 2xx is success; 5xx, 429 and network
    errors are retried up to max_retries attempts; other statuses fail at once.
    """

    def __init__(self, cfg: WebhookConfig, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.cfg.timeout_s))
            self._owns_session = True

    async def stop(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.cfg.secret:
            headers["X-Pricewatch-Secret"] = self.cfg.secret
        return headers

    async def send(self, alert: PriceDropAlert) -> DispatchResult:
        if self._session is None:
            await self.start()
        assert self._session is not None

        payload = alert.to_payload()
        delays = retry_delays(self.cfg.max_retries, self.cfg.initial_backoff_s, self.cfg.max_backoff_s)
        reason = "no attempt made"
        for attempt in range(1, self.cfg.max_retries + 1):
            try:
                async with self._session.post(self.cfg.url, json=payload, headers=self._headers()) as resp:
                    if 200 <= resp.status < 300:
                        return DispatchResult.success()
                    reason = f"status {resp.status}"
                    log.warning("webhook_send_failed", item_id=alert.item_id, status=resp.status, attempt=attempt)
                    if not (resp.status >= 500 or resp.status == 429):
                        return DispatchResult.failure(reason)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                reason = f"network error: {e}"
                log.warning("webhook_network_error", item_id=alert.item_id, err=str(e), attempt=attempt)
            delay = next(delays, None)
            if delay is None:
                break
            await asyncio.sleep(jitter(delay))
        log.error("webhook_give_up_after_retries", item_id=alert.item_id, reason=reason)
        return DispatchResult.failure(reason)
