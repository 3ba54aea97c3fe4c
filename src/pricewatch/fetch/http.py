# src/pricewatch/fetch/http.py
from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import aiohttp
import structlog

from pricewatch.errors import FetchUnavailable
from pricewatch.fetch import parser


@dataclass(slots=True)
class HttpFetcherConfig:
    base_url: str
    path: str = "/prices"
    api_key: Optional[str] = None     # sent as Bearer token
    timeout_s: float = 10.0


def fetcher_config_from_env(env: Optional[dict] = None) -> HttpFetcherConfig:
    env = os.environ if env is None else env
    base_url = env.get("PRICING_URL")
    if not base_url:
        raise KeyError("PRICING_URL is required")
    return HttpFetcherConfig(
        base_url=base_url,
        path=env.get("PRICING_PATH", "/prices"),
        api_key=env.get("PRICING_API_KEY") or None,
        timeout_s=float(env.get("PRICING_TIMEOUT_S", "10")),
    )


class HttpPriceFetcher:
    """
    PriceFetcher over a JSON pricing service.

    One POST per batch: {"product_ids": [...]} -> any shape parser.parse_price_payload
    understands. Non-200 statuses and transport errors raise FetchUnavailable;
    ids missing from the response are treated as unavailable.
    """

    def __init__(self, cfg: HttpFetcherConfig, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None
        self._log = structlog.get_logger("price_fetcher")

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.cfg.timeout_s))
            self._owns_session = True

    async def stop(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    @property
    def url(self) -> str:
        return self.cfg.base_url.rstrip("/") + "/" + self.cfg.path.lstrip("/")

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.cfg.api_key:
            headers["Authorization"] = f"Bearer {self.cfg.api_key}"
        return headers

    async def fetch_prices(self, product_ids: set[str]) -> dict[str, Decimal]:
        if not product_ids:
            return {}
        if self._session is None:
            await self.start()
        assert self._session is not None

        body = {"product_ids": sorted(product_ids)}
        try:
            async with self._session.post(self.url, json=body, headers=self._headers()) as resp:
                if resp.status != 200:
                    raise FetchUnavailable(f"pricing service returned status {resp.status}")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchUnavailable(f"pricing service unreachable: {e}") from e
        except ValueError as e:
            # body was not JSON
            raise FetchUnavailable(f"pricing service sent invalid JSON: {e}") from e

        prices = parser.parse_price_payload(data)
        out = {pid: p for pid, p in prices.items() if pid in product_ids}
        missing = len(product_ids) - len(out)
        if missing:
            self._log.debug("prices_missing", requested=len(product_ids), missing=missing)
        return out
