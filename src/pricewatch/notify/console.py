# src/pricewatch/notify/console.py
from __future__ import annotations
import structlog
from typing import Callable, Optional

from pricewatch.notify.base import DispatchResult
from pricewatch.utils.types import PriceDropAlert

log = structlog.get_logger("notifier")

class ConsoleDispatcher:
    def __init__(self, format_fn: Optional[Callable[[PriceDropAlert], str]] = None):
        self._format_fn = format_fn

    async def send(self, alert: PriceDropAlert) -> DispatchResult:
        if self._format_fn:
            try:
                print(self._format_fn(alert), flush=True)
                return DispatchResult.success()
            except Exception as e:
                log.warning("console_format_failed", item_id=alert.item_id, err=str(e))
        # fallback (raw)
        print(f"[ALERT] item={alert.item_id} product={alert.product_id} "
              f"{alert.old_price} -> {alert.new_price}", flush=True)
        return DispatchResult.success()
