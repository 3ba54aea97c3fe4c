# src/pricewatch/notify/base.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from pricewatch.utils.types import PriceDropAlert


@dataclass(frozen=True, slots=True)
class DispatchResult:
    ok: bool
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "DispatchResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str) -> "DispatchResult":
        return cls(ok=False, reason=reason)


class NotificationDispatcher(Protocol):
    """
    Delivers one price-drop alert. Must not raise for delivery problems:
    report them as DispatchResult.failure(reason). Retries, if any, are the
    adapter's own business.
    """
    async def send(self, alert: PriceDropAlert) -> DispatchResult: ...
