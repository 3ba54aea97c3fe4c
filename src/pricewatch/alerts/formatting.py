from __future__ import annotations
from decimal import Decimal
from typing import Optional

from pricewatch.utils.time import utc_dt
from pricewatch.utils.types import PriceDropAlert

def _fmt_ts(ts_s: float, tz_name: str) -> str:
    return utc_dt(ts_s, tz_name).strftime("%Y-%m-%d %H:%M %Z")  # e.g., 2026-10-19 14:05 UTC

def _fmt_price(p: Optional[Decimal], currency: str) -> str:
    if p is None:
        return "-"
    return f"{p:.2f} {currency}".rstrip()

def format_alert_pretty(alert: PriceDropAlert, tz_name: str = "UTC", currency: str = "") -> str:
    """
    One-line alert text, e.g.
    [PRICE DROP] product sku-1 (item 42) 2026-10-19 14:05 UTC ↓ -25.00% | 60.00 → 45.00 (save 15.00, target 50.00)
    """
    when = _fmt_ts(alert.detected_at, tz_name)
    target = ""
    if alert.threshold_price is not None:
        target = f", target {_fmt_price(alert.threshold_price, currency)}"
    return (
        f"[PRICE DROP] product {alert.product_id} (item {alert.item_id}) {when} "
        f"↓ -{alert.savings_pct:.2f}% | "
        f"{_fmt_price(alert.old_price, currency)} → {_fmt_price(alert.new_price, currency)} "
        f"(save {_fmt_price(alert.savings, currency)}{target})"
    )

def format_alert_plain(alert: PriceDropAlert) -> str:
    """Multi-line body for chat/e-mail style channels."""
    lines = [
        "Price drop on your wishlist!",
        f"Product: {alert.product_id}",
        f"Old price: {alert.old_price:.2f}",
        f"New price: {alert.new_price:.2f}",
        f"You save: {alert.savings:.2f} (-{alert.savings_pct:.0f}%)",
    ]
    if alert.threshold_price is not None:
        lines.append(f"Your target was: {alert.threshold_price:.2f}")
    return "\n".join(lines)
