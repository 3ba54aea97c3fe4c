from __future__ import annotations
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

_ID_KEYS = ("product_id", "productId", "id", "sku")
_PRICE_KEYS = ("price", "amount", "gross", "current_price")
_THOUSANDS = re.compile(r"^\d{1,3}(,\d{3})+$")

def parse_price(v: Any) -> Optional[Decimal]:
    """
    Normalize a price value to Decimal; None if unusable.

    Accepts numbers, numeric strings ("19.99", " 19,99 ", "1,299.00"), or a nested
    {"gross": ...}/{"amount": ...} object as some pricing APIs return.
    Negative, NaN and infinite values are rejected.
    """
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, dict):
        for k in _PRICE_KEYS:
            if k in v:
                return parse_price(v[k])
        return None
    if isinstance(v, str):
        v = _normalize_separators(v.strip())
        if not v:
            return None
    try:
        # str() first so floats keep their printed value (0.1 -> "0.1")
        d = Decimal(str(v))
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite() or d < 0:
        return None
    return d

def _normalize_separators(s: str) -> Optional[str]:
    """
    "19,99" -> "19.99", "1,299" -> "1299", "1,299.50" -> "1299.50",
    "1.299,50" -> "1299.50". A comma is the decimal mark only when it is the
    sole separator and at most two digits follow it. None if ambiguous.
    """
    if "," not in s:
        return s
    if "." in s:
        # whichever comes last is the decimal mark
        if s.rfind(",") > s.rfind("."):
            return s.replace(".", "").replace(",", ".")
        return s.replace(",", "")
    whole, _, frac = s.rpartition(",")
    if "," not in whole and len(frac) <= 2:
        return f"{whole}.{frac}"
    if _THOUSANDS.match(s):
        return s.replace(",", "")
    return None

def parse_price_row(m: dict) -> Optional[tuple[str, Decimal]]:
    """Return (product_id, price) if `m` is a usable price row; else None."""
    pid = None
    for k in _ID_KEYS:
        if m.get(k) is not None:
            pid = m[k]
            break
    if pid is None:
        return None
    price = None
    for k in _PRICE_KEYS:
        if k in m:
            price = parse_price(m[k])
            break
    if price is None:
        return None
    return str(pid), price

def parse_price_payload(data: Any) -> dict[str, Decimal]:
    """
    Pricing-service response -> {product_id: Decimal}.

    Shapes seen in the wild:
      - {"prices": {"sku-1": "19.99", "sku-2": 5}}
      - {"prices": [{"product_id": "sku-1", "price": "19.99"}, ...]}
      - [{"id": "sku-1", "amount": 19.99}, ...]
      - {"sku-1": "19.99", ...}
    Rows without a usable price are dropped (product unavailable this pass).
    """
    if isinstance(data, dict) and ("prices" in data or "data" in data):
        data = data.get("prices", data.get("data"))

    out: dict[str, Decimal] = {}
    if isinstance(data, dict):
        for pid, raw in data.items():
            price = parse_price(raw)
            if price is not None:
                out[str(pid)] = price
    elif isinstance(data, list):
        for row in data:
            if not isinstance(row, dict):
                continue
            parsed = parse_price_row(row)
            if parsed is not None:
                out[parsed[0]] = parsed[1]
    return out
