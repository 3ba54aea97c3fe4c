from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

# ---- monitored item state ----

DEFAULT_COOLDOWN_SECONDS = 86_400  # 24h between alerts for the same item


@dataclass(frozen=True, slots=True)
class WishlistItemSnapshot:
    """
    Price-monitoring state of one wishlist item.

    Owned by the wishlist item; the pipeline only reads and updates it.
    `version` is bumped by the store on every write (optimistic locking).
    """
    item_id: str
    product_id: str
    threshold_price: Optional[Decimal] = None    # None -> any drop counts
    last_observed_price: Optional[Decimal] = None
    alert_active: bool = True
    last_notified_at: Optional[float] = None     # epoch seconds
    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS
    last_checked_at: Optional[float] = None      # epoch seconds
    pending_alert_from: Optional[Decimal] = None # old price of a triggered, undelivered alert
    version: int = 0

    def __post_init__(self) -> None:
        if self.threshold_price is not None and self.threshold_price < 0:
            raise ValueError(f"threshold_price must be non-negative, got {self.threshold_price}")
        if self.cooldown_seconds < 0:
            raise ValueError(f"cooldown_seconds must be non-negative, got {self.cooldown_seconds}")

    def cooldown_until(self) -> Optional[float]:
        if self.last_notified_at is None:
            return None
        return self.last_notified_at + self.cooldown_seconds

    def on_cooldown(self, now: float) -> bool:
        until = self.cooldown_until()
        return until is not None and now < until


# ---- evaluator output ----

class Outcome(str, Enum):
    NO_CHANGE = "no_change"
    PRICE_UPDATED = "price_updated"
    TRIGGER = "trigger"


@dataclass(frozen=True, slots=True)
class Decision:
    outcome: Outcome
    new_price: Optional[Decimal] = None  # set -> the observed price must be persisted
    reason: str = ""
    old_price: Optional[Decimal] = None  # TRIGGER only: the price the drop is measured from

    @property
    def persists(self) -> bool:
        return self.new_price is not None

    @property
    def notifies(self) -> bool:
        return self.outcome is Outcome.TRIGGER


# ---- alerting domain ----

@dataclass(frozen=True, slots=True)
class PriceDropAlert:
    item_id: str
    product_id: str
    old_price: Decimal
    new_price: Decimal
    threshold_price: Optional[Decimal] = None
    detected_at: float = 0.0

    @property
    def savings(self) -> Decimal:
        return self.old_price - self.new_price

    @property
    def savings_pct(self) -> float:
        if self.old_price <= 0:
            return 0.0
        return float(self.savings / self.old_price * 100)

    def to_payload(self) -> dict:
        """JSON-safe dict (decimals as strings)."""
        return {
            "type": "price_drop",
            "item_id": self.item_id,
            "product_id": self.product_id,
            "old_price": str(self.old_price),
            "new_price": str(self.new_price),
            "threshold_price": None if self.threshold_price is None else str(self.threshold_price),
            "savings": str(self.savings),
            "savings_pct": round(self.savings_pct, 2),
            "detected_at": self.detected_at,
        }


# ---- run bookkeeping ----

@dataclass(slots=True)
class RunSummary:
    run_id: str
    started_at: float = 0.0
    finished_at: float = 0.0
    evaluated: int = 0
    updated: int = 0
    notified: int = 0
    failed: int = 0
    conflicts: int = 0
    fetch_errors: int = 0
    skipped: bool = False

    @property
    def duration_s(self) -> float:
        return max(0.0, self.finished_at - self.started_at)

    def counts(self) -> dict[str, int]:
        return {
            "evaluated": self.evaluated,
            "updated": self.updated,
            "notified": self.notified,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "fetch_errors": self.fetch_errors,
        }
