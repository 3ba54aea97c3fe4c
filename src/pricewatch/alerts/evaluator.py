# src/pricewatch/alerts/evaluator.py
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pricewatch.utils.types import Decision, Outcome, WishlistItemSnapshot

NO_DATA = Decision(Outcome.NO_CHANGE, reason="unavailable")
UNCHANGED = Decision(Outcome.NO_CHANGE, reason="unchanged")


class ThresholdEvaluator:
    """
    Decides what one observation means for one snapshot. Pure: no I/O, no clock.

    Rules, in order:
      1) no current price (fetch omitted the product) -> NO_CHANGE
      2) first observation                            -> NO_CHANGE, record price
      3) same price as before                         -> NO_CHANGE, nothing written
      4) lower price, within threshold (or no threshold), cooldown elapsed
                                                      -> TRIGGER(new_price)
      5) anything else (rose, above threshold, cooling down)
                                                      -> PRICE_UPDATED(new_price)
    """

    def evaluate(
        self,
        snapshot: WishlistItemSnapshot,
        current: Optional[Decimal],
        now: float,
    ) -> Decision:
        if current is None:
            return NO_DATA

        previous = snapshot.last_observed_price
        if previous is None:
            # never notify on enrollment
            return Decision(Outcome.NO_CHANGE, new_price=current, reason="first_observation")

        if current == previous:
            return UNCHANGED

        if current > previous:
            return Decision(Outcome.PRICE_UPDATED, new_price=current, reason="price_rose")

        if not self._within_threshold(snapshot, current):
            return Decision(Outcome.PRICE_UPDATED, new_price=current, reason="above_threshold")

        if snapshot.on_cooldown(now):
            return Decision(Outcome.PRICE_UPDATED, new_price=current, reason="cooling_down")

        return Decision(Outcome.TRIGGER, new_price=current, old_price=previous, reason="dropped")

    def redelivers(
        self,
        snapshot: WishlistItemSnapshot,
        current: Optional[Decimal],
        now: float,
    ) -> bool:
        """
        True if an earlier alert that was never delivered still holds at
        `current`: still below the price it was measured from, within the
        threshold, and the item is not cooling down.
        """
        pending = snapshot.pending_alert_from
        if pending is None or current is None or current >= pending:
            return False
        return self._within_threshold(snapshot, current) and not snapshot.on_cooldown(now)

    @staticmethod
    def _within_threshold(snapshot: WishlistItemSnapshot, current: Decimal) -> bool:
        return snapshot.threshold_price is None or current <= snapshot.threshold_price
