# src/pricewatch/errors.py
from __future__ import annotations


class PriceWatchError(Exception):
    """Base class for pipeline errors."""


class FetchUnavailable(PriceWatchError):
    """A whole PriceFetcher call failed. Only that batch's items are skipped."""


class ConflictError(PriceWatchError):
    """Optimistic check failed for one snapshot; retry that item, not the batch."""

    def __init__(self, item_id: str, reason: str = "concurrent modification"):
        super().__init__(f"{item_id}: {reason}")
        self.item_id = item_id
        self.reason = reason


class DispatchFailed(PriceWatchError):
    """A notification could not be delivered (turned into a DispatchResult by adapters)."""


class StoreUnavailable(PriceWatchError):
    """The snapshot store cannot be reached. Fatal for the current run."""


class SnapshotNotFound(PriceWatchError, KeyError):
    """Lifecycle operation on an item that is not enrolled."""

    def __init__(self, item_id: str):
        super().__init__(item_id)
        self.item_id = item_id

    def __str__(self) -> str:
        return f"no price snapshot for item {self.item_id!r}"
