from __future__ import annotations

from decimal import Decimal
from typing import Protocol


class PriceFetcher(Protocol):
    """
    Current prices for a set of product ids.

    Ids the source cannot resolve are simply left out of the result
    ("product unavailable", no data this pass). A failed call as a whole
    raises FetchUnavailable.
    """
    async def fetch_prices(self, product_ids: set[str]) -> dict[str, Decimal]: ...
