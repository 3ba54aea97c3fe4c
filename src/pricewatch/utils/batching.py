from __future__ import annotations

from typing import Iterable, Iterator, TypeVar

T = TypeVar("T")

MAX_FETCH_BATCH = 100  # ids per PriceFetcher call


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive lists of at most `size` items."""
    if size <= 0:
        raise ValueError("size must be positive")
    batch: list[T] = []
    for it in items:
        batch.append(it)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


def distinct_in_order(items: Iterable[T]) -> list[T]:
    """Drop duplicates, keep first-seen order."""
    seen: set = set()
    out: list[T] = []
    for it in items:
        if it in seen:
            continue
        seen.add(it)
        out.append(it)
    return out


def fetch_batches(product_ids: Iterable[str], size: int = MAX_FETCH_BATCH) -> list[list[str]]:
    """
    Partition product ids into fetch batches: each id once, at most
    min(size, MAX_FETCH_BATCH) ids per batch.
    """
    return list(chunked(distinct_in_order(product_ids), min(size, MAX_FETCH_BATCH)))
