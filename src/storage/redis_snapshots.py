# src/storage/redis_snapshots.py
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import replace
from decimal import Decimal
from typing import Callable, Iterable, Optional, Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from pricewatch.errors import ConflictError, SnapshotNotFound, StoreUnavailable
from pricewatch.utils.types import DEFAULT_COOLDOWN_SECONDS, WishlistItemSnapshot

log = structlog.get_logger("snapshot_store")


class PriceSnapshotStore(Protocol):
    async def get(self, item_id: str) -> Optional[WishlistItemSnapshot]: ...
    async def load_due(self, batch_size: int, now: float) -> list[WishlistItemSnapshot]: ...
    async def update(self, snapshot: WishlistItemSnapshot) -> WishlistItemSnapshot: ...
    async def mark_checked(self, item_ids: Iterable[str], now: float) -> None: ...
    async def deactivate(self, item_id: str) -> WishlistItemSnapshot: ...
    async def remove(self, item_id: str) -> bool: ...


# ---- hash codec (redis hashes hold strings only) ----

def _s(v) -> str:
    return "" if v is None else str(v)

def _dec(v: Optional[str]) -> Optional[Decimal]:
    return Decimal(v) if v else None

def _flt(v: Optional[str]) -> Optional[float]:
    return float(v) if v else None

def encode_snapshot(s: WishlistItemSnapshot) -> dict[str, str]:
    return {
        "item_id": s.item_id,
        "product_id": s.product_id,
        "threshold": _s(s.threshold_price),
        "last_price": _s(s.last_observed_price),
        "active": "1" if s.alert_active else "0",
        "last_notified_at": "" if s.last_notified_at is None else repr(float(s.last_notified_at)),
        "last_checked_at": "" if s.last_checked_at is None else repr(float(s.last_checked_at)),
        "pending_from": _s(s.pending_alert_from),
        "cooldown_s": str(int(s.cooldown_seconds)),
        "version": str(int(s.version)),
    }

def decode_snapshot(row: dict) -> WishlistItemSnapshot:
    return WishlistItemSnapshot(
        item_id=row["item_id"],
        product_id=row["product_id"],
        threshold_price=_dec(row.get("threshold")),
        last_observed_price=_dec(row.get("last_price")),
        alert_active=row.get("active", "1") == "1",
        last_notified_at=_flt(row.get("last_notified_at")),
        last_checked_at=_flt(row.get("last_checked_at")),
        pending_alert_from=_dec(row.get("pending_from")),
        cooldown_seconds=int(row.get("cooldown_s") or DEFAULT_COOLDOWN_SECONDS),
        version=int(row.get("version") or 0),
    )


class RedisSnapshotStore:
    """
    Price snapshots in Redis, one hash per wishlist item.

    Keys (prefix defaults to "pricewatch"):
      {prefix}:snap:{item_id}  hash, see encode_snapshot()
      {prefix}:queue           zset of active items off cooldown, score = last_checked_at (0 = never)
      {prefix}:cooldown        zset of active items cooling down, score = epoch when cooldown ends

    Every write goes through a WATCH/MULTI transaction that also checks the
    snapshot's version, so a stale writer gets ConflictError instead of
    silently rolling a newer price back. Connection-level failures surface
    as StoreUnavailable.

    Expects a client created with decode_responses=True.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str = "pricewatch",
        default_cooldown_s: int = DEFAULT_COOLDOWN_SECONDS,
    ):
        self.redis = redis
        self.prefix = prefix
        self.default_cooldown_s = int(default_cooldown_s)
        self.queue_key = f"{prefix}:queue"
        self.cooldown_key = f"{prefix}:cooldown"

    def key(self, item_id: str) -> str:
        return f"{self.prefix}:snap:{item_id}"

    @asynccontextmanager
    async def _guard(self, op: str, item_id: Optional[str] = None):
        try:
            yield
        except WatchError as e:
            raise ConflictError(item_id or "?", "modified during transaction") from e
        except RedisError as e:
            log.error("store_unavailable", op=op, item_id=item_id, err=str(e))
            raise StoreUnavailable(f"{op} failed: {e}") from e

    # ---------------------------- lifecycle ---------------------------- #

    async def enroll(
        self,
        item_id: str,
        product_id: str,
        *,
        threshold: Optional[Decimal] = None,
        cooldown_seconds: Optional[int] = None,
        initial_price: Optional[Decimal] = None,
    ) -> WishlistItemSnapshot:
        """
        Opt an item into price monitoring (re-enrolling resets its state).
        `initial_price` is the price the user saw when opting in; without it
        the first evaluation only records the price.
        """
        fresh = WishlistItemSnapshot(
            item_id=item_id,
            product_id=product_id,
            threshold_price=threshold,
            last_observed_price=initial_price,
            cooldown_seconds=self.default_cooldown_s if cooldown_seconds is None else int(cooldown_seconds),
        )
        saved = await self._commit(item_id, lambda current: fresh, allow_missing=True)
        log.info("price_alert_enrolled", item_id=item_id, product_id=product_id,
                 threshold=_s(threshold) or None, initial_price=_s(initial_price) or None)
        return saved

    async def get(self, item_id: str) -> Optional[WishlistItemSnapshot]:
        async with self._guard("get", item_id):
            row = await self.redis.hgetall(self.key(item_id))
        return decode_snapshot(row) if row else None

    async def activate(self, item_id: str) -> WishlistItemSnapshot:
        return await self._commit(item_id, lambda current: replace(current, alert_active=True))

    async def deactivate(self, item_id: str) -> WishlistItemSnapshot:
        return await self._commit(item_id, lambda current: replace(current, alert_active=False))

    async def remove(self, item_id: str) -> bool:
        """Hard delete (the wishlist item is gone). True if a snapshot existed."""
        async with self._guard("remove", item_id):
            pipe = self.redis.pipeline(transaction=True)
            pipe.delete(self.key(item_id))
            pipe.zrem(self.queue_key, item_id)
            pipe.zrem(self.cooldown_key, item_id)
            deleted, _, _ = await pipe.execute()
        return bool(deleted)

    # ---------------------------- monitoring ---------------------------- #

    async def load_due(self, batch_size: int, now: float) -> list[WishlistItemSnapshot]:
        """
        Up to `batch_size` active snapshots that are not cooling down,
        least recently serviced first. Items whose cooldown ended by `now`
        are moved back into the queue first.

        "Serviced" is last_checked_at, not last_notified_at: ordering by the
        notification time alone would leave never-alerted items (all tied at
        zero) in front forever. An item coming off cooldown re-enters at its
        notification time, so it still waits behind items checked earlier.
        """
        if batch_size <= 0:
            return []
        async with self._guard("load_due"):
            await self._release_cooled(now)
            ids = await self.redis.zrange(self.queue_key, 0, batch_size - 1)
            if not ids:
                return []
            pipe = self.redis.pipeline(transaction=False)
            for item_id in ids:
                pipe.hgetall(self.key(item_id))
            rows = await pipe.execute()

            due: list[WishlistItemSnapshot] = []
            drifted: list[WishlistItemSnapshot] = []
            missing: list[str] = []
            for item_id, row in zip(ids, rows):
                if not row:
                    missing.append(item_id)
                    continue
                snap = decode_snapshot(row)
                if not snap.alert_active or snap.on_cooldown(now):
                    drifted.append(snap)
                    continue
                due.append(snap)
            if missing or drifted:
                # index disagrees with the hashes; put entries where they belong
                pipe = self.redis.pipeline(transaction=True)
                if missing:
                    pipe.zrem(self.queue_key, *missing)
                for snap in drifted:
                    self._index(pipe, replace(snap, last_checked_at=now))
                await pipe.execute()
                log.warning("queue_entries_reindexed", missing=len(missing), drifted=len(drifted))
        return due

    async def update(self, snapshot: WishlistItemSnapshot) -> WishlistItemSnapshot:
        """
        Persist `snapshot` if nobody wrote the item since it was loaded.
        Returns the saved snapshot (version + 1); ConflictError otherwise.
        """
        return await self._commit(
            snapshot.item_id, lambda current: snapshot, expected_version=snapshot.version
        )

    async def mark_checked(self, item_ids: Iterable[str], now: float) -> None:
        """Move evaluated-but-unchanged items to the back of the queue."""
        ids = list(item_ids)
        if not ids:
            return
        async with self._guard("mark_checked"):
            # xx: never re-add an item that left the queue meanwhile
            await self.redis.zadd(self.queue_key, {i: now for i in ids}, xx=True)

    # ---------------------------- internals ---------------------------- #

    async def _release_cooled(self, now: float) -> None:
        ids = await self.redis.zrangebyscore(self.cooldown_key, "-inf", now)
        if not ids:
            return
        pipe = self.redis.pipeline(transaction=False)
        for item_id in ids:
            pipe.hget(self.key(item_id), "last_notified_at")
        notified = await pipe.execute()

        pipe = self.redis.pipeline(transaction=True)
        # back of the line relative to items checked before the notification
        pipe.zadd(self.queue_key, {i: _flt(ts) or 0.0 for i, ts in zip(ids, notified)}, nx=True)
        pipe.zrem(self.cooldown_key, *ids)
        await pipe.execute()

    def _index(self, pipe, s: WishlistItemSnapshot) -> None:
        if not s.alert_active:
            pipe.zrem(self.queue_key, s.item_id)
            pipe.zrem(self.cooldown_key, s.item_id)
            return
        until = s.cooldown_until()
        if until is not None and until > (s.last_checked_at or 0.0):
            pipe.zrem(self.queue_key, s.item_id)
            pipe.zadd(self.cooldown_key, {s.item_id: until})
        else:
            pipe.zrem(self.cooldown_key, s.item_id)
            pipe.zadd(self.queue_key, {s.item_id: s.last_checked_at or 0.0})

    async def _commit(
        self,
        item_id: str,
        change: Callable[[Optional[WishlistItemSnapshot]], WishlistItemSnapshot],
        *,
        expected_version: Optional[int] = None,
        allow_missing: bool = False,
    ) -> WishlistItemSnapshot:
        key = self.key(item_id)
        async with self._guard("commit", item_id):
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                row = await pipe.hgetall(key)
                current = decode_snapshot(row) if row else None

                if current is None and not allow_missing:
                    if expected_version is not None:
                        raise ConflictError(item_id, "snapshot no longer exists")
                    raise SnapshotNotFound(item_id)
                if expected_version is not None and current is not None and current.version != expected_version:
                    raise ConflictError(
                        item_id, f"version {expected_version} is stale (stored {current.version})"
                    )

                base_version = current.version if current is not None else 0
                saved = replace(change(current), version=base_version + 1)

                pipe.multi()
                pipe.hset(key, mapping=encode_snapshot(saved))
                self._index(pipe, saved)
                await pipe.execute()
        return saved
