# src/pricewatch/runner.py
from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

import structlog

from pricewatch.alerts.evaluator import ThresholdEvaluator
from pricewatch.config import RunConfig
from pricewatch.errors import ConflictError, StoreUnavailable
from pricewatch.fetch.base import PriceFetcher
from pricewatch.notify.base import DispatchResult, NotificationDispatcher
from pricewatch.utils.batching import fetch_batches
from pricewatch.utils.time import utc_now_s
from pricewatch.utils.types import Decision, Outcome, PriceDropAlert, RunSummary, WishlistItemSnapshot
from storage.redis_snapshots import PriceSnapshotStore

NOTIFIED_WRITE_ATTEMPTS = 5


class RunPhase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    FETCHING = "fetching"
    EVALUATING = "evaluating"
    PERSISTING = "persisting"
    NOTIFYING = "notifying"
    DONE = "done"


class RunLock(Protocol):
    async def acquire(self) -> bool: ...
    async def release(self) -> bool: ...
    async def extend(self) -> bool: ...


class MonitorRunner:
    """
    One evaluation pass over due wishlist snapshots.

    Loading -> Fetching -> Evaluating -> Persisting -> Notifying -> Done

    - Fetch batches run concurrently (bounded); a failed or timed-out batch
      only skips its own items.
    - Every observed price is written before any notification goes out, so a
      failed send never loses the observation.
    - ConflictError on one item skips that item; the rest of the run goes on.
    - A failed send leaves last_notified_at unset and the alert pending on the
      snapshot; the next scheduled pass is the retry. Nothing is retried in-process.
    - A send that succeeded is always recorded: a version conflict on that
      write re-reads the item and applies last_notified_at again.
    - StoreUnavailable aborts the run and propagates to the caller.
      In-flight sends are cancelled first.
    - The run lock is extended before Persisting and before Notifying; if it
      has lapsed the pass stops there.

    Usage:
        runner = MonitorRunner(store, fetcher, dispatcher, lock=RedisRunLock(redis))
        summary = await runner.run_once(RunConfig(batch_size=500))
    """

    def __init__(
        self,
        store: PriceSnapshotStore,
        fetcher: PriceFetcher,
        dispatcher: NotificationDispatcher,
        *,
        lock: Optional[RunLock] = None,
        evaluator: Optional[ThresholdEvaluator] = None,
        clock: Callable[[], float] = utc_now_s,
        on_summary: Optional[Callable[[RunSummary], Awaitable[None]]] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.dispatcher = dispatcher
        self.lock = lock
        self.evaluator = evaluator or ThresholdEvaluator()
        self.clock = clock
        self.on_summary = on_summary
        self.phase = RunPhase.IDLE
        self._log = structlog.get_logger("runner")

    # ---------------------------- public API ---------------------------- #

    async def run_once(self, cfg: Optional[RunConfig] = None) -> RunSummary:
        cfg = cfg or RunConfig()
        summary = RunSummary(run_id=uuid.uuid4().hex[:12], started_at=self.clock())
        log = self._log.bind(run_id=summary.run_id)

        if self.lock is not None and not await self.lock.acquire():
            summary.skipped = True
            summary.finished_at = self.clock()
            log.info("run_skipped_lock_held")
            return summary

        try:
            await self._run(cfg, summary, log)
        except StoreUnavailable as e:
            log.error("run_aborted_store_unavailable", err=str(e), **summary.counts())
            raise
        finally:
            self.phase = RunPhase.IDLE
            await self._release_lock(log)

        summary.finished_at = self.clock()
        log.info("run_done", duration_s=round(summary.duration_s, 3), **summary.counts())
        if self.on_summary is not None:
            try:
                await self.on_summary(summary)
            except Exception as e:
                log.warning("run_summary_sink_failed", err=str(e))
        return summary

    # --------------------------- core internals ------------------------- #

    def _enter(self, phase: RunPhase, log, **kw) -> None:
        self.phase = phase
        log.debug("run_phase", phase=phase.value, **kw)

    async def _run(self, cfg: RunConfig, summary: RunSummary, log) -> None:
        now = summary.started_at

        self._enter(RunPhase.LOADING, log)
        snapshots = await self.store.load_due(cfg.batch_size, now)
        if not snapshots:
            self._enter(RunPhase.DONE, log)
            return

        self._enter(RunPhase.FETCHING, log, snapshots=len(snapshots))
        prices, failed_products = await self._fetch_all(snapshots, cfg, log)

        self._enter(RunPhase.EVALUATING, log)
        to_update: list[tuple[WishlistItemSnapshot, Decision]] = []
        to_notify: list[tuple[WishlistItemSnapshot, Decision]] = []
        unchanged: list[str] = []
        for snap in snapshots:
            if snap.product_id in failed_products:
                summary.fetch_errors += 1
                continue
            summary.evaluated += 1
            decision = self._decide(snap, prices.get(snap.product_id), now)
            if decision.notifies:
                to_notify.append((snap, decision))
            elif decision.persists:
                to_update.append((snap, decision))
            else:
                unchanged.append(snap.item_id)
            log.debug("item_evaluated", item_id=snap.item_id, outcome=decision.outcome.value,
                      reason=decision.reason)

        if not await self._extend_lock(log):
            return
        self._enter(RunPhase.PERSISTING, log, updates=len(to_update) + len(to_notify))
        for snap, decision in to_update:
            await self._persist_price(snap, decision, now, summary, log)
        # triggers whose price (and pending alert) is on disk
        deliverable: list[tuple[Decision, WishlistItemSnapshot]] = []
        for snap, decision in to_notify:
            saved = await self._persist_price(snap, decision, now, summary, log)
            if saved is not None:
                deliverable.append((decision, saved))
        await self.store.mark_checked(unchanged, now)

        if not await self._extend_lock(log):
            return
        self._enter(RunPhase.NOTIFYING, log, alerts=len(deliverable))
        await self._notify_all(deliverable, cfg, now, summary, log)

        self._enter(RunPhase.DONE, log)

    def _decide(self, snap: WishlistItemSnapshot, current: Optional[Decimal], now: float) -> Decision:
        decision = self.evaluator.evaluate(snap, current, now)
        pending = snap.pending_alert_from
        if pending is None:
            return decision
        if decision.notifies:
            # the user never heard about the earlier drop; measure from there
            return replace(decision, old_price=max(pending, decision.old_price))
        if self.evaluator.redelivers(snap, current, now):
            return Decision(Outcome.TRIGGER, new_price=current, old_price=pending, reason="undelivered")
        return decision

    async def _fetch_all(
        self, snapshots: list[WishlistItemSnapshot], cfg: RunConfig, log
    ) -> tuple[dict[str, Decimal], set[str]]:
        """
        Fetch each distinct product once. Returns (prices, product ids whose
        batch failed); ids absent from both were simply not resolvable.
        """
        batches = fetch_batches((s.product_id for s in snapshots), cfg.fetch_batch_size)
        sem = asyncio.Semaphore(cfg.fetch_concurrency)

        async def one(batch: list[str]) -> tuple[list[str], Optional[dict[str, Decimal]]]:
            async with sem:
                try:
                    got = await asyncio.wait_for(self.fetcher.fetch_prices(set(batch)), cfg.fetch_timeout_s)
                    return batch, got
                except asyncio.TimeoutError:
                    log.warning("fetch_batch_timeout", products=len(batch), timeout_s=cfg.fetch_timeout_s)
                except Exception as e:
                    log.warning("fetch_batch_failed", products=len(batch), err=str(e),
                                err_type=type(e).__name__)
                return batch, None

        prices: dict[str, Decimal] = {}
        failed: set[str] = set()
        for batch, got in await asyncio.gather(*(one(b) for b in batches)):
            if got is None:
                failed.update(batch)
                continue
            for pid in batch:
                if pid in got:
                    prices[pid] = got[pid]
        return prices, failed

    async def _persist_price(
        self,
        snap: WishlistItemSnapshot,
        decision: Decision,
        now: float,
        summary: RunSummary,
        log,
    ) -> Optional[WishlistItemSnapshot]:
        # a trigger stays pending until a send succeeds
        pending = decision.old_price if decision.notifies else None
        try:
            saved = await self.store.update(replace(
                snap, last_observed_price=decision.new_price, last_checked_at=now, pending_alert_from=pending,
            ))
        except ConflictError as e:
            summary.conflicts += 1
            log.warning("snapshot_conflict_skipped", item_id=snap.item_id, reason=e.reason)
            return None
        summary.updated += 1
        return saved

    async def _notify_all(
        self,
        deliverable: list[tuple[Decision, WishlistItemSnapshot]],
        cfg: RunConfig,
        now: float,
        summary: RunSummary,
        log,
    ) -> None:
        if not deliverable:
            return
        sem = asyncio.Semaphore(cfg.notify_concurrency)

        async def one(decision: Decision, saved: WishlistItemSnapshot) -> None:
            alert = PriceDropAlert(
                item_id=saved.item_id,
                product_id=saved.product_id,
                old_price=decision.old_price,
                new_price=saved.last_observed_price,
                threshold_price=saved.threshold_price,
                detected_at=now,
            )
            async with sem:
                result = await self._dispatch(alert, cfg.notify_timeout_s)
            if not result.ok:
                summary.failed += 1
                log.warning("notify_failed", item_id=alert.item_id, reason=result.reason)
                return
            summary.notified += 1
            log.info("notify_sent", item_id=alert.item_id, product_id=alert.product_id,
                     old_price=str(alert.old_price), new_price=str(alert.new_price))
            await self._record_notified(saved, now, summary, log)

        tasks = [asyncio.ensure_future(one(d, s)) for d, s in deliverable]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # no sends may outlive the run (and its lock)
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _record_notified(
        self, saved: WishlistItemSnapshot, now: float, summary: RunSummary, log
    ) -> None:
        """
        Write last_notified_at after a successful send. A concurrent writer
        only moved the version, so re-read and re-apply; the cooldown must
        be on disk or the next pass would alert again.
        """
        current: Optional[WishlistItemSnapshot] = saved
        for attempt in range(1, NOTIFIED_WRITE_ATTEMPTS + 1):
            try:
                await self.store.update(replace(current, last_notified_at=now, pending_alert_from=None))
                return
            except ConflictError as e:
                log.info("notified_at_conflict_retry", item_id=saved.item_id, reason=e.reason, attempt=attempt)
            current = await self.store.get(saved.item_id)
            if current is None or not current.alert_active:
                log.info("notified_at_item_gone", item_id=saved.item_id)
                return
        summary.conflicts += 1
        log.warning("notified_at_conflict", item_id=saved.item_id, attempts=NOTIFIED_WRITE_ATTEMPTS)

    async def _dispatch(self, alert: PriceDropAlert, timeout_s: float) -> DispatchResult:
        try:
            return await asyncio.wait_for(self.dispatcher.send(alert), timeout_s)
        except asyncio.TimeoutError:
            return DispatchResult.failure(f"timeout after {timeout_s}s")
        except Exception as e:
            return DispatchResult.failure(f"{type(e).__name__}: {e}")

    async def _release_lock(self, log) -> None:
        if self.lock is None:
            return
        try:
            await self.lock.release()
        except StoreUnavailable as e:
            # lock lapses on its own ttl
            log.warning("run_lock_release_failed", err=str(e))

    async def _extend_lock(self, log) -> bool:
        """False if the run lock lapsed; the pass stops and leaves the rest to the next holder."""
        if self.lock is None:
            return True
        if await self.lock.extend():
            return True
        log.warning("run_aborted_lock_lost", phase=self.phase.value)
        return False
