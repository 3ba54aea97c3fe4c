import asyncio
from dataclasses import replace
from decimal import Decimal as D

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from pricewatch.config import RunConfig
from pricewatch.errors import ConflictError, StoreUnavailable
from pricewatch.runner import MonitorRunner, RunPhase
from storage.redis_lock import RedisRunLock
from storage.redis_snapshots import RedisSnapshotStore
from tests.helpers.fake_pipeline import Clock, FakeDispatcher, FakeFetcher
from tests.helpers.fake_redis import FakeRedis

COOLDOWN = 3600


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def redis(clock):
    return FakeRedis(clock=clock)


@pytest.fixture
def store(redis):
    return RedisSnapshotStore(redis, prefix="t", default_cooldown_s=COOLDOWN)


def make_runner(store, fetcher, dispatcher, clock, **kw):
    return MonitorRunner(store, fetcher, dispatcher, clock=clock, **kw)


@pytest.mark.asyncio
async def test_drop_below_threshold_notifies_and_records(store, clock):
    await store.enroll("A", "pA", threshold=D("50"), initial_price=D("60"))
    fetcher = FakeFetcher({"pA": D("45")})
    dispatcher = FakeDispatcher()
    runner = make_runner(store, fetcher, dispatcher, clock)

    summary = await runner.run_once()

    assert (summary.evaluated, summary.updated, summary.notified, summary.failed) == (1, 1, 1, 0)
    [alert] = dispatcher.sent
    assert (alert.item_id, alert.product_id) == ("A", "pA")
    assert (alert.old_price, alert.new_price) == (D("60"), D("45"))
    assert alert.savings == D("15")

    s = await store.get("A")
    assert s.last_observed_price == D("45")
    assert s.last_notified_at == clock.t
    assert s.pending_alert_from is None
    assert runner.phase is RunPhase.IDLE


@pytest.mark.asyncio
async def test_first_observation_records_price_silently(store, clock):
    await store.enroll("B", "pB")
    dispatcher = FakeDispatcher()
    summary = await make_runner(store, FakeFetcher({"pB": D("30")}), dispatcher, clock).run_once()

    assert summary.updated == 1 and summary.notified == 0
    assert dispatcher.sent == []
    assert (await store.get("B")).last_observed_price == D("30")


@pytest.mark.asyncio
async def test_missing_price_leaves_snapshot_untouched(store, clock):
    before = await store.enroll("D", "pD", initial_price=D("20"))
    summary = await make_runner(store, FakeFetcher({}), FakeDispatcher(), clock).run_once()

    assert summary.evaluated == 1 and summary.updated == 0
    after = await store.get("D")
    assert after.version == before.version
    assert after.last_observed_price == D("20")


@pytest.mark.asyncio
async def test_no_duplicate_within_cooldown_then_realert(store, clock):
    await store.enroll("A", "pA", threshold=D("50"), initial_price=D("60"))
    fetcher = FakeFetcher({"pA": D("45")})
    dispatcher = FakeDispatcher()
    runner = make_runner(store, fetcher, dispatcher, clock)

    await runner.run_once()
    fetcher.prices["pA"] = D("40")
    for _ in range(3):
        clock.advance(COOLDOWN / 4)
        summary = await runner.run_once()
        assert summary.notified == 0
    assert len(dispatcher.sent) == 1

    clock.advance(COOLDOWN / 4)
    summary = await runner.run_once()
    assert summary.notified == 1
    assert [a.new_price for a in dispatcher.sent] == [D("45"), D("40")]
    assert dispatcher.sent[1].old_price == D("45")


@pytest.mark.asyncio
async def test_failed_dispatch_keeps_price_and_retries_next_pass(store, clock):
    await store.enroll("A", "pA", threshold=D("50"), initial_price=D("60"))
    dispatcher = FakeDispatcher(fail_for={"A"})
    runner = make_runner(store, FakeFetcher({"pA": D("45")}), dispatcher, clock)

    summary = await runner.run_once()
    assert (summary.updated, summary.notified, summary.failed) == (1, 0, 1)
    s = await store.get("A")
    assert s.last_observed_price == D("45")
    assert s.last_notified_at is None
    assert s.pending_alert_from == D("60")

    dispatcher.fail_for.clear()
    clock.advance(60)
    summary = await runner.run_once()
    assert summary.notified == 1
    [alert] = dispatcher.sent
    assert (alert.old_price, alert.new_price) == (D("60"), D("45"))
    s = await store.get("A")
    assert s.last_notified_at == clock.t
    assert s.pending_alert_from is None


@pytest.mark.asyncio
async def test_raising_or_slow_dispatcher_counts_as_failure(store, clock):
    await store.enroll("A", "pA", initial_price=D("10"))
    await store.enroll("B", "pB", initial_price=D("10"))

    class Slow(FakeDispatcher):
        async def send(self, alert):
            if alert.item_id == "B":
                await asyncio.sleep(1)
            return await super().send(alert)

    dispatcher = Slow(raise_for={"A"})
    runner = make_runner(store, FakeFetcher({"pA": D("5"), "pB": D("5")}), dispatcher, clock)
    summary = await runner.run_once(RunConfig(notify_timeout_s=0.05))

    assert summary.failed == 2 and summary.notified == 0
    assert (await store.get("A")).last_notified_at is None
    assert (await store.get("B")).last_notified_at is None


@pytest.mark.asyncio
async def test_conflict_on_one_item_skips_only_that_item(store, clock):
    for i in range(5):
        await store.enroll(f"i{i}", f"p{i}", initial_price=D("10"))

    class RacyStore(RedisSnapshotStore):
        async def update(self, snapshot):
            if snapshot.item_id == "i2":
                raise ConflictError("i2", "version 1 is stale (stored 2)")
            return await super().update(snapshot)

    racy = RacyStore(store.redis, prefix="t", default_cooldown_s=COOLDOWN)
    dispatcher = FakeDispatcher()
    fetcher = FakeFetcher({f"p{i}": D("8") for i in range(5)})
    summary = await make_runner(racy, fetcher, dispatcher, clock).run_once()

    assert summary.conflicts == 1
    assert summary.updated == 4
    assert sorted(a.item_id for a in dispatcher.sent) == ["i0", "i1", "i3", "i4"]
    assert (await store.get("i2")).last_observed_price == D("10")


@pytest.mark.asyncio
async def test_concurrent_writer_makes_item_conflict(store, redis, clock):
    await store.enroll("A", "pA", initial_price=D("10"))
    await store.enroll("B", "pB", initial_price=D("10"))

    class Interloper(FakeFetcher):
        async def fetch_prices(self, product_ids):
            got = await super().fetch_prices(product_ids)
            # someone else updates A between load and persist
            s = await store.get("A")
            await store.update(replace(s, last_observed_price=D("7")))
            return got

    fetcher = Interloper({"pA": D("12"), "pB": D("12")})
    summary = await make_runner(store, fetcher, FakeDispatcher(), clock).run_once()

    assert summary.conflicts == 1 and summary.updated == 1
    assert (await store.get("A")).last_observed_price == D("7")
    assert (await store.get("B")).last_observed_price == D("12")


@pytest.mark.asyncio
async def test_failed_fetch_batch_only_skips_its_items(store, clock):
    for i in range(4):
        await store.enroll(f"i{i}", f"p{i}", initial_price=D("10"))
    fetcher = FakeFetcher({f"p{i}": D("11") for i in range(4)}, fail_on={"p0"})
    cfg = RunConfig(fetch_batch_size=2)
    summary = await make_runner(store, fetcher, FakeDispatcher(), clock).run_once(cfg)

    assert summary.fetch_errors == 2
    assert summary.evaluated == 2 and summary.updated == 2
    assert (await store.get("i0")).last_observed_price == D("10")
    assert (await store.get("i3")).last_observed_price == D("11")


@pytest.mark.asyncio
async def test_fetch_timeout_is_a_batch_failure(store, clock):
    await store.enroll("A", "pA", initial_price=D("10"))
    await store.enroll("B", "pB", initial_price=D("10"))
    fetcher = FakeFetcher({"pA": D("11"), "pB": D("11")}, slow_on={"pA"}, delay=1.0)
    cfg = RunConfig(fetch_batch_size=1, fetch_timeout_s=0.05)
    summary = await make_runner(store, fetcher, FakeDispatcher(), clock).run_once(cfg)

    assert summary.fetch_errors == 1
    assert summary.updated == 1
    assert (await store.get("B")).last_observed_price == D("11")


@pytest.mark.asyncio
async def test_shared_product_fetched_once_and_batches_bounded(store, clock):
    for i in range(7):
        await store.enroll(f"i{i}", "same-sku", initial_price=D("10"))
    for i in range(250):
        await store.enroll(f"x{i}", f"sku{i}")
    fetcher = FakeFetcher({"same-sku": D("9")})
    summary = await make_runner(store, fetcher, FakeDispatcher(), clock).run_once(RunConfig(batch_size=1000))

    assert all(len(c) <= 100 for c in fetcher.calls)
    requested = [p for c in fetcher.calls for p in c]
    assert requested.count("same-sku") == 1
    assert len(requested) == 251
    assert summary.notified == 7


@pytest.mark.asyncio
async def test_inactive_items_are_never_fetched(store, clock):
    await store.enroll("A", "pA", initial_price=D("10"))
    await store.enroll("B", "pB", initial_price=D("10"))
    await store.deactivate("B")
    fetcher = FakeFetcher({"pA": D("9"), "pB": D("1")})
    dispatcher = FakeDispatcher()
    await make_runner(store, fetcher, dispatcher, clock).run_once()

    assert all("pB" not in c for c in fetcher.calls)
    assert [a.item_id for a in dispatcher.sent] == ["A"]


@pytest.mark.asyncio
async def test_batch_size_bounds_load_and_rotates(store, clock):
    for i in range(5):
        await store.enroll(f"i{i}", f"p{i}", initial_price=D("10"))
    fetcher = FakeFetcher({f"p{i}": D("10") for i in range(5)})
    runner = make_runner(store, fetcher, FakeDispatcher(), clock)

    seen = []
    for _ in range(3):
        summary = await runner.run_once(RunConfig(batch_size=2))
        assert summary.evaluated == 2
        seen += [p for c in fetcher.calls for p in c]
        fetcher.calls.clear()
        clock.advance(1)
    # unchanged items move to the back, so every item gets a turn
    assert set(seen) == {f"p{i}" for i in range(5)}


@pytest.mark.asyncio
async def test_lock_held_elsewhere_skips_run(store, redis, clock):
    await store.enroll("A", "pA", initial_price=D("10"))
    other = RedisRunLock(redis, key="t:run-lock", ttl_s=60)
    assert await other.acquire()

    fetcher = FakeFetcher({"pA": D("5")})
    runner = make_runner(store, fetcher, FakeDispatcher(), clock,
                         lock=RedisRunLock(redis, key="t:run-lock", ttl_s=60))
    summary = await runner.run_once()

    assert summary.skipped is True
    assert fetcher.calls == []
    assert summary.evaluated == 0


@pytest.mark.asyncio
async def test_lock_released_after_run(store, redis, clock):
    lock = RedisRunLock(redis, key="t:run-lock", ttl_s=60)
    await make_runner(store, FakeFetcher(), FakeDispatcher(), clock, lock=lock).run_once()
    assert await redis.get("t:run-lock") is None


@pytest.mark.asyncio
async def test_store_outage_aborts_run_and_releases_lock(store, redis, clock):
    await store.enroll("A", "pA", initial_price=D("10"))
    lock_redis = FakeRedis(clock=clock)
    lock = RedisRunLock(lock_redis, key="t:run-lock", ttl_s=60)
    redis.fail_with = RedisConnectionError("connection refused")
    runner = make_runner(store, FakeFetcher({"pA": D("5")}), FakeDispatcher(), clock, lock=lock)

    with pytest.raises(StoreUnavailable):
        await runner.run_once()
    assert await lock_redis.get("t:run-lock") is None
    assert runner.phase is RunPhase.IDLE


@pytest.mark.asyncio
async def test_summary_sink_called_and_its_errors_ignored(store, clock):
    await store.enroll("A", "pA", initial_price=D("10"))
    got = []

    async def sink(summary):
        got.append(summary)
        raise RuntimeError("metrics down")

    runner = make_runner(store, FakeFetcher({"pA": D("9")}), FakeDispatcher(), clock, on_summary=sink)
    summary = await runner.run_once()

    assert got == [summary]
    assert summary.notified == 1
    assert summary.run_id


@pytest.mark.asyncio
async def test_further_drop_after_failed_send_reports_from_first_price(store, clock):
    await store.enroll("A", "pA", threshold=D("50"), initial_price=D("60"))
    fetcher = FakeFetcher({"pA": D("45")})
    dispatcher = FakeDispatcher(fail_for={"A"})
    runner = make_runner(store, fetcher, dispatcher, clock)
    await runner.run_once()

    dispatcher.fail_for.clear()
    fetcher.prices["pA"] = D("40")
    clock.advance(60)
    await runner.run_once()
    [alert] = dispatcher.sent
    assert (alert.old_price, alert.new_price) == (D("60"), D("40"))


@pytest.mark.asyncio
async def test_recovered_price_drops_undelivered_alert(store, clock):
    await store.enroll("A", "pA", threshold=D("50"), initial_price=D("60"))
    fetcher = FakeFetcher({"pA": D("45")})
    dispatcher = FakeDispatcher(fail_for={"A"})
    runner = make_runner(store, fetcher, dispatcher, clock)
    await runner.run_once()

    dispatcher.fail_for.clear()
    fetcher.prices["pA"] = D("58")
    clock.advance(60)
    summary = await runner.run_once()
    assert summary.notified == 0 and dispatcher.sent == []
    assert (await store.get("A")).pending_alert_from is None


@pytest.mark.asyncio
async def test_write_during_send_still_starts_cooldown(store, clock):
    await store.enroll("A", "pA", threshold=D("50"), initial_price=D("60"))

    class BusyDispatcher(FakeDispatcher):
        async def send(self, alert):
            # the wishlist service touches the item while the message is in flight
            await store.activate(alert.item_id)
            return await super().send(alert)

    dispatcher = BusyDispatcher()
    runner = make_runner(store, FakeFetcher({"pA": D("45")}), dispatcher, clock)
    first = await runner.run_once()
    clock.advance(60)
    await runner.run_once()

    assert len(dispatcher.sent) == 1
    assert first.notified == 1 and first.conflicts == 0
    s = await store.get("A")
    assert s.last_notified_at == clock.t - 60
    assert s.pending_alert_from is None


@pytest.mark.asyncio
async def test_item_removed_during_send_is_not_recreated(store, clock):
    await store.enroll("A", "pA", threshold=D("50"), initial_price=D("60"))

    class RemovingDispatcher(FakeDispatcher):
        async def send(self, alert):
            await store.remove(alert.item_id)
            return await super().send(alert)

    summary = await make_runner(store, FakeFetcher({"pA": D("45")}), RemovingDispatcher(), clock).run_once()

    assert summary.notified == 1
    assert await store.get("A") is None


@pytest.mark.asyncio
async def test_store_outage_while_notifying_cancels_other_sends(store, redis, clock):
    await store.enroll("A", "pA", initial_price=D("10"))
    await store.enroll("B", "pB", initial_price=D("10"))

    class FlakyStore(RedisSnapshotStore):
        async def update(self, snapshot):
            if snapshot.item_id == "A" and snapshot.last_notified_at is not None:
                raise StoreUnavailable("redis went away")
            return await super().update(snapshot)

    class SlowForB(FakeDispatcher):
        async def send(self, alert):
            if alert.item_id == "B":
                await asyncio.sleep(0.2)
            return await super().send(alert)

    flaky = FlakyStore(redis, prefix="t", default_cooldown_s=COOLDOWN)
    dispatcher = SlowForB()
    lock = RedisRunLock(redis, key="t:run-lock", ttl_s=60)
    fetcher = FakeFetcher({"pA": D("8"), "pB": D("8")})

    with pytest.raises(StoreUnavailable):
        await make_runner(flaky, fetcher, dispatcher, clock, lock=lock).run_once()
    await asyncio.sleep(0.3)

    assert [a.item_id for a in dispatcher.sent] == ["A"]
    assert await redis.get("t:run-lock") is None


@pytest.mark.asyncio
async def test_lock_extended_between_phases(store, redis, clock):
    await store.enroll("A", "pA", initial_price=D("10"))
    lock = RedisRunLock(redis, key="t:run-lock", ttl_s=60)
    held_while_sending = []

    class SlowFetcher(FakeFetcher):
        async def fetch_prices(self, product_ids):
            clock.advance(50)
            return await super().fetch_prices(product_ids)

    class SlowDispatcher(FakeDispatcher):
        async def send(self, alert):
            clock.advance(50)
            # 100s into a run with a 60s ttl
            held_while_sending.append(await redis.get("t:run-lock") == lock.token)
            return await super().send(alert)

    summary = await make_runner(store, SlowFetcher({"pA": D("8")}), SlowDispatcher(), clock,
                                lock=lock).run_once()

    assert summary.notified == 1
    assert held_while_sending == [True]


@pytest.mark.asyncio
async def test_lapsed_lock_stops_run_before_writing(store, redis, clock):
    await store.enroll("A", "pA", initial_price=D("10"))
    lock = RedisRunLock(redis, key="t:run-lock", ttl_s=60)
    other = RedisRunLock(redis, key="t:run-lock", ttl_s=60)

    class StalledFetcher(FakeFetcher):
        async def fetch_prices(self, product_ids):
            clock.advance(61)
            await other.acquire()
            return await super().fetch_prices(product_ids)

    dispatcher = FakeDispatcher()
    summary = await make_runner(store, StalledFetcher({"pA": D("8")}), dispatcher, clock,
                                lock=lock).run_once()

    assert summary.updated == 0 and dispatcher.sent == []
    assert (await store.get("A")).last_observed_price == D("10")
    assert other.token is not None
    assert await redis.get("t:run-lock") == other.token
