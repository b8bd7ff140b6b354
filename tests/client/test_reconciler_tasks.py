from __future__ import annotations

import asyncio

from depth_client.reconciler import Reconciler
from depth_core.messages import DiffEvent
from depth_core.sync_engine import AssetState
from tests._fakes import ControlledFetcher, settle, snapshot


def _diff(asset, u, U=None, bids=(), asks=()):
    return DiffEvent(
        asset=asset,
        event_time=0,
        first_update_id=u if U is None else U,
        final_update_id=u,
        bid_deltas=list(bids),
        ask_deltas=list(asks),
    )


def _make():
    fetcher = ControlledFetcher()
    applied = []
    rec = Reconciler(fetcher, on_applied=applied.append)
    return rec, fetcher, applied


def test_diffs_for_untracked_asset_are_dropped():
    async def scenario():
        rec, _, _ = _make()
        rec.depth_update(_diff("abcusd", 1))
        assert rec.engines == {}

    asyncio.run(scenario())


def test_buffered_diffs_spliced_around_snapshot():
    async def scenario():
        rec, fetcher, applied = _make()
        rec.start_sync("ABCUSD")
        assert rec.state("abcusd") == AssetState.BUFFERING
        rec.depth_update(_diff("abcusd", 5))
        rec.depth_update(_diff("abcusd", 8, U=6, asks=[["102", "3"]]))
        await settle()
        assert rec.book("abcusd") is None

        fetcher.release("abcusd", snapshot(6))
        await settle()

        book = rec.book("abcusd")
        assert book.last_update_id == 8
        assert applied == ["abcusd"]
        assert rec.state("abcusd") == AssetState.SYNCED
        rec.close()

    asyncio.run(scenario())


def test_drain_processes_at_most_one_item_per_tick():
    async def scenario():
        rec, fetcher, _ = _make()
        rec.start_sync("abcusd")
        await settle()
        fetcher.release("abcusd", snapshot(1))
        await settle()

        for u in range(2, 7):
            rec.depth_update(_diff("abcusd", u))
        await asyncio.sleep(0)
        assert len(rec.engines["abcusd"].buffer) >= 3

        await settle()
        assert len(rec.engines["abcusd"].buffer) == 0
        assert rec.book("abcusd").last_update_id == 6
        rec.close()

    asyncio.run(scenario())


def test_assets_drain_independently():
    async def scenario():
        rec, fetcher, applied = _make()
        rec.start_sync("aaa")
        rec.start_sync("bbb")
        await settle()
        fetcher.release("bbb", snapshot(1))
        await settle()

        rec.depth_update(_diff("aaa", 5))
        rec.depth_update(_diff("bbb", 5))
        await settle()

        assert rec.book("aaa") is None
        assert rec.book("bbb").last_update_id == 5
        assert applied == ["bbb"]
        rec.close()

    asyncio.run(scenario())


def test_unsubscribe_after_queued_diffs_processes_them_first():
    async def scenario():
        rec, fetcher, applied = _make()
        rec.start_sync("abcusd")
        await settle()
        fetcher.release("abcusd", snapshot(10))
        await settle()

        rec.depth_update(_diff("abcusd", 11))
        rec.depth_update(_diff("abcusd", 9))
        rec.depth_update(_diff("abcusd", 12))
        rec.request_teardown("abcusd")
        assert rec.book("abcusd") is not None
        assert rec.state("abcusd") == AssetState.DRAINING_TO_TEARDOWN
        assert not rec.tracked("abcusd")

        await settle()
        assert applied == ["abcusd", "abcusd"]
        assert rec.book("abcusd") is None
        assert "abcusd" not in rec.engines
        assert rec.state("abcusd") == AssetState.UNSUBSCRIBED

    asyncio.run(scenario())


def test_unsubscribe_while_buffering_honored_after_snapshot():
    async def scenario():
        rec, fetcher, applied = _make()
        rec.start_sync("abcusd")
        rec.depth_update(_diff("abcusd", 4))
        rec.request_teardown("abcusd")
        await settle()
        assert "abcusd" in rec.engines

        fetcher.release("abcusd", snapshot(2))
        await settle()
        assert applied == ["abcusd"]
        assert rec.engines == {}
        assert dict(rec.books) == {}

    asyncio.run(scenario())


def test_failed_snapshot_leaves_asset_buffering():
    async def scenario():
        rec, fetcher, _ = _make()
        rec.start_sync("abcusd")
        await settle()
        fetcher.fail("abcusd")
        await settle()

        rec.depth_update(_diff("abcusd", 1))
        rec.depth_update(_diff("abcusd", 2))
        assert rec.state("abcusd") == AssetState.BUFFERING
        assert len(rec.engines["abcusd"].buffer) == 2

        # no snapshot is coming, so teardown happens immediately
        rec.request_teardown("abcusd")
        assert rec.engines == {}

    asyncio.run(scenario())


def test_failed_snapshot_with_pending_teardown_abandons():
    async def scenario():
        rec, fetcher, _ = _make()
        rec.start_sync("abcusd")
        await settle()
        rec.request_teardown("abcusd")
        fetcher.fail("abcusd")
        await settle()
        assert rec.engines == {}

    asyncio.run(scenario())


def test_resubscribe_refetches_only_when_snapshot_missing():
    async def scenario():
        rec, fetcher, _ = _make()
        rec.start_sync("aaa")
        rec.start_sync("bbb")
        await settle()
        fetcher.release("aaa", snapshot(100))
        fetcher.fail("bbb")
        await settle()

        book = rec.book("aaa")
        rec.start_sync("aaa")
        rec.start_sync("bbb")
        await settle()

        assert rec.book("aaa") is book
        assert book.last_update_id == 100
        assert fetcher.calls == ["aaa", "bbb", "bbb"]
        rec.close()

    asyncio.run(scenario())


def test_subscribe_during_queued_teardown_restarts_sync():
    async def scenario():
        rec, fetcher, _ = _make()
        rec.start_sync("abcusd")
        await settle()
        fetcher.release("abcusd", snapshot(10))
        await settle()

        rec.request_teardown("abcusd")
        rec.start_sync("abcusd")
        rec.depth_update(_diff("abcusd", 20))
        await settle()

        assert fetcher.calls == ["abcusd", "abcusd"]
        engine = rec.engines["abcusd"]
        assert engine.state == AssetState.BUFFERING
        assert [d.final_update_id for d in engine.buffer] == [20]
        rec.close()

    asyncio.run(scenario())


def test_listener_failure_does_not_stop_drain():
    async def scenario():
        fetcher = ControlledFetcher()

        def boom(_asset):
            raise RuntimeError("listener failure")

        rec = Reconciler(fetcher, on_applied=boom)
        rec.start_sync("abcusd")
        await settle()
        fetcher.release("abcusd", snapshot(1))
        await settle()
        rec.depth_update(_diff("abcusd", 2))
        rec.depth_update(_diff("abcusd", 3))
        await settle()
        assert rec.book("abcusd").last_update_id == 3
        rec.close()

    asyncio.run(scenario())


def test_close_clears_registries():
    async def scenario():
        rec, _, _ = _make()
        rec.start_sync("abcusd")
        await settle()
        rec.close()
        await settle()
        assert rec.engines == {}
        assert rec.active_assets() == []

    asyncio.run(scenario())


def test_malformed_diff_does_not_stop_drain():
    async def scenario():
        rec, fetcher, applied = _make()
        rec.start_sync("abcusd")
        await settle()
        fetcher.release("abcusd", snapshot(1))
        await settle()

        rec.depth_update(_diff("abcusd", 2, bids=[["101", "1"]], asks=[["abc", "1"]]))
        rec.depth_update(_diff("abcusd", 3, asks=[["102", "1"]]))
        await settle()

        book = rec.book("abcusd")
        assert book.last_update_id == 3
        assert 101 not in [p for p, _ in book.bids]
        assert book.asks.levels() == [(101.0, 1.0), (102.0, 1.0)]
        assert applied == ["abcusd"]
        rec.close()

    asyncio.run(scenario())


def test_step_error_is_logged_and_drain_continues(caplog):
    async def scenario():
        rec, fetcher, applied = _make()
        rec.start_sync("abcusd")
        await settle()
        fetcher.release("abcusd", snapshot(1))
        await settle()

        engine = rec.engines["abcusd"]
        real_step = engine.step
        calls = {"n": 0}

        def flaky_step():
            calls["n"] += 1
            if calls["n"] == 1:
                engine.buffer.popleft()
                raise RuntimeError("step failure")
            return real_step()

        engine.step = flaky_step
        rec.depth_update(_diff("abcusd", 2))
        rec.depth_update(_diff("abcusd", 3))
        await settle()

        assert rec.book("abcusd").last_update_id == 3
        assert applied == ["abcusd"]
        assert not rec._drain_tasks["abcusd"].done()
        rec.close()

    asyncio.run(scenario())
    assert "Drain step failed for abcusd" in caplog.text
