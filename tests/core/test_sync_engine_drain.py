from __future__ import annotations

from depth_core.local_orderbook import OrderBook
from depth_core.messages import DiffEvent, Teardown
from depth_core.sync_engine import AssetState, AssetSyncEngine


def _diff(u, U=None, bids=(), asks=()):
    return DiffEvent(
        asset="abcusd",
        event_time=0,
        first_update_id=u if U is None else U,
        final_update_id=u,
        bid_deltas=list(bids),
        ask_deltas=list(asks),
    )


def _snapshot_book(last_update_id):
    return OrderBook.from_snapshot(
        "abcusd", {"lastUpdateId": last_update_id, "bids": [["100", "1"]], "asks": [["101", "1"]]}
    )


def _drain(engine):
    actions = []
    while True:
        result = engine.step()
        if result.action in ("idle", "waiting"):
            return actions
        actions.append(result.action)
        if result.action == "teardown":
            return actions


def test_buffers_until_snapshot():
    engine = AssetSyncEngine("ABCUSD")
    assert engine.state == AssetState.BUFFERING
    assert engine.feed(_diff(5)).action == "buffered"
    assert engine.step().action == "waiting"
    assert len(engine.buffer) == 1
    assert engine.book is None


def test_snapshot_between_buffered_diffs_discards_older_one():
    engine = AssetSyncEngine("abcusd")
    engine.feed(_diff(5, bids=[["100", "0"]]))
    engine.feed(_diff(8, U=6, asks=[["102", "3"]]))

    result = engine.adopt_snapshot(_snapshot_book(6))
    assert result.action == "snapshot"
    assert engine.state == AssetState.SYNCED
    assert engine.book.last_update_id == 6

    assert _drain(engine) == ["stale", "applied"]
    assert engine.book.last_update_id == 8
    # u=5 removed bid 100 but was stale, so the level survives
    assert engine.book.bids.levels() == [(100.0, 1.0)]
    assert engine.book.asks.levels() == [(101.0, 1.0), (102.0, 3.0)]


def test_last_update_id_is_monotonic():
    engine = AssetSyncEngine("abcusd")
    engine.adopt_snapshot(_snapshot_book(10))
    seen = [engine.book.last_update_id]
    for u in (9, 12, 11, 12, 15, 3, 20):
        engine.feed(_diff(u))
        engine.step()
        seen.append(engine.book.last_update_id)
    assert seen == sorted(seen)
    assert engine.book.last_update_id == 20


def test_step_consumes_one_item_per_call():
    engine = AssetSyncEngine("abcusd")
    engine.adopt_snapshot(_snapshot_book(1))
    for u in (2, 3, 4):
        engine.feed(_diff(u))
    engine.step()
    assert len(engine.buffer) == 2


def test_teardown_waits_for_diffs_queued_before_it():
    engine = AssetSyncEngine("abcusd")
    engine.adopt_snapshot(_snapshot_book(1))
    engine.feed(_diff(2))
    engine.feed(_diff(3))
    engine.feed(_diff(1))
    engine.request_teardown()
    engine.feed(_diff(4))

    assert engine.state == AssetState.DRAINING_TO_TEARDOWN
    assert isinstance(engine.buffer[3], Teardown)
    assert _drain(engine) == ["applied", "applied", "stale", "teardown"]
    assert engine.state == AssetState.UNSUBSCRIBED
    assert engine.book is None
    assert len(engine.buffer) == 0
    assert [d.final_update_id for d in engine.leftover] == [4]


def test_teardown_requested_before_snapshot():
    engine = AssetSyncEngine("abcusd")
    engine.feed(_diff(5))
    engine.request_teardown()
    assert engine.state == AssetState.BUFFERING
    assert engine.teardown_pending is True

    engine.adopt_snapshot(_snapshot_book(3))
    assert engine.state == AssetState.DRAINING_TO_TEARDOWN
    assert _drain(engine) == ["applied", "teardown"]
    assert engine.book is None


def test_abandon_without_snapshot():
    engine = AssetSyncEngine("abcusd")
    engine.feed(_diff(5))
    engine.request_teardown()
    engine.feed(_diff(6))

    result = engine.abandon()
    assert result.action == "teardown"
    assert engine.state == AssetState.UNSUBSCRIBED
    assert [d.final_update_id for d in engine.leftover] == [6]
    assert engine.feed(_diff(7)).action == "dropped"


def test_second_snapshot_does_not_replace_book():
    engine = AssetSyncEngine("abcusd")
    first = _snapshot_book(100)
    engine.adopt_snapshot(first)
    result = engine.adopt_snapshot(_snapshot_book(5))
    assert result.action == "discarded"
    assert engine.book is first
    assert engine.book.last_update_id == 100


def test_buffer_warning_logged_once(caplog):
    engine = AssetSyncEngine("abcusd", max_buffer_warn=3)
    with caplog.at_level("WARNING", logger="depth_core.sync_engine"):
        for u in range(1, 8):
            engine.feed(_diff(u))
    warnings = [r for r in caplog.records if "reached" in r.getMessage()]
    assert len(warnings) == 1


def test_malformed_diff_is_rejected_and_drain_continues():
    engine = AssetSyncEngine("abcusd")
    engine.adopt_snapshot(_snapshot_book(1))
    engine.feed(_diff(2, bids=[["101", "1"]], asks=[["abc", "1"]]))
    engine.feed(_diff(3, bids=[["99", "2"]]))

    assert _drain(engine) == ["rejected", "applied"]
    assert engine.book.last_update_id == 3
    assert engine.book.bids.levels() == [(100.0, 1.0), (99.0, 2.0)]
    assert engine.book.asks.levels() == [(101.0, 1.0)]
