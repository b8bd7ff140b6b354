from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Set

from depth_core.local_orderbook import OrderBook
from depth_core.messages import DiffEvent
from depth_core.sync_engine import AssetState, AssetSyncEngine
from depth_core.symbols import normalize_asset

from .errors import SnapshotError


class Reconciler:
    """Drives one AssetSyncEngine per subscribed asset on the event loop.

    Owns every per-asset registry: engines, snapshot tasks, drain tasks and
    their wakeup events. Nothing here is process-global; ``close()`` clears it.
    """

    def __init__(
        self,
        fetcher,
        on_applied: Optional[Callable[[str], None]] = None,
        max_buffer_warn: Optional[int] = None,
    ) -> None:
        self.fetcher = fetcher
        self.on_applied = on_applied
        self.max_buffer_warn = max_buffer_warn

        self.engines: Dict[str, AssetSyncEngine] = {}
        self._books: Dict[str, OrderBook] = {}
        self._snapshot_tasks: Dict[str, asyncio.Task] = {}
        self._drain_tasks: Dict[str, asyncio.Task] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}
        # Assets subscribed again while their previous teardown was still queued.
        self._restart_after_teardown: Set[str] = set()
        self._log = logging.getLogger("depth_client.reconciler")

    @property
    def books(self) -> Mapping[str, OrderBook]:
        return MappingProxyType(self._books)

    def book(self, asset: str) -> Optional[OrderBook]:
        return self._books.get(normalize_asset(asset))

    def tracked(self, asset: str) -> bool:
        """True while the asset is live and not queued for teardown."""
        engine = self.engines.get(normalize_asset(asset))
        return engine is not None and not engine.teardown_pending

    def state(self, asset: str) -> AssetState:
        engine = self.engines.get(normalize_asset(asset))
        return engine.state if engine is not None else AssetState.UNSUBSCRIBED

    def active_assets(self) -> List[str]:
        return [a for a, e in self.engines.items() if not e.teardown_pending]

    def snapshot_in_flight(self, asset: str) -> bool:
        task = self._snapshot_tasks.get(normalize_asset(asset))
        return task is not None and not task.done()

    def start_sync(self, asset: str) -> None:
        """Subscription confirmed: buffer diffs and fetch the snapshot."""
        asset = normalize_asset(asset)
        engine = self.engines.get(asset)
        if engine is not None:
            if engine.teardown_pending:
                self._log.info("Subscribe %s while teardown queued; restarting after it", asset)
                self._restart_after_teardown.add(asset)
            elif engine.book is None and not self.snapshot_in_flight(asset):
                self._log.info("Resubscribed %s still without snapshot; fetching again", asset)
                self._start_snapshot(asset)
            else:
                self._log.info(
                    "Resubscribed %s (state=%s lastUpdateId=%s); keeping existing book",
                    asset,
                    engine.state.value,
                    engine.book.last_update_id if engine.book else None,
                )
            return

        self.engines[asset] = AssetSyncEngine(asset, max_buffer_warn=self.max_buffer_warn)
        self._wakeups[asset] = asyncio.Event()
        self._log.info("Start buffer %s", asset)
        self._start_snapshot(asset)

    def depth_update(self, diff: DiffEvent) -> None:
        engine = self.engines.get(diff.asset)
        if engine is None:
            self._log.debug("Dropping depthUpdate for untracked %s u=%s", diff.asset, diff.final_update_id)
            return
        engine.feed(diff)
        self._wake(diff.asset)

    def request_teardown(self, asset: str) -> None:
        """Unsubscription confirmed: tear down once everything queued ahead is drained."""
        asset = normalize_asset(asset)
        engine = self.engines.get(asset)
        if engine is None:
            self._log.info("Unsubscribe for untracked %s ignored", asset)
            return
        self._restart_after_teardown.discard(asset)
        engine.request_teardown()
        if engine.book is None and not self.snapshot_in_flight(asset):
            # No snapshot is coming, so nothing could ever drain the queue.
            engine.abandon()
            self._finish_teardown(asset, "before snapshot")
            return
        self._wake(asset)

    def _wake(self, asset: str) -> None:
        event = self._wakeups.get(asset)
        if event is not None:
            event.set()

    def _start_snapshot(self, asset: str) -> None:
        self._snapshot_tasks[asset] = asyncio.create_task(
            self._snapshot_loop(asset), name=f"snapshot-{asset}"
        )

    async def _snapshot_loop(self, asset: str) -> None:
        try:
            book = await self.fetcher.fetch_book(asset)
        except SnapshotError as exc:
            self._log.error("Snapshot %s failed: %s", asset, exc)
            engine = self.engines.get(asset)
            if engine is not None and engine.teardown_pending and engine.book is None:
                engine.abandon()
                self._finish_teardown(asset, "after failed snapshot")
            return

        engine = self.engines.get(asset)
        if engine is None:
            self._log.info("Snapshot %s arrived after teardown; discarded", asset)
            return
        result = engine.adopt_snapshot(book)
        self._log.info("Snapshot %s: %s %s", asset, result.action, result.details)
        if result.action != "snapshot":
            return
        self._books[asset] = book
        self._drain_tasks[asset] = asyncio.create_task(self._drain_loop(asset), name=f"drain-{asset}")

    async def _drain_loop(self, asset: str) -> None:
        engine = self.engines[asset]
        wakeup = self._wakeups[asset]
        while True:
            try:
                result = engine.step()
            except Exception:
                # The failing item was already popped; keep draining the rest.
                self._log.exception("Drain step failed for %s", asset)
                await asyncio.sleep(0)
                continue
            if result.action == "teardown":
                self._finish_teardown(asset, result.details)
                return
            if result.action == "idle":
                wakeup.clear()
                await wakeup.wait()
                continue
            if result.action == "applied":
                self._notify(asset)
            elif result.action == "stale":
                self._log.debug("Stale diff %s %s", asset, result.details)
            elif result.action == "rejected":
                self._log.warning("Dropped malformed diff %s %s", asset, result.details)
            # At most one buffered item per tick.
            await asyncio.sleep(0)

    def _notify(self, asset: str) -> None:
        if self.on_applied is None:
            return
        try:
            self.on_applied(asset)
        except Exception:
            self._log.exception("Update callback error (asset=%s)", asset)

    def _finish_teardown(self, asset: str, details: str) -> None:
        engine = self.engines.get(asset)
        leftover = list(engine.leftover) if engine is not None else []
        self._remove(asset)
        self._log.info("Stopping buffer %s (%s)", asset, details)

        if asset in self._restart_after_teardown:
            self._restart_after_teardown.discard(asset)
            self.start_sync(asset)
            for diff in leftover:
                self.depth_update(diff)

    def _remove(self, asset: str) -> None:
        self.engines.pop(asset, None)
        self._books.pop(asset, None)
        self._wakeups.pop(asset, None)
        self._drain_tasks.pop(asset, None)
        task = self._snapshot_tasks.pop(asset, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def close(self) -> None:
        current = asyncio.current_task() if _loop_running() else None
        for task in list(self._snapshot_tasks.values()) + list(self._drain_tasks.values()):
            if not task.done() and task is not current:
                task.cancel()
        self._snapshot_tasks.clear()
        self._drain_tasks.clear()
        self._wakeups.clear()
        self._restart_after_teardown.clear()
        self.engines.clear()
        self._books.clear()


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
