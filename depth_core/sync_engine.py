from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, List, Optional

from .local_orderbook import OrderBook
from .messages import BufferItem, DiffEvent, Teardown
from .symbols import normalize_asset


log = logging.getLogger("depth_core.sync_engine")


class AssetState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    BUFFERING = "buffering"
    SYNCED = "synced"
    DRAINING_TO_TEARDOWN = "draining_to_teardown"


@dataclass
class SyncResult:
    action: str  # "buffered" | "dropped" | "snapshot" | "discarded" | "waiting" | "idle" | "applied" | "stale" | "rejected" | "teardown"
    details: str = ""


class AssetSyncEngine:
    """Pure state machine for one asset's diff-depth synchronization.

    This module is intentionally I/O-free (no WS, no REST, no tasks). The async
    driver feeds it diffs, hands it the snapshot and calls ``step()`` once per
    scheduling tick.

    Key behaviors:
      - buffer every diff in arrival order until a snapshot exists
      - drain one buffered item per step, skipping diffs with u <= lastUpdateId
      - a queued Teardown is honored only after everything queued before it
    """

    def __init__(self, asset: str, max_buffer_warn: Optional[int] = None):
        self.asset = normalize_asset(asset)
        self.state = AssetState.BUFFERING
        self.book: Optional[OrderBook] = None
        self.buffer: Deque[BufferItem] = deque()
        self.teardown_pending: bool = False
        self.leftover: List[DiffEvent] = []
        self.max_buffer_warn = int(max_buffer_warn) if max_buffer_warn else None
        self._buffer_warned = False

    @property
    def snapshot_loaded(self) -> bool:
        return self.book is not None

    def _check_buffer_size(self) -> None:
        if not self.max_buffer_warn:
            return
        size = len(self.buffer)
        if size >= self.max_buffer_warn and not self._buffer_warned:
            self._buffer_warned = True
            log.warning(
                "Buffer for %s reached %d items (state=%s snapshot=%s)",
                self.asset,
                size,
                self.state.value,
                self.snapshot_loaded,
            )
        elif size < self.max_buffer_warn:
            self._buffer_warned = False

    def feed(self, diff: DiffEvent) -> SyncResult:
        """Queue one WS depth-diff event."""
        if self.state == AssetState.UNSUBSCRIBED:
            return SyncResult("dropped", "unsubscribed")
        self.buffer.append(diff)
        self._check_buffer_size()
        return SyncResult("buffered", f"size={len(self.buffer)}")

    def request_teardown(self) -> SyncResult:
        if self.state == AssetState.UNSUBSCRIBED:
            return SyncResult("dropped", "unsubscribed")
        self.buffer.append(Teardown(self.asset))
        self.teardown_pending = True
        if self.state == AssetState.SYNCED:
            self.state = AssetState.DRAINING_TO_TEARDOWN
        return SyncResult("buffered", "teardown_queued")

    def adopt_snapshot(self, book: OrderBook) -> SyncResult:
        """Adopt a fully-loaded snapshot book. Keeps buffered events."""
        if self.state == AssetState.UNSUBSCRIBED:
            return SyncResult("discarded", "unsubscribed")
        if self.book is not None:
            return SyncResult("discarded", f"book_exists lastUpdateId={self.book.last_update_id}")
        self.book = book
        self.state = AssetState.DRAINING_TO_TEARDOWN if self.teardown_pending else AssetState.SYNCED
        return SyncResult("snapshot", f"lastUpdateId={book.last_update_id} buffered={len(self.buffer)}")

    def _teardown(self, reason: str, after: list) -> SyncResult:
        dropped = len(self.buffer) - len(after)
        # Diffs queued behind the Teardown belong to a later subscription, if any.
        self.leftover = [item for item in after if isinstance(item, DiffEvent)]
        self.buffer.clear()
        self.book = None
        self.teardown_pending = False
        self.state = AssetState.UNSUBSCRIBED
        return SyncResult("teardown", f"{reason} dropped={dropped}")

    def abandon(self) -> SyncResult:
        """Tear down without waiting for a snapshot that will never arrive."""
        items = list(self.buffer)
        marks = [i for i, item in enumerate(items) if isinstance(item, Teardown)]
        after = items[marks[0] + 1:] if marks else []
        return self._teardown("abandoned", after)

    def step(self) -> SyncResult:
        """Consume at most one buffered item.

        Returns "waiting" while no snapshot has been adopted. The reconciler only
        starts stepping after adoption, so it sees "idle", "applied", "stale",
        "rejected" (malformed diff, dropped) or "teardown".
        """
        if self.state == AssetState.UNSUBSCRIBED:
            return SyncResult("teardown", "unsubscribed")
        if self.book is None:
            return SyncResult("waiting", "no_snapshot")
        if not self.buffer:
            return SyncResult("idle")

        item = self.buffer.popleft()
        if isinstance(item, Teardown):
            return self._teardown("unsubscribed", list(self.buffer))

        try:
            applied = self.book.apply_diff(item)
        except ValueError as exc:
            return SyncResult("rejected", f"u={item.final_update_id} {exc}")
        if not applied:
            return SyncResult(
                "stale",
                f"U={item.first_update_id} u={item.final_update_id} last={self.book.last_update_id}",
            )
        self._check_buffer_size()
        return SyncResult("applied", f"lastUpdateId={self.book.last_update_id}")
