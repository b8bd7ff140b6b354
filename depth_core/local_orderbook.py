from __future__ import annotations

import time
from dataclasses import dataclass, field
from itertools import islice
from typing import Iterable, Iterator, List, Optional, Tuple

from sortedcontainers import SortedDict

from .messages import DiffEvent, PriceLevel, parse_level, to_decimal
from .symbols import normalize_asset


Level = Tuple[float, float]


def now_ms() -> int:
    return int(time.time() * 1000)


class Ladder:
    """One side of an L2 book: price levels kept sorted by numeric price.

    Bids are read best-first in descending order, asks in ascending order.
    A level with quantity zero is never stored.
    """

    def __init__(self, descending: bool = False) -> None:
        self.descending = descending
        self._levels: SortedDict = SortedDict()

    def upsert(self, price, qty) -> None:
        self._set(*parse_level((price, qty)))

    def _set(self, price, qty) -> None:
        if qty == 0:
            self._levels.pop(price, None)
        else:
            self._levels[price] = float(qty)

    def reorder(self) -> None:
        # SortedDict keeps keys ordered on every insert; nothing to re-sort.
        return None

    def clear(self) -> None:
        self._levels.clear()

    def apply(self, levels: Iterable[PriceLevel]) -> None:
        for price, qty in levels:
            self._set(price, qty)

    def __len__(self) -> int:
        return len(self._levels)

    def __contains__(self, price) -> bool:
        return to_decimal(price) in self._levels

    def __iter__(self) -> Iterator[Level]:
        keys = reversed(self._levels.keys()) if self.descending else iter(self._levels.keys())
        for price in keys:
            yield float(price), self._levels[price]

    def quantity(self, price) -> Optional[float]:
        return self._levels.get(to_decimal(price))

    def levels(self) -> List[Level]:
        return list(self)

    def top(self, n: int) -> List[Level]:
        if n <= 0:
            return []
        return list(islice(iter(self), n))

    def best(self) -> Optional[Level]:
        if not self._levels:
            return None
        price = self._levels.keys()[-1 if self.descending else 0]
        return float(price), self._levels[price]


def _validate_snapshot_payload(snap: dict) -> tuple[list, list, int]:
    if not isinstance(snap, dict):
        raise ValueError("snapshot payload must be a dict")
    if "bids" not in snap or "asks" not in snap or "lastUpdateId" not in snap:
        raise ValueError("snapshot payload missing required keys")
    bids = snap.get("bids")
    asks = snap.get("asks")
    if not isinstance(bids, list) or not isinstance(asks, list):
        raise ValueError("snapshot bids/asks must be lists")
    try:
        last_update_id = int(snap.get("lastUpdateId"))
    except (TypeError, ValueError, ArithmeticError) as exc:
        raise ValueError("snapshot lastUpdateId must be int-like") from exc
    return bids, asks, last_update_id


@dataclass
class OrderBook:
    """Live L2 book for one asset, seeded by a REST snapshot and advanced by diffs."""

    asset: str
    last_update_id: int = 0
    bids: Ladder = field(default_factory=lambda: Ladder(descending=True))
    asks: Ladder = field(default_factory=lambda: Ladder(descending=False))
    last_update: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        self.asset = normalize_asset(self.asset)

    @classmethod
    def from_snapshot(cls, asset: str, snap: dict) -> "OrderBook":
        bids, asks, last_update_id = _validate_snapshot_payload(snap)
        book = cls(asset=asset)
        book.load_snapshot(bids=bids, asks=asks, last_update_id=last_update_id)
        return book

    def load_snapshot(self, bids: List[List[str]], asks: List[List[str]], last_update_id: int) -> None:
        new_bids = [parse_level(lvl) for lvl in bids]
        new_asks = [parse_level(lvl) for lvl in asks]
        last_update_id = int(last_update_id)
        self.bids.clear()
        self.bids.apply(new_bids)
        self.asks.clear()
        self.asks.apply(new_asks)
        self.last_update_id = last_update_id
        self.last_update = now_ms()

    def is_stale(self, diff: DiffEvent) -> bool:
        return diff.final_update_id <= self.last_update_id

    def apply_diff(self, diff: DiffEvent) -> bool:
        """Apply one diff-depth event.

        Returns:
          True  -> applied, last_update_id advanced to the diff's final id
          False -> stale (u <= last_update_id), book left untouched

        Raises ValueError for a malformed level; nothing is applied then.
        """
        if self.is_stale(diff):
            return False

        bids = [parse_level(lvl) for lvl in diff.bid_deltas]
        asks = [parse_level(lvl) for lvl in diff.ask_deltas]
        self.bids.apply(bids)
        self.asks.apply(asks)
        self.bids.reorder()
        self.asks.reorder()

        self.last_update_id = diff.final_update_id
        self.last_update = now_ms()
        return True

    def top_n(self, n: int) -> Tuple[List[Level], List[Level]]:
        return self.bids.top(n), self.asks.top(n)

    def mid(self) -> Optional[float]:
        bid, ask = self.bids.best(), self.asks.best()
        if bid is None or ask is None:
            return None
        return (bid[0] + ask[0]) / 2.0

    def spread(self) -> Optional[float]:
        bid, ask = self.bids.best(), self.asks.best()
        if bid is None or ask is None:
            return None
        return ask[0] - bid[0]
