from __future__ import annotations

import asyncio
import logging
from typing import Optional

import requests

from depth_core.local_orderbook import OrderBook
from depth_core.symbols import normalize_asset, rest_symbol

from .errors import SnapshotError
from .settings import (
    BINANCE_REST_BASE_URL,
    SNAPSHOT_LIMIT,
    SNAPSHOT_RETRY_BACKOFF_MAX_S,
    SNAPSHOT_RETRY_BACKOFF_S,
    SNAPSHOT_RETRY_MAX,
    SNAPSHOT_TIMEOUT_S,
)


log = logging.getLogger("depth_client.snapshot")


class BinanceRestClient:
    def __init__(self, base_url: str | None = None, timeout_s: float | None = None) -> None:
        self.base_url = base_url or BINANCE_REST_BASE_URL
        self.timeout_s = SNAPSHOT_TIMEOUT_S if timeout_s is None else float(timeout_s)
        self.session = requests.Session()

    def get_order_book(self, symbol: str, limit: int) -> dict:
        url = f"{self.base_url}/api/v3/depth"
        resp = self.session.get(url, params={"symbol": symbol, "limit": limit}, timeout=self.timeout_s)
        resp.raise_for_status()
        return resp.json()

    def close(self) -> None:
        self.session.close()


class SnapshotFetcher:
    """Fetch a full book for one asset without blocking the event loop.

    The blocking REST call runs in a worker thread; failures are retried with
    exponential backoff up to ``retry_max`` attempts.
    """

    def __init__(
        self,
        client=None,
        limit: int = SNAPSHOT_LIMIT,
        retry_max: int = SNAPSHOT_RETRY_MAX,
        backoff_s: float = SNAPSHOT_RETRY_BACKOFF_S,
        backoff_max_s: float = SNAPSHOT_RETRY_BACKOFF_MAX_S,
    ) -> None:
        self.client = client if client is not None else BinanceRestClient()
        self.limit = int(limit)
        self.retry_max = max(1, int(retry_max))
        self.backoff_s = max(0.0, float(backoff_s))
        self.backoff_max_s = max(self.backoff_s, float(backoff_max_s))

    async def _call_with_retry(self, symbol: str) -> dict:
        delay = self.backoff_s
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.retry_max + 1):
            try:
                return await asyncio.to_thread(self.client.get_order_book, symbol=symbol, limit=self.limit)
            except Exception as exc:
                last_exc = exc
                log.warning("Snapshot %s attempt %d/%d failed: %s", symbol, attempt, self.retry_max, exc)
                if attempt >= self.retry_max:
                    break
                if delay > 0:
                    await asyncio.sleep(delay)
                    delay = min(self.backoff_max_s, delay * 2)
        raise SnapshotError(f"REST snapshot for {symbol} failed: {last_exc}") from last_exc

    async def fetch(self, asset: str) -> dict:
        """Return the raw snapshot payload (``lastUpdateId``, ``bids``, ``asks``)."""
        return await self._call_with_retry(rest_symbol(asset))

    async def fetch_book(self, asset: str) -> OrderBook:
        snap = await self.fetch(asset)
        try:
            return OrderBook.from_snapshot(normalize_asset(asset), snap)
        except (ValueError, ArithmeticError) as exc:
            raise SnapshotError(f"Invalid snapshot payload for {asset}: {exc}") from exc
