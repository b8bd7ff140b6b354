from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path

import yaml

from .client import DepthBookClient
from .logging_config import setup_logging
from .settings import HEARTBEAT_SEC, ClientSettings


DEFAULT_CONFIG_PATH = "config/depth_book.yaml"


def load_config(default_path: str = DEFAULT_CONFIG_PATH) -> dict:
    path = Path(os.getenv("CONFIG_PATH", default_path))
    if not path.exists():
        return {}
    with path.open("r") as f:
        return yaml.safe_load(f) or {}


def _symbols(cfg: dict) -> list[str]:
    raw = cfg.get("symbols") or os.getenv("SYMBOLS", "")
    if isinstance(raw, str):
        raw = raw.split(",")
    return [s.strip() for s in raw if s and s.strip()]


def format_top(book, n: int) -> str:
    bids, asks = book.top_n(n)
    bid = bids[0] if bids else None
    ask = asks[0] if asks else None
    return (
        f"{book.asset} lastUpdateId={book.last_update_id} "
        f"bid={bid} ask={ask} levels={len(book.bids)}/{len(book.asks)}"
    )


async def _heartbeat(client: DepthBookClient, n: int, interval_s: float, log: logging.Logger) -> None:
    while True:
        await asyncio.sleep(interval_s)
        books = dict(client.order_book)
        if not books:
            log.info("HEARTBEAT ready=%s no books yet", client.is_ready)
        for book in books.values():
            log.info("HEARTBEAT %s", format_top(book, n))


async def run(cfg: dict) -> None:
    log = logging.getLogger("depth_book")
    client = DepthBookClient(ClientSettings.from_env())
    symbols = _symbols(cfg)
    top_n = int(cfg.get("top_n", 1))

    def _subscribe_all() -> None:
        for symbol in symbols:
            client.subscribe(symbol)

    client.on_ready(_subscribe_all)
    hb = asyncio.create_task(_heartbeat(client, top_n, float(cfg.get("heartbeat_s", HEARTBEAT_SEC)), log))
    try:
        await client.run_async()
    finally:
        hb.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await hb


def main() -> None:
    cfg = load_config()
    setup_logging(cfg.get("log_level", "INFO"), component="depth_book")
    try:
        asyncio.run(run(cfg))
    except KeyboardInterrupt:
        logging.getLogger("depth_book").info("Interrupted; exiting.")


if __name__ == "__main__":
    main()
