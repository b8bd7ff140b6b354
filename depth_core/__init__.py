"""Core data structures and per-asset sync logic, free of any I/O."""

from .local_orderbook import Ladder, OrderBook
from .messages import Confirmation, DiffEvent, Teardown, Unrecognized, parse_message
from .sync_engine import AssetState, AssetSyncEngine, SyncResult
from .symbols import depth_stream, normalize_asset, rest_symbol

__all__ = [
    "Ladder",
    "OrderBook",
    "Confirmation",
    "DiffEvent",
    "Teardown",
    "Unrecognized",
    "parse_message",
    "AssetState",
    "AssetSyncEngine",
    "SyncResult",
    "depth_stream",
    "normalize_asset",
    "rest_symbol",
]
