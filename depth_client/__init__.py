"""Async client keeping live Binance order books from the diff-depth stream."""

from .client import DepthBookClient
from .correlator import Method, PendingRequest, RequestCorrelator
from .errors import CommandError, DepthClientError, RequestExpired, SnapshotError
from .reconciler import Reconciler
from .settings import ClientSettings
from .snapshot import BinanceRestClient, SnapshotFetcher
from .ws_stream import DepthWSStream

__all__ = [
    "DepthBookClient",
    "Method",
    "PendingRequest",
    "RequestCorrelator",
    "CommandError",
    "DepthClientError",
    "RequestExpired",
    "SnapshotError",
    "Reconciler",
    "ClientSettings",
    "BinanceRestClient",
    "SnapshotFetcher",
    "DepthWSStream",
]
