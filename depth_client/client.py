from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Dict, List, Mapping, Optional

from depth_core.local_orderbook import OrderBook
from depth_core.messages import Confirmation, DiffEvent, parse_message
from depth_core.sync_engine import AssetState
from depth_core.symbols import depth_stream, normalize_asset

from .correlator import Method, PendingRequest, RequestCorrelator
from .errors import CommandError, RequestExpired
from .reconciler import Reconciler
from .settings import ClientSettings
from .snapshot import BinanceRestClient, SnapshotFetcher
from .ws_stream import DepthWSStream


class DepthBookClient:
    """Keeps live L2 books for subscribed assets from the Binance diff-depth stream.

    All public methods must be called from the event loop that runs
    ``run_async()`` (directly, from a task, or from one of the callbacks).
    Books returned by the accessors are live objects; treat them as read-only.
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        fetcher: Optional[SnapshotFetcher] = None,
    ) -> None:
        self.settings = settings or ClientSettings.from_env()
        s = self.settings
        self.fetcher = fetcher or SnapshotFetcher(
            BinanceRestClient(base_url=s.rest_base_url, timeout_s=s.snapshot_timeout_s),
            limit=s.snapshot_limit,
            retry_max=s.snapshot_retry_max,
            backoff_s=s.snapshot_retry_backoff_s,
            backoff_max_s=s.snapshot_retry_backoff_max_s,
        )
        self.reconciler = Reconciler(
            self.fetcher,
            on_applied=self._emit_update,
            max_buffer_warn=s.max_buffer_warn,
        )
        self.stream = DepthWSStream(
            ws_url=s.ws_url,
            on_message=self._on_message,
            on_open=self._on_open,
            on_close=self._on_close,
            on_status=self._on_status,
            insecure_tls=s.insecure_tls,
            ping_interval_s=s.ws_ping_interval_s,
            ping_timeout_s=s.ws_ping_timeout_s,
            reconnect_backoff_s=s.ws_reconnect_backoff_s,
            reconnect_backoff_max_s=s.ws_reconnect_backoff_max_s,
            max_session_s=s.ws_max_session_s,
        )
        self.correlator = RequestCorrelator(
            self._send_text,
            self.reconciler,
            request_timeout_s=s.request_timeout_s,
        )

        self._ready = False
        self._ready_event: Optional[asyncio.Event] = None
        # Highest request id sent before the last disconnect.
        self._lost_up_to: Optional[int] = None
        self._update_listeners: List[Callable[[str], None]] = []
        self._asset_listeners: Dict[str, List[Callable[[OrderBook], None]]] = {}
        self._ready_listeners: List[Callable[[], None]] = []
        self._log = logging.getLogger("depth_client")

    # ----------------------------------------------------------------- queries

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def order_book(self) -> Mapping[str, OrderBook]:
        return self.reconciler.books

    def book(self, asset: str) -> Optional[OrderBook]:
        return self.reconciler.book(asset)

    def state(self, asset: str) -> AssetState:
        return self.reconciler.state(asset)

    def _ensure_ready_event(self) -> asyncio.Event:
        if self._ready_event is None:
            self._ready_event = asyncio.Event()
            if self._ready:
                self._ready_event.set()
        return self._ready_event

    async def wait_ready(self) -> None:
        await self._ensure_ready_event().wait()

    # ------------------------------------------------------------ subscription

    def _wanted(self, asset: str) -> bool:
        intent = self.correlator.latest_intent(asset)
        if intent is not None:
            return intent == Method.SUBSCRIBE
        return self.reconciler.tracked(asset)

    def subscribe(self, asset: str) -> Optional[PendingRequest]:
        asset = normalize_asset(asset)
        if self._wanted(asset):
            self._log.debug("Already subscribed to %s", asset)
            return None
        return self.correlator.send(Method.SUBSCRIBE, [depth_stream(asset)], [asset])

    def unsubscribe(self, asset: str) -> Optional[PendingRequest]:
        asset = normalize_asset(asset)
        if not self._wanted(asset):
            self._log.debug("Not subscribed to %s", asset)
            return None
        return self.correlator.send(Method.UNSUBSCRIBE, [depth_stream(asset)], [asset])

    def list_subscriptions(self) -> asyncio.Future:
        """Future resolving to the raw LIST_SUBSCRIPTIONS confirmation payload."""
        fut = asyncio.get_running_loop().create_future()
        sent: Dict[str, PendingRequest] = {}

        def _resolve(response: Optional[dict]) -> None:
            if fut.done():
                return
            req = sent.get("req")
            req_id = req.id if req is not None else None
            if response is None:
                fut.set_exception(RequestExpired(f"LIST_SUBSCRIPTIONS id={req_id} expired"))
            elif response.get("error") is not None:
                fut.set_exception(CommandError(Method.LIST_SUBSCRIPTIONS.value, req_id, response["error"]))
            else:
                fut.set_result(response)

        sent["req"] = self.correlator.send(Method.LIST_SUBSCRIPTIONS, None, callback=_resolve)
        return fut

    # ---------------------------------------------------------------- listeners

    def on_update(self, callback: Callable[[str], None]) -> None:
        """Register ``callback(asset)`` for every applied diff on any asset."""
        self._update_listeners.append(callback)

    def on_asset_update(self, asset: str, callback: Callable[[OrderBook], None]) -> None:
        """Register ``callback(book)`` for every applied diff on ``asset``."""
        self._asset_listeners.setdefault(normalize_asset(asset), []).append(callback)

    def on_ready(self, callback: Callable[[], None]) -> None:
        self._ready_listeners.append(callback)

    def _emit_update(self, asset: str) -> None:
        for cb in list(self._update_listeners):
            try:
                cb(asset)
            except Exception:
                self._log.exception("Update listener error (asset=%s)", asset)
        book = self.reconciler.book(asset)
        if book is None:
            return
        for cb in list(self._asset_listeners.get(asset, ())):
            try:
                cb(book)
            except Exception:
                self._log.exception("Asset listener error (asset=%s)", asset)

    # -------------------------------------------------------------- supervisor

    def _send_text(self, text: str) -> None:
        self.stream.send(text)

    def _on_open(self) -> None:
        first = not self._ready
        self._ready = True
        self._ensure_ready_event().set()

        resubscribe = self._recover_unconfirmed()
        assets = self.reconciler.active_assets()
        assets.extend(a for a in resubscribe if a not in assets)
        self._log.info("Initialize assets %s", assets)
        if assets:
            self.correlator.send(Method.SUBSCRIBE, [depth_stream(a) for a in assets], assets)

        if first:
            for cb in list(self._ready_listeners):
                try:
                    cb()
                except Exception:
                    self._log.exception("Ready listener error")

    def _recover_unconfirmed(self) -> List[str]:
        """Settle SUBSCRIBE/UNSUBSCRIBE commands lost with the previous connection.

        Their confirmations will never arrive. The latest command per asset
        wins: an unsubscribe is applied locally, a subscribe for an asset not
        yet tracked is returned so the bulk resubscribe includes it.
        """
        if self._lost_up_to is None:
            return []
        lost = self.correlator.drop_pending((Method.SUBSCRIBE, Method.UNSUBSCRIBE), up_to_id=self._lost_up_to)
        self._lost_up_to = None
        intents: Dict[str, Method] = {}
        for req in lost:
            for asset in req.assets:
                intents[asset] = req.method
        resubscribe: List[str] = []
        for asset, method in intents.items():
            if self.correlator.latest_intent(asset) is not None:
                # A newer command was queued while disconnected and goes out as is.
                continue
            if method == Method.UNSUBSCRIBE:
                self._log.info("Unconfirmed unsubscribe %s; tearing down locally", asset)
                self.reconciler.request_teardown(asset)
            elif not self.reconciler.tracked(asset):
                self._log.info("Unconfirmed subscribe %s; resending", asset)
                resubscribe.append(asset)
        return resubscribe

    def _on_message(self, payload, recv_ms: int) -> None:
        msg = parse_message(payload)
        if isinstance(msg, Confirmation):
            self.correlator.on_confirmation(msg)
        elif isinstance(msg, DiffEvent):
            self.reconciler.depth_update(msg)
        else:
            self._log.info("Unsupported message received (%s)", msg.reason)

    def _on_close(self) -> None:
        self._lost_up_to = self.correlator.last_id
        self._log.info(
            "Connection closed. Reconnecting; keeping %d tracked assets", len(self.reconciler.engines)
        )

    def _on_status(self, typ: str, details: dict) -> None:
        if typ in ("ws_ping", "ws_pong"):
            return
        self._log.debug("WS status %s %s", typ, details)

    async def _sweep_loop(self) -> None:
        interval = max(0.1, float(self.settings.request_sweep_interval_s))
        while True:
            await asyncio.sleep(interval)
            self.correlator.expire()

    # --------------------------------------------------------------- lifecycle

    async def run_async(self) -> None:
        self._ensure_ready_event()
        sweep = asyncio.create_task(self._sweep_loop())
        try:
            await self.stream.run_async()
        finally:
            sweep.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep
            self.reconciler.close()
            self.correlator.clear()

    def run(self) -> None:
        asyncio.run(self.run_async())

    def close(self) -> None:
        self.stream.close()
