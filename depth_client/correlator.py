from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from depth_core.messages import Confirmation


class Method(str, Enum):
    SUBSCRIBE = "SUBSCRIBE"
    UNSUBSCRIBE = "UNSUBSCRIBE"
    LIST_SUBSCRIPTIONS = "LIST_SUBSCRIPTIONS"


@dataclass
class PendingRequest:
    id: int
    method: Method
    params: Optional[List[str]]
    assets: List[str] = field(default_factory=list)
    callback: Optional[Callable[[Optional[dict]], None]] = None
    created_at: float = field(default_factory=time.monotonic)

    def to_wire(self) -> dict:
        return {"method": self.method.value, "params": self.params, "id": self.id}


class RequestCorrelator:
    """Matches outbound control commands to their asynchronous confirmations.

    Confirmations are matched at most once. A confirmation whose id is unknown
    (e.g. a request sent on a connection that has since been replaced) is
    logged and ignored.
    """

    def __init__(
        self,
        send_text: Callable[[str], None],
        reconciler,
        request_timeout_s: float = 0.0,
    ) -> None:
        self.send_text = send_text
        self.reconciler = reconciler
        self.request_timeout_s = float(request_timeout_s)
        self.pending: Dict[int, PendingRequest] = {}
        self._last_id = 0
        self._log = logging.getLogger("depth_client.correlator")

    def _next_id(self) -> int:
        # Millisecond clock, bumped so two commands in the same ms never collide.
        self._last_id = max(int(time.time() * 1000), self._last_id + 1)
        return self._last_id

    def send(
        self,
        method: Method,
        params: Optional[List[str]],
        assets: Optional[List[str]] = None,
        callback: Optional[Callable[[Optional[dict]], None]] = None,
    ) -> PendingRequest:
        req = PendingRequest(
            id=self._next_id(),
            method=Method(method),
            params=params,
            assets=list(assets or []),
            callback=callback,
        )
        self.pending[req.id] = req
        self._log.info("Send %s id=%d params=%s", req.method.value, req.id, params)
        self.send_text(json.dumps(req.to_wire()))
        return req

    def pending_assets(self, method: Method) -> List[str]:
        out: List[str] = []
        for req in self.pending.values():
            if req.method == method:
                out.extend(req.assets)
        return out

    def latest_intent(self, asset: str) -> Optional[Method]:
        """Most recent outstanding SUBSCRIBE/UNSUBSCRIBE naming ``asset``, if any."""
        latest: Optional[PendingRequest] = None
        for req in self.pending.values():
            if req.method == Method.LIST_SUBSCRIPTIONS or asset not in req.assets:
                continue
            if latest is None or req.id > latest.id:
                latest = req
        return latest.method if latest is not None else None

    def _invoke(self, req: PendingRequest, response: Optional[dict]) -> None:
        if req.callback is None:
            return
        try:
            req.callback(response)
        except Exception:
            self._log.exception("Request callback error (method=%s id=%s)", req.method.value, req.id)

    def on_confirmation(self, confirmation: Confirmation) -> Optional[PendingRequest]:
        req = self.pending.pop(confirmation.id, None) if _hashable(confirmation.id) else None
        if req is None:
            self._log.info("Request %s not found.", confirmation.id)
            return None

        if confirmation.error is not None:
            self._log.warning("Method %s id=%s failed: %s", req.method.value, req.id, confirmation.error)
            self._invoke(req, confirmation.raw)
            return req

        self._log.info("Method %s: OK", req.method.value)
        if req.method == Method.SUBSCRIBE:
            for asset in req.assets:
                self.reconciler.start_sync(asset)
        elif req.method == Method.UNSUBSCRIBE:
            for asset in req.assets:
                self.reconciler.request_teardown(asset)
        self._invoke(req, confirmation.raw)
        return req

    def expire(self, now: Optional[float] = None) -> List[PendingRequest]:
        """Drop requests that have waited longer than ``request_timeout_s``."""
        if self.request_timeout_s <= 0:
            return []
        now = time.monotonic() if now is None else now
        expired = [r for r in self.pending.values() if now - r.created_at >= self.request_timeout_s]
        for req in expired:
            self.pending.pop(req.id, None)
            self._log.warning(
                "Request %s id=%d expired after %.1fs without confirmation",
                req.method.value,
                req.id,
                now - req.created_at,
            )
            self._invoke(req, None)
        return expired

    @property
    def last_id(self) -> int:
        return self._last_id

    def drop_pending(self, methods, up_to_id: Optional[int] = None) -> List[PendingRequest]:
        """Remove outstanding requests of the given methods without invoking callbacks.

        Only requests with ``id <= up_to_id`` are dropped when it is given.
        Returned oldest first.
        """
        wanted = {Method(m) for m in methods}
        dropped = sorted(
            (r for r in self.pending.values() if r.method in wanted and (up_to_id is None or r.id <= up_to_id)),
            key=lambda r: r.id,
        )
        for req in dropped:
            self.pending.pop(req.id, None)
        return dropped

    def clear(self) -> None:
        self.pending.clear()


def _hashable(value: Any) -> bool:
    try:
        hash(value)
    except TypeError:
        return False
    return True
