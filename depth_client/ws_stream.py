import asyncio
import contextlib
import json
import logging
import os
import random
import ssl
import time
from typing import Callable, Optional

from websockets.asyncio.client import connect as ws_connect  # type: ignore
from websockets.exceptions import ConnectionClosed  # type: ignore


class DepthWSStream:
    """Async websocket wrapper with auto-reconnect and a non-blocking send queue.

    Every decoded JSON frame goes to ``on_message(payload, recv_ms)``. Text passed
    to ``send()`` is queued and written by the live connection; anything queued
    while disconnected goes out after the next open.
    """

    def __init__(
        self,
        ws_url: str,
        on_message: Callable[[object, int], None],
        on_open: Optional[Callable[[], None]] = None,
        on_close: Optional[Callable[[], None]] = None,
        on_status: Optional[Callable[[str, dict], None]] = None,
        insecure_tls: bool = False,
        ping_interval_s: int = 20,
        ping_timeout_s: int = 60,
        reconnect_backoff_s: float = 1.0,
        reconnect_backoff_max_s: float = 30.0,
        max_session_s: float = 23 * 3600 + 50 * 60,
        recv_poll_timeout_s: float = 5.0,
        max_queue: int = 256,
    ):
        self.ws_url = ws_url
        self.on_message = on_message
        self.on_open_cb = on_open
        self.on_close_cb = on_close
        self.on_status_cb = on_status
        self.insecure_tls = insecure_tls

        self.ping_interval_s = max(0, int(ping_interval_s))
        self.ping_timeout_s = max(1, int(ping_timeout_s))
        self.reconnect_backoff_s = max(0.0, float(reconnect_backoff_s))
        self.reconnect_backoff_max_s = max(self.reconnect_backoff_s, float(reconnect_backoff_max_s))
        self.max_session_s = max(60.0, float(max_session_s))
        self.recv_poll_timeout_s = max(0.5, float(recv_poll_timeout_s))
        self.max_queue = max(1, int(max_queue))

        self._ws = None
        self._stop = False
        self._outbox: Optional[asyncio.Queue] = None
        # Frame taken off the outbox whose write did not complete; sent first next time.
        self._retry_frame: Optional[str] = None
        self._log = logging.getLogger("websocket")

    def _emit_status(self, typ: str, details: dict) -> None:
        try:
            if self.on_status_cb:
                self.on_status_cb(typ, details)
        except Exception:
            self._log.exception("Status callback error (type=%s)", typ)

    def _call(self, cb: Optional[Callable[[], None]], label: str) -> None:
        if cb is None:
            return
        try:
            cb()
        except Exception:
            self._log.exception("%s callback error", label)

    def _ensure_outbox(self) -> asyncio.Queue:
        if self._outbox is None:
            self._outbox = asyncio.Queue()
        return self._outbox

    def send(self, text: str) -> None:
        """Queue one text frame; returns immediately."""
        self._ensure_outbox().put_nowait(text)

    async def _write_loop(self) -> None:
        outbox = self._ensure_outbox()
        while not self._stop and self._ws is not None:
            if self._retry_frame is not None:
                text, self._retry_frame = self._retry_frame, None
            else:
                text = await outbox.get()
            ws = self._ws
            if ws is None:
                self._retry_frame = text
                return
            try:
                await ws.send(text)
            except ConnectionClosed as exc:
                self._log.warning("Send failed on closed connection, keeping frame: %s", exc)
                self._retry_frame = text
                return

    async def _ping_loop(self) -> None:
        if self.ping_interval_s <= 0 or self._ws is None:
            return
        while not self._stop:
            await asyncio.sleep(self.ping_interval_s)
            if self._stop or self._ws is None:
                return
            try:
                payload = os.urandom(4)
                pong_waiter = self._ws.ping(payload)
                self._emit_status("ws_ping", {"nbytes": len(payload)})
                await asyncio.wait_for(pong_waiter, timeout=self.ping_timeout_s)
                self._emit_status("ws_pong", {"nbytes": len(payload)})
            except Exception as exc:
                self._emit_status("ws_ping_timeout", {"error": str(exc)})
                with contextlib.suppress(Exception):
                    await self._ws.close()
                return

    async def _read_loop(self, session_deadline: float) -> None:
        assert self._ws is not None
        while not self._stop:
            if time.monotonic() >= session_deadline:
                self._emit_status("ws_session_expired", {"max_session_s": self.max_session_s})
                return

            try:
                msg = await asyncio.wait_for(self._ws.recv(), timeout=self.recv_poll_timeout_s)
            except asyncio.TimeoutError:
                continue
            except ConnectionClosed as exc:
                self._emit_status("ws_close", {"code": getattr(exc, "code", None), "msg": str(exc)})
                return
            except Exception as exc:
                self._emit_status("ws_error", {"error": str(exc)})
                return

            if msg is None:
                return

            recv_ms = int(time.time() * 1000)
            try:
                payload = json.loads(msg)
            except ValueError:
                self._log.warning("Dropping unparseable WS message: %.200r", msg)
                continue

            try:
                self.on_message(payload, recv_ms)
            except Exception:
                self._log.exception("Message callback error")

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.insecure_tls:
            return None
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    async def run_async(self) -> None:
        self._stop = False
        self._ensure_outbox()
        attempt = 0

        while not self._stop:
            attempt += 1
            session_deadline = time.monotonic() + self.max_session_s
            ssl_ctx = self._ssl_context()
            opened = False
            try:
                connect_kwargs = {
                    "ping_interval": None,
                    "ping_timeout": None,
                    "close_timeout": 5,
                    "max_queue": self.max_queue,
                }
                if ssl_ctx is not None:
                    connect_kwargs["ssl"] = ssl_ctx
                async with ws_connect(self.ws_url, **connect_kwargs) as ws:
                    self._ws = ws
                    opened = True
                    self._log.info("Successfully connected to %s", self.ws_url)
                    self._emit_status("ws_connect", {"attempt": attempt})
                    self._call(self.on_open_cb, "Open")

                    ping_task = asyncio.create_task(self._ping_loop())
                    write_task = asyncio.create_task(self._write_loop())
                    try:
                        await self._read_loop(session_deadline=session_deadline)
                    finally:
                        for task in (ping_task, write_task):
                            task.cancel()
                            with contextlib.suppress(asyncio.CancelledError, Exception):
                                await task
                    close_code = getattr(ws, "close_code", None)
                    close_reason = getattr(ws, "close_reason", None)
                    if close_code is not None or close_reason is not None:
                        self._emit_status("ws_close", {"code": close_code, "msg": close_reason})
            except Exception as exc:
                self._emit_status("ws_run_exception", {"error": str(exc)})
                self._log.exception("WebSocket run exception")
            finally:
                self._ws = None

            if opened:
                self._log.info("Connection closed.")
                self._call(self.on_close_cb, "Close")
                attempt = 0

            if self._stop:
                break

            # Exponential backoff with jitter to respect connection attempt limits.
            base = self.reconnect_backoff_s
            cap = self.reconnect_backoff_max_s
            if base <= 0.0 or cap <= 0.0:
                backoff = 0.0
            else:
                backoff = min(cap, base * (2 ** max(0, attempt - 1)))
                backoff = backoff * (0.7 + 0.6 * random.random())
            self._emit_status("ws_reconnect_wait", {"sleep_s": float(backoff), "attempt": attempt})
            await asyncio.sleep(backoff)

    def run(self) -> None:
        """Run the websocket loop with auto-reconnect."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            raise RuntimeError("DepthWSStream.run() cannot be called from an active event loop.")
        asyncio.run(self.run_async())

    def close(self) -> None:
        self._stop = True
        ws = self._ws
        if ws is None:
            return
        asyncio.get_running_loop().create_task(ws.close())
