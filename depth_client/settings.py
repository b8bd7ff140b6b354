from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y")


BINANCE_WS_URL = os.getenv("BINANCE_WS_URL", "wss://stream.binance.com:9443/ws")
BINANCE_REST_BASE_URL = os.getenv("BINANCE_REST_BASE_URL", "https://api.binance.com")

# REST snapshot
SNAPSHOT_LIMIT = _env_int("SNAPSHOT_LIMIT", 1000)
SNAPSHOT_TIMEOUT_S = _env_float("SNAPSHOT_TIMEOUT_S", 10.0)
SNAPSHOT_RETRY_MAX = _env_int("SNAPSHOT_RETRY_MAX", 3)
SNAPSHOT_RETRY_BACKOFF_S = _env_float("SNAPSHOT_RETRY_BACKOFF_S", 0.5)
SNAPSHOT_RETRY_BACKOFF_MAX_S = _env_float("SNAPSHOT_RETRY_BACKOFF_MAX_S", 5.0)

# WS keepalive/reconnect
WS_PING_INTERVAL_S = _env_int("WS_PING_INTERVAL_S", 20)
WS_PING_TIMEOUT_S = _env_int("WS_PING_TIMEOUT_S", 60)
WS_RECONNECT_BACKOFF_S = _env_float("WS_RECONNECT_BACKOFF_S", 1.0)
WS_RECONNECT_BACKOFF_MAX_S = _env_float("WS_RECONNECT_BACKOFF_MAX_S", 30.0)
WS_MAX_SESSION_S = _env_float("WS_MAX_SESSION_S", float(23 * 3600 + 50 * 60))

# Control commands without a confirmation are dropped after this long (<= 0 disables).
REQUEST_TIMEOUT_S = _env_float("REQUEST_TIMEOUT_S", 30.0)
REQUEST_SWEEP_INTERVAL_S = _env_float("REQUEST_SWEEP_INTERVAL_S", 5.0)

MAX_BUFFER_WARN = _env_int("MAX_BUFFER_WARN", 5000)
HEARTBEAT_SEC = _env_int("HEARTBEAT_SEC", 30)

# TLS verification should remain enabled by default.
INSECURE_TLS = _env_bool("INSECURE_TLS", False)


@dataclass
class ClientSettings:
    ws_url: str = "wss://stream.binance.com:9443/ws"
    rest_base_url: str = "https://api.binance.com"
    snapshot_limit: int = 1000
    snapshot_timeout_s: float = 10.0
    snapshot_retry_max: int = 3
    snapshot_retry_backoff_s: float = 0.5
    snapshot_retry_backoff_max_s: float = 5.0
    ws_ping_interval_s: int = 20
    ws_ping_timeout_s: int = 60
    ws_reconnect_backoff_s: float = 1.0
    ws_reconnect_backoff_max_s: float = 30.0
    ws_max_session_s: float = float(23 * 3600 + 50 * 60)
    request_timeout_s: float = 30.0
    request_sweep_interval_s: float = 5.0
    max_buffer_warn: int = 5000
    insecure_tls: bool = False

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(
            ws_url=BINANCE_WS_URL,
            rest_base_url=BINANCE_REST_BASE_URL,
            snapshot_limit=SNAPSHOT_LIMIT,
            snapshot_timeout_s=SNAPSHOT_TIMEOUT_S,
            snapshot_retry_max=SNAPSHOT_RETRY_MAX,
            snapshot_retry_backoff_s=SNAPSHOT_RETRY_BACKOFF_S,
            snapshot_retry_backoff_max_s=SNAPSHOT_RETRY_BACKOFF_MAX_S,
            ws_ping_interval_s=WS_PING_INTERVAL_S,
            ws_ping_timeout_s=WS_PING_TIMEOUT_S,
            ws_reconnect_backoff_s=WS_RECONNECT_BACKOFF_S,
            ws_reconnect_backoff_max_s=WS_RECONNECT_BACKOFF_MAX_S,
            ws_max_session_s=WS_MAX_SESSION_S,
            request_timeout_s=REQUEST_TIMEOUT_S,
            request_sweep_interval_s=REQUEST_SWEEP_INTERVAL_S,
            max_buffer_warn=MAX_BUFFER_WARN,
            insecure_tls=INSECURE_TLS,
        )
