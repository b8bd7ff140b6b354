from __future__ import annotations


def normalize_asset(symbol: str) -> str:
    """Normalize a symbol into the asset key used across the client.

    Separators and spaces are stripped and the result is lowercased, so
    ``"BTC/USDT"``, ``"btc-usdt"`` and ``"BTCUSDT"`` all map to ``"btcusdt"``.
    """
    cleaned = (
        symbol.strip()
        .replace("/", "")
        .replace("-", "")
        .replace(":", "")
        .replace(" ", "")
    )
    return cleaned.lower()


def depth_stream(asset: str) -> str:
    return f"{normalize_asset(asset)}@depth"


def rest_symbol(asset: str) -> str:
    return normalize_asset(asset).upper()
