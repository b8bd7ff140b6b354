from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from .symbols import normalize_asset


DEPTH_UPDATE = "depthUpdate"

PriceLevel = Tuple[Decimal, Decimal]


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ArithmeticError, ValueError, TypeError) as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def parse_level(level) -> PriceLevel:
    """Validate one ``[price, qty]`` pair.

    Price must be finite and positive, quantity finite and non-negative.
    Raises ValueError otherwise.
    """
    if isinstance(level, (str, bytes)) or not isinstance(level, Sequence) or len(level) != 2:
        raise ValueError(f"level must be a [price, qty] pair: {level!r}")
    price = to_decimal(level[0])
    qty = to_decimal(level[1])
    if not price.is_finite() or not qty.is_finite():
        raise ValueError(f"non-finite level {level!r}")
    if price <= 0:
        raise ValueError(f"non-positive price in level {level!r}")
    if qty < 0:
        raise ValueError(f"negative quantity in level {level!r}")
    return price, qty


@dataclass(frozen=True)
class DiffEvent:
    asset: str
    event_time: int
    first_update_id: int
    final_update_id: int
    bid_deltas: Sequence[PriceLevel] = field(default_factory=tuple)
    ask_deltas: Sequence[PriceLevel] = field(default_factory=tuple)
    raw: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, data: dict) -> "DiffEvent":
        """Build from a ``depthUpdate`` payload; every level is validated here."""
        return cls(
            asset=normalize_asset(str(data["s"])),
            event_time=int(data.get("E", 0)),
            first_update_id=int(data["U"]),
            final_update_id=int(data["u"]),
            bid_deltas=tuple(parse_level(lvl) for lvl in (data.get("b") or ())),
            ask_deltas=tuple(parse_level(lvl) for lvl in (data.get("a") or ())),
            raw=data,
        )


@dataclass(frozen=True)
class Teardown:
    """Queued marker: drop the asset's buffer and book once reached in order."""

    asset: str


@dataclass(frozen=True)
class Confirmation:
    id: Any
    result: Any = None
    error: Optional[Dict[str, Any]] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Unrecognized:
    reason: str
    raw: Any = None


InboundMessage = Union[Confirmation, DiffEvent, Unrecognized]
BufferItem = Union[DiffEvent, Teardown]


def parse_message(payload: Any) -> InboundMessage:
    """Classify one decoded stream payload.

    Combined-stream envelopes ({"stream": ..., "data": {...}}) are unwrapped
    before classification.
    """
    if not isinstance(payload, dict):
        return Unrecognized("not_an_object", payload)

    if "id" in payload:
        return Confirmation(
            id=payload.get("id"),
            result=payload.get("result"),
            error=payload.get("error"),
            raw=payload,
        )

    data = payload.get("data", payload) if "stream" in payload else payload
    if not isinstance(data, dict):
        return Unrecognized("not_an_object", payload)

    name = data.get("e")
    if name is None:
        return Unrecognized("no_event_name", payload)
    if name != DEPTH_UPDATE:
        return Unrecognized(f"unsupported_event {name}", payload)

    try:
        return DiffEvent.from_payload(data)
    except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
        return Unrecognized(f"malformed_depth_update {exc!r}", payload)
