"""Wire messages of the streaming protocol.

Client frames are small pydantic models serialised with ``model_dump_json``.
Server frames are decoded into :class:`ServerMessage`, whose :attr:`kind`
tells the connection manager how to react.  The helpers at the bottom turn
``tick_data`` and ``market_data`` payloads into :class:`~tickflow.types.Tick`.
"""

from __future__ import annotations

import math
import time
from enum import Enum, IntEnum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict

from ..types import Side, Tick


class WSMode(IntEnum):
    LTP = 1
    QUOTE = 2
    TICK = 3  # full tick data with trade direction


class MessageKind(str, Enum):
    PING = "ping"
    AUTH_OK = "auth_ok"
    AUTH_FAILED = "auth_failed"
    ERROR = "error"
    TICK = "tick"
    QUOTE = "quote"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# client -> server
class Authenticate(BaseModel):
    action: Literal["authenticate"] = "authenticate"
    api_key: str


class Subscribe(BaseModel):
    action: Literal["subscribe"] = "subscribe"
    symbol: str
    exchange: str
    mode: int


class Unsubscribe(BaseModel):
    action: Literal["unsubscribe"] = "unsubscribe"
    symbol: str
    exchange: str


class Pong(BaseModel):
    type: Literal["pong"] = "pong"


# ---------------------------------------------------------------------------
# server -> client
class ServerMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str | None = None
    status: str | None = None
    symbol: str | None = None
    exchange: str | None = None
    message: str | None = None
    code: str | int | None = None
    tick: dict[str, Any] | None = None
    data: dict[str, Any] | None = None

    @property
    def kind(self) -> MessageKind:
        if self.type == "ping":
            return MessageKind.PING
        if (
            (self.type == "auth" and self.status == "success")
            or self.type == "authenticated"
            or self.status == "authenticated"
        ):
            return MessageKind.AUTH_OK
        if self.type == "auth":
            return MessageKind.AUTH_FAILED
        if self.type == "error":
            return MessageKind.ERROR
        if self.type == "tick_data":
            return MessageKind.TICK
        if self.type == "market_data":
            return MessageKind.QUOTE
        return MessageKind.UNKNOWN

    @property
    def payload(self) -> dict[str, Any]:
        return self.tick or self.data or {}

    @property
    def reason(self) -> str:
        return str(self.message or self.code or self.status or "unknown")


def decode_message(raw: str | bytes) -> ServerMessage:
    """Parse a JSON frame; raises :class:`pydantic.ValidationError` on bad input."""
    return ServerMessage.model_validate_json(raw)


# ---------------------------------------------------------------------------
# tick normalisation
def _now_ms() -> int:
    return int(time.time() * 1000)


def _number(data: Mapping[str, Any], *keys: str) -> float | None:
    for key in keys:
        value = data.get(key)
        if value is None or value == "":
            continue
        try:
            num = float(value)
        except (TypeError, ValueError):
            return None
        return num if math.isfinite(num) else None
    return None


def infer_side(price: float, bid: float | None, ask: float | None) -> Side | None:
    """Aggressor side from last price against the bid/ask midpoint."""
    if not bid or not ask:
        return None
    return "buy" if price >= (bid + ask) / 2 else "sell"


def _build(time_ms: Any, price: float | None, volume: float | None, side: Side,
           bid: float | None, ask: float | None, now_ms: int | None) -> Tick | None:
    if price is None or price <= 0:
        return None
    if volume is None or volume <= 0:
        return None
    try:
        ts = int(time_ms) if time_ms else (now_ms if now_ms is not None else _now_ms())
    except (TypeError, ValueError):
        return None
    return Tick(time=ts, price=price, volume=volume, side=side,
                bid=bid or None, ask=ask or None)


def tick_from_payload(data: Mapping[str, Any], now_ms: int | None = None) -> Tick | None:
    """Normalise a ``tick_data`` payload; ``None`` when the tick is unusable."""
    price = _number(data, "price", "ltp", "last_price")
    raw_volume = _number(data, "volume", "qty")
    volume = 1.0 if raw_volume is None and not _present(data, "volume", "qty") else raw_volume
    bid = _number(data, "bid")
    ask = _number(data, "ask")

    side: Side | None = None
    if data.get("side") in ("buy", "sell"):
        side = data["side"]
    elif data.get("buyer_initiated") is not None:
        side = "buy" if data["buyer_initiated"] else "sell"
    elif price is not None:
        side = infer_side(price, bid, ask)
    return _build(data.get("time") or data.get("timestamp"), price, volume,
                  side or "buy", bid, ask, now_ms)


def tick_from_quote(data: Mapping[str, Any], now_ms: int | None = None) -> Tick | None:
    """Derive a synthetic tick from a degraded ``market_data`` quote."""
    price = _number(data, "ltp", "last_price")
    raw_volume = _number(data, "last_traded_qty", "ltq")
    volume = 1.0 if raw_volume is None and not _present(data, "last_traded_qty", "ltq") else raw_volume
    bid = _number(data, "bid")
    ask = _number(data, "ask")
    side = infer_side(price, bid, ask) if price is not None else None
    return _build(data.get("timestamp"), price, volume, side or "buy", bid, ask, now_ms)


def _present(data: Mapping[str, Any], *keys: str) -> bool:
    return any(data.get(k) not in (None, "") for k in keys)
