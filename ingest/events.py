"""Typed stream events.

Raw websocket payloads are validated here and turned into one of a closed
set of frozen dataclasses. Anything that does not fit a known shape raises
:class:`EventParseError` at the edge so loosely typed dicts never reach the
trading core.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from strategy.execution_types import Position


class EventParseError(ValueError):
    pass


@dataclass(frozen=True)
class LiquidationEvent:
    symbol: str
    side: str
    order_type: str
    quantity: float
    price: float
    average_price: float
    order_status: str
    event_time: int

    @property
    def volume_usdt(self) -> float:
        return self.quantity * self.price


@dataclass(frozen=True)
class AccountUpdate:
    reason: str
    event_time: int
    positions: Tuple[Position, ...]
    balances: Tuple[Tuple[str, float], ...] = ()

    @property
    def is_funding_fee(self) -> bool:
        return self.reason == "FUNDING_FEE"


@dataclass(frozen=True)
class OrderUpdate:
    symbol: str
    order_id: int
    client_order_id: str
    side: str
    order_type: str
    original_type: str
    execution_type: str
    status: str
    quantity: float
    filled_quantity: float
    last_filled_quantity: float
    price: float
    average_price: float
    stop_price: float
    reduce_only: bool
    close_position: bool
    position_side: str
    realized_profit: float
    event_time: int

    @property
    def is_filled(self) -> bool:
        return self.status == "FILLED"

    @property
    def is_stop_loss(self) -> bool:
        return self.order_type in ("STOP_MARKET", "STOP") or self.original_type in ("STOP_MARKET", "STOP")

    @property
    def is_take_profit(self) -> bool:
        if self.order_type in ("TAKE_PROFIT_MARKET", "TAKE_PROFIT"):
            return True
        if self.original_type in ("TAKE_PROFIT_MARKET", "TAKE_PROFIT"):
            return True
        return self.order_type == "LIMIT" and self.reduce_only

    @property
    def is_reducing(self) -> bool:
        return self.reduce_only or self.close_position or self.is_stop_loss or self.is_take_profit


@dataclass(frozen=True)
class ListenKeyExpired:
    event_time: int


StreamEvent = Union[LiquidationEvent, AccountUpdate, OrderUpdate, ListenKeyExpired]

# User-stream event types that carry nothing the engine acts on.
IGNORED_USER_EVENTS = frozenset({"MARGIN_CALL", "ACCOUNT_CONFIG_UPDATE", "STRATEGY_UPDATE", "GRID_UPDATE", "CONDITIONAL_ORDER_TRIGGER_REJECT"})


def _unwrap(payload: Any) -> Any:
    # combined streams wrap events as {"stream": ..., "data": {...}}
    if isinstance(payload, dict) and "data" in payload and "stream" in payload:
        return payload["data"]
    return payload


def _float(data: Dict[str, Any], key: str, default: Optional[float] = None) -> float:
    value = data.get(key)
    if value is None or value == "":
        if default is None:
            raise EventParseError(f"missing numeric field {key!r}")
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise EventParseError(f"field {key!r} is not numeric: {value!r}") from exc


def _int(data: Dict[str, Any], key: str, default: Optional[int] = None) -> int:
    value = data.get(key)
    if value is None or value == "":
        if default is None:
            raise EventParseError(f"missing integer field {key!r}")
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise EventParseError(f"field {key!r} is not an integer: {value!r}") from exc


def _str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise EventParseError(f"missing string field {key!r}")
    return value


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


def parse_liquidations(payload: Any) -> List[LiquidationEvent]:
    """Parse a ``forceOrder`` message; the ``@arr`` stream may batch events."""
    payload = _unwrap(payload)
    items = payload if isinstance(payload, list) else [payload]
    events: List[LiquidationEvent] = []
    for item in items:
        if not isinstance(item, dict) or item.get("e") != "forceOrder":
            raise EventParseError(f"not a forceOrder event: {str(item)[:120]}")
        order = item.get("o")
        if not isinstance(order, dict):
            raise EventParseError("forceOrder event without order body")
        side = _str(order, "S").upper()
        if side not in ("BUY", "SELL"):
            raise EventParseError(f"unknown liquidation side {side!r}")
        price = _float(order, "p")
        events.append(LiquidationEvent(
            symbol=_str(order, "s").upper(),
            side=side,
            order_type=order.get("o") or "LIMIT",
            quantity=_float(order, "q"),
            price=price,
            average_price=_float(order, "ap", price),
            order_status=order.get("X") or "UNKNOWN",
            event_time=_int(item, "E", _int(order, "T", 0)),
        ))
    return events


def parse_account_update(event: Dict[str, Any]) -> AccountUpdate:
    body = event.get("a")
    if not isinstance(body, dict):
        raise EventParseError("ACCOUNT_UPDATE without account body")
    event_time = _int(event, "E", 0)
    positions: List[Position] = []
    for row in body.get("P") or []:
        if not isinstance(row, dict):
            raise EventParseError("position entry is not an object")
        positions.append(Position(
            symbol=_str(row, "s").upper(),
            position_amount=_float(row, "pa"),
            entry_price=_float(row, "ep", 0.0),
            mark_price=_float(row, "mp", 0.0),
            leverage=_int(row, "l", 0),
            margin_type=(row.get("mt") or "cross").lower(),
            isolated_margin=_float(row, "iw", 0.0),
            position_side=(row.get("ps") or "BOTH").upper(),
            unrealized_pnl=_float(row, "up", 0.0),
            update_time=event_time,
        ))
    balances = []
    for row in body.get("B") or []:
        if isinstance(row, dict) and row.get("a"):
            balances.append((row["a"], _float(row, "wb", 0.0)))
    return AccountUpdate(
        reason=body.get("m") or "UNKNOWN",
        event_time=event_time,
        positions=tuple(positions),
        balances=tuple(balances),
    )


def parse_order_update(event: Dict[str, Any]) -> OrderUpdate:
    order = event.get("o")
    if not isinstance(order, dict):
        raise EventParseError("ORDER_TRADE_UPDATE without order body")
    order_type = _str(order, "o").upper()
    return OrderUpdate(
        symbol=_str(order, "s").upper(),
        order_id=_int(order, "i"),
        client_order_id=order.get("c") or "",
        side=_str(order, "S").upper(),
        order_type=order_type,
        original_type=(order.get("ot") or order_type).upper(),
        execution_type=order.get("x") or "",
        status=_str(order, "X").upper(),
        quantity=_float(order, "q", 0.0),
        filled_quantity=_float(order, "z", 0.0),
        last_filled_quantity=_float(order, "l", 0.0),
        price=_float(order, "p", 0.0),
        average_price=_float(order, "ap", 0.0),
        stop_price=_float(order, "sp", 0.0),
        reduce_only=_bool(order.get("R")),
        close_position=_bool(order.get("cp")),
        position_side=(order.get("ps") or "BOTH").upper(),
        realized_profit=_float(order, "rp", 0.0),
        event_time=_int(event, "E", _int(order, "T", 0)),
    )


def parse_user_event(payload: Any) -> Optional[StreamEvent]:
    """Parse one account-stream message. Returns None for known no-op events."""
    event = _unwrap(payload)
    if not isinstance(event, dict):
        raise EventParseError(f"user event is not an object: {str(event)[:120]}")
    kind = event.get("e")
    if kind == "ACCOUNT_UPDATE":
        return parse_account_update(event)
    if kind == "ORDER_TRADE_UPDATE":
        return parse_order_update(event)
    if kind == "listenKeyExpired":
        return ListenKeyExpired(event_time=_int(event, "E", 0))
    if kind in IGNORED_USER_EVENTS:
        return None
    raise EventParseError(f"unknown user event type {kind!r}")
