from dataclasses import dataclass, field
from typing import Any, Dict, Optional


STOP_LOSS_TYPES = frozenset({"STOP_MARKET", "STOP"})
TAKE_PROFIT_TYPES = frozenset({"TAKE_PROFIT_MARKET", "TAKE_PROFIT"})


@dataclass
class OrderTicket:
    """Normalized view of an order across acknowledgements, snapshots and paper flows."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: Optional[str] = None
    price: Optional[float] = None
    stop_price: Optional[float] = None
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[int] = None
    reduce_only: bool = False
    close_position: bool = False
    position_side: str = "BOTH"
    executed_quantity: float = 0.0
    time: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        if self.client_order_id:
            return self.client_order_id
        fallback = self.raw.get("id")
        if fallback is not None:
            return str(fallback)
        return "order"

    @property
    def is_stop_loss(self) -> bool:
        return self.type in STOP_LOSS_TYPES

    @property
    def is_take_profit(self) -> bool:
        if self.type in TAKE_PROFIT_TYPES:
            return True
        return self.type == "LIMIT" and self.reduce_only

    @property
    def is_protective(self) -> bool:
        return self.is_stop_loss or self.is_take_profit

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "quantity": self.quantity,
            "executed_quantity": self.executed_quantity,
            "price": self.price,
            "stop_price": self.stop_price,
            "reduce_only": self.reduce_only,
            "position_side": self.position_side,
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
            "time": self.time,
        }


@dataclass
class Position:
    """One open position as reported by the exchange."""

    symbol: str
    position_amount: float
    entry_price: float = 0.0
    mark_price: float = 0.0
    leverage: int = 1
    margin_type: str = "cross"
    isolated_margin: float = 0.0
    position_side: str = "BOTH"
    unrealized_pnl: float = 0.0
    update_time: int = 0

    @property
    def quantity(self) -> float:
        return abs(self.position_amount)

    @property
    def direction(self) -> str:
        if self.position_side in ("LONG", "SHORT"):
            return self.position_side
        return "LONG" if self.position_amount > 0 else "SHORT"

    @property
    def closing_side(self) -> str:
        return "SELL" if self.direction == "LONG" else "BUY"

    @property
    def is_open(self) -> bool:
        return self.position_amount != 0

    @property
    def notional(self) -> float:
        price = self.mark_price or self.entry_price
        return self.quantity * price

    @property
    def margin(self) -> float:
        if self.isolated_margin:
            return self.isolated_margin
        if self.leverage <= 0:
            return self.notional
        return self.notional / self.leverage

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "position_amount": self.position_amount,
            "direction": self.direction,
            "entry_price": self.entry_price,
            "mark_price": self.mark_price,
            "leverage": self.leverage,
            "margin_type": self.margin_type,
            "position_side": self.position_side,
            "unrealized_pnl": self.unrealized_pnl,
        }


@dataclass
class OrderRequest:
    """Outbound order parameters before exchange encoding."""

    symbol: str
    side: str
    type: str
    quantity: float
    price: Optional[float] = None
    stop_price: Optional[float] = None
    position_side: str = "BOTH"
    reduce_only: bool = False
    time_in_force: Optional[str] = None
    client_order_id: Optional[str] = None

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side.upper(),
            "type": self.type,
            "quantity": _fmt(self.quantity),
            "positionSide": self.position_side,
            "newOrderRespType": "RESULT",
        }
        if self.price is not None and self.type in ("LIMIT", "STOP", "TAKE_PROFIT"):
            params["price"] = _fmt(self.price)
        if self.stop_price is not None:
            params["stopPrice"] = _fmt(self.stop_price)
        if self.time_in_force:
            params["timeInForce"] = self.time_in_force
        elif self.type == "LIMIT":
            params["timeInForce"] = "GTC"
        # reduceOnly is rejected by the exchange in hedge mode
        if self.reduce_only and self.position_side == "BOTH":
            params["reduceOnly"] = "true"
        if self.client_order_id:
            params["newClientOrderId"] = self.client_order_id
        return params


def _fmt(value: float) -> str:
    text = f"{value:.10f}".rstrip("0").rstrip(".")
    return text or "0"
