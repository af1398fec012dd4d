import itertools
import logging
import time
import uuid
from types import MappingProxyType
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from api.metrics import metrics
from ingest.binance_rest import BinanceAPIError
from ingest.events import AccountUpdate, OrderUpdate, StreamEvent
from strategy.execution_types import OrderRequest, OrderTicket, Position
from strategy.position_key import BOTH, position_key


logger = logging.getLogger(__name__)

Listener = Callable[[StreamEvent], Awaitable[None]]


class PaperTradingSimulator:
    """In-memory exchange used for paper trading.

    Implements the same order/account surface as ``BinanceTransport`` so the
    placement and reconciliation code runs unchanged. Entry MARKET orders fill
    immediately; stop-loss and take-profit orders rest until
    :meth:`update_mark_price` crosses their trigger. Fills are reported back
    through ``listener`` as account-stream events.
    """

    def __init__(self, initial_equity: float = 1000.0, hedge_mode: bool = False,
                 listener: Optional[Listener] = None) -> None:
        self._equity = initial_equity
        self.hedge_mode = hedge_mode
        self.listener = listener
        self._ids = itertools.count(1_000_000)
        self._orders: Dict[int, OrderTicket] = {}
        self._positions: Dict[str, Position] = {}
        self._marks: Dict[str, float] = {}
        self.leverage: Dict[str, int] = {}

    @property
    def equity(self) -> float:
        return self._equity

    @property
    def positions(self) -> Mapping[str, Position]:
        return MappingProxyType(self._positions)

    @property
    def orders(self) -> Mapping[int, OrderTicket]:
        return MappingProxyType(self._orders)

    @property
    def has_credentials(self) -> bool:
        return True

    # -- transport surface ------------------------------------------------

    async def place_order(self, request: OrderRequest) -> OrderTicket:
        self._check_position_side(request.position_side)
        if request.quantity <= 0:
            raise BinanceAPIError(400, -4003, "Quantity less than or equal to zero.", "")
        order_id = next(self._ids)
        ticket = OrderTicket(
            symbol=request.symbol,
            side=request.side.upper(),
            type=request.type,
            quantity=request.quantity,
            status="NEW",
            price=request.price,
            stop_price=request.stop_price,
            client_order_id=request.client_order_id or f"paper-{uuid.uuid4().hex[:8]}",
            exchange_order_id=order_id,
            reduce_only=request.reduce_only,
            position_side=request.position_side,
            time=int(time.time() * 1000),
            raw=request.to_params(),
        )
        if request.type == "MARKET":
            price = request.price or self._marks.get(request.symbol)
            if not price:
                raise BinanceAPIError(400, -2010, "No reference price for paper market order.", "")
            ticket.status = "FILLED"
            ticket.executed_quantity = request.quantity
            ticket.price = price
            await self._fill(ticket, price)
            return ticket
        self._orders[order_id] = ticket
        return ticket

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        ticket = self._orders.get(order_id)
        if ticket is None or ticket.symbol != symbol:
            raise BinanceAPIError(400, -2011, "Unknown order sent.", "")
        del self._orders[order_id]
        ticket.status = "CANCELED"

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        self.leverage[symbol] = int(leverage)

    async def fetch_positions(self) -> List[Position]:
        return [Position(**vars(p)) for p in self._positions.values() if p.is_open]

    async def fetch_open_orders(self, symbol: Optional[str] = None) -> List[OrderTicket]:
        return [o for o in self._orders.values() if symbol is None or o.symbol == symbol]

    async def fetch_position_mode(self) -> bool:
        return self.hedge_mode

    async def fetch_balance(self, asset: str = "USDT") -> Optional[Tuple[float, float]]:
        used = sum(p.margin for p in self._positions.values())
        return self._equity, self._equity - used

    async def fetch_mark_price(self, symbol: str) -> Optional[float]:
        return self._marks.get(symbol)

    async def close(self) -> None:
        return None

    # -- paper-only helpers -----------------------------------------------

    async def open_position(self, symbol: str, side: str, quantity: float, price: float,
                            leverage: int = 1) -> Position:
        """Fill an entry immediately, as the paper short-circuit does."""
        self.leverage[symbol] = int(leverage)
        self._marks.setdefault(symbol, price)
        side_tag = ("LONG" if side.upper() == "BUY" else "SHORT") if self.hedge_mode else BOTH
        ticket = OrderTicket(
            symbol=symbol,
            side=side.upper(),
            type="MARKET",
            quantity=quantity,
            status="FILLED",
            price=price,
            exchange_order_id=next(self._ids),
            client_order_id=f"paper-{uuid.uuid4().hex[:8]}",
            position_side=side_tag,
            executed_quantity=quantity,
            time=int(time.time() * 1000),
        )
        await self._fill(ticket, price)
        key = position_key(symbol, quantity if side.upper() == "BUY" else -quantity, side_tag)
        return self._positions[key]

    async def update_mark_price(self, symbol: str, price: float) -> List[OrderTicket]:
        """Move the paper mark price and trigger any crossed stop/take-profit orders."""
        self._marks[symbol] = price
        for position in self._positions.values():
            if position.symbol == symbol:
                position.mark_price = price
        triggered = [o for o in list(self._orders.values()) if o.symbol == symbol and self._crossed(o, price)]
        for ticket in triggered:
            self._orders.pop(ticket.exchange_order_id, None)
            ticket.status = "FILLED"
            ticket.executed_quantity = ticket.quantity
            await self._fill(ticket, price)
        return triggered

    def record_pnl(self, pnl: float) -> None:
        self._equity += pnl
        metrics.update_balance(self._equity)

    # -- internals --------------------------------------------------------

    def _check_position_side(self, position_side: str) -> None:
        if self.hedge_mode == (position_side == BOTH):
            raise BinanceAPIError(400, -4061, "Order's position side does not match user's setting.", "")

    @staticmethod
    def _crossed(order: OrderTicket, price: float) -> bool:
        trigger = order.stop_price or order.price
        if not trigger or not order.is_protective:
            return False
        closing_long = order.side == "SELL"
        if order.is_stop_loss:
            return price <= trigger if closing_long else price >= trigger
        return price >= trigger if closing_long else price <= trigger

    async def _fill(self, ticket: OrderTicket, price: float) -> None:
        signed = ticket.quantity if ticket.side == "BUY" else -ticket.quantity
        side_tag = ticket.position_side or BOTH
        key = self._key_for_fill(ticket, signed)
        existing = self._positions.get(key)
        realized = 0.0
        if existing is None:
            if ticket.reduce_only or ticket.is_protective:
                logger.info("Paper reduce-only fill for %s with no position; ignored", ticket.symbol)
                return
            self._positions[key] = Position(
                symbol=ticket.symbol,
                position_amount=signed,
                entry_price=price,
                mark_price=price,
                leverage=self.leverage.get(ticket.symbol, 1),
                margin_type="isolated",
                position_side=side_tag,
                update_time=int(time.time() * 1000),
            )
        else:
            old = existing.position_amount
            new = old + signed
            if old * signed > 0:
                existing.entry_price = (existing.entry_price * abs(old) + price * abs(signed)) / abs(new)
            else:
                closed_qty = min(abs(old), abs(signed))
                direction = 1 if old > 0 else -1
                realized = (price - existing.entry_price) * closed_qty * direction
                self.record_pnl(realized)
            existing.position_amount = 0.0 if abs(new) < 1e-12 else new
            existing.mark_price = price
            if not existing.is_open:
                del self._positions[key]
        await self._emit_fill(ticket, price, realized)

    def _key_for_fill(self, ticket: OrderTicket, signed: float) -> str:
        if self.hedge_mode:
            return f"{ticket.symbol}_{ticket.position_side}"
        current = next((k for k, p in self._positions.items() if p.symbol == ticket.symbol), None)
        if current is not None:
            return current
        return position_key(ticket.symbol, signed, BOTH)

    async def _emit_fill(self, ticket: OrderTicket, price: float, realized: float) -> None:
        if self.listener is None:
            return
        now = int(time.time() * 1000)
        await self.listener(OrderUpdate(
            symbol=ticket.symbol,
            order_id=ticket.exchange_order_id or 0,
            client_order_id=ticket.client_order_id or "",
            side=ticket.side,
            order_type=ticket.type,
            original_type=ticket.type,
            execution_type="TRADE",
            status="FILLED",
            quantity=ticket.quantity,
            filled_quantity=ticket.quantity,
            last_filled_quantity=ticket.quantity,
            price=ticket.price or 0.0,
            average_price=price,
            stop_price=ticket.stop_price or 0.0,
            reduce_only=ticket.reduce_only,
            close_position=ticket.close_position,
            position_side=ticket.position_side,
            realized_profit=realized,
            event_time=now,
        ))
        snapshot = [Position(**vars(p)) for p in self._positions.values()]
        if not any(p.symbol == ticket.symbol for p in snapshot):
            snapshot.append(Position(symbol=ticket.symbol, position_amount=0.0, position_side=ticket.position_side))
        await self.listener(AccountUpdate(reason="ORDER", event_time=now, positions=tuple(snapshot)))
