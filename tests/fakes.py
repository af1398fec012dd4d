"""Shared fakes: an in-memory exchange with failure injection and canned market data."""
import time
from typing import Dict, List, Optional, Tuple

from api.broadcaster import StatusBroadcaster
from config.symbols import SymbolConfig
from orchestration.position_store import PositionStateStore
from orchestration.reconciler import Reconciler
from strategy.execution_types import OrderRequest, OrderTicket, Position
from strategy.locks import LockTable
from strategy.pending_orders import PendingOrderTracker
from strategy.position_key import BOTH, position_key
from strategy.pricing import PricingService, SymbolFilters
from strategy.simulators.paper import PaperTradingSimulator
from strategy.transports.binance import SymbolInfo


class FakeExchange(PaperTradingSimulator):
    def __init__(self, hedge_mode: bool = False, listener=None):
        super().__init__(initial_equity=1000.0, hedge_mode=hedge_mode, listener=listener)
        self.attempts: List[OrderRequest] = []
        self.cancelled: List[int] = []
        self.place_failures: List[Exception] = []
        self.cancel_failures: List[Exception] = []
        self.book: Tuple[float, float] = (100.0, 100.1)
        self.depth: Dict[str, List[Tuple[float, float]]] = {
            'bids': [(100.0, 50.0)],
            'asks': [(100.1, 50.0)],
        }
        self.klines: List[List] = []
        self.symbol_infos: List[SymbolInfo] = []

    async def place_order(self, request: OrderRequest) -> OrderTicket:
        self.attempts.append(OrderRequest(**vars(request)))
        if self.place_failures:
            raise self.place_failures.pop(0)
        return await super().place_order(request)

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        if self.cancel_failures:
            raise self.cancel_failures.pop(0)
        await super().cancel_order(symbol, order_id)
        self.cancelled.append(order_id)

    # -- seeding helpers ----------------------------------------------------

    def add_position(self, symbol: str, amount: float, entry: float, position_side: str = BOTH,
                     leverage: int = 5) -> Position:
        position = Position(symbol=symbol, position_amount=amount, entry_price=entry, mark_price=entry,
                            leverage=leverage, position_side=position_side)
        self._positions[position_key(symbol, amount, position_side)] = position
        self._marks.setdefault(symbol, entry)
        return position

    def remove_position(self, symbol: str) -> None:
        for key in [k for k, p in self._positions.items() if p.symbol == symbol]:
            del self._positions[key]

    def add_order(self, symbol: str, side: str, type: str, quantity: float, stop_price: Optional[float] = None,
                  reduce_only: bool = True, position_side: str = BOTH, age_s: float = 60.0,
                  price: Optional[float] = None) -> OrderTicket:
        order_id = next(self._ids)
        ticket = OrderTicket(
            symbol=symbol, side=side, type=type, quantity=quantity, status='NEW', price=price,
            stop_price=stop_price, exchange_order_id=order_id, reduce_only=reduce_only,
            position_side=position_side, time=int((time.time() - age_s) * 1000),
        )
        self._orders[order_id] = ticket
        return ticket

    def open_orders(self, symbol: Optional[str] = None) -> List[OrderTicket]:
        return [o for o in self._orders.values() if symbol is None or o.symbol == symbol]

    # -- market data surface ------------------------------------------------

    async def fetch_exchange_info(self) -> List[SymbolInfo]:
        return list(self.symbol_infos)

    async def fetch_book_ticker(self, symbol: str) -> Tuple[float, float]:
        return self.book

    async def fetch_depth(self, symbol: str, limit: int = 20):
        return self.depth

    async def fetch_klines(self, symbol: str, interval: str, limit: int):
        return list(self.klines)


def make_symbol_config(symbol: str = 'BTCUSDT', **overrides) -> SymbolConfig:
    params = dict(
        volume_threshold_usdt=1000.0,
        trade_size=20.0,
        leverage=5,
        tp_percent=5.0,
        sl_percent=2.0,
        order_type='LIMIT',
        max_slippage_bps=50.0,
        price_offset_bps=1.0,
    )
    params.update(overrides)
    return SymbolConfig(symbol=symbol, **params)


def make_pricing(exchange: FakeExchange, symbol: str = 'BTCUSDT', tick: float = 0.1, step: float = 0.001,
                 min_notional: float = 5.0) -> PricingService:
    pricing = PricingService(exchange, cache_ttl_s=3600)
    pricing.set_filters(SymbolFilters(symbol, tick, step, min_notional))
    return pricing


def make_reconciler(exchange: FakeExchange, symbol_configs=None, pending=None, **kwargs) -> Reconciler:
    if symbol_configs is None:
        symbol_configs = {'BTCUSDT': make_symbol_config()}
    params = dict(
        debounce_s=0.0,
        cancel_retry_delays=[],
        stuck_order_age_s=300,
        fresh_order_grace_s=30,
    )
    params.update(kwargs)
    return Reconciler(
        PositionStateStore(),
        exchange,
        make_pricing(exchange),
        symbol_configs,
        locks=LockTable(),
        pending=pending or PendingOrderTracker(),
        broadcaster=StatusBroadcaster(webhook_url=''),
        **params,
    )
