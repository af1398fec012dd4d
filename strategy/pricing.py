import logging
import time
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Dict, Optional

from config import config
from strategy.transports.binance import BinanceTransport, SymbolInfo


logger = logging.getLogger(__name__)


@dataclass
class SymbolFilters:
    symbol: str
    tick_size: float
    step_size: float
    min_notional: float
    min_qty: float = 0.0
    max_qty: Optional[float] = None
    min_price: float = 0.0
    max_price: Optional[float] = None


@dataclass
class DepthAnalysis:
    liquidity_ok: bool
    available_notional: float
    worst_price: Optional[float]
    levels_used: int


@dataclass
class ValidationResult:
    valid: bool
    adjusted_price: Optional[float] = None
    adjusted_quantity: Optional[float] = None
    error: Optional[str] = None


def _quantize(value: float, step: float, rounding) -> float:
    if step <= 0:
        return value
    step_dec = Decimal(str(step))
    units = (Decimal(str(value)) / step_dec).to_integral_value(rounding=rounding)
    return float(units * step_dec)


def round_to_tick(price: float, tick_size: float) -> float:
    return _quantize(price, tick_size, ROUND_HALF_UP)


def floor_to_step(quantity: float, step_size: float) -> float:
    return _quantize(quantity, step_size, ROUND_FLOOR)


def ceil_to_step(quantity: float, step_size: float) -> float:
    return _quantize(quantity, step_size, ROUND_CEILING)


def slippage_bps(price: float, reference: float) -> float:
    if reference <= 0:
        return 0.0
    return abs(price - reference) / reference * 10_000


class PricingService:
    """Exchange filters, order book derived prices and order validation."""

    def __init__(self, transport: BinanceTransport, cache_ttl_s: Optional[float] = None):
        pricing_cfg = config.section('pricing')
        self.transport = transport
        self.cache_ttl_s = float(cache_ttl_s if cache_ttl_s is not None else pricing_cfg.get('exchange_info_ttl_s', 300))
        self.depth_limit = int(pricing_cfg.get('depth_limit', 20))
        self.liquidity_ratio = float(pricing_cfg.get('liquidity_ratio', 0.8))
        self.defaults = SymbolFilters(
            symbol='*',
            tick_size=float(pricing_cfg.get('default_tick_size', 0.0001)),
            step_size=float(pricing_cfg.get('default_step_size', 0.001)),
            min_notional=float(pricing_cfg.get('default_min_notional', 10)),
        )
        self._filters: Dict[str, SymbolFilters] = {}
        self._loaded_at = 0.0

    async def refresh(self) -> None:
        infos = await self.transport.fetch_exchange_info()
        filters = {info.symbol: self._to_filters(info) for info in infos if info.symbol}
        if filters:
            self._filters = filters
            self._loaded_at = time.monotonic()
            logger.info("Loaded exchange filters for %d symbols", len(filters))

    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        if not self._filters or time.monotonic() - self._loaded_at > self.cache_ttl_s:
            try:
                await self.refresh()
            except Exception as exc:
                logger.warning("Exchange info refresh failed, using cached/default filters: %s", exc)
        return self.cached_filters(symbol)

    def cached_filters(self, symbol: str) -> SymbolFilters:
        filters = self._filters.get(symbol)
        if filters is not None:
            return filters
        d = self.defaults
        return SymbolFilters(symbol, d.tick_size, d.step_size, d.min_notional)

    def set_filters(self, filters: SymbolFilters) -> None:
        self._filters[filters.symbol] = filters
        self._loaded_at = time.monotonic()

    def format_price(self, symbol: str, price: float) -> float:
        return round_to_tick(price, self.cached_filters(symbol).tick_size)

    def format_quantity(self, symbol: str, quantity: float) -> float:
        return floor_to_step(quantity, self.cached_filters(symbol).step_size)

    async def calculate_optimal_price(
        self,
        symbol: str,
        side: str,
        offset_bps: float = 1.0,
        post_only: bool = False,
    ) -> Optional[float]:
        try:
            bid, ask = await self.transport.fetch_book_ticker(symbol)
        except Exception as exc:
            logger.warning("Book ticker for %s unavailable: %s", symbol, exc)
            return None
        filters = await self.get_symbol_filters(symbol)
        tick = filters.tick_size
        if side.upper() == 'BUY':
            if post_only:
                target = min(bid + tick, ask - tick) if ask - bid > tick else bid
            else:
                target = bid + max(bid * offset_bps / 10_000, tick)
        else:
            if post_only:
                target = max(ask - tick, bid + tick) if ask - bid > tick else ask
            else:
                target = ask - max(ask * offset_bps / 10_000, tick)
        target = round_to_tick(target, tick)
        if filters.min_price and target < filters.min_price:
            target = filters.min_price
        if filters.max_price and target > filters.max_price:
            target = filters.max_price
        return target

    async def analyze_order_book_depth(self, symbol: str, side: str, target_notional: float) -> DepthAnalysis:
        book = await self.transport.fetch_depth(symbol, self.depth_limit)
        # a buy consumes asks, a sell consumes bids
        levels = book['asks'] if side.upper() == 'BUY' else book['bids']
        cumulative = 0.0
        worst = None
        used = 0
        for price, qty in levels:
            cumulative += price * qty
            worst = price
            used += 1
            if cumulative >= target_notional:
                break
        ok = cumulative >= target_notional * self.liquidity_ratio
        return DepthAnalysis(ok, cumulative, worst, used)

    async def validate_order_params(self, symbol: str, side: str, price: float, quantity: float) -> ValidationResult:
        filters = await self.get_symbol_filters(symbol)
        adj_price = round_to_tick(price, filters.tick_size)
        adj_qty = floor_to_step(quantity, filters.step_size)
        if adj_price <= 0:
            return ValidationResult(False, adj_price, adj_qty, f"price {price} rounds to zero")
        if filters.min_price and adj_price < filters.min_price:
            return ValidationResult(False, adj_price, adj_qty, f"price {adj_price} below minimum {filters.min_price}")
        if filters.max_price and adj_price > filters.max_price:
            return ValidationResult(False, adj_price, adj_qty, f"price {adj_price} above maximum {filters.max_price}")
        if adj_qty <= 0 or (filters.min_qty and adj_qty < filters.min_qty):
            return ValidationResult(False, adj_price, adj_qty, f"quantity {adj_qty} below minimum {filters.min_qty}")
        if filters.max_qty and adj_qty > filters.max_qty:
            return ValidationResult(False, adj_price, adj_qty, f"quantity {adj_qty} above maximum {filters.max_qty}")
        notional = adj_price * adj_qty
        if notional < filters.min_notional:
            return ValidationResult(
                False, adj_price, adj_qty,
                f"notional {notional:.4f} below minimum {filters.min_notional}",
            )
        return ValidationResult(True, adj_price, adj_qty)

    def _to_filters(self, info: SymbolInfo) -> SymbolFilters:
        d = self.defaults
        return SymbolFilters(
            symbol=info.symbol,
            tick_size=info.price_tick or d.tick_size,
            step_size=info.amount_step or d.step_size,
            min_notional=info.min_notional if info.min_notional is not None else d.min_notional,
            min_qty=info.min_qty or 0.0,
            max_qty=info.max_qty,
            min_price=info.min_price or 0.0,
            max_price=info.max_price,
        )
