import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from config import config
from config.symbols import SymbolConfig
from strategy.execution_types import Position
from strategy.pricing import SymbolFilters, ceil_to_step, floor_to_step, round_to_tick


logger = logging.getLogger(__name__)

MIN_NOTIONAL_BUFFER = 1.01


@dataclass
class RiskReport:
    balance: float
    margin_used: float
    unrealized_pnl: float
    warnings: List[str]

    @property
    def ok(self) -> bool:
        return not self.warnings


class RiskManager:
    def __init__(self, risk_percent: Optional[float] = None):
        trading = config.section('trading')
        self.risk_percent = float(risk_percent if risk_percent is not None else trading.get('risk_percent', 90))

    def calculate_quantity(self, margin_usdt: float, leverage: int, price: float, filters: SymbolFilters) -> float:
        """Entry quantity for ``margin_usdt`` at ``leverage``, bumped above the exchange minimum notional."""
        if price <= 0:
            return 0.0
        quantity = margin_usdt * leverage / price
        if quantity * price < filters.min_notional:
            quantity = filters.min_notional * MIN_NOTIONAL_BUFFER / price
            logger.info(
                "Raised quantity to %.8f to clear min notional %.2f at %.8f",
                quantity,
                filters.min_notional,
                price,
            )
        rounded = floor_to_step(quantity, filters.step_size)
        if rounded * price < filters.min_notional:
            rounded = ceil_to_step(quantity, filters.step_size)
        return rounded

    def calculate_stop_price(self, entry_price: float, direction: str, sl_percent: float,
                             tick_size: Optional[float] = None) -> float:
        if direction == 'LONG':
            price = entry_price * (1 - sl_percent / 100)
        else:
            price = entry_price * (1 + sl_percent / 100)
        return round_to_tick(price, tick_size) if tick_size else price

    def calculate_target_price(self, entry_price: float, direction: str, tp_percent: float,
                               tick_size: Optional[float] = None) -> float:
        if direction == 'LONG':
            price = entry_price * (1 + tp_percent / 100)
        else:
            price = entry_price * (1 - tp_percent / 100)
        return round_to_tick(price, tick_size) if tick_size else price

    @staticmethod
    def symbol_margin(positions: Iterable[Position], symbol: str) -> float:
        return sum(p.margin for p in positions if p.symbol == symbol)

    def margin_headroom_ok(self, positions: Iterable[Position], symbol_config: SymbolConfig, side: str) -> bool:
        cap = symbol_config.max_position_margin_usdt
        if not cap:
            return True
        projected = self.symbol_margin(positions, symbol_config.symbol) + symbol_config.trade_margin(side)
        if projected > cap:
            logger.info(
                "%s margin would reach %.2f USDT, above cap %.2f",
                symbol_config.symbol,
                projected,
                cap,
            )
            return False
        return True

    def evaluate(self, balance: float, positions: Iterable[Position]) -> RiskReport:
        positions = list(positions)
        margin_used = sum(p.margin for p in positions)
        unrealized = sum(p.unrealized_pnl for p in positions)
        warnings: List[str] = []
        limit = balance * self.risk_percent / 100
        if balance > 0 and margin_used > limit:
            warnings.append(f"margin in use {margin_used:.2f} exceeds {self.risk_percent:.0f}% of balance {balance:.2f}")
        if balance > 0 and unrealized < -limit:
            warnings.append(f"unrealized loss {unrealized:.2f} exceeds {self.risk_percent:.0f}% of balance {balance:.2f}")
        return RiskReport(balance, margin_used, unrealized, warnings)
