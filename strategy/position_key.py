"""Position key derivation shared by every sync, event and placement path.

A key is ``{symbol}_LONG`` or ``{symbol}_SHORT``. In one-way mode the
exchange tags positions ``BOTH`` and the direction comes from the sign of the
amount; in hedge mode the tag itself is the direction. Protective orders map
onto the key of the position they close, which is the opposite of their side.
"""
import logging
from typing import Optional

from strategy.execution_types import OrderTicket, Position


logger = logging.getLogger(__name__)


LONG = "LONG"
SHORT = "SHORT"
BOTH = "BOTH"


def position_key(symbol: str, position_amount: float, position_side: str = BOTH) -> Optional[str]:
    side_tag = (position_side or BOTH).upper()
    if side_tag in (LONG, SHORT):
        return f"{symbol}_{side_tag}"
    if position_amount > 0:
        return f"{symbol}_{LONG}"
    if position_amount < 0:
        return f"{symbol}_{SHORT}"
    return None


def key_for_position(position: Position) -> Optional[str]:
    return position_key(position.symbol, position.position_amount, position.position_side)


def key_for_direction(symbol: str, direction: str) -> str:
    return f"{symbol}_{direction.upper()}"


def split_key(key: str):
    symbol, _, direction = key.rpartition("_")
    return symbol, direction


def key_for_closing_order(order: OrderTicket) -> str:
    """Key of the position a reduce-only/protective order would close."""
    side_tag = (order.position_side or BOTH).upper()
    if side_tag in (LONG, SHORT):
        return f"{order.symbol}_{side_tag}"
    direction = LONG if order.side.upper() == "SELL" else SHORT
    return f"{order.symbol}_{direction}"


def direction_for_entry(side: str) -> str:
    return LONG if side.upper() == "BUY" else SHORT


def closing_side(direction: str) -> str:
    return "SELL" if direction.upper() == LONG else "BUY"


def position_side_for(is_hedge_mode: bool, side: str) -> str:
    """positionSide parameter for an entry order on ``side``."""
    if not is_hedge_mode:
        return BOTH
    return LONG if side.upper() == "BUY" else SHORT


def protects(order: OrderTicket, position: Position) -> bool:
    """Whether ``order`` is a stop-loss or take-profit serving ``position``."""
    if order.symbol != position.symbol or not order.is_protective:
        return False
    if order.side.upper() != position.closing_side:
        return False
    side_tag = (position.position_side or BOTH).upper()
    if side_tag in (LONG, SHORT):
        return (order.position_side or BOTH).upper() == side_tag
    return order.reduce_only or order.close_position


class PositionModeCache:
    """Locally cached hedge/one-way account mode."""

    def __init__(self, hedge_mode: bool = False) -> None:
        self.hedge_mode = hedge_mode

    @property
    def label(self) -> str:
        return "HEDGE" if self.hedge_mode else "ONE_WAY"

    def position_side(self, side: str) -> str:
        return position_side_for(self.hedge_mode, side)

    async def refresh(self, transport) -> bool:
        """Re-read the mode from the exchange; True when it changed."""
        actual = await transport.fetch_position_mode()
        if actual == self.hedge_mode:
            return False
        logger.warning(
            "Position mode changed on exchange: %s -> %s",
            self.label,
            "HEDGE" if actual else "ONE_WAY",
        )
        self.hedge_mode = actual
        return True
