from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Set

from strategy.execution_types import Position


@dataclass
class ProtectiveOrderSet:
    stop_loss_order_id: Optional[int] = None
    take_profit_order_id: Optional[int] = None

    @property
    def complete(self) -> bool:
        return self.stop_loss_order_id is not None and self.take_profit_order_id is not None

    def ids(self) -> List[int]:
        return [oid for oid in (self.stop_loss_order_id, self.take_profit_order_id) if oid is not None]

    def leg_of(self, order_id: int) -> Optional[str]:
        if order_id == self.stop_loss_order_id:
            return 'SL'
        if order_id == self.take_profit_order_id:
            return 'TP'
        return None

    def sibling_of(self, order_id: int) -> Optional[int]:
        if order_id == self.stop_loss_order_id:
            return self.take_profit_order_id
        if order_id == self.take_profit_order_id:
            return self.stop_loss_order_id
        return None

    def clear_leg(self, leg: str) -> None:
        if leg == 'SL':
            self.stop_loss_order_id = None
        elif leg == 'TP':
            self.take_profit_order_id = None


class PositionStateStore:
    """Local mirror of exchange positions and the orders protecting them.

    Only the Reconciler mutates the store. Everyone else reads through the
    ``positions`` and ``protection`` views, which are read-only.
    """

    def __init__(self) -> None:
        self._positions: Dict[str, Position] = {}
        self._protection: Dict[str, ProtectiveOrderSet] = {}

    @property
    def positions(self) -> Mapping[str, Position]:
        return MappingProxyType(self._positions)

    @property
    def protection(self) -> Mapping[str, ProtectiveOrderSet]:
        return MappingProxyType(self._protection)

    def open_symbols(self) -> Set[str]:
        return {p.symbol for p in self._positions.values()}

    def unprotected_keys(self) -> List[str]:
        return [key for key in self._positions if not self._protection.get(key, ProtectiveOrderSet()).complete]

    # -- mutation, Reconciler only ----------------------------------------

    def replace_positions(self, positions: Mapping[str, Position]) -> Dict[str, Position]:
        previous = self._positions
        self._positions = dict(positions)
        return previous

    def remove_position(self, key: str) -> Optional[Position]:
        return self._positions.pop(key, None)

    def protection_for(self, key: str) -> ProtectiveOrderSet:
        orders = self._protection.get(key)
        if orders is None:
            orders = ProtectiveOrderSet()
            self._protection[key] = orders
        return orders

    def drop_protection(self, key: str) -> Optional[ProtectiveOrderSet]:
        return self._protection.pop(key, None)

    def reset_protection(self, keys: Iterable[str] = ()) -> None:
        self._protection = {key: ProtectiveOrderSet() for key in keys}
