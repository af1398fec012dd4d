import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class PendingOrder:
    order_id: str
    symbol: str
    side: str
    submitted_at: float


class PendingOrderTracker:
    """Entry orders submitted but not yet confirmed by the account stream.

    Used only to stop a second signal for the same symbol while a submission
    is in flight. Entries silently expire after ``ttl_s``.
    """

    def __init__(self, ttl_s: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self._clock = clock
        self._orders: Dict[str, PendingOrder] = {}

    def add(self, order_id: str, symbol: str, side: str) -> PendingOrder:
        entry = PendingOrder(str(order_id), symbol, side.upper(), self._clock())
        self._orders[entry.order_id] = entry
        return entry

    def replace(self, temp_id: str, real_id: str) -> Optional[PendingOrder]:
        entry = self._orders.pop(str(temp_id), None)
        if entry is None:
            return None
        entry.order_id = str(real_id)
        self._orders[entry.order_id] = entry
        return entry

    def remove(self, order_id: str) -> bool:
        return self._orders.pop(str(order_id), None) is not None

    def remove_symbol(self, symbol: str, side: Optional[str] = None) -> int:
        doomed = [
            oid for oid, entry in self._orders.items()
            if entry.symbol == symbol and (side is None or entry.side == side.upper())
        ]
        for oid in doomed:
            del self._orders[oid]
        return len(doomed)

    def expire(self) -> int:
        now = self._clock()
        stale = [oid for oid, entry in self._orders.items() if now - entry.submitted_at > self.ttl_s]
        for oid in stale:
            entry = self._orders.pop(oid)
            logger.info("Pending order %s for %s expired after %.0fs", oid, entry.symbol, self.ttl_s)
        return len(stale)

    def has_pending(self, symbol: str) -> bool:
        self.expire()
        return any(entry.symbol == symbol for entry in self._orders.values())

    def get(self, order_id: str) -> Optional[PendingOrder]:
        self.expire()
        return self._orders.get(str(order_id))

    def symbols(self) -> Set[str]:
        self.expire()
        return {entry.symbol for entry in self._orders.values()}

    def entries(self) -> List[PendingOrder]:
        self.expire()
        return list(self._orders.values())

    def count(self) -> int:
        self.expire()
        return len(self._orders)

    def __len__(self) -> int:
        return self.count()
