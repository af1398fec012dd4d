import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple

from config.symbols import SymbolConfig
from ingest.events import LiquidationEvent


@dataclass
class ThresholdStatus:
    symbol: str
    recent_long_volume: float
    recent_short_volume: float
    long_threshold: float
    short_threshold: float

    def meets(self, side: str) -> bool:
        if side == 'BUY':
            return self.recent_long_volume >= self.long_threshold
        return self.recent_short_volume >= self.short_threshold


class ThresholdMonitor:
    """Rolling per-symbol liquidation volume.

    A SELL liquidation (longs being flushed) counts toward the long
    opportunity, a BUY liquidation toward the short one.
    """

    def __init__(self, window_s: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.window_s = window_s
        self._clock = clock
        self._events: Dict[str, Deque[Tuple[float, str, float]]] = {}

    def process_liquidation(self, event: LiquidationEvent, symbol_config: Optional[SymbolConfig] = None) -> ThresholdStatus:
        now = self._clock()
        window = self._window(symbol_config)
        bucket = self._events.setdefault(event.symbol, deque())
        bucket.append((now, event.side, event.volume_usdt))
        self._prune(bucket, now, window)
        return self._status(event.symbol, bucket, symbol_config)

    def status(self, symbol: str, symbol_config: Optional[SymbolConfig] = None) -> ThresholdStatus:
        bucket = self._events.get(symbol, deque())
        self._prune(bucket, self._clock(), self._window(symbol_config))
        return self._status(symbol, bucket, symbol_config)

    def reset(self, symbol: str, side: Optional[str] = None) -> None:
        """Drop accumulated volume after a trade so the next one has to rebuild it."""
        bucket = self._events.get(symbol)
        if not bucket:
            return
        if side is None:
            bucket.clear()
            return
        liquidation_side = 'SELL' if side == 'BUY' else 'BUY'
        kept = [item for item in bucket if item[1] != liquidation_side]
        bucket.clear()
        bucket.extend(kept)

    def _window(self, symbol_config: Optional[SymbolConfig]) -> float:
        if symbol_config is not None and symbol_config.threshold_time_window_s:
            return float(symbol_config.threshold_time_window_s)
        return self.window_s

    @staticmethod
    def _prune(bucket: Deque, now: float, window: float) -> None:
        while bucket and now - bucket[0][0] > window:
            bucket.popleft()

    @staticmethod
    def _status(symbol: str, bucket, symbol_config: Optional[SymbolConfig]) -> ThresholdStatus:
        long_vol = sum(vol for _, side, vol in bucket if side == 'SELL')
        short_vol = sum(vol for _, side, vol in bucket if side == 'BUY')
        if symbol_config is not None:
            long_thr = symbol_config.volume_threshold('BUY')
            short_thr = symbol_config.volume_threshold('SELL')
        else:
            long_thr = short_thr = float('inf')
        return ThresholdStatus(symbol, long_vol, short_vol, long_thr, short_thr)
