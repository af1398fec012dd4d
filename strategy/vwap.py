import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from config import config
from strategy.transports.binance import BinanceTransport


logger = logging.getLogger(__name__)


@dataclass
class VWAPCheck:
    allowed: bool
    vwap: Optional[float]
    reason: str


def compute_vwap(klines: List[List]) -> Optional[float]:
    """VWAP over kline rows using the typical price (high + low + close) / 3."""
    if not klines:
        return None
    rows = np.asarray([[row[2], row[3], row[4], row[5]] for row in klines], dtype=float)
    typical = rows[:, :3].mean(axis=1)
    volume = rows[:, 3]
    total = volume.sum()
    if total <= 0:
        return None
    return float((typical * volume).sum() / total)


class VWAPService:
    def __init__(self, transport: BinanceTransport, cache_ttl_s: Optional[float] = None):
        self.transport = transport
        self.cache_ttl_s = float(cache_ttl_s if cache_ttl_s is not None else config.section('signal').get('vwap_cache_ttl_s', 60))
        # symbol -> (vwap, wall-clock seconds)
        self._latest: Dict[str, Tuple[float, float]] = {}

    def record(self, symbol: str, vwap: float, timestamp: Optional[float] = None) -> None:
        self._latest[symbol] = (float(vwap), timestamp if timestamp is not None else time.time())

    def get_current_vwap(self, symbol: str) -> Optional[Tuple[float, float]]:
        return self._latest.get(symbol)

    async def get_vwap(self, symbol: str, timeframe: str = '1m', lookback: int = 100) -> float:
        cached = self._latest.get(symbol)
        if cached and time.time() - cached[1] < self.cache_ttl_s:
            return cached[0]
        klines = await self.transport.fetch_klines(symbol, timeframe, lookback)
        vwap = compute_vwap(klines)
        if vwap is None:
            raise ValueError(f"No volume in {len(klines)} klines for {symbol}")
        self.record(symbol, vwap)
        return vwap

    async def check_vwap_filter(
        self,
        symbol: str,
        side: str,
        price: float,
        timeframe: str = '1m',
        lookback: int = 100,
    ) -> VWAPCheck:
        vwap = await self.get_vwap(symbol, timeframe, lookback)
        return evaluate_vwap(side, price, vwap)


def evaluate_vwap(side: str, price: float, vwap: float) -> VWAPCheck:
    if side.upper() == 'BUY' and price > vwap:
        return VWAPCheck(False, vwap, f"price {price} above VWAP {vwap:.6g}")
    if side.upper() == 'SELL' and price < vwap:
        return VWAPCheck(False, vwap, f"price {price} below VWAP {vwap:.6g}")
    return VWAPCheck(True, vwap, "vwap ok")
