import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass
class SymbolConfig:
    """Per-symbol trading parameters.

    ``trade_size`` values are margin in USDT; the notional of an entry is
    ``trade_size * leverage``.
    """

    symbol: str
    volume_threshold_usdt: float = 5000.0
    long_volume_threshold_usdt: Optional[float] = None
    short_volume_threshold_usdt: Optional[float] = None
    trade_size: float = 10.0
    long_trade_size: Optional[float] = None
    short_trade_size: Optional[float] = None
    max_position_margin_usdt: Optional[float] = None
    leverage: int = 5
    tp_percent: float = 3.0
    sl_percent: float = 1.5
    price_offset_bps: float = 1.0
    max_slippage_bps: float = 50.0
    use_post_only: bool = False
    order_type: str = "LIMIT"
    vwap_protection: bool = False
    vwap_timeframe: str = "1m"
    vwap_lookback: int = 100
    use_threshold: bool = False
    threshold_time_window_s: float = 60.0
    threshold_cooldown_s: Optional[float] = None

    def __post_init__(self) -> None:
        self.order_type = (self.order_type or "LIMIT").upper()
        if self.order_type not in ("LIMIT", "MARKET"):
            raise ValueError(f"{self.symbol}: unsupported order_type {self.order_type!r}")
        if self.leverage <= 0:
            raise ValueError(f"{self.symbol}: leverage must be positive")
        if self.sl_percent <= 0 or self.tp_percent <= 0:
            raise ValueError(f"{self.symbol}: sl_percent and tp_percent must be positive")

    def volume_threshold(self, side: str) -> float:
        """Instant threshold for a candidate trade side (BUY = long)."""
        if side == "BUY" and self.long_volume_threshold_usdt is not None:
            return float(self.long_volume_threshold_usdt)
        if side == "SELL" and self.short_volume_threshold_usdt is not None:
            return float(self.short_volume_threshold_usdt)
        return float(self.volume_threshold_usdt)

    def trade_margin(self, side: str) -> float:
        if side == "BUY" and self.long_trade_size is not None:
            return float(self.long_trade_size)
        if side == "SELL" and self.short_trade_size is not None:
            return float(self.short_trade_size)
        return float(self.trade_size)

    @property
    def market_only(self) -> bool:
        return self.order_type == "MARKET"

    @classmethod
    def from_mapping(cls, symbol: str, data: Mapping[str, Any]) -> "SymbolConfig":
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in dict(data or {}).items():
            if key not in known:
                logger.warning("Ignoring unknown symbol option %s.%s", symbol, key)
                continue
            kwargs[key] = value
        kwargs["symbol"] = symbol
        return cls(**kwargs)


def load_symbol_configs(section: Optional[Mapping[str, Any]]) -> Dict[str, SymbolConfig]:
    if not section:
        return {}
    result: Dict[str, SymbolConfig] = {}
    for symbol, data in section.items():
        raw = data.to_dict() if hasattr(data, "to_dict") else data
        result[symbol.upper()] = SymbolConfig.from_mapping(symbol.upper(), raw)
    return result
