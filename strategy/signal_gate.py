import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from config import config
from config.symbols import SymbolConfig
from ingest.events import LiquidationEvent
from orchestration.position_store import PositionStateStore
from risk.position_sizer import RiskManager
from strategy.pending_orders import PendingOrderTracker
from strategy.position_key import PositionModeCache
from strategy.threshold_monitor import ThresholdMonitor
from strategy.vwap import VWAPService, evaluate_vwap


logger = logging.getLogger(__name__)


@dataclass
class GateDecision:
    trade: bool
    side: Optional[str] = None
    reason: str = ""
    level: int = logging.DEBUG
    warning: bool = False
    vwap: Optional[float] = None


def candidate_side(liquidation_side: str) -> str:
    """Liquidated longs (SELL) are a long opportunity and vice versa."""
    return "BUY" if liquidation_side.upper() == "SELL" else "SELL"


class SignalGate:
    """Go/no-go for one liquidation. Every check short-circuits; nothing raises."""

    def __init__(
        self,
        store: PositionStateStore,
        pending: PendingOrderTracker,
        risk: RiskManager,
        vwap: VWAPService,
        thresholds: ThresholdMonitor,
        mode: PositionModeCache,
        max_open_positions: Optional[int] = None,
        use_threshold_system: Optional[bool] = None,
        default_cooldown_s: Optional[float] = None,
        vwap_max_age_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        trading = config.section('trading')
        signal_cfg = config.section('signal')
        self.store = store
        self.pending = pending
        self.risk = risk
        self.vwap = vwap
        self.thresholds = thresholds
        self.mode = mode
        self.max_open_positions = int(max_open_positions if max_open_positions is not None else trading.get('max_open_positions', 5))
        self.use_threshold_system = bool(use_threshold_system if use_threshold_system is not None else trading.get('use_threshold_system', False))
        self.default_cooldown_s = float(default_cooldown_s if default_cooldown_s is not None else signal_cfg.get('default_cooldown_s', 30))
        self.vwap_max_age_s = float(vwap_max_age_s if vwap_max_age_s is not None else signal_cfg.get('vwap_stream_max_age_s', 5))
        self._clock = clock
        self._last_accepted: Dict[Tuple[str, str], float] = {}

    async def evaluate(self, event: LiquidationEvent, symbol_config: SymbolConfig) -> GateDecision:
        try:
            decision = await self._evaluate(event, symbol_config)
        except Exception as exc:
            logger.exception("Signal gate failed for %s", event.symbol)
            decision = GateDecision(False, reason=f"gate error: {exc}", level=logging.ERROR)
        logger.log(
            decision.level,
            "%s %s liquidation %.2f USDT -> %s (%s)",
            event.symbol,
            event.side,
            event.volume_usdt,
            decision.side if decision.trade else "skip",
            decision.reason,
        )
        return decision

    async def _evaluate(self, event: LiquidationEvent, symbol_config: SymbolConfig) -> GateDecision:
        side = candidate_side(event.side)

        if self.use_threshold_system and symbol_config.use_threshold:
            status = self.thresholds.process_liquidation(event, symbol_config)
            if not status.meets(side):
                volume = status.recent_long_volume if side == "BUY" else status.recent_short_volume
                threshold = status.long_threshold if side == "BUY" else status.short_threshold
                return GateDecision(False, side, f"cumulative volume {volume:.0f} below {threshold:.0f}")
            cooldown = symbol_config.threshold_cooldown_s
            if cooldown is None:
                cooldown = self.default_cooldown_s
            last = self._last_accepted.get((event.symbol, side))
            if last is not None and self._clock() - last < cooldown:
                remaining = cooldown - (self._clock() - last)
                return GateDecision(False, side, f"cooldown active for {remaining:.1f}s")
        else:
            threshold = symbol_config.volume_threshold(side)
            if event.volume_usdt < threshold:
                return GateDecision(False, side, f"volume {event.volume_usdt:.0f} below {threshold:.0f}")

        warning = False
        vwap_value: Optional[float] = None
        if symbol_config.vwap_protection:
            blocked, warning, vwap_value, reason = await self._check_vwap(event, side, symbol_config)
            if blocked:
                return GateDecision(False, side, reason, logging.INFO, vwap=vwap_value)

        capacity_reason = self._check_capacity(event.symbol, side, symbol_config)
        if capacity_reason:
            return GateDecision(False, side, capacity_reason, logging.INFO, warning, vwap_value)

        self._last_accepted[(event.symbol, side)] = self._clock()
        reason = "vwap unavailable, allowed" if warning else "accepted"
        return GateDecision(True, side, reason, logging.WARNING if warning else logging.INFO, warning, vwap_value)

    async def _check_vwap(self, event: LiquidationEvent, side: str, symbol_config: SymbolConfig):
        streamed = self.vwap.get_current_vwap(event.symbol)
        if streamed is not None and time.time() - streamed[1] < self.vwap_max_age_s:
            check = evaluate_vwap(side, event.price, streamed[0])
        else:
            try:
                check = await self.vwap.check_vwap_filter(
                    event.symbol,
                    side,
                    event.price,
                    symbol_config.vwap_timeframe,
                    symbol_config.vwap_lookback,
                )
            except Exception as exc:
                logger.warning("VWAP unavailable for %s, allowing trade: %s", event.symbol, exc)
                return False, True, None, "vwap unavailable"
        return not check.allowed, False, check.vwap, check.reason

    def _check_capacity(self, symbol: str, side: str, symbol_config: SymbolConfig) -> Optional[str]:
        if self.pending.has_pending(symbol):
            return "order already pending for symbol"
        positions = list(self.store.positions.values())
        if self.mode.hedge_mode:
            open_count = len(self.store.open_symbols() | self.pending.symbols())
        else:
            open_count = len(positions) + self.pending.count()
        if open_count >= self.max_open_positions:
            return f"max open positions reached ({open_count}/{self.max_open_positions})"
        if not self.risk.margin_headroom_ok(positions, symbol_config, side):
            return "symbol margin cap reached"
        return None
