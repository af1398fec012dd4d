import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from api.broadcaster import StatusBroadcaster
from api.metrics import metrics
from config import config
from config.symbols import SymbolConfig
from risk.position_sizer import RiskManager
from strategy.errors import ErrorKind, ErrorLogThrottle, TradingError, classify_error, is_position_mode_mismatch
from strategy.execution_types import OrderRequest, OrderTicket
from strategy.pending_orders import PendingOrderTracker
from strategy.position_key import PositionModeCache, direction_for_entry
from strategy.pricing import PricingService, slippage_bps
from strategy.simulators.paper import PaperTradingSimulator


logger = logging.getLogger(__name__)


@dataclass
class TradeResult:
    order_id: Optional[str]
    symbol: str
    side: str
    quantity: float
    price: float
    leverage: int
    order_type: str
    paper: bool = False


class OrderPlacer:
    """Turn an accepted signal into exactly one entry order.

    One submission, at most one position-mode correction retry and at most
    one MARKET fallback per trigger. Failures are classified, logged and
    broadcast; the method returns None instead of raising.
    """

    def __init__(
        self,
        transport,
        pricing: PricingService,
        risk: RiskManager,
        pending: PendingOrderTracker,
        mode: PositionModeCache,
        broadcaster: StatusBroadcaster,
        paper_mode: bool = False,
        simulator: Optional[PaperTradingSimulator] = None,
    ):
        self.transport = transport
        self.pricing = pricing
        self.risk = risk
        self.pending = pending
        self.mode = mode
        self.broadcaster = broadcaster
        self.paper_mode = paper_mode
        self.simulator = simulator
        self._errors = ErrorLogThrottle(float(config.section('monitoring').get('error_dedup_window_s', 60)))

    async def place_trade(
        self,
        symbol: str,
        side: str,
        symbol_config: SymbolConfig,
        reference_price: float,
    ) -> Optional[TradeResult]:
        side = side.upper()
        margin = symbol_config.trade_margin(side)
        leverage = symbol_config.leverage

        if self.paper_mode:
            return await self._place_paper(symbol, side, symbol_config, reference_price)

        order_type = symbol_config.order_type
        price = reference_price
        if order_type == "LIMIT":
            optimal = await self.pricing.calculate_optimal_price(
                symbol, side, symbol_config.price_offset_bps, symbol_config.use_post_only,
            )
            if optimal is not None:
                price = optimal
            await self._check_depth(symbol, side, margin * leverage)
            slip = slippage_bps(price, reference_price)
            if slip > symbol_config.max_slippage_bps:
                logger.info(
                    "%s %s slippage %.1f bps exceeds %.1f; switching to MARKET",
                    symbol, side, slip, symbol_config.max_slippage_bps,
                )
                order_type = "MARKET"
                price = reference_price

        filters = await self.pricing.get_symbol_filters(symbol)
        quantity = self.pricing.format_quantity(
            symbol, self.risk.calculate_quantity(margin, leverage, price, filters))
        price = self.pricing.format_price(symbol, price)

        if order_type == "LIMIT":
            validation = await self.pricing.validate_order_params(symbol, side, price, quantity)
            if not validation.valid:
                logger.info("%s %s LIMIT order invalid, not trading: %s", symbol, side, validation.error)
                return None
            price = validation.adjusted_price
            quantity = validation.adjusted_quantity

        await self._set_leverage(symbol, leverage)

        request = OrderRequest(
            symbol=symbol,
            side=side,
            type=order_type,
            quantity=quantity,
            price=price if order_type == "LIMIT" else None,
            position_side=self.mode.position_side(side),
            time_in_force=("GTX" if symbol_config.use_post_only else "GTC") if order_type == "LIMIT" else None,
        )
        ticket, error = await self._submit_tracked(request, leverage, allow_mode_retry=True)
        if ticket is not None:
            return self._on_success(ticket, request, leverage)
        if error is None or symbol_config.market_only:
            return None

        # one MARKET fallback with fresh inputs
        fallback_price = await self._fresh_price(symbol, reference_price)
        fallback_qty = self.pricing.format_quantity(
            symbol, self.risk.calculate_quantity(margin, leverage, fallback_price, filters))
        metrics.record_market_fallback()
        logger.info("%s %s falling back to MARKET for %.8f", symbol, side, fallback_qty)
        fallback = OrderRequest(
            symbol=symbol,
            side=side,
            type="MARKET",
            quantity=fallback_qty,
            position_side=self.mode.position_side(side),
        )
        ticket, _ = await self._submit_tracked(fallback, leverage, allow_mode_retry=False, reference=fallback_price)
        if ticket is None:
            return None
        return self._on_success(ticket, fallback, leverage, fallback_price)

    async def _place_paper(self, symbol: str, side: str, symbol_config: SymbolConfig,
                           reference_price: float) -> TradeResult:
        filters = self.pricing.cached_filters(symbol)
        quantity = self.risk.calculate_quantity(
            symbol_config.trade_margin(side), symbol_config.leverage, reference_price, filters,
        )
        order_id = None
        if self.simulator is not None:
            position = await self.simulator.open_position(
                symbol, side, quantity, reference_price, symbol_config.leverage,
            )
            order_id = f"paper-{position.symbol}-{uuid.uuid4().hex[:6]}"
        logger.info(
            "PAPER %s %s %.8f @ %.8f (%sx)",
            side, symbol, quantity, reference_price, symbol_config.leverage,
        )
        self.broadcaster.position_opened(
            symbol=symbol, side=direction_for_entry(side), quantity=quantity, price=reference_price,
            leverage=symbol_config.leverage, order_type=symbol_config.order_type, paper=True,
        )
        return TradeResult(order_id, symbol, side, quantity, reference_price,
                           symbol_config.leverage, symbol_config.order_type, paper=True)

    async def _check_depth(self, symbol: str, side: str, notional: float) -> None:
        try:
            depth = await self.pricing.analyze_order_book_depth(symbol, side, notional)
        except Exception as exc:
            logger.debug("Depth check for %s unavailable: %s", symbol, exc)
            return
        if not depth.liquidity_ok:
            logger.warning(
                "%s thin book: %.2f USDT available for %.2f USDT order",
                symbol, depth.available_notional, notional,
            )

    async def _set_leverage(self, symbol: str, leverage: int) -> None:
        try:
            await self.transport.set_leverage(symbol, leverage)
        except Exception as exc:
            error = classify_error(exc, symbol=symbol, leverage=leverage)
            self._errors.log(error, f"set leverage {symbol} {leverage}x", logger)

    async def _submit_tracked(
        self,
        request: OrderRequest,
        leverage: int,
        allow_mode_retry: bool,
        reference: Optional[float] = None,
    ):
        """Submit with a temporary pending entry; returns (ticket, error)."""
        temp_id = f"tmp-{uuid.uuid4().hex[:12]}"
        self.pending.add(temp_id, request.symbol, request.side)
        started = time.monotonic()
        try:
            ticket = await self.transport.place_order(request)
        except Exception as exc:
            if allow_mode_retry and is_position_mode_mismatch(exc):
                ticket, error = await self._correct_position_mode(request, exc, leverage)
                if ticket is None:
                    self.pending.remove(temp_id)
                    return None, None
            else:
                self.pending.remove(temp_id)
                error = classify_error(exc, symbol=request.symbol, price=request.price or reference,
                                       quantity=request.quantity, leverage=leverage)
                self._report_failure(request, error)
                return None, error
        self.pending.replace(temp_id, ticket.id)
        metrics.record_order_placed(request.type, time.monotonic() - started)
        return ticket, None

    async def _correct_position_mode(self, request: OrderRequest, exc: Exception, leverage: int):
        try:
            changed = await self.mode.refresh(self.transport)
        except Exception as mode_exc:
            logger.warning("Could not read position mode after rejection on %s: %s", request.symbol, mode_exc)
            changed = False
        if not changed:
            # modes agree: the exchange is refusing the side for another reason
            logger.info(
                "%s %s rejected as position-side conflict in %s mode; not retrying",
                request.symbol, request.side, self.mode.label,
            )
            metrics.record_order_failed(ErrorKind.POSITION_MODE_MISMATCH.value)
            return None, None
        metrics.record_mode_correction()
        request.position_side = self.mode.position_side(request.side)
        logger.info("Retrying %s %s with positionSide=%s", request.symbol, request.side, request.position_side)
        try:
            return await self.transport.place_order(request), None
        except Exception as retry_exc:
            error = classify_error(retry_exc, symbol=request.symbol, price=request.price,
                                   quantity=request.quantity, leverage=leverage)
            self._report_failure(request, error)
            return None, error

    async def _fresh_price(self, symbol: str, reference_price: float) -> float:
        try:
            mark = await self.transport.fetch_mark_price(symbol)
        except Exception as exc:
            logger.debug("Mark price for %s unavailable: %s", symbol, exc)
            mark = None
        return mark or reference_price

    def _report_failure(self, request: OrderRequest, error: TradingError) -> None:
        metrics.record_order_failed(error.kind.value)
        self._errors.log(error, f"{request.type} {request.side} {request.symbol}", logger)
        category = 'api' if error.kind in (ErrorKind.RATE_LIMITED, ErrorKind.UNCLASSIFIED) else 'trading'
        self.broadcaster.order_failed(symbol=request.symbol, side=request.side, type=request.type,
                                      quantity=request.quantity, price=request.price, kind=error.kind.value)
        self.broadcaster.error(category, error.describe(), **error.as_dict())

    def _on_success(self, ticket: OrderTicket, request: OrderRequest, leverage: int,
                    reference: Optional[float] = None) -> TradeResult:
        price = ticket.price or request.price or reference or 0.0
        logger.info(
            "Placed %s %s %s %.8f @ %s (order %s)",
            request.type, request.side, request.symbol, request.quantity, price, ticket.id,
        )
        self.broadcaster.order_placed(
            symbol=request.symbol, side=request.side, type=request.type, quantity=request.quantity,
            price=price, order_id=ticket.id,
        )
        self.broadcaster.position_opened(
            symbol=request.symbol, side=direction_for_entry(request.side), quantity=request.quantity,
            price=price, leverage=leverage, order_type=request.type, order_id=ticket.id,
        )
        return TradeResult(ticket.id, request.symbol, request.side, request.quantity, price,
                           leverage, request.type)
