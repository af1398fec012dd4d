"""Keeps every open position protected by exactly one stop-loss and one take-profit.

The exchange is the source of truth. The :class:`Reconciler` owns the local
:class:`PositionStateStore` and converges it, and the exchange-side
protective orders, from four triggers: the startup/reconnect ``sync``, account
updates, order updates and the periodic ``sweep``.

Every inspect -> cancel -> place sequence for a position key runs under a
non-blocking :class:`LockTable` entry. A trigger that finds the key busy is
dropped rather than queued; the sweep and the next account event re-check the
key, so correctness depends on the sweep running.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from api.broadcaster import StatusBroadcaster
from api.metrics import metrics
from config import config
from config.symbols import SymbolConfig
from ingest.events import AccountUpdate, OrderUpdate
from orchestration.position_store import PositionStateStore, ProtectiveOrderSet
from risk.position_sizer import RiskManager
from strategy.errors import ErrorLogThrottle, classify_error, is_order_gone
from strategy.execution_types import OrderRequest, OrderTicket, Position
from strategy.locks import LockTable
from strategy.pending_orders import PendingOrderTracker
from strategy.position_key import (
    BOTH,
    LONG,
    SHORT,
    key_for_closing_order,
    key_for_direction,
    key_for_position,
    protects,
    split_key,
)
from strategy.pricing import PricingService


logger = logging.getLogger(__name__)


@dataclass
class ProtectionResult:
    cancelled: int = 0
    placed: int = 0
    failed: int = 0


@dataclass
class SweepReport:
    positions: int = 0
    orphans: int = 0
    stuck: int = 0
    closed: int = 0
    cancelled: int = 0
    placed: int = 0
    skipped: int = 0
    failed: bool = False


def _is_closing_order(order: OrderTicket) -> bool:
    if order.reduce_only or order.close_position:
        return True
    # hedge-mode exits carry the position side instead of reduceOnly
    return order.position_side != BOTH and order.side == ('SELL' if order.position_side == LONG else 'BUY')


def _order_age_key(order: OrderTicket):
    return (order.time or 0, order.exchange_order_id or 0)


class Reconciler:
    def __init__(
        self,
        store: PositionStateStore,
        transport,
        pricing: PricingService,
        symbol_configs: Mapping[str, SymbolConfig],
        risk: Optional[RiskManager] = None,
        locks: Optional[LockTable] = None,
        pending: Optional[PendingOrderTracker] = None,
        broadcaster: Optional[StatusBroadcaster] = None,
        debounce_s: Optional[float] = None,
        tolerance: Optional[float] = None,
        cancel_retry_delays: Optional[Sequence[float]] = None,
        stuck_order_age_s: Optional[float] = None,
        fresh_order_grace_s: Optional[float] = None,
        clock=time.time,
    ):
        settings = config.section('reconciliation')
        self.store = store
        self.transport = transport
        self.pricing = pricing
        self.symbol_configs = symbol_configs
        self.risk = risk or RiskManager()
        self.locks = locks or LockTable()
        self.pending = pending or PendingOrderTracker()
        self.broadcaster = broadcaster or StatusBroadcaster()
        self.debounce_s = float(debounce_s if debounce_s is not None else settings.get('protection_debounce_s', 0.1))
        self.tolerance = float(tolerance if tolerance is not None else settings.get('quantity_tolerance', 1e-8))
        delays = cancel_retry_delays if cancel_retry_delays is not None else settings.get('cancel_retry_delays_s', [1, 2, 4])
        self.cancel_retry_delays = [float(d) for d in delays]
        self.stuck_order_age_s = float(stuck_order_age_s if stuck_order_age_s is not None else settings.get('stuck_order_age_s', 300))
        self.fresh_order_grace_s = float(fresh_order_grace_s if fresh_order_grace_s is not None else settings.get('fresh_order_grace_s', 30))
        self._clock = clock
        self._errors = ErrorLogThrottle(float(config.section('monitoring').get('error_dedup_window_s', 60)))
        self._tasks: Set[asyncio.Task] = set()
        self._debounced: Dict[str, asyncio.Task] = {}
        # keys whose close was already announced by a reduce-only fill
        self._closed_by_fill: Set[str] = set()

    # -- task bookkeeping -------------------------------------------------

    def _schedule(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Reconciliation task failed: %s", exc, exc_info=exc)

    def _schedule_debounced(self, key: str) -> None:
        previous = self._debounced.pop(key, None)
        if previous is not None and not previous.done():
            previous.cancel()

        async def _later():
            await asyncio.sleep(self.debounce_s)
            if self._debounced.get(key) is task:
                del self._debounced[key]
            await self.ensure_protected(key)

        task = self._schedule(_later())
        self._debounced[key] = task

    async def wait_idle(self) -> None:
        """Wait until every scheduled reconciliation task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._debounced.clear()

    # -- full sync --------------------------------------------------------

    async def sync(self) -> None:
        """Rebuild the store from REST snapshots, then protect every position."""
        positions = await self.transport.fetch_positions()
        orders = await self.transport.fetch_open_orders()
        fresh = self._index_positions(positions, self.store.positions)
        self.store.replace_positions(fresh)
        self.store.reset_protection(fresh.keys())

        for key, position in fresh.items():
            protection = self.store.protection_for(key)
            serving = sorted((o for o in orders if protects(o, position)), key=_order_age_key)
            stop = next((o for o in serving if o.is_stop_loss), None)
            target = next((o for o in serving if o.is_take_profit), None)
            protection.stop_loss_order_id = stop.exchange_order_id if stop else None
            protection.take_profit_order_id = target.exchange_order_id if target else None

        open_ids = {o.id for o in orders}
        for entry in self.pending.entries():
            if not entry.order_id.startswith('tmp-') and entry.order_id not in open_ids:
                self.pending.remove(entry.order_id)

        logger.info(
            "Synced %d positions and %d open orders from exchange",
            len(fresh),
            len(orders),
        )
        for key in list(fresh):
            await self.ensure_protected(key)
        self._publish_metrics()

    def _index_positions(self, positions: Iterable[Position], previous: Mapping[str, Position]) -> Dict[str, Position]:
        fresh: Dict[str, Position] = {}
        for position in positions:
            if not position.is_open:
                continue
            key = key_for_position(position)
            if key is None:
                continue
            old = previous.get(key)
            if position.leverage <= 0:
                cfg = self.symbol_configs.get(position.symbol)
                position.leverage = (old.leverage if old else 0) or (cfg.leverage if cfg else 1)
            if not position.mark_price:
                position.mark_price = (old.mark_price if old else 0.0) or position.entry_price
            fresh[key] = position
        return fresh

    # -- account stream ---------------------------------------------------

    async def handle_account_update(self, update: AccountUpdate) -> None:
        if update.is_funding_fee:
            self._apply_funding_update(update)
            return

        previous = dict(self.store.positions)
        fresh = self._index_positions(update.positions, previous)
        self.store.replace_positions(fresh)

        for key in previous.keys() - fresh.keys():
            self._close_key(key, previous[key], reason='Position closed')

        for key, position in fresh.items():
            # still open, so any earlier reduce-only fill did not close it
            self._closed_by_fill.discard(key)
            old = previous.get(key)
            if old is None:
                direction = position.direction
                entry_side = 'BUY' if direction == LONG else 'SELL'
                self.pending.remove_symbol(position.symbol, entry_side)
                self.broadcaster.position_updated(
                    symbol=position.symbol, side=direction, quantity=position.quantity,
                    price=position.entry_price, type='opened', pnl=position.unrealized_pnl,
                )
                self._schedule(self.ensure_protected(key))
            elif abs(old.quantity - position.quantity) > self.tolerance:
                logger.info(
                    "%s size changed %.8f -> %.8f; adjusting protection",
                    key,
                    old.quantity,
                    position.quantity,
                )
                self.broadcaster.position_updated(
                    symbol=position.symbol, side=position.direction, quantity=position.quantity,
                    price=position.entry_price, type='updated', pnl=position.unrealized_pnl,
                )
                self._schedule(self.ensure_protected(key))
            else:
                self._schedule_debounced(key)
        self._publish_metrics()

    def _apply_funding_update(self, update: AccountUpdate) -> None:
        # funding settlements restate positions without changing their size
        for incoming in update.positions:
            key = key_for_position(incoming)
            current = self.store.positions.get(key) if key else None
            if current is None:
                continue
            current.entry_price = incoming.entry_price or current.entry_price
            current.unrealized_pnl = incoming.unrealized_pnl
            current.update_time = incoming.update_time

    def _close_key(self, key: str, position: Position, reason: str) -> None:
        """Drop all per-key bookkeeping now; cancel leftover orders in the background."""
        protection = self.store.drop_protection(key) or ProtectiveOrderSet()
        self.store.remove_position(key)
        entry_side = 'BUY' if position.direction == LONG else 'SELL'
        self.pending.remove_symbol(position.symbol, entry_side)
        debounced = self._debounced.pop(key, None)
        if debounced is not None and not debounced.done():
            debounced.cancel()
        self.locks.discard(key)

        logger.info("%s closed (%s)", key, reason)
        if key in self._closed_by_fill:
            self._closed_by_fill.discard(key)
        else:
            metrics.record_position_closed(reason)
            self.broadcaster.position_closed(
                symbol=position.symbol, side=position.direction, quantity=position.quantity,
                price=position.mark_price or position.entry_price, type='closed',
                pnl=position.unrealized_pnl, reason=reason,
            )
        self._schedule(self._cancel_leftovers(key, protection.ids()))
        self._schedule(self.refresh_balance())

    async def _cancel_leftovers(self, key: str, tracked_ids: List[int]) -> int:
        symbol, _ = split_key(key)
        try:
            orders = await self.transport.fetch_open_orders(symbol)
        except Exception as exc:
            logger.warning("Could not list %s orders for closed %s: %s", symbol, key, exc)
            orders = []
        targets = set(tracked_ids)
        if key not in self.store.positions:
            # reopened keys keep their new protection; only tracked ids go
            targets.update(
                o.exchange_order_id for o in orders
                if o.exchange_order_id is not None and _is_closing_order(o) and key_for_closing_order(o) == key
            )
        open_ids = {o.exchange_order_id for o in orders}
        cancelled = 0
        for order_id in targets:
            if orders and order_id not in open_ids:
                continue
            if await self._cancel_with_retry(symbol, order_id, 'position_closed'):
                cancelled += 1
        return cancelled

    async def refresh_balance(self) -> None:
        try:
            balance = await self.transport.fetch_balance()
        except Exception as exc:
            logger.warning("Balance refresh failed: %s", exc)
            return
        if balance is None:
            return
        wallet, available = balance
        metrics.update_balance(wallet)
        self.broadcaster.balance_refresh(balance=wallet, available=available)

    # -- order stream -----------------------------------------------------

    async def handle_order_update(self, update: OrderUpdate) -> None:
        key = self._key_for_update(update)
        status = update.status

        if status == 'NEW':
            if update.is_reducing and (update.is_stop_loss or update.is_take_profit):
                self._record_ack(key, update)
            return

        if status == 'FILLED':
            if update.is_reducing:
                self._handle_reduce_fill(key, update)
            else:
                self.pending.remove(str(update.order_id))
                self.broadcaster.order_filled(
                    symbol=update.symbol, side=update.side, order_id=update.order_id,
                    quantity=update.filled_quantity, price=update.average_price, type=update.order_type,
                )
            return

        if status in ('CANCELED', 'EXPIRED', 'REJECTED'):
            if not update.is_reducing:
                self.pending.remove(str(update.order_id))
                return
            protection = self.store.protection.get(key)
            leg = protection.leg_of(update.order_id) if protection else None
            if leg:
                protection.clear_leg(leg)
                logger.info("%s %s order %s %s; re-protecting", key, leg, update.order_id, status.lower())
                if key in self.store.positions:
                    self._schedule_debounced(key)

    def _key_for_update(self, update: OrderUpdate) -> str:
        if update.position_side in (LONG, SHORT):
            return key_for_direction(update.symbol, update.position_side)
        if update.is_reducing:
            return key_for_direction(update.symbol, LONG if update.side == 'SELL' else SHORT)
        return key_for_direction(update.symbol, LONG if update.side == 'BUY' else SHORT)

    def _record_ack(self, key: str, update: OrderUpdate) -> None:
        if key not in self.store.positions:
            return
        protection = self.store.protection_for(key)
        if update.is_stop_loss and protection.stop_loss_order_id is None:
            protection.stop_loss_order_id = update.order_id
        elif update.is_take_profit and not update.is_stop_loss and protection.take_profit_order_id is None:
            protection.take_profit_order_id = update.order_id

    def _handle_reduce_fill(self, key: str, update: OrderUpdate) -> None:
        position = self.store.positions.get(key)
        if position is not None and update.filled_quantity < position.quantity - self.tolerance:
            # partial reduce: the account update that follows resizes protection
            logger.info(
                "%s reduced by %.8f of %.8f via order %s",
                key, update.filled_quantity, position.quantity, update.order_id,
            )
            self.broadcaster.position_updated(
                symbol=update.symbol, side=position.direction,
                quantity=self.pricing.format_quantity(update.symbol, position.quantity - update.filled_quantity),
                price=update.average_price,
                type='reduced', pnl=update.realized_profit,
            )
            return

        protection = self.store.drop_protection(key)
        sibling = None
        if protection is not None:
            sibling = protection.sibling_of(update.order_id)
            if sibling is None and protection.leg_of(update.order_id) is None:
                # untracked reduce-only fill; both tracked legs are now stale
                for order_id in protection.ids():
                    self._schedule(self._cancel_with_retry(update.symbol, order_id, 'position_closed'))
        if sibling is not None:
            self._schedule(self._cancel_with_retry(update.symbol, sibling, 'sibling_filled'))

        if update.is_stop_loss:
            reason = 'Stop Loss'
        elif update.is_take_profit:
            reason = 'Take Profit'
        else:
            reason = 'Reduce Only'
        _, direction = split_key(key)
        if position is not None:
            self._closed_by_fill.add(key)
        metrics.record_position_closed(reason)
        self.broadcaster.position_closed(
            symbol=update.symbol, side=direction, quantity=update.filled_quantity,
            price=update.average_price, type='closed', pnl=update.realized_profit, reason=reason,
        )

    # -- protection -------------------------------------------------------

    async def ensure_protected(self, key: str) -> Optional[ProtectionResult]:
        """Idempotently converge ``key`` to one matching SL and TP. None when skipped."""
        token = self.locks.try_acquire(key)
        if token is None:
            logger.debug("Protection for %s already in flight; skipping", key)
            metrics.record_lock_skip()
            return None
        try:
            return await self._protect(key, token)
        finally:
            if not self.locks.release(key, token) and key in self.store.positions:
                # closed and reopened while this pass ran; the new position gets its own pass
                self._schedule_debounced(key)

    def _owned_position(self, key: str, token: int) -> Optional[Position]:
        """The position for ``key``, or None once this pass lost the key to a close."""
        if not self.locks.owns(key, token):
            return None
        return self.store.positions.get(key)

    async def _protect(self, key: str, token: int) -> ProtectionResult:
        result = ProtectionResult()
        position = self._owned_position(key, token)
        if position is None:
            return result
        orders = await self.transport.fetch_open_orders(position.symbol)
        position = self._owned_position(key, token)
        if position is None:
            return result

        serving = sorted((o for o in orders if protects(o, position)), key=_order_age_key)
        to_cancel: List[OrderTicket] = []
        keep: Dict[str, Optional[OrderTicket]] = {}
        for leg, matches in (
            ('SL', [o for o in serving if o.is_stop_loss]),
            ('TP', [o for o in serving if o.is_take_profit]),
        ):
            first = matches[0] if matches else None
            duplicates = matches[1:]
            if duplicates:
                logger.warning("%s has %d duplicate %s orders; keeping %s", key, len(duplicates), leg, first.id)
            to_cancel.extend(duplicates)
            if first is not None and abs(first.quantity - position.quantity) > self.tolerance:
                logger.info(
                    "%s %s quantity %.8f does not match position %.8f",
                    key, leg, first.quantity, position.quantity,
                )
                to_cancel.append(first)
                first = None
            keep[leg] = first

        for order in to_cancel:
            if await self._cancel_with_retry(position.symbol, order.exchange_order_id, 'protection_adjust'):
                result.cancelled += 1

        position = self._owned_position(key, token)
        if position is None:
            return result
        protection = self.store.protection_for(key)
        protection.stop_loss_order_id = keep['SL'].exchange_order_id if keep['SL'] else None
        protection.take_profit_order_id = keep['TP'].exchange_order_id if keep['TP'] else None
        if protection.complete:
            return result

        symbol_config = self.symbol_configs.get(position.symbol)
        if symbol_config is None:
            logger.warning("No configuration for %s; cannot place protective orders for %s", position.symbol, key)
            return result

        for leg in ('SL', 'TP'):
            if keep[leg] is not None:
                continue
            order_id = await self._place_protective(position, leg, symbol_config)
            if order_id is None:
                result.failed += 1
                continue
            result.placed += 1
            if self._owned_position(key, token) is None:
                break
            if leg == 'SL':
                protection.stop_loss_order_id = order_id
            else:
                protection.take_profit_order_id = order_id
        return result

    async def _place_protective(self, position: Position, leg: str, symbol_config: SymbolConfig) -> Optional[int]:
        filters = await self.pricing.get_symbol_filters(position.symbol)
        entry = position.entry_price or position.mark_price
        if leg == 'SL':
            order_type = 'STOP_MARKET'
            trigger = self.risk.calculate_stop_price(entry, position.direction, symbol_config.sl_percent, filters.tick_size)
        else:
            order_type = 'TAKE_PROFIT_MARKET'
            trigger = self.risk.calculate_target_price(entry, position.direction, symbol_config.tp_percent, filters.tick_size)
        hedged = position.position_side in (LONG, SHORT)
        request = OrderRequest(
            symbol=position.symbol,
            side=position.closing_side,
            type=order_type,
            quantity=position.quantity,
            stop_price=trigger,
            position_side=position.position_side if hedged else BOTH,
            reduce_only=not hedged,
        )
        try:
            ticket = await self.transport.place_order(request)
        except Exception as exc:
            error = classify_error(exc, symbol=position.symbol, price=trigger, quantity=position.quantity,
                                   leverage=position.leverage)
            if self._errors.log(error, f"{leg} placement for {position.symbol}", logger):
                self.broadcaster.error('trading', f"Failed to place {leg} for {position.symbol}", **error.as_dict())
            metrics.record_order_failed(error.kind.value)
            return None
        metrics.record_protective_order(leg)
        notify = self.broadcaster.stop_loss_placed if leg == 'SL' else self.broadcaster.take_profit_placed
        notify(symbol=position.symbol, side=position.direction, order_id=ticket.exchange_order_id,
               quantity=position.quantity, price=trigger)
        return ticket.exchange_order_id

    async def _cancel_with_retry(self, symbol: str, order_id: Optional[int], reason: str) -> bool:
        if order_id is None:
            return True
        attempts = [0.0] + list(self.cancel_retry_delays)
        last_error: Optional[Exception] = None
        for delay in attempts:
            if delay:
                await asyncio.sleep(delay)
            try:
                await self.transport.cancel_order(symbol, order_id)
            except Exception as exc:
                if is_order_gone(exc):
                    logger.debug("Order %s on %s already gone", order_id, symbol)
                    return True
                last_error = exc
                logger.warning("Cancel of %s order %s failed: %s", symbol, order_id, exc)
                continue
            metrics.record_order_cancelled(reason)
            return True
        logger.error("Giving up cancelling %s order %s after %d attempts: %s", symbol, order_id, len(attempts), last_error)
        return False

    # -- periodic sweep ---------------------------------------------------

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        started = time.monotonic()
        try:
            positions = await self.transport.fetch_positions()
            orders = await self.transport.fetch_open_orders()
        except Exception as exc:
            logger.warning("Sweep snapshot failed; retrying next tick: %s", exc)
            report.failed = True
            return report

        previous = dict(self.store.positions)
        fresh = self._index_positions(positions, previous)
        self.store.replace_positions(fresh)
        for key in previous.keys() - fresh.keys():
            self._close_key(key, previous[key], reason='Position closed')
            report.closed += 1
        report.positions = len(fresh)
        self.pending.expire()

        now_ms = self._clock() * 1000
        for order in orders:
            age_s = (now_ms - order.time) / 1000 if order.time else float('inf')
            if age_s < self.fresh_order_grace_s:
                continue
            if _is_closing_order(order):
                if key_for_closing_order(order) in fresh:
                    continue
                logger.info("Cancelling orphaned %s %s order %s", order.symbol, order.type, order.id)
                if await self._cancel_with_retry(order.symbol, order.exchange_order_id, 'orphan'):
                    report.orphans += 1
            elif order.type == 'LIMIT' and age_s > self.stuck_order_age_s:
                entry_key = key_for_direction(order.symbol, LONG if order.side == 'BUY' else SHORT)
                if order.position_side in (LONG, SHORT):
                    entry_key = key_for_direction(order.symbol, order.position_side)
                if entry_key in fresh:
                    continue
                logger.info("Cancelling stuck entry %s order %s (%.0fs old)", order.symbol, order.id, age_s)
                if await self._cancel_with_retry(order.symbol, order.exchange_order_id, 'stuck_entry'):
                    self.pending.remove(order.id)
                    report.stuck += 1

        for key in list(fresh):
            result = await self.ensure_protected(key)
            if result is None:
                report.skipped += 1
                continue
            report.cancelled += result.cancelled
            report.placed += result.placed

        metrics.record_sweep(time.monotonic() - started)
        metrics.record_sweep_action('orphan', report.orphans)
        metrics.record_sweep_action('stuck', report.stuck)
        metrics.record_sweep_action('adjust_cancel', report.cancelled)
        metrics.record_sweep_action('place', report.placed)
        self._publish_metrics()
        if report.orphans or report.stuck or report.cancelled or report.placed or report.closed:
            logger.info("Sweep: %s", report)
        return report

    # -- explicit close ---------------------------------------------------

    async def close_position(self, symbol: str, direction: str) -> bool:
        key = key_for_direction(symbol, direction)
        token = self.locks.try_acquire(key)
        if token is None:
            logger.info("Close of %s skipped; protection update in flight", key)
            return False
        try:
            position = self.store.positions.get(key)
            if position is None:
                logger.warning("No open %s position to close", key)
                return False
            protection = self.store.protection.get(key)
            for order_id in (protection.ids() if protection else []):
                await self._cancel_with_retry(symbol, order_id, 'manual_close')
            hedged = position.position_side in (LONG, SHORT)
            request = OrderRequest(
                symbol=symbol,
                side=position.closing_side,
                type='MARKET',
                quantity=position.quantity,
                position_side=position.position_side if hedged else BOTH,
                reduce_only=not hedged,
            )
            try:
                await self.transport.place_order(request)
            except Exception as exc:
                error = classify_error(exc, symbol=symbol, quantity=position.quantity, leverage=position.leverage)
                self._errors.log(error, f"close {key}", logger)
                self.broadcaster.error('trading', f"Failed to close {key}", **error.as_dict())
                return False
            current = self.store.positions.get(key)
            if current is not None:
                self._close_key(key, current, reason='Manual close')
            return True
        finally:
            self.locks.release(key, token)

    def _publish_metrics(self) -> None:
        metrics.update_positions(len(self.store.positions), len(self.store.unprotected_keys()))
        metrics.update_pending(self.pending.count())
