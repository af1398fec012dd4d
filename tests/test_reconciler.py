import asyncio
import sys

sys.path.insert(0, '.')

from ingest.binance_rest import BinanceAPIError
from ingest.events import AccountUpdate, OrderUpdate
from strategy.execution_types import Position
from tests.fakes import FakeExchange, make_reconciler


def _order_update(order_id, status='FILLED', order_type='STOP_MARKET', side='SELL', reduce_only=True,
                  position_side='BOTH', quantity=0.005):
    return OrderUpdate(
        symbol='BTCUSDT', order_id=order_id, client_order_id='', side=side, order_type=order_type,
        original_type=order_type, execution_type='TRADE', status=status, quantity=quantity,
        filled_quantity=quantity if status == 'FILLED' else 0.0, last_filled_quantity=0.0,
        price=0.0, average_price=49000.0, stop_price=49000.0, reduce_only=reduce_only,
        close_position=False, position_side=position_side, realized_profit=-5.0, event_time=0,
    )


def _by_type(orders):
    return sorted(orders, key=lambda o: o.type)


def test_sync_places_one_stop_and_one_target():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        rec = make_reconciler(exchange)
        await rec.sync()

        stop, target = _by_type(exchange.open_orders('BTCUSDT'))
        assert stop.type == 'STOP_MARKET' and target.type == 'TAKE_PROFIT_MARKET'
        assert stop.side == 'SELL' and target.side == 'SELL'
        assert stop.quantity == 0.005 and target.quantity == 0.005
        assert stop.reduce_only and target.reduce_only
        assert abs(stop.stop_price - 49000.0) < 1e-6
        assert abs(target.stop_price - 52500.0) < 1e-6

        protection = rec.store.protection['BTCUSDT_LONG']
        assert protection.stop_loss_order_id == stop.exchange_order_id
        assert protection.take_profit_order_id == target.exchange_order_id

    asyncio.run(_run())


def test_sync_is_idempotent():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        rec = make_reconciler(exchange)
        await rec.sync()
        first = {o.exchange_order_id for o in exchange.open_orders()}
        await rec.sync()
        await rec.sweep()
        assert {o.exchange_order_id for o in exchange.open_orders()} == first
        assert exchange.cancelled == []

    asyncio.run(_run())


def test_sweep_replaces_protection_after_resize():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        rec = make_reconciler(exchange)
        await rec.sync()
        old_ids = {o.exchange_order_id for o in exchange.open_orders()}

        exchange.add_position('BTCUSDT', 0.008, 50000.0)
        report = await rec.sweep()

        assert set(exchange.cancelled) == old_ids
        orders = exchange.open_orders('BTCUSDT')
        assert len(orders) == 2
        assert all(o.quantity == 0.008 for o in orders)
        assert report.cancelled == 2 and report.placed == 2

    asyncio.run(_run())


def test_account_update_resize_triggers_protection():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        rec = make_reconciler(exchange)
        await rec.sync()

        exchange.add_position('BTCUSDT', 0.008, 50000.0)
        await rec.handle_account_update(AccountUpdate(
            reason='ORDER', event_time=1, positions=(Position('BTCUSDT', 0.008, 50000.0),),
        ))
        await rec.wait_idle()

        assert sorted(o.quantity for o in exchange.open_orders()) == [0.008, 0.008]
        assert rec.store.positions['BTCUSDT_LONG'].quantity == 0.008

    asyncio.run(_run())


def test_closed_position_cancels_both_legs():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        rec = make_reconciler(exchange)
        await rec.sync()

        exchange.remove_position('BTCUSDT')
        await rec.handle_account_update(AccountUpdate(
            reason='ORDER', event_time=2, positions=(Position('BTCUSDT', 0.0),),
        ))
        await rec.wait_idle()

        assert exchange.open_orders() == []
        assert 'BTCUSDT_LONG' not in rec.store.positions
        assert 'BTCUSDT_LONG' not in rec.store.protection
        assert not rec.locks.is_locked('BTCUSDT_LONG')
        closed = rec.broadcaster.events('position_closed')
        assert len(closed) == 1

    asyncio.run(_run())


def test_sweep_keeps_earliest_duplicate_stop():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        older = exchange.add_order('BTCUSDT', 'SELL', 'STOP_MARKET', 0.005, stop_price=49000.0, age_s=120)
        newer = exchange.add_order('BTCUSDT', 'SELL', 'STOP_MARKET', 0.005, stop_price=49100.0, age_s=60)
        target = exchange.add_order('BTCUSDT', 'SELL', 'TAKE_PROFIT_MARKET', 0.005, stop_price=52500.0, age_s=60)
        rec = make_reconciler(exchange)

        await rec.sweep()

        assert exchange.cancelled == [newer.exchange_order_id]
        remaining = {o.exchange_order_id for o in exchange.open_orders()}
        assert remaining == {older.exchange_order_id, target.exchange_order_id}
        protection = rec.store.protection['BTCUSDT_LONG']
        assert protection.stop_loss_order_id == older.exchange_order_id

    asyncio.run(_run())


def test_sweep_cancels_orphans_and_stuck_entries():
    async def _run():
        exchange = FakeExchange()
        orphan = exchange.add_order('ETHUSDT', 'SELL', 'STOP_MARKET', 0.1, stop_price=1900.0, age_s=120)
        fresh = exchange.add_order('ETHUSDT', 'SELL', 'TAKE_PROFIT_MARKET', 0.1, stop_price=2100.0, age_s=5)
        stuck = exchange.add_order('ETHUSDT', 'BUY', 'LIMIT', 0.1, price=2000.0, reduce_only=False, age_s=600)
        young_entry = exchange.add_order('ETHUSDT', 'BUY', 'LIMIT', 0.1, price=2000.0, reduce_only=False, age_s=60)
        rec = make_reconciler(exchange)
        rec.pending.add(str(stuck.exchange_order_id), 'ETHUSDT', 'BUY')

        report = await rec.sweep()

        assert report.orphans == 1 and report.stuck == 1
        assert set(exchange.cancelled) == {orphan.exchange_order_id, stuck.exchange_order_id}
        remaining = {o.exchange_order_id for o in exchange.open_orders()}
        assert remaining == {fresh.exchange_order_id, young_entry.exchange_order_id}
        assert not rec.pending.has_pending('ETHUSDT')

    asyncio.run(_run())


def test_hedge_mode_protects_each_side_separately():
    async def _run():
        exchange = FakeExchange(hedge_mode=True)
        exchange.add_position('BTCUSDT', 0.01, 50000.0, position_side='LONG')
        exchange.add_position('BTCUSDT', -0.02, 51000.0, position_side='SHORT')
        rec = make_reconciler(exchange)
        await rec.sync()

        orders = exchange.open_orders('BTCUSDT')
        assert len(orders) == 4
        long_legs = [o for o in orders if o.position_side == 'LONG']
        short_legs = [o for o in orders if o.position_side == 'SHORT']
        assert {o.side for o in long_legs} == {'SELL'}
        assert {o.side for o in short_legs} == {'BUY'}
        assert all(o.quantity == 0.01 for o in long_legs)
        assert all(o.quantity == 0.02 for o in short_legs)
        assert not any(o.reduce_only for o in orders)
        assert rec.store.unprotected_keys() == []

    asyncio.run(_run())


def test_locked_key_is_skipped():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        rec = make_reconciler(exchange)
        assert rec.locks.try_acquire('BTCUSDT_LONG')

        await rec.sync()
        assert exchange.open_orders() == []
        assert await rec.ensure_protected('BTCUSDT_LONG') is None

        rec.locks.release('BTCUSDT_LONG')
        report = await rec.sweep()
        assert report.placed == 2

    asyncio.run(_run())


def test_stop_fill_cancels_sibling_and_announces_once():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        rec = make_reconciler(exchange)
        await rec.sync()
        protection = rec.store.protection['BTCUSDT_LONG']
        stop_id, target_id = protection.stop_loss_order_id, protection.take_profit_order_id

        await exchange.cancel_order('BTCUSDT', stop_id)
        exchange.remove_position('BTCUSDT')
        await rec.handle_order_update(_order_update(stop_id))
        await rec.handle_account_update(AccountUpdate(
            reason='ORDER', event_time=3, positions=(Position('BTCUSDT', 0.0),),
        ))
        await rec.wait_idle()

        assert target_id in exchange.cancelled
        assert exchange.open_orders() == []
        closed = rec.broadcaster.events('position_closed')
        assert len(closed) == 1
        assert closed[0]['data']['reason'] == 'Stop Loss'

    asyncio.run(_run())


def test_cancelled_leg_is_replaced():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        rec = make_reconciler(exchange)
        await rec.sync()
        stop_id = rec.store.protection['BTCUSDT_LONG'].stop_loss_order_id

        await exchange.cancel_order('BTCUSDT', stop_id)
        await rec.handle_order_update(_order_update(stop_id, status='CANCELED'))
        await rec.wait_idle()

        protection = rec.store.protection['BTCUSDT_LONG']
        assert protection.complete
        assert protection.stop_loss_order_id != stop_id
        assert len(exchange.open_orders()) == 2

    asyncio.run(_run())


def test_funding_fee_update_keeps_positions():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        rec = make_reconciler(exchange)
        await rec.sync()

        await rec.handle_account_update(AccountUpdate(reason='FUNDING_FEE', event_time=4, positions=()))
        await rec.wait_idle()

        assert 'BTCUSDT_LONG' in rec.store.positions
        assert exchange.cancelled == []
        assert len(exchange.open_orders()) == 2

    asyncio.run(_run())


def test_cancel_retries_then_treats_missing_order_as_done():
    async def _run():
        exchange = FakeExchange()
        rec = make_reconciler(exchange, cancel_retry_delays=[0, 0])
        exchange.cancel_failures = [
            BinanceAPIError(429, -1003, "Too many requests.", ""),
            BinanceAPIError(400, -2011, "Unknown order sent.", ""),
        ]
        assert await rec._cancel_with_retry('BTCUSDT', 42, 'test')
        assert exchange.cancel_failures == []

        exchange.cancel_failures = [BinanceAPIError(500, None, "boom", "")] * 3
        assert not await rec._cancel_with_retry('BTCUSDT', 43, 'test')

    asyncio.run(_run())


def test_manual_close_flattens_and_cleans_up():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        rec = make_reconciler(exchange)
        await rec.sync()

        assert await rec.close_position('BTCUSDT', 'LONG')
        await rec.wait_idle()

        assert exchange.positions == {}
        assert exchange.open_orders() == []
        assert rec.store.positions == {}
        market = exchange.attempts[-1]
        assert market.type == 'MARKET' and market.side == 'SELL' and market.reduce_only

    asyncio.run(_run())


class GatedExchange(FakeExchange):
    """Parks the first open-orders fetch until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.parked = 1

    async def fetch_open_orders(self, symbol=None):
        if self.parked:
            self.parked -= 1
            await self.gate.wait()
        return await super().fetch_open_orders(symbol)


def _legs(exchange):
    orders = exchange.open_orders()
    return [o for o in orders if o.is_stop_loss], [o for o in orders if o.is_take_profit]


def test_concurrent_protection_passes_place_one_set():
    async def _run():
        exchange = GatedExchange()
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        rec = make_reconciler(exchange)
        positions = await exchange.fetch_positions()
        rec.store.replace_positions({'BTCUSDT_LONG': positions[0]})

        async def _open_gate():
            await asyncio.sleep(0)
            exchange.gate.set()

        *results, _ = await asyncio.gather(
            rec.ensure_protected('BTCUSDT_LONG'),
            rec.ensure_protected('BTCUSDT_LONG'),
            _open_gate(),
        )
        await rec.wait_idle()

        assert sum(r is None for r in results) == 1
        assert sum(r.placed for r in results if r is not None) == 2
        stops, targets = _legs(exchange)
        assert len(stops) == 1 and len(targets) == 1

    asyncio.run(_run())


def test_close_and_reopen_during_protection_places_one_set():
    async def _run():
        exchange = GatedExchange()
        rec = make_reconciler(exchange)

        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        await rec.handle_account_update(AccountUpdate(
            reason='ORDER', event_time=1, positions=(Position('BTCUSDT', 0.005, 50000.0),),
        ))
        await asyncio.sleep(0)
        assert rec.locks.is_locked('BTCUSDT_LONG')

        exchange.remove_position('BTCUSDT')
        await rec.handle_account_update(AccountUpdate(
            reason='ORDER', event_time=2, positions=(Position('BTCUSDT', 0.0),),
        ))
        exchange.add_position('BTCUSDT', 0.005, 50000.0)
        await rec.handle_account_update(AccountUpdate(
            reason='ORDER', event_time=3, positions=(Position('BTCUSDT', 0.005, 50000.0),),
        ))
        exchange.gate.set()
        await rec.wait_idle()

        stops, targets = _legs(exchange)
        assert len(stops) == 1 and len(targets) == 1
        assert rec.store.protection['BTCUSDT_LONG'].complete
        assert not rec.locks.is_locked('BTCUSDT_LONG')

    asyncio.run(_run())


def test_stale_holder_cannot_release_new_lock():
    async def _run():
        exchange = FakeExchange()
        rec = make_reconciler(exchange)
        first = rec.locks.try_acquire('BTCUSDT_LONG')
        rec.locks.discard('BTCUSDT_LONG')
        second = rec.locks.try_acquire('BTCUSDT_LONG')

        assert second is not None and second != first
        assert not rec.locks.release('BTCUSDT_LONG', first)
        assert rec.locks.owns('BTCUSDT_LONG', second)
        assert rec.locks.release('BTCUSDT_LONG', second)

    asyncio.run(_run())


def test_partial_reduce_then_close_is_announced():
    async def _run():
        exchange = FakeExchange()
        exchange.add_position('BTCUSDT', 0.01, 50000.0)
        rec = make_reconciler(exchange)
        await rec.sync()

        await rec.handle_order_update(_order_update(999, order_type='LIMIT', quantity=0.004))
        exchange.add_position('BTCUSDT', 0.006, 50000.0)
        await rec.handle_account_update(AccountUpdate(
            reason='ORDER', event_time=2, positions=(Position('BTCUSDT', 0.006, 50000.0),),
        ))
        await rec.wait_idle()
        assert rec.broadcaster.events('position_closed') == []
        reduced = [e['data'] for e in rec.broadcaster.events('position_updated') if e['data']['type'] == 'reduced']
        assert [d['quantity'] for d in reduced] == [0.006]
        assert [e['data']['type'] for e in rec.broadcaster.events('position_updated')][-2:] == ['reduced', 'updated']
        assert sorted(o.quantity for o in exchange.open_orders()) == [0.006, 0.006]

        exchange.remove_position('BTCUSDT')
        await rec.handle_account_update(AccountUpdate(
            reason='ORDER', event_time=3, positions=(Position('BTCUSDT', 0.0),),
        ))
        await rec.wait_idle()

        closed = rec.broadcaster.events('position_closed')
        assert len(closed) == 1
        assert closed[0]['data']['reason'] == 'Position closed'
        assert exchange.open_orders() == []

    asyncio.run(_run())
