import asyncio
import sys
import time

sys.path.insert(0, '.')

from ingest.events import LiquidationEvent
from orchestration.position_store import PositionStateStore
from risk.position_sizer import RiskManager
from strategy.execution_types import Position
from strategy.pending_orders import PendingOrderTracker
from strategy.position_key import PositionModeCache
from strategy.signal_gate import SignalGate, candidate_side
from strategy.threshold_monitor import ThresholdMonitor
from strategy.vwap import VWAPService, compute_vwap, evaluate_vwap
from tests.fakes import FakeExchange, make_symbol_config


class ManualClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _liquidation(side='SELL', quantity=20.0, price=100.0, symbol='BTCUSDT'):
    return LiquidationEvent(symbol=symbol, side=side, order_type='LIMIT', quantity=quantity, price=price,
                            average_price=price, order_status='FILLED', event_time=0)


def _gate(exchange=None, clock=None, use_threshold_system=False, max_open_positions=2, hedge_mode=False):
    clock = clock or ManualClock()
    exchange = exchange or FakeExchange()
    gate = SignalGate(
        PositionStateStore(),
        PendingOrderTracker(clock=clock),
        RiskManager(risk_percent=90),
        VWAPService(exchange, cache_ttl_s=60),
        ThresholdMonitor(window_s=60, clock=clock),
        PositionModeCache(hedge_mode),
        max_open_positions=max_open_positions,
        use_threshold_system=use_threshold_system,
        default_cooldown_s=30,
        vwap_max_age_s=5,
        clock=clock,
    )
    return gate, clock


def test_liquidated_longs_are_a_buy_signal():
    assert candidate_side('SELL') == 'BUY'
    assert candidate_side('buy') == 'SELL'


def test_instant_threshold():
    async def _run():
        gate, _ = _gate()
        cfg = make_symbol_config(volume_threshold_usdt=1000.0)

        small = await gate.evaluate(_liquidation(quantity=5.0), cfg)
        assert not small.trade

        big = await gate.evaluate(_liquidation(quantity=20.0), cfg)
        assert big.trade and big.side == 'BUY'

        cfg = make_symbol_config(volume_threshold_usdt=1000.0, short_volume_threshold_usdt=5000.0)
        short = await gate.evaluate(_liquidation(side='BUY', quantity=20.0), cfg)
        assert not short.trade and short.side == 'SELL'

    asyncio.run(_run())


def test_cumulative_threshold_and_cooldown():
    async def _run():
        gate, clock = _gate(use_threshold_system=True)
        cfg = make_symbol_config(volume_threshold_usdt=1000.0, use_threshold=True, threshold_time_window_s=60)

        first = await gate.evaluate(_liquidation(quantity=6.0), cfg)
        assert not first.trade
        clock.now += 10
        second = await gate.evaluate(_liquidation(quantity=6.0), cfg)
        assert second.trade and second.side == 'BUY'

        clock.now += 1
        cooled = await gate.evaluate(_liquidation(quantity=6.0), cfg)
        assert not cooled.trade and 'cooldown' in cooled.reason

        clock.now += 30
        again = await gate.evaluate(_liquidation(quantity=6.0), cfg)
        assert again.trade

        # volume older than the window no longer counts
        clock.now += 120
        expired = await gate.evaluate(_liquidation(quantity=6.0), cfg)
        assert not expired.trade

    asyncio.run(_run())


def test_vwap_filter_blocks_chasing_entries():
    async def _run():
        gate, _ = _gate()
        cfg = make_symbol_config(vwap_protection=True)

        gate.vwap.record('BTCUSDT', 99.0, time.time())
        blocked = await gate.evaluate(_liquidation(side='SELL', price=100.0), cfg)
        assert not blocked.trade and blocked.vwap == 99.0

        gate.vwap.record('BTCUSDT', 101.0, time.time())
        allowed = await gate.evaluate(_liquidation(side='SELL', price=100.0), cfg)
        assert allowed.trade

    asyncio.run(_run())


def test_vwap_from_klines_when_stream_is_stale():
    async def _run():
        exchange = FakeExchange()
        # [open_time, open, high, low, close, volume]
        exchange.klines = [[0, 0, 102.0, 100.0, 101.0, 10.0], [0, 0, 104.0, 102.0, 103.0, 30.0]]
        gate, _ = _gate(exchange=exchange)
        gate.vwap.record('BTCUSDT', 50.0, time.time() - 600)
        cfg = make_symbol_config(vwap_protection=True)

        decision = await gate.evaluate(_liquidation(side='BUY', price=100.0), cfg)
        assert not decision.trade
        assert abs(decision.vwap - 102.5) < 1e-9

    asyncio.run(_run())


def test_missing_vwap_allows_trade_with_warning():
    async def _run():
        gate, _ = _gate()
        cfg = make_symbol_config(vwap_protection=True)
        decision = await gate.evaluate(_liquidation(), cfg)
        assert decision.trade and decision.warning

    asyncio.run(_run())


def test_capacity_checks():
    async def _run():
        gate, _ = _gate(max_open_positions=2)
        cfg = make_symbol_config(max_position_margin_usdt=50.0)

        gate.pending.add('tmp-1', 'BTCUSDT', 'BUY')
        pending = await gate.evaluate(_liquidation(), cfg)
        assert not pending.trade and 'pending' in pending.reason
        gate.pending.remove('tmp-1')

        gate.store.replace_positions({
            'ETHUSDT_LONG': Position('ETHUSDT', 1.0, 2000.0, 2000.0, leverage=10),
            'SOLUSDT_LONG': Position('SOLUSDT', 1.0, 100.0, 100.0, leverage=10),
        })
        full = await gate.evaluate(_liquidation(), cfg)
        assert not full.trade and 'max open positions' in full.reason

        gate.store.replace_positions({'BTCUSDT_SHORT': Position('BTCUSDT', -0.4, 100.0, 100.0, leverage=1)})
        capped = await gate.evaluate(_liquidation(), cfg)
        assert not capped.trade and 'margin' in capped.reason

    asyncio.run(_run())


def test_hedge_mode_counts_symbols_not_sides():
    async def _run():
        gate, _ = _gate(max_open_positions=2, hedge_mode=True)
        gate.store.replace_positions({
            'ETHUSDT_LONG': Position('ETHUSDT', 1.0, 2000.0, position_side='LONG'),
            'ETHUSDT_SHORT': Position('ETHUSDT', -1.0, 2000.0, position_side='SHORT'),
        })
        decision = await gate.evaluate(_liquidation(), make_symbol_config())
        assert decision.trade

    asyncio.run(_run())


def test_threshold_monitor_window_and_reset():
    clock = ManualClock()
    monitor = ThresholdMonitor(window_s=60, clock=clock)
    cfg = make_symbol_config(volume_threshold_usdt=1000.0)
    monitor.process_liquidation(_liquidation(side='SELL', quantity=8.0), cfg)
    status = monitor.process_liquidation(_liquidation(side='BUY', quantity=3.0), cfg)
    assert status.recent_long_volume == 800.0
    assert status.recent_short_volume == 300.0

    monitor.reset('BTCUSDT', 'BUY')
    assert monitor.status('BTCUSDT', cfg).recent_long_volume == 0.0
    assert monitor.status('BTCUSDT', cfg).recent_short_volume == 300.0

    clock.now += 61
    assert monitor.status('BTCUSDT', cfg).recent_short_volume == 0.0


def test_vwap_helpers():
    assert compute_vwap([]) is None
    assert compute_vwap([[0, 0, 1.0, 1.0, 1.0, 0.0]]) is None
    assert evaluate_vwap('BUY', 99.0, 100.0).allowed
    assert not evaluate_vwap('SELL', 99.0, 100.0).allowed
