import asyncio
import logging
from typing import List, Optional

from api.broadcaster import StatusBroadcaster
from api.metrics import metrics, start_metrics_server
from config import config, load_symbol_configs
from ingest.event_router import EventRouter
from ingest.events import LiquidationEvent, ListenKeyExpired
from ingest.websocket_client import StreamSupervisor
from monitoring.async_utils import run_periodic, run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.position_store import PositionStateStore
from orchestration.reconciler import Reconciler
from risk.position_sizer import RiskManager, RiskReport
from strategy.locks import LockTable
from strategy.order_placer import OrderPlacer
from strategy.pending_orders import PendingOrderTracker
from strategy.position_key import PositionModeCache
from strategy.pricing import PricingService
from strategy.signal_gate import SignalGate
from strategy.simulators.paper import PaperTradingSimulator
from strategy.threshold_monitor import ThresholdMonitor
from strategy.transports.binance import BinanceTransport
from strategy.vwap import VWAPService


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire the liquidation feed, signal gate, order placement and SL/TP reconciliation."""

    def __init__(self, config_obj=None, market_data=None, trading_transport=None):
        self.config = config_obj or config
        self.trading_cfg = self.config.section('trading')
        self.signal_cfg = self.config.section('signal')
        self.reconciliation_cfg = self.config.section('reconciliation')
        self.timers_cfg = self.config.section('timers')
        self.monitoring_cfg = self.config.section('monitoring')

        self.symbol_configs = load_symbol_configs(self.config.section('symbols'))
        self.paper_mode = bool(self.trading_cfg.get('paper_mode', True))
        hedge_mode = str(self.trading_cfg.get('position_mode', 'ONE_WAY')).upper() == 'HEDGE'

        self.router = EventRouter()
        self.broadcaster = StatusBroadcaster()
        # public market data and listen keys always come from the exchange
        self.market_data = market_data or BinanceTransport()
        self.simulator: Optional[PaperTradingSimulator] = None
        if trading_transport is not None:
            self.transport = trading_transport
        elif self.paper_mode:
            self.simulator = PaperTradingSimulator(
                initial_equity=float(self.trading_cfg.get('paper_equity_usdt', 1000)),
                hedge_mode=hedge_mode,
                listener=self.router.dispatch,
            )
            self.transport = self.simulator
        else:
            self.transport = self.market_data

        self.mode = PositionModeCache(hedge_mode)
        self.store = PositionStateStore()
        self.locks = LockTable()
        self.pending = PendingOrderTracker(ttl_s=float(self.reconciliation_cfg.get('pending_order_ttl_s', 300)))
        self.risk = RiskManager()
        self.pricing = PricingService(self.market_data)
        self.vwap = VWAPService(self.market_data)
        self.thresholds = ThresholdMonitor(window_s=float(self.signal_cfg.get('threshold_window_s', 60)))

        self.reconciler = Reconciler(
            self.store,
            self.transport,
            self.pricing,
            self.symbol_configs,
            risk=self.risk,
            locks=self.locks,
            pending=self.pending,
            broadcaster=self.broadcaster,
        )
        self.gate = SignalGate(self.store, self.pending, self.risk, self.vwap, self.thresholds, self.mode)
        self.placer = OrderPlacer(
            self.transport,
            self.pricing,
            self.risk,
            self.pending,
            self.mode,
            self.broadcaster,
            paper_mode=self.paper_mode,
            simulator=self.simulator,
        )

        self.router.register_handlers(
            liquidation=self.handle_liquidation,
            account=self.reconciler.handle_account_update,
            order=self.reconciler.handle_order_update,
            listen_key_expired=self._on_listen_key_expired,
        )

        has_keys = self.market_data.has_credentials
        self.streams = StreamSupervisor(
            self.router,
            self.market_data,
            resync=self.resync,
            broadcaster=self.broadcaster,
            account_stream=not self.paper_mode and has_keys,
            simulate_liquidations=self.paper_mode and not has_keys,
            simulated_symbols=list(self.symbol_configs),
            price_source=self._reference_price,
        )

        self.running = False
        self._timer_tasks: List[asyncio.Task] = []
        self._stopped = False

    async def initialize(self):
        if not self.symbol_configs:
            self.broadcaster.error('config', "No symbols configured; liquidations will be ignored")
        try:
            await self.pricing.refresh()
        except Exception as e:
            logger.warning("Exchange filters unavailable at startup, using defaults: %s", e)
        await self.sync_position_mode()
        if not self.streams.account_stream:
            # the account stream resyncs on connect; without it sync once here
            await self.reconciler.sync()
        logger.info(
            "Trading system ready: %s, %s mode, %d symbols",
            "PAPER" if self.paper_mode else "LIVE",
            self.mode.label,
            len(self.symbol_configs),
        )

    async def handle_liquidation(self, event: LiquidationEvent) -> None:
        metrics.record_liquidation(event.side)
        if self.simulator is not None:
            await self.simulator.update_mark_price(event.symbol, event.price)
        symbol_config = self.symbol_configs.get(event.symbol)
        if symbol_config is None:
            return
        decision = await self.gate.evaluate(event, symbol_config)
        metrics.record_gate('accepted' if decision.trade else 'rejected')
        if not decision.trade:
            return
        await self.placer.place_trade(event.symbol, decision.side, symbol_config, event.price)

    async def resync(self) -> None:
        await self.sync_position_mode()
        await self.reconciler.sync()

    async def sync_position_mode(self) -> bool:
        try:
            return await self.mode.refresh(self.transport)
        except Exception as e:
            logger.warning("Position mode refresh failed; keeping %s: %s", self.mode.label, e)
            return False

    async def check_risk(self) -> Optional[RiskReport]:
        balance = await self.transport.fetch_balance()
        if balance is None:
            return None
        wallet, _ = balance
        metrics.update_balance(wallet)
        report = self.risk.evaluate(wallet, self.store.positions.values())
        for warning in report.warnings:
            self.broadcaster.risk_warning(
                warning,
                balance=report.balance,
                margin_used=report.margin_used,
                unrealized_pnl=report.unrealized_pnl,
            )
        return report

    async def _on_listen_key_expired(self, event: ListenKeyExpired) -> None:
        logger.warning("Account stream listen key expired at %s", event.event_time)

    async def _reference_price(self, symbol: str) -> Optional[float]:
        try:
            price = await self.market_data.fetch_mark_price(symbol)
        except Exception as e:
            logger.debug("Mark price for %s unavailable: %s", symbol, e)
            price = None
        if price is None and self.simulator is not None:
            price = await self.simulator.fetch_mark_price(symbol)
        return price

    async def start(self):
        self.running = True
        self._stopped = False
        await self.initialize()

        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9090)))

        self._timer_tasks = [
            asyncio.create_task(run_periodic(
                'sweep', float(self.reconciliation_cfg.get('sweep_interval_s', 30)), self.reconciler.sweep,
            )),
            asyncio.create_task(run_periodic(
                'risk_check', float(self.timers_cfg.get('risk_check_interval_s', 300)), self.check_risk,
            )),
            asyncio.create_task(run_periodic(
                'position_mode', float(self.timers_cfg.get('position_mode_sync_interval_s', 120)),
                self.sync_position_mode,
            )),
        ]
        tasks = [asyncio.create_task(self.streams.start())] + self._timer_tasks

        await run_tasks_with_cleanup(tasks, cleanup=self.stop)

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        for task in self._timer_tasks:
            task.cancel()
        await asyncio.gather(*self._timer_tasks, return_exceptions=True)
        self._timer_tasks = []
        await self.streams.stop()
        await self.reconciler.stop()
        await self.broadcaster.flush()
        await self.transport.close()
        if self.market_data is not self.transport:
            await self.market_data.close()
        logger.info("Trading system stopped")


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()

if __name__ == "__main__":
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    asyncio.run(main())
