import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.liquidations_seen = Counter('liquidations_seen_total', 'Liquidation events received', ['side'])
        self.gate_decisions = Counter('gate_decisions_total', 'Signal gate outcomes', ['outcome'])

        self.orders_placed = Counter('orders_placed_total', 'Total orders placed', ['type'])
        self.orders_failed = Counter('orders_failed_total', 'Order placements rejected', ['kind'])
        self.orders_cancelled = Counter('orders_cancelled_total', 'Total orders cancelled', ['reason'])
        self.protective_orders = Counter('protective_orders_placed_total', 'Stop-loss/take-profit orders placed', ['leg'])
        self.mode_corrections = Counter('position_mode_corrections_total', 'Position-mode mismatch retries')
        self.market_fallbacks = Counter('market_fallbacks_total', 'LIMIT placements retried as MARKET')
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to return/ACK')

        self.open_positions = Gauge('open_positions', 'Positions currently tracked')
        self.unprotected_positions = Gauge('unprotected_positions', 'Positions missing a stop-loss or take-profit')
        self.pending_orders = Gauge('pending_entry_orders', 'Entry orders awaiting confirmation')
        self.positions_closed = Counter('positions_closed_total', 'Positions closed', ['reason'])

        self.sweep_duration = Histogram('sweep_duration_seconds', 'Duration of reconciliation sweeps')
        self.sweep_actions = Counter('sweep_actions_total', 'Corrections made by the sweep', ['action'])
        self.lock_skips = Counter('lock_skips_total', 'Protection attempts skipped because the key was busy')

        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects', ['stream'])
        self.dropped_events = Counter('dropped_events_total', 'Total dropped inbound events', ['reason'])
        self.balance = Gauge('account_balance_usdt', 'Wallet balance in USDT')
        self.api_weight = Gauge('api_used_weight', 'Request weight used in the current minute')

    def record_liquidation(self, side: str):
        self.liquidations_seen.labels(side=side).inc()

    def record_gate(self, outcome: str):
        self.gate_decisions.labels(outcome=outcome).inc()

    def record_order_placed(self, order_type: str, latency_seconds: Optional[float] = None):
        self.orders_placed.labels(type=order_type).inc()
        if latency_seconds is not None:
            self.order_send_latency.observe(latency_seconds)

    def record_order_failed(self, kind: str):
        self.orders_failed.labels(kind=kind).inc()

    def record_order_cancelled(self, reason: str):
        self.orders_cancelled.labels(reason=reason).inc()

    def record_protective_order(self, leg: str):
        self.protective_orders.labels(leg=leg).inc()

    def record_mode_correction(self):
        self.mode_corrections.inc()

    def record_market_fallback(self):
        self.market_fallbacks.inc()

    def update_positions(self, open_count: int, unprotected: int):
        self.open_positions.set(open_count)
        self.unprotected_positions.set(unprotected)

    def update_pending(self, count: int):
        self.pending_orders.set(count)

    def record_position_closed(self, reason: str):
        self.positions_closed.labels(reason=reason).inc()

    def record_sweep(self, duration_seconds: float):
        self.sweep_duration.observe(duration_seconds)

    def record_sweep_action(self, action: str, count: int = 1):
        if count:
            self.sweep_actions.labels(action=action).inc(count)

    def record_lock_skip(self):
        self.lock_skips.inc()

    def record_reconnect(self, stream: str):
        self.reconnect_count.labels(stream=stream).inc()

    def record_drop(self, reason: str):
        self.dropped_events.labels(reason=reason).inc()

    def update_balance(self, balance: float):
        self.balance.set(balance)

    def update_api_weight(self, weight: int):
        self.api_weight.set(weight)


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error
    return None


metrics = MetricsCollector()
