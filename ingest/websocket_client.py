import asyncio
import json
import logging
import random
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import websockets

from api.broadcaster import StatusBroadcaster
from api.metrics import metrics
from config import config
from ingest.event_router import EventRouter
from ingest.events import EventParseError, LiquidationEvent, ListenKeyExpired, parse_liquidations, parse_user_event
from monitoring.async_utils import run_tasks_with_cleanup


logger = logging.getLogger(__name__)


class ListenKeyExpiredError(ConnectionError):
    pass


class StreamSupervisor:
    """Own the liquidation and account websocket connections.

    Both streams reconnect after a fixed delay. The account stream obtains a
    listen key and runs a full ``resync`` before every (re)subscription, so
    anything missed while disconnected is rebuilt from REST snapshots.
    """

    def __init__(
        self,
        router: EventRouter,
        transport,
        resync: Callable[[], Awaitable[None]],
        broadcaster: Optional[StatusBroadcaster] = None,
        ws_url: Optional[str] = None,
        account_stream: bool = True,
        simulate_liquidations: bool = False,
        simulated_symbols: Sequence[str] = (),
        price_source: Optional[Callable[[str], Awaitable[Optional[float]]]] = None,
    ):
        ws_cfg = config.section('websocket')
        self.router = router
        self.transport = transport
        self.resync = resync
        self.broadcaster = broadcaster or StatusBroadcaster()
        self.ws_url = (ws_url or config.section('exchange').get('ws_url') or "wss://fstream.asterdex.com").rstrip("/")
        self.account_stream = account_stream
        self.simulate_liquidations = simulate_liquidations
        self.simulated_symbols: List[str] = list(simulated_symbols)
        self.price_source = price_source

        self.reconnect_delay_s = float(ws_cfg.get('reconnect_delay_s', 5))
        self.keepalive_s = float(ws_cfg.get('listen_key_keepalive_s', 1800))
        self.liquidation_timeout = ws_cfg.get('liquidation_recv_timeout_s', 300)
        self.account_timeout = ws_cfg.get('account_recv_timeout_s', 600)
        self.simulated_interval = tuple(ws_cfg.get('simulated_interval_s', [5, 10]))

        self.running = False
        self._listen_key: Optional[str] = None
        self._listen_key_refreshed = 0.0
        self._connections: Dict[str, object] = {}
        self._tasks: List[asyncio.Task] = []

    @property
    def listen_key(self) -> Optional[str]:
        return self._listen_key

    async def start(self):
        self.running = True
        if self.simulate_liquidations:
            self._tasks.append(asyncio.create_task(self.simulate_liquidation_stream()))
        else:
            self._tasks.append(asyncio.create_task(self.subscribe_liquidations()))
        if self.account_stream:
            self._tasks.append(asyncio.create_task(self.subscribe_account()))
            self._tasks.append(asyncio.create_task(self._keepalive_loop()))
        await run_tasks_with_cleanup(self._tasks, cleanup=self._release_listen_key)

    async def stop(self):
        self.running = False
        for name, ws in list(self._connections.items()):
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("Closing %s stream failed: %s", name, exc)
        self._connections.clear()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self._release_listen_key()

    # -- liquidation feed -------------------------------------------------

    async def subscribe_liquidations(self):
        url = f"{self.ws_url}/ws/!forceOrder@arr"
        while self.running:
            try:
                async with websockets.connect(url, ping_interval=None) as ws:
                    self._connections['liquidation'] = ws
                    logger.info("Liquidation stream connected")
                    while self.running:
                        raw = await self._recv(ws, self.liquidation_timeout)
                        await self.handle_liquidation_message(raw)
            except asyncio.CancelledError:
                break
            except asyncio.TimeoutError:
                logger.warning("Liquidation stream stale; reconnecting")
            except Exception as e:
                logger.error("Liquidation stream error: %s", e)
                self.broadcaster.error('websocket', f"Liquidation stream error: {e}")
            finally:
                self._connections.pop('liquidation', None)
            if not await self._wait_reconnect('liquidation'):
                break

    async def handle_liquidation_message(self, raw) -> int:
        try:
            events = parse_liquidations(json.loads(raw))
        except (ValueError, EventParseError) as exc:
            logger.warning("Dropping malformed liquidation message: %s", exc)
            metrics.record_drop('liquidation_parse')
            return 0
        for event in events:
            await self.router.dispatch(event)
        return len(events)

    async def simulate_liquidation_stream(self):
        """Synthetic liquidations for paper trading without API credentials."""
        if not self.simulated_symbols:
            logger.warning("No symbols configured; liquidation simulator idle")
            return
        low, high = (float(v) for v in self.simulated_interval)
        logger.info("Simulating liquidations for %s every %.0f-%.0fs", ", ".join(self.simulated_symbols), low, high)
        while self.running:
            try:
                await asyncio.sleep(random.uniform(low, high))
                symbol = random.choice(self.simulated_symbols)
                price = await self.price_source(symbol) if self.price_source else None
                if not price:
                    logger.debug("No price for simulated %s liquidation", symbol)
                    continue
                notional = random.uniform(1_000, 50_000)
                event = LiquidationEvent(
                    symbol=symbol,
                    side=random.choice(("BUY", "SELL")),
                    order_type="LIMIT",
                    quantity=notional / price,
                    price=price,
                    average_price=price,
                    order_status="FILLED",
                    event_time=int(time.time() * 1000),
                )
                await self.router.dispatch(event)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Liquidation simulator error: %s", e)

    # -- account feed -----------------------------------------------------

    async def subscribe_account(self):
        while self.running:
            try:
                listen_key = await self._ensure_listen_key()
                await self.resync()
                url = f"{self.ws_url}/ws/{listen_key}"
                async with websockets.connect(url, ping_interval=None) as ws:
                    self._connections['account'] = ws
                    logger.info("Account stream connected")
                    while self.running:
                        raw = await self._recv(ws, self.account_timeout)
                        await self.handle_account_message(raw)
            except asyncio.CancelledError:
                break
            except asyncio.TimeoutError:
                logger.warning("Account stream idle; reconnecting with resync")
            except ListenKeyExpiredError:
                logger.warning("Listen key expired; requesting a new one")
                self._listen_key = None
            except Exception as e:
                logger.error("Account stream error: %s", e)
                self.broadcaster.error('websocket', f"Account stream error: {e}")
            finally:
                self._connections.pop('account', None)
            if not await self._wait_reconnect('account'):
                break

    async def handle_account_message(self, raw) -> None:
        try:
            event = parse_user_event(json.loads(raw))
        except (ValueError, EventParseError) as exc:
            logger.warning("Dropping malformed account message: %s", exc)
            metrics.record_drop('account_parse')
            return
        if event is None:
            return
        if isinstance(event, ListenKeyExpired):
            await self.router.dispatch(event)
            raise ListenKeyExpiredError("listenKeyExpired")
        await self.router.dispatch(event)

    async def _ensure_listen_key(self) -> str:
        if self._listen_key is None:
            self._listen_key = await self.transport.create_listen_key()
            self._listen_key_refreshed = time.monotonic()
            logger.info("Obtained listenKey for account stream")
        return self._listen_key

    async def keepalive(self) -> None:
        if self._listen_key is None:
            return
        try:
            await self.transport.keepalive_listen_key(self._listen_key)
            self._listen_key_refreshed = time.monotonic()
            logger.debug("listenKey kept alive")
        except Exception as e:
            logger.error("listenKey keepalive failed: %s", e)
            self._listen_key = None
            ws = self._connections.get('account')
            if ws is not None:
                await ws.close()

    async def _keepalive_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.keepalive_s)
                if self.running:
                    await self.keepalive()
            except asyncio.CancelledError:
                break

    async def _release_listen_key(self):
        listen_key, self._listen_key = self._listen_key, None
        if listen_key is None:
            return
        try:
            await self.transport.close_listen_key(listen_key)
            logger.info("Released listenKey")
        except Exception as e:
            logger.warning("Failed to release listenKey: %s", e)

    # -- helpers ----------------------------------------------------------

    @staticmethod
    async def _recv(ws, timeout):
        if timeout:
            return await asyncio.wait_for(ws.recv(), timeout=float(timeout))
        return await ws.recv()

    async def _wait_reconnect(self, stream: str) -> bool:
        if not self.running:
            return False
        metrics.record_reconnect(stream)
        try:
            await asyncio.sleep(self.reconnect_delay_s)
        except asyncio.CancelledError:
            return False
        return self.running
