import asyncio
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, Optional, Set

import aiohttp

from config import config


logger = logging.getLogger(__name__)

ERROR_CATEGORIES = ('trading', 'api', 'config', 'websocket')


class StatusBroadcaster:
    """Fire-and-forget status notifications.

    Every event is logged and kept in a bounded history. When a webhook is
    configured the event is also POSTed from a background task; delivery
    failures are logged and never reach the caller.
    """

    def __init__(self, webhook_url: Optional[str] = None, history: Optional[int] = None):
        monitoring = config.section('monitoring')
        url = webhook_url if webhook_url is not None else monitoring.get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        size = int(history if history is not None else monitoring.get('broadcast_history', 200))
        self.recent: Deque[Dict[str, Any]] = deque(maxlen=size)
        self._tasks: Set[asyncio.Task] = set()

    def broadcast(self, event_type: str, payload: Dict[str, Any], severity: str = 'info') -> None:
        event = {
            'type': event_type,
            'severity': severity,
            'timestamp': time.time(),
            'data': payload,
        }
        self.recent.append(event)
        log_level = logging.WARNING if severity in ('warning', 'error', 'critical') else logging.INFO
        logger.log(log_level, "[%s] %s", event_type, payload)
        if not self.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._post(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, event: Dict[str, Any]) -> None:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=event,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Broadcast] Webhook failed with status %s",
                            response.status,
                        )
        except Exception as e:
            logger.error("[Broadcast] Webhook error: %s", e)

    async def flush(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def events(self, event_type: Optional[str] = None):
        return [e for e in self.recent if event_type is None or e['type'] == event_type]

    # -- typed helpers ----------------------------------------------------

    def position_opened(self, **data: Any) -> None:
        self.broadcast('position_opened', data)

    def position_updated(self, **data: Any) -> None:
        self.broadcast('position_updated', data)

    def position_closed(self, **data: Any) -> None:
        self.broadcast('position_closed', data)

    def order_placed(self, **data: Any) -> None:
        self.broadcast('order_placed', data)

    def order_filled(self, **data: Any) -> None:
        self.broadcast('order_filled', data)

    def order_failed(self, **data: Any) -> None:
        self.broadcast('order_failed', data, 'warning')

    def stop_loss_placed(self, **data: Any) -> None:
        self.broadcast('stop_loss_placed', data)

    def take_profit_placed(self, **data: Any) -> None:
        self.broadcast('take_profit_placed', data)

    def balance_refresh(self, **data: Any) -> None:
        self.broadcast('balance_refresh', data)

    def risk_warning(self, message: str, **data: Any) -> None:
        data['message'] = message
        self.broadcast('risk_warning', data, 'warning')

    def error(self, category: str, message: str, **details: Any) -> None:
        if category not in ERROR_CATEGORIES:
            logger.debug("Unknown error category %s; filing under trading", category)
            category = 'trading'
        details['message'] = message
        self.broadcast(f'{category}_error', details, 'error')
