import logging
from typing import Awaitable, Callable, Dict, Optional, Type

from ingest.events import AccountUpdate, LiquidationEvent, ListenKeyExpired, OrderUpdate, StreamEvent

logger = logging.getLogger(__name__)

Handler = Callable[[StreamEvent], Awaitable[None]]

EVENT_TYPES = (LiquidationEvent, AccountUpdate, OrderUpdate, ListenKeyExpired)


class EventRouter:
    """Route typed stream events to one async handler per event class.

    The event set is closed: registering or dispatching anything outside
    ``EVENT_TYPES`` is a programming error. Handler failures are logged and
    never propagate into the stream loops.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Type, Handler] = {}

    def register(self, event_type: Type, handler: Handler) -> None:
        if event_type not in EVENT_TYPES:
            raise TypeError(f"Unsupported event type {event_type!r}")
        self._handlers[event_type] = handler

    def register_handlers(
        self,
        liquidation: Optional[Handler] = None,
        account: Optional[Handler] = None,
        order: Optional[Handler] = None,
        listen_key_expired: Optional[Handler] = None,
    ) -> None:
        for event_type, handler in (
            (LiquidationEvent, liquidation),
            (AccountUpdate, account),
            (OrderUpdate, order),
            (ListenKeyExpired, listen_key_expired),
        ):
            if handler is not None:
                self.register(event_type, handler)

    async def dispatch(self, event: StreamEvent) -> None:
        event_type = type(event)
        if event_type not in EVENT_TYPES:
            raise TypeError(f"Unsupported event {event!r}")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("No handler for %s", event_type.__name__)
            return
        try:
            await handler(event)
        except Exception:
            logger.exception("Stream handler for %s failed", event_type.__name__)
