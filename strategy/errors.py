"""Closed taxonomy for exchange-side trading failures.

Every placement failure is folded into one :class:`ErrorKind` together with the
symbol, price, quantity and leverage that produced it. The ``fingerprint``
(kind + code + symbol) keys the log throttle so a rejection that repeats on
every liquidation is logged once per window instead of flooding the output.
"""
import logging
import re
import time
from enum import Enum
from typing import Dict, Optional, Tuple

from ingest.binance_rest import BinanceAPIError


logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    INSUFFICIENT_NOTIONAL = "insufficient_notional"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    RATE_LIMITED = "rate_limited"
    REDUCE_ONLY_REJECTED = "reduce_only_rejected"
    PRICE_PRECISION = "price_precision"
    QUANTITY_PRECISION = "quantity_precision"
    POSITION_MODE_MISMATCH = "position_mode_mismatch"
    ORDER_REJECTED = "order_rejected"
    UNCLASSIFIED = "unclassified"


POSITION_SIDE_MISMATCH_CODE = -4061
# Unknown order / order already filled or cancelled.
ORDER_GONE_CODES = frozenset({-2011, -2013})

_CODE_KINDS: Dict[int, ErrorKind] = {
    -4164: ErrorKind.INSUFFICIENT_NOTIONAL,
    -2019: ErrorKind.INSUFFICIENT_BALANCE,
    -2018: ErrorKind.INSUFFICIENT_BALANCE,
    -1003: ErrorKind.RATE_LIMITED,
    -1015: ErrorKind.RATE_LIMITED,
    -2022: ErrorKind.REDUCE_ONLY_REJECTED,
    -4014: ErrorKind.PRICE_PRECISION,
    -4013: ErrorKind.PRICE_PRECISION,
    -4016: ErrorKind.PRICE_PRECISION,
    -4024: ErrorKind.PRICE_PRECISION,
    -1111: ErrorKind.QUANTITY_PRECISION,
    -4003: ErrorKind.QUANTITY_PRECISION,
    -4005: ErrorKind.QUANTITY_PRECISION,
    -1013: ErrorKind.QUANTITY_PRECISION,
    POSITION_SIDE_MISMATCH_CODE: ErrorKind.POSITION_MODE_MISMATCH,
    -2010: ErrorKind.ORDER_REJECTED,
    -2021: ErrorKind.ORDER_REJECTED,
    -5022: ErrorKind.ORDER_REJECTED,
    -4131: ErrorKind.ORDER_REJECTED,
}

_NOTIONAL_RE = re.compile(r"no smaller than ([\d.]+)")


class TradingError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        code: Optional[int] = None,
        symbol: Optional[str] = None,
        price: Optional[float] = None,
        quantity: Optional[float] = None,
        leverage: Optional[int] = None,
        required_notional: Optional[float] = None,
    ):
        self.kind = kind
        self.code = code
        self.symbol = symbol
        self.price = price
        self.quantity = quantity
        self.leverage = leverage
        self.required_notional = required_notional
        self.message = message
        super().__init__(f"{kind.value}: {message}")

    @property
    def fingerprint(self) -> str:
        return f"{self.kind.value}:{self.code}:{self.symbol or '-'}"

    @property
    def notional(self) -> Optional[float]:
        if self.price is None or self.quantity is None:
            return None
        return self.price * self.quantity

    def describe(self) -> str:
        """Human-readable summary used for notifications."""
        parts = [self.message]
        if self.symbol:
            parts.append(f"symbol={self.symbol}")
        if self.code is not None:
            parts.append(f"code={self.code}")
        if self.quantity is not None:
            parts.append(f"qty={self.quantity}")
        if self.price is not None:
            parts.append(f"price={self.price}")
        if self.leverage is not None:
            parts.append(f"leverage={self.leverage}x")
        if self.required_notional is not None:
            parts.append(f"min_notional={self.required_notional}")
        return " ".join(parts)

    def as_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "symbol": self.symbol,
            "price": self.price,
            "quantity": self.quantity,
            "leverage": self.leverage,
            "exchange_message": self.message,
            "fingerprint": self.fingerprint,
        }


def classify_error(
    exc: BaseException,
    symbol: Optional[str] = None,
    price: Optional[float] = None,
    quantity: Optional[float] = None,
    leverage: Optional[int] = None,
) -> TradingError:
    if isinstance(exc, TradingError):
        return exc
    if isinstance(exc, BinanceAPIError):
        code = exc.code
        message = exc.msg or str(exc)
        if exc.status in (418, 429):
            kind = ErrorKind.RATE_LIMITED
        else:
            kind = _CODE_KINDS.get(code, ErrorKind.ORDER_REJECTED if code is not None else ErrorKind.UNCLASSIFIED)
        required = None
        if kind is ErrorKind.INSUFFICIENT_NOTIONAL:
            match = _NOTIONAL_RE.search(message)
            if match:
                required = float(match.group(1))
        return TradingError(
            kind,
            message,
            code=code,
            symbol=symbol,
            price=price,
            quantity=quantity,
            leverage=leverage,
            required_notional=required,
        )
    return TradingError(
        ErrorKind.UNCLASSIFIED,
        str(exc) or exc.__class__.__name__,
        symbol=symbol,
        price=price,
        quantity=quantity,
        leverage=leverage,
    )


def is_order_gone(exc: BaseException) -> bool:
    if isinstance(exc, BinanceAPIError):
        return exc.code in ORDER_GONE_CODES
    if isinstance(exc, TradingError):
        return exc.code in ORDER_GONE_CODES
    return False


def is_position_mode_mismatch(exc: BaseException) -> bool:
    code = getattr(exc, "code", None)
    return code == POSITION_SIDE_MISMATCH_CODE


class ErrorLogThrottle:
    """Log each error fingerprint once per window; repeats go to debug."""

    def __init__(self, window_s: float = 60.0):
        self.window_s = window_s
        self._seen: Dict[str, Tuple[float, int]] = {}

    def log(self, error: TradingError, action: str, log: Optional[logging.Logger] = None) -> bool:
        log = log or logger
        now = time.monotonic()
        first_seen, count = self._seen.get(error.fingerprint, (0.0, 0))
        if count and now - first_seen < self.window_s:
            self._seen[error.fingerprint] = (first_seen, count + 1)
            log.debug("%s failed again (%s, repeat #%d)", action, error.fingerprint, count)
            return False
        self._seen[error.fingerprint] = (now, 1)
        log.error("%s failed: %s", action, error.describe())
        return True

    def reset(self) -> None:
        self._seen.clear()
