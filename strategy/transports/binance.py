import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient

from strategy.execution_types import OrderRequest, OrderTicket, Position


__all__ = ["BinanceTransport", "SymbolInfo", "BinanceAPIError"]


@dataclass
class SymbolInfo:
    symbol: str
    price_tick: Optional[float]
    amount_step: Optional[float]
    min_notional: Optional[float]
    min_qty: Optional[float]
    max_qty: Optional[float]
    min_price: Optional[float]
    max_price: Optional[float]
    price_precision: Optional[int]
    quantity_precision: Optional[int]
    raw: Dict[str, Any]


class BinanceTransport:
    """Thin adapter around the futures REST API with typed responses."""

    def __init__(self, rest: Optional[BinanceRESTClient] = None) -> None:
        self._rest: Optional[BinanceRESTClient] = rest
        self._lock = asyncio.Lock()

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient()
        return self._rest

    @property
    def has_credentials(self) -> bool:
        return self._client().has_credentials

    # -- orders -----------------------------------------------------------

    async def place_order(self, request: OrderRequest) -> OrderTicket:
        rest = self._client()
        data = await rest.post("/fapi/v1/order", params=request.to_params(), signed=True)
        ticket = self._parse_order_ack(data)
        if ticket is None:
            raise BinanceAPIError(200, None, "Malformed order acknowledgement", str(data))
        return ticket

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        rest = self._client()
        await rest.delete("/fapi/v1/order", params={"symbol": symbol, "orderId": order_id}, signed=True)

    async def fetch_open_orders(self, symbol: Optional[str] = None) -> List[OrderTicket]:
        rest = self._client()
        params = {"symbol": symbol} if symbol else None
        payload = await rest.get("/fapi/v1/openOrders", params=params, signed=True)
        if not isinstance(payload, list):
            return []
        orders: List[OrderTicket] = []
        for item in payload:
            ticket = self._parse_order_ack(item)
            if ticket:
                orders.append(ticket)
        return orders

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        rest = self._client()
        await rest.post("/fapi/v1/leverage", params={"symbol": symbol, "leverage": int(leverage)}, signed=True)

    # -- account ----------------------------------------------------------

    async def fetch_positions(self) -> List[Position]:
        rest = self._client()
        data = await rest.get("/fapi/v2/positionRisk", signed=True)
        if not isinstance(data, list):
            return []
        positions: List[Position] = []
        for item in data:
            position = self._parse_position(item)
            if position is not None and position.is_open:
                positions.append(position)
        return positions

    async def fetch_position_mode(self) -> bool:
        """True when the account trades in hedge (dual-side) mode."""
        rest = self._client()
        data = await rest.get("/fapi/v1/positionSide/dual", signed=True)
        if not isinstance(data, dict):
            raise BinanceAPIError(200, None, "Malformed position mode response", str(data))
        value = data.get("dualSidePosition")
        if isinstance(value, str):
            return value.lower() == "true"
        return bool(value)

    async def fetch_balance(self, asset: str = "USDT") -> Optional[Tuple[float, float]]:
        """(wallet balance, available balance) for ``asset``."""
        rest = self._client()
        data = await rest.get("/fapi/v2/balance", signed=True)
        if not isinstance(data, list):
            return None
        for row in data:
            if row.get("asset") != asset:
                continue
            balance = self._as_float(row.get("balance"))
            available = self._as_float(row.get("availableBalance"))
            if balance is None:
                return None
            return balance, available if available is not None else balance
        return None

    # -- listen key -------------------------------------------------------

    async def create_listen_key(self) -> str:
        rest = self._client()
        data = await rest.post("/fapi/v1/listenKey")
        if not isinstance(data, dict) or not data.get("listenKey"):
            raise BinanceAPIError(200, None, "listenKey missing from response", str(data))
        return data["listenKey"]

    async def keepalive_listen_key(self, listen_key: str) -> None:
        rest = self._client()
        await rest.put("/fapi/v1/listenKey", params={"listenKey": listen_key})

    async def close_listen_key(self, listen_key: str) -> None:
        rest = self._client()
        await rest.delete("/fapi/v1/listenKey", params={"listenKey": listen_key})

    # -- market data ------------------------------------------------------

    async def fetch_exchange_info(self) -> List[SymbolInfo]:
        rest = self._client()
        data = await rest.get("/fapi/v1/exchangeInfo")
        if not isinstance(data, dict):
            return []
        return [self._parse_symbol_info(item) for item in data.get("symbols") or []]

    async def fetch_book_ticker(self, symbol: str) -> Tuple[float, float]:
        rest = self._client()
        data = await rest.get("/fapi/v1/ticker/bookTicker", params={"symbol": symbol})
        if not isinstance(data, dict):
            raise BinanceAPIError(200, None, "Malformed book ticker", str(data))
        bid = self._as_float(data.get("bidPrice"))
        ask = self._as_float(data.get("askPrice"))
        if not bid or not ask:
            raise BinanceAPIError(200, None, f"Empty book ticker for {symbol}", str(data))
        return bid, ask

    async def fetch_depth(self, symbol: str, limit: int = 20) -> Dict[str, List[Tuple[float, float]]]:
        rest = self._client()
        data = await rest.get("/fapi/v1/depth", params={"symbol": symbol, "limit": limit})
        if not isinstance(data, dict):
            return {"bids": [], "asks": []}
        return {
            "bids": [(float(p), float(q)) for p, q in data.get("bids", [])],
            "asks": [(float(p), float(q)) for p, q in data.get("asks", [])],
        }

    async def fetch_klines(self, symbol: str, interval: str, limit: int) -> List[List[Any]]:
        rest = self._client()
        data = await rest.get(
            "/fapi/v1/klines",
            params={"symbol": symbol, "interval": interval, "limit": limit},
        )
        if not isinstance(data, list):
            return []
        return data

    async def fetch_mark_price(self, symbol: str) -> Optional[float]:
        rest = self._client()
        data = await rest.get("/fapi/v1/premiumIndex", params={"symbol": symbol})
        if not isinstance(data, dict):
            return None
        return self._as_float(data.get("markPrice"))

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    # -- parsing ----------------------------------------------------------

    def _parse_symbol_info(self, payload: Dict[str, Any]) -> SymbolInfo:
        price_tick = amount_step = min_notional = None
        min_qty = max_qty = min_price = max_price = None
        for filt in payload.get("filters", []):
            ftype = filt.get("filterType")
            if ftype == "PRICE_FILTER":
                price_tick = self._as_float(filt.get("tickSize"))
                min_price = self._as_float(filt.get("minPrice"))
                max_price = self._as_float(filt.get("maxPrice"))
            elif ftype == "LOT_SIZE":
                amount_step = self._as_float(filt.get("stepSize"))
                min_qty = self._as_float(filt.get("minQty"))
                max_qty = self._as_float(filt.get("maxQty"))
            elif ftype in ("MIN_NOTIONAL", "NOTIONAL"):
                min_notional = self._as_float(filt.get("notional") or filt.get("minNotional"))
        return SymbolInfo(
            symbol=payload.get("symbol"),
            price_tick=price_tick,
            amount_step=amount_step,
            min_notional=min_notional,
            min_qty=min_qty,
            max_qty=max_qty,
            min_price=min_price,
            max_price=max_price,
            price_precision=self._as_int(payload.get("pricePrecision")),
            quantity_precision=self._as_int(payload.get("quantityPrecision")),
            raw=payload,
        )

    def _parse_order_ack(self, payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict) or payload.get("orderId") is None:
            return None
        qty_val = payload.get("origQty") or payload.get("quantity")
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or payload.get("origType") or "LIMIT",
            quantity=self._as_float(qty_val) or 0.0,
            status=payload.get("status"),
            price=self._as_float(payload.get("price")),
            stop_price=self._as_float(payload.get("stopPrice")),
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=self._as_int(payload.get("orderId")),
            reduce_only=self._as_bool(payload.get("reduceOnly")),
            close_position=self._as_bool(payload.get("closePosition")),
            position_side=(payload.get("positionSide") or "BOTH").upper(),
            executed_quantity=self._as_float(payload.get("executedQty")) or 0.0,
            time=self._as_int(payload.get("time") or payload.get("updateTime")) or 0,
            raw=payload,
        )

    def _parse_position(self, payload: Any) -> Optional[Position]:
        if not isinstance(payload, dict) or not payload.get("symbol"):
            return None
        amount = self._as_float(payload.get("positionAmt"))
        if amount is None:
            return None
        return Position(
            symbol=payload["symbol"],
            position_amount=amount,
            entry_price=self._as_float(payload.get("entryPrice")) or 0.0,
            mark_price=self._as_float(payload.get("markPrice")) or 0.0,
            leverage=self._as_int(payload.get("leverage")) or 1,
            margin_type=(payload.get("marginType") or "cross").lower(),
            isolated_margin=self._as_float(payload.get("isolatedMargin")) or 0.0,
            position_side=(payload.get("positionSide") or "BOTH").upper(),
            unrealized_pnl=self._as_float(payload.get("unRealizedProfit")) or 0.0,
            update_time=self._as_int(payload.get("updateTime")) or 0,
        )

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_bool(value: Any) -> bool:
        if isinstance(value, str):
            return value.lower() == "true"
        return bool(value)
