import asyncio
import hmac
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from api.metrics import metrics
from config import config


logger = logging.getLogger(__name__)

_WEIGHT_HEADER = "X-MBX-USED-WEIGHT-1M"
_ORDER_COUNT_HEADER = "X-MBX-ORDER-COUNT-1M"
# 418 means the IP is banned, 429 is the warning before that
_THROTTLE_STATUSES = (418, 429)


class BinanceAPIError(Exception):
    """Non-2xx reply from the futures API, carrying the exchange error code."""

    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        super().__init__(f"Exchange API error (status={status}, code={code}, msg={msg})")


@dataclass
class RateLimitState:
    used_weight: int = 0
    order_count: int = 0
    max_weight: int = 2400
    warn_ratio: float = 0.8

    def observe(self, headers: Mapping[str, str]) -> None:
        weight = headers.get(_WEIGHT_HEADER)
        if weight is not None and weight.isdigit():
            self.used_weight = int(weight)
            metrics.update_api_weight(self.used_weight)
            if self.used_weight >= self.max_weight * self.warn_ratio:
                logger.warning("API weight at %s/%s for the current minute", self.used_weight, self.max_weight)
        orders = headers.get(_ORDER_COUNT_HEADER)
        if orders is not None and orders.isdigit():
            self.order_count = int(orders)


class BinanceRESTClient:
    """Signed REST client for Binance-compatible USDⓈ-M futures APIs (Aster).

    Used weight is read from every response and exported as a gauge.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
    ):
        settings = config.section('exchange')
        self.base_url = (base_url or settings.get("base_url") or "https://fapi.asterdex.com").rstrip("/")
        self.api_key: Optional[str] = api_key or settings.get("api_key")
        self.api_secret: Optional[str] = api_secret or settings.get("api_secret")
        self.recv_window = int(settings.get("recv_window", 5000))
        self.limits = RateLimitState(
            max_weight=int(settings.get("max_request_weight", 2400)),
            warn_ratio=float(settings.get("weight_warn_ratio", 0.8)),
        )
        self._timeout = aiohttp.ClientTimeout(total=float(settings.get("request_timeout_s", 15)))
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    async def _session_for_request(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self._timeout)
            return self._session

    async def close(self):
        async with self._session_lock:
            session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params.setdefault("timestamp", int(time.time() * 1000))
        params.setdefault("recvWindow", self.recv_window)
        digest = hmac.new(
            self.api_secret.encode("utf-8"),
            urlencode(params, doseq=True).encode("utf-8"),
            hashlib.sha256,
        )
        params["signature"] = digest.hexdigest()
        return params

    def _prepare(self, params: Optional[Dict[str, Any]], signed: bool) -> Tuple[Dict[str, Any], Dict[str, str]]:
        query = dict(params or {})
        headers: Dict[str, str] = {}
        if signed:
            if not self.has_credentials:
                raise RuntimeError("API key/secret required for signed request")
            query = self._sign(query)
        if self.api_key:
            # listenKey endpoints take the key header without a signature
            headers["X-MBX-APIKEY"] = self.api_key
        return query, headers

    @staticmethod
    def _decode(text: str, content_type: str) -> Any:
        if "application/json" not in content_type:
            return text
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        form_body: bool = False,
    ) -> Any:
        query, headers = self._prepare(params, signed)
        body = None
        if form_body and query:
            body = urlencode(query, doseq=True)
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            query = None

        session = await self._session_for_request()
        async with session.request(method, f"{self.base_url}{path}", params=query, data=body,
                                   headers=headers) as resp:
            text = await resp.text()
            self.limits.observe(resp.headers)
            payload = self._decode(text, resp.headers.get("Content-Type", ""))

        if resp.status < 400:
            return payload

        code = payload.get("code") if isinstance(payload, dict) else None
        msg = payload.get("msg") if isinstance(payload, dict) else None
        if resp.status in _THROTTLE_STATUSES:
            logger.error("%s %s rate limited (HTTP %s, Retry-After=%s, weight=%s)", method, path, resp.status,
                         resp.headers.get("Retry-After"), self.limits.used_weight)
        else:
            logger.debug("%s %s -> %s %s", method, path, resp.status, text[:200])
        raise BinanceAPIError(resp.status, code, msg, text)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("POST", path, params=params, signed=signed, form_body=signed)

    async def put(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("PUT", path, params=params, signed=signed)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)
