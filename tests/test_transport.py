import asyncio
import hashlib
import hmac
import sys

sys.path.insert(0, '.')

import pytest

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient, RateLimitState
from strategy.execution_types import OrderRequest
from strategy.transports.binance import BinanceTransport


class RecordingREST:
    has_credentials = True

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def _call(self, method, path, params=None, signed=False):
        self.calls.append((method, path, params, signed))
        response = self.responses.get((method, path))
        if isinstance(response, Exception):
            raise response
        return response

    async def get(self, path, params=None, signed=False):
        return await self._call('GET', path, params, signed)

    async def post(self, path, params=None, signed=False):
        return await self._call('POST', path, params, signed)

    async def put(self, path, params=None, signed=False):
        return await self._call('PUT', path, params, signed)

    async def delete(self, path, params=None, signed=False):
        return await self._call('DELETE', path, params, signed)

    async def close(self):
        return None


def test_signature_covers_query_string():
    client = BinanceRESTClient(base_url='https://example.invalid', api_key='key', api_secret='secret')
    signed = client._sign({'symbol': 'BTCUSDT', 'timestamp': 1, 'recvWindow': 5000})
    expected = hmac.new(b'secret', b'symbol=BTCUSDT&timestamp=1&recvWindow=5000', hashlib.sha256).hexdigest()
    assert signed['signature'] == expected


def test_order_ack_and_snapshots_are_typed():
    async def _run():
        rest = RecordingREST({
            ('POST', '/fapi/v1/order'): {
                'orderId': 101, 'symbol': 'BTCUSDT', 'side': 'SELL', 'type': 'STOP_MARKET', 'origQty': '0.005',
                'stopPrice': '49000', 'reduceOnly': True, 'positionSide': 'BOTH', 'status': 'NEW', 'updateTime': 5,
            },
            ('GET', '/fapi/v2/positionRisk'): [
                {'symbol': 'BTCUSDT', 'positionAmt': '0.005', 'entryPrice': '50000', 'markPrice': '50100',
                 'leverage': '5', 'positionSide': 'BOTH', 'unRealizedProfit': '0.5'},
                {'symbol': 'ETHUSDT', 'positionAmt': '0', 'entryPrice': '0', 'positionSide': 'BOTH'},
            ],
            ('GET', '/fapi/v1/positionSide/dual'): {'dualSidePosition': 'true'},
            ('GET', '/fapi/v2/balance'): [
                {'asset': 'BNB', 'balance': '1'},
                {'asset': 'USDT', 'balance': '250.5', 'availableBalance': '200'},
            ],
            ('POST', '/fapi/v1/listenKey'): {'listenKey': 'abc'},
            ('GET', '/fapi/v1/ticker/bookTicker'): {'bidPrice': '100.0', 'askPrice': '100.1'},
        })
        transport = BinanceTransport(rest)

        request = OrderRequest('BTCUSDT', 'SELL', 'STOP_MARKET', 0.005, stop_price=49000.0, reduce_only=True)
        ticket = await transport.place_order(request)
        assert ticket.exchange_order_id == 101 and ticket.is_stop_loss and ticket.reduce_only
        method, path, params, signed = rest.calls[-1]
        assert signed and params['reduceOnly'] == 'true' and params['stopPrice'] == '49000'

        positions = await transport.fetch_positions()
        assert [p.symbol for p in positions] == ['BTCUSDT']
        assert positions[0].leverage == 5 and positions[0].mark_price == 50100.0

        assert await transport.fetch_position_mode() is True
        assert await transport.fetch_balance() == (250.5, 200.0)
        assert await transport.create_listen_key() == 'abc'
        assert await transport.fetch_book_ticker('BTCUSDT') == (100.0, 100.1)

    asyncio.run(_run())


def test_missing_ack_is_an_error():
    async def _run():
        transport = BinanceTransport(RecordingREST({('POST', '/fapi/v1/order'): {'code': 0}}))
        with pytest.raises(BinanceAPIError):
            await transport.place_order(OrderRequest('BTCUSDT', 'BUY', 'MARKET', 1.0))

    asyncio.run(_run())


def test_exchange_filters_are_parsed():
    async def _run():
        transport = BinanceTransport(RecordingREST({
            ('GET', '/fapi/v1/exchangeInfo'): {'symbols': [{
                'symbol': 'BTCUSDT', 'pricePrecision': 1, 'quantityPrecision': 3,
                'filters': [
                    {'filterType': 'PRICE_FILTER', 'tickSize': '0.10', 'minPrice': '100', 'maxPrice': '1000000'},
                    {'filterType': 'LOT_SIZE', 'stepSize': '0.001', 'minQty': '0.001', 'maxQty': '1000'},
                    {'filterType': 'MIN_NOTIONAL', 'notional': '5'},
                ],
            }]},
        }))
        info, = await transport.fetch_exchange_info()
        assert info.price_tick == 0.1 and info.amount_step == 0.001
        assert info.min_notional == 5.0 and info.max_qty == 1000.0

    asyncio.run(_run())


def test_rate_limit_headers_are_tracked():
    state = RateLimitState(max_weight=100, warn_ratio=0.5)
    state.observe({'X-MBX-USED-WEIGHT-1M': '60', 'X-MBX-ORDER-COUNT-1M': '3'})
    assert state.used_weight == 60 and state.order_count == 3

    state.observe({'X-MBX-USED-WEIGHT-1M': 'n/a'})
    assert state.used_weight == 60

