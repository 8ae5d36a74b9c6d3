"""
Unit tests for the Binance futures client: payload parsing, error mapping,
signing and request shapes. _request and the ccxt exchange are mocked; no
network calls.
"""
import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt_async
import pytest

from bracketguard.data.binance_client import (
    BinanceFuturesClient,
    classify_ccxt_error,
    classify_error,
    parse_batch_result,
    parse_open_order,
    parse_position,
)
from bracketguard.domain.models import MarginMode, OrderPlaced, OrderRejected, OrderSide
from bracketguard.exceptions import (
    APIError,
    AuthenticationError,
    DataError,
    NetworkError,
    OrderNotFoundError,
    RateLimitError,
    ValidationError,
)


def _client() -> BinanceFuturesClient:
    return BinanceFuturesClient(api_key="key", api_secret="secret", use_testnet=True)


# ---------- parsing ----------

def test_parse_position_risk_entry():
    raw = {
        "symbol": "BTCUSDT",
        "positionAmt": "-0.250",
        "entryPrice": "61000.5",
        "markPrice": "60500.00",
        "unRealizedProfit": "125.12",
        "liquidationPrice": "0",
        "leverage": "20",
        "marginType": "isolated",
        "isolatedWallet": "760.25",
        "positionSide": "BOTH",
    }
    position = parse_position(raw)

    assert position.quantity == Decimal("-0.250")
    assert position.margin_mode is MarginMode.ISOLATED
    assert position.isolated_wallet == Decimal("760.25")
    assert position.unrealized_pnl == Decimal("125.12")
    assert position.leverage == Decimal("20")
    assert position.maintenance_margin_rate == Decimal("0.004")


def test_parse_account_position_entry_uses_isolated_flag():
    raw = {
        "symbol": "ethusdt",
        "positionAmt": "1",
        "entryPrice": "3000",
        "isolated": False,
        "unrealizedProfit": "-5",
        "initialMargin": "150",
        "positionSide": "LONG",
    }
    position = parse_position(raw, default_mmr=Decimal("0.005"))

    assert position.symbol == "ETHUSDT"
    assert position.margin_mode is MarginMode.CROSS
    assert position.unrealized_pnl == Decimal("-5")
    assert position.initial_margin == Decimal("150")
    assert position.leverage == Decimal("1")
    assert position.maintenance_margin_rate == Decimal("0.005")


def test_parse_open_order():
    raw = {
        "orderId": 111,
        "symbol": "BTCUSDT",
        "side": "SELL",
        "type": "STOP_MARKET",
        "closePosition": True,
        "stopPrice": "59000",
        "positionSide": "BOTH",
        "clientOrderId": "bg-1-abc-SL",
        "time": 1767225600000,
    }
    order = parse_open_order(raw)

    assert order.order_id == "111"
    assert order.side is OrderSide.SELL
    assert order.is_conditional_close
    assert order.close_position is True
    assert order.created_at == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_parse_batch_results():
    placed = parse_batch_result({"orderId": 5, "clientOrderId": "r-SL", "status": "NEW", "stopPrice": "59000"})
    rejected = parse_batch_result({"code": -2021, "msg": "Order would immediately trigger."}, "r-TP")

    assert isinstance(placed, OrderPlaced)
    assert placed.order_id == "5"
    assert placed.stop_price == Decimal("59000")
    assert isinstance(rejected, OrderRejected)
    assert rejected.code == -2021
    assert rejected.client_order_id == "r-TP"
    assert isinstance(parse_batch_result(None, "r-M"), OrderRejected)


@pytest.mark.parametrize(
    "status, payload, expected",
    [
        (400, {"code": -2011, "msg": "Unknown order sent."}, OrderNotFoundError),
        (400, {"code": -2013, "msg": "Order does not exist."}, OrderNotFoundError),
        (401, {"code": -2015, "msg": "Invalid API-key"}, AuthenticationError),
        (400, {"code": -1022, "msg": "Signature invalid"}, AuthenticationError),
        (429, {"code": -1003, "msg": "Too many requests"}, RateLimitError),
        (418, "banned", RateLimitError),
        (400, {"code": -1102, "msg": "Mandatory parameter missing"}, APIError),
    ],
)
def test_classify_error(status, payload, expected):
    error = classify_error(status, payload, "DELETE /fapi/v1/order")
    assert type(error) is expected
    assert error.status == status


# ---------- signing ----------

def test_signature_matches_reference_example():
    client = BinanceFuturesClient(
        api_key="key",
        api_secret="NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j",
    )
    query = "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1&price=0.1&recvWindow=5000&timestamp=1499827319559"
    assert client._sign(query) == "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"


def test_signed_query_appends_timestamp_window_and_signature():
    client = _client()
    query = client._signed_query({"symbol": "BTCUSDT"})

    unsigned, _, signature = query.rpartition("&signature=")
    assert unsigned.startswith("symbol=BTCUSDT&timestamp=")
    assert "recvWindow=10000" in unsigned
    assert signature == client._sign(unsigned)


def test_credentials_placeholder_is_not_valid():
    assert not BinanceFuturesClient("${BINANCE_API_KEY}", "secret").has_valid_credentials()
    assert _client().has_valid_credentials()


# ---------- order operations (ccxt) ----------

def _client_with_exchange(**methods) -> BinanceFuturesClient:
    client = _client()
    client.futures_exchange = MagicMock(**methods)
    return client


@pytest.mark.asyncio
async def test_cancel_order_request_shape():
    delete = AsyncMock(return_value={"orderId": 111, "status": "CANCELED"})
    client = _client_with_exchange(fapiPrivateDeleteOrder=delete)

    await client.cancel_order("btcusdt", "111")

    delete.assert_awaited_once_with({"symbol": "BTCUSDT", "orderId": "111"})


@pytest.mark.asyncio
async def test_cancel_order_rejects_non_numeric_id():
    delete = AsyncMock()
    client = _client_with_exchange(fapiPrivateDeleteOrder=delete)
    with pytest.raises(ValidationError):
        await client.cancel_order("BTCUSDT", "abc")
    delete.assert_not_called()


@pytest.mark.asyncio
async def test_cancel_unknown_order_raises_order_not_found():
    delete = AsyncMock(side_effect=ccxt_async.OrderNotFound('binanceusdm {"code":-2011,"msg":"Unknown order sent."}'))
    client = _client_with_exchange(fapiPrivateDeleteOrder=delete)

    with pytest.raises(OrderNotFoundError) as excinfo:
        await client.cancel_order("BTCUSDT", "111")
    assert excinfo.value.code == -2011


@pytest.mark.parametrize(
    "error, expected",
    [
        (ccxt_async.OrderNotFound('binanceusdm {"code":-2013,"msg":"Order does not exist."}'), OrderNotFoundError),
        (ccxt_async.AuthenticationError('binanceusdm {"code":-2015,"msg":"Invalid API-key"}'), AuthenticationError),
        (ccxt_async.RateLimitExceeded('binanceusdm {"code":-1003,"msg":"Too many requests"}'), RateLimitError),
        (ccxt_async.RequestTimeout("binanceusdm GET timed out"), NetworkError),
        (ccxt_async.InvalidOrder('binanceusdm {"code":-1102,"msg":"Mandatory parameter missing"}'), APIError),
    ],
)
def test_classify_ccxt_error(error, expected):
    assert type(classify_ccxt_error(error, "DELETE order")) is expected


@pytest.mark.asyncio
async def test_get_open_orders_parses_raw_payload():
    fetch = AsyncMock(return_value=[
        {"orderId": 111, "symbol": "BTCUSDT", "side": "SELL", "type": "STOP_MARKET", "closePosition": True, "stopPrice": "59000"},
        {"orderId": 112, "symbol": "BTCUSDT", "side": "HOLD", "type": "LIMIT"},
    ])
    client = _client_with_exchange(fapiPrivateGetOpenOrders=fetch)

    orders = await client.get_open_orders()

    assert [order.order_id for order in orders] == ["111"]


@pytest.mark.asyncio
async def test_order_call_timeout_is_network_error():
    async def hang(*args, **kwargs):
        await asyncio.sleep(1)

    client = _client_with_exchange(fapiPrivateGetOpenOrders=hang)
    client.request_timeout_seconds = 0.01

    with pytest.raises(NetworkError):
        await client.get_open_orders()


def test_order_operations_need_credentials():
    with pytest.raises(AuthenticationError):
        BinanceFuturesClient("${BINANCE_API_KEY}", "secret")._get_futures_exchange()


@pytest.mark.asyncio
async def test_place_batch_encodes_strings_and_maps_results():
    post = AsyncMock(return_value=[
        {"orderId": 1, "clientOrderId": "r-M", "status": "NEW"},
        {"orderId": 2, "clientOrderId": "r-SL", "status": "NEW"},
        {"code": -2021, "msg": "Order would immediately trigger."},
    ])
    client = _client_with_exchange(fapiPrivatePostBatchOrders=post)
    orders = [
        {"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET", "quantity": Decimal("0.01"), "newClientOrderId": "r-M"},
        {"symbol": "BTCUSDT", "side": "SELL", "type": "STOP_MARKET", "stopPrice": "59000", "closePosition": "true", "newClientOrderId": "r-SL"},
        {"symbol": "BTCUSDT", "side": "SELL", "type": "TAKE_PROFIT_MARKET", "stopPrice": "61000", "closePosition": "true", "newClientOrderId": "r-TP"},
    ]

    results = await client.place_batch(orders)

    (params,) = post.call_args.args
    encoded = json.loads(params["batchOrders"])
    assert encoded[0]["quantity"] == "0.01"
    assert encoded[1]["closePosition"] == "true"
    assert [type(r) for r in results] == [OrderPlaced, OrderPlaced, OrderRejected]
    assert results[2].client_order_id == "r-TP"


@pytest.mark.asyncio
async def test_place_batch_limit():
    post = AsyncMock()
    client = _client_with_exchange(fapiPrivatePostBatchOrders=post)
    with pytest.raises(ValidationError):
        await client.place_batch([{"symbol": "BTCUSDT"}] * 6)
    post.assert_not_called()


# ---------- reads ----------

@pytest.mark.asyncio
async def test_get_positions_parses_payload():
    client = _client()
    client._request = AsyncMock(return_value=[
        {"symbol": "BTCUSDT", "positionAmt": "0.5", "entryPrice": "60000", "leverage": "10", "marginType": "cross"},
        {"symbol": "", "positionAmt": "1"},
    ])

    positions = await client.get_positions()

    assert len(positions) == 1
    assert positions[0].quantity == Decimal("0.5")


@pytest.mark.asyncio
async def test_get_positions_rejects_unexpected_payload():
    client = _client()
    client._request = AsyncMock(return_value={"code": 0})
    with pytest.raises(DataError):
        await client.get_positions()


@pytest.mark.asyncio
async def test_hedge_mode_flag():
    client = _client()
    client._request = AsyncMock(return_value={"dualSidePosition": True})
    assert await client.get_hedge_mode() is True
