"""
Binance USDⓈ-M Futures REST client.

Handles:
- Reads (positions, account, mark price, position mode) over signed aiohttp
  requests: API key header + HMAC-SHA256 query signature
- Order operations (open orders, cancel, batch placement) through ccxt
  binanceusdm raw fapi endpoints
- Server clock offset for signed timestamps
- Rate limiting (token bucket)
- Mapping HTTP / exchange error codes onto bracketguard.exceptions
- Parsing positions, open orders and batch results into domain models

Every request carries a fixed timeout; a timeout surfaces as NetworkError.
"""
import asyncio
import hashlib
import hmac
import json
import re
import ssl
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlencode

import aiohttp
import ccxt.async_support as ccxt_async
import certifi

from bracketguard.constants import (
    ACCOUNT_ENDPOINT,
    AUTH_ERROR_CODES,
    BATCH_ORDER_TIMEOUT,
    BINANCE_FUTURES_BASE_URL,
    BINANCE_FUTURES_TESTNET_URL,
    DEFAULT_API_TIMEOUT,
    DEFAULT_MAINTENANCE_MARGIN_RATE,
    DEFAULT_RECV_WINDOW_MS,
    ERROR_CODE_TIMESTAMP_OUT_OF_WINDOW,
    ERROR_CODE_TOO_MANY_REQUESTS,
    ORDER_NOT_FOUND_CODES,
    POSITION_MODE_ENDPOINT,
    POSITION_RISK_ENDPOINT,
    PREMIUM_INDEX_ENDPOINT,
    PRIVATE_API_CAPACITY,
    PRIVATE_API_REFILL_RATE,
    PUBLIC_API_CAPACITY,
    PUBLIC_API_REFILL_RATE,
    SERVER_TIME_ENDPOINT,
)
from bracketguard.domain.models import (
    MarginMode,
    OpenOrder,
    OrderPlaced,
    OrderRejected,
    OrderSide,
    Position,
)
from bracketguard.exceptions import (
    APIError,
    AuthenticationError,
    DataError,
    NetworkError,
    OrderNotFoundError,
    RateLimitError,
    ValidationError,
)
from bracketguard.monitoring.logger import get_logger
from bracketguard.risk.risk_calculator import to_decimal
from bracketguard.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

MAX_BATCH_ORDERS = 5


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""
    capacity: int  # Maximum tokens
    refill_rate: float  # Tokens per second
    tokens: float
    last_refill: float

    def __init__(self, capacity: int, refill_rate: float):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.last_refill = time.monotonic()

    def consume(self, tokens: int = 1) -> bool:
        """
        Try to consume tokens.

        Returns:
            True if tokens consumed, False if insufficient tokens
        """
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def wait_for_token(self):
        """Wait until a token is available."""
        while not self.consume(1):
            await asyncio.sleep(0.05)


# ============ Payload parsing ============

def _parse_ms(value: Any) -> Optional[datetime]:
    """Epoch milliseconds -> UTC datetime; None for missing or invalid values."""
    try:
        ms = int(value)
    except (TypeError, ValueError):
        return None
    if ms <= 0:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def parse_position(raw: Dict[str, Any], default_mmr: Decimal = DEFAULT_MAINTENANCE_MARGIN_RATE) -> Position:
    """
    Build a Position from a positionRisk (or account.positions) entry.

    default_mmr applies when the payload carries no maintenance margin ratio.
    """
    if "isolated" in raw:
        isolated = bool(raw.get("isolated"))
    else:
        isolated = str(raw.get("marginType") or "").lower() == "isolated"
    entry_price = to_decimal(raw.get("entryPrice"))
    mmr = to_decimal(raw.get("maintMarginRatio"))
    position = Position(
        symbol=str(raw.get("symbol") or "").upper(),
        quantity=to_decimal(raw.get("positionAmt")),
        entry_price=entry_price,
        mark_price=to_decimal(raw.get("markPrice")),
        leverage=to_decimal(raw.get("leverage"), Decimal("1")),
        margin_mode=MarginMode.ISOLATED if isolated else MarginMode.CROSS,
        isolated_wallet=to_decimal(raw.get("isolatedWallet")),
        unrealized_pnl=to_decimal(raw.get("unRealizedProfit", raw.get("unrealizedProfit"))),
        position_side=str(raw.get("positionSide") or "BOTH").upper(),
        initial_margin=to_decimal(raw.get("initialMargin")),
        liquidation_price=to_decimal(raw.get("liquidationPrice")),
    )
    position.maintenance_margin_rate = mmr if mmr > 0 else default_mmr
    return position


def parse_open_order(raw: Dict[str, Any]) -> OpenOrder:
    """Build an OpenOrder from a /fapi/v1/openOrders entry."""
    close_position = raw.get("closePosition")
    if isinstance(close_position, str):
        close_position = close_position.lower() == "true"
    return OpenOrder(
        order_id=str(raw.get("orderId")),
        symbol=str(raw.get("symbol") or "").upper(),
        side=OrderSide(str(raw.get("side") or "").upper()),
        type=str(raw.get("type") or "").upper(),
        close_position=bool(close_position),
        stop_price=to_decimal(raw.get("stopPrice")),
        position_side=str(raw.get("positionSide") or "BOTH").upper(),
        client_order_id=raw.get("clientOrderId"),
        created_at=_parse_ms(raw.get("time")),
    )


def parse_batch_result(raw: Optional[Dict[str, Any]], client_order_id: Optional[str] = None) -> Union[OrderPlaced, OrderRejected]:
    """
    One element of a batchOrders response: an order object, or {code, msg}.
    """
    if not raw:
        return OrderRejected(code=None, message="empty result", client_order_id=client_order_id)
    code = raw.get("code")
    if code is not None and code != 200 and raw.get("orderId") is None:
        return OrderRejected(code=code, message=str(raw.get("msg") or ""), client_order_id=client_order_id)
    stop_price = raw.get("stopPrice")
    return OrderPlaced(
        order_id=str(raw.get("orderId")),
        client_order_id=raw.get("clientOrderId") or client_order_id,
        symbol=raw.get("symbol"),
        side=raw.get("side"),
        type=raw.get("type"),
        status=raw.get("status"),
        position_side=raw.get("positionSide"),
        stop_price=to_decimal(stop_price) if stop_price is not None else None,
        raw=raw,
    )


def classify_error(status: int, payload: Any, context: str = "") -> APIError:
    """Map an HTTP status + Binance error body onto the exception hierarchy."""
    code = None
    message = str(payload)
    if isinstance(payload, dict):
        code = payload.get("code")
        message = str(payload.get("msg") or message)
    prefix = f"{context}: " if context else ""
    if code in ORDER_NOT_FOUND_CODES:
        return OrderNotFoundError(f"{prefix}{message}", code=code, status=status)
    if status in (401, 403) or code in AUTH_ERROR_CODES:
        return AuthenticationError(f"{prefix}{message}", code=code, status=status)
    if status in (418, 429) or code == ERROR_CODE_TOO_MANY_REQUESTS:
        return RateLimitError(f"{prefix}{message}", code=code, status=status)
    return APIError(f"{prefix}{message}", code=code, status=status)


_CCXT_CODE_RE = re.compile(r'"code"\s*:\s*(-?\d+)')


def classify_ccxt_error(error: Exception, context: str = "") -> Exception:
    """
    Map a ccxt exception onto the hierarchy. The Binance error code is
    recovered from the message body ccxt raises with.
    """
    match = _CCXT_CODE_RE.search(str(error))
    code = int(match.group(1)) if match else None
    prefix = f"{context}: " if context else ""
    message = f"{prefix}{error}"
    if isinstance(error, ccxt_async.OrderNotFound) or code in ORDER_NOT_FOUND_CODES:
        return OrderNotFoundError(message, code=code)
    if isinstance(error, ccxt_async.AuthenticationError) or code in AUTH_ERROR_CODES:
        return AuthenticationError(message, code=code)
    # DDoSProtection and RateLimitExceeded subclass ccxt.NetworkError
    if isinstance(error, ccxt_async.DDoSProtection) or code == ERROR_CODE_TOO_MANY_REQUESTS:
        return RateLimitError(message, code=code)
    if isinstance(error, ccxt_async.NetworkError):
        return NetworkError(message)
    return APIError(message, code=code)


class BinanceFuturesClient:
    """
    Binance USDⓈ-M Futures REST client implementing ExchangeClient.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        use_testnet: bool = False,
        base_url: Optional[str] = None,
        recv_window_ms: int = DEFAULT_RECV_WINDOW_MS,
        request_timeout_seconds: float = DEFAULT_API_TIMEOUT,
        batch_timeout_seconds: float = BATCH_ORDER_TIMEOUT,
        maintenance_margin_rate: Decimal = DEFAULT_MAINTENANCE_MARGIN_RATE,
    ):
        """
        Initialize Binance futures client.

        Args:
            api_key: API key (sent as X-MBX-APIKEY)
            api_secret: HMAC secret used to sign queries
            use_testnet: Target the futures testnet
            base_url: Override the REST base URL
            recv_window_ms: recvWindow for signed requests
            request_timeout_seconds: Timeout for every request except batch placement
            batch_timeout_seconds: Timeout for batch placement
            maintenance_margin_rate: Rate assumed for positions that do not report one
        """
        self.api_key = (api_key or "").strip()
        self.api_secret = (api_secret or "").strip()
        self.use_testnet = use_testnet
        self.base_url = (base_url or (BINANCE_FUTURES_TESTNET_URL if use_testnet else BINANCE_FUTURES_BASE_URL)).rstrip("/")
        self.recv_window_ms = recv_window_ms
        self.request_timeout_seconds = request_timeout_seconds
        self.batch_timeout_seconds = batch_timeout_seconds
        self.maintenance_margin_rate = maintenance_margin_rate

        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()
        self._ssl_context: Optional[ssl.SSLContext] = None
        self._time_offset_ms = 0
        self._needs_time_sync = True
        self.futures_exchange: Optional[Any] = None

        self.public_limiter = RateLimiter(capacity=PUBLIC_API_CAPACITY, refill_rate=PUBLIC_API_REFILL_RATE)
        self.private_limiter = RateLimiter(capacity=PRIVATE_API_CAPACITY, refill_rate=PRIVATE_API_REFILL_RATE)

        logger.info("Binance futures client configured", base_url=self.base_url, testnet=use_testnet)

    def has_valid_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret and not self.api_key.startswith("${"))

    # ============ Session / signing ============

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
                self._session = aiohttp.ClientSession(connector=connector)
            return self._session

    def _sign(self, query: str) -> str:
        return hmac.new(self.api_secret.encode(), query.encode(), hashlib.sha256).hexdigest()

    def _signed_query(self, params: Dict[str, Any]) -> str:
        """Query string with timestamp, recvWindow and trailing signature."""
        payload = dict(params)
        payload["timestamp"] = int(time.time() * 1000) + self._time_offset_ms
        payload["recvWindow"] = self.recv_window_ms
        query = urlencode(payload)
        return f"{query}&signature={self._sign(query)}"

    async def sync_time(self) -> int:
        """Measure the offset between the local clock and the exchange clock."""
        data = await self._request("GET", SERVER_TIME_ENDPOINT, signed=False)
        local_ms = int(time.time() * 1000)
        self._time_offset_ms = int(data["serverTime"]) - local_ms
        self._needs_time_sync = False
        logger.debug("Server time synced", offset_ms=self._time_offset_ms)
        return self._time_offset_ms

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        signed: bool = True,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Issue one REST call. Raises NetworkError on timeout/connection
        failure, or the APIError subclass matching the error payload.
        """
        params = params or {}
        if signed:
            if not self.has_valid_credentials():
                raise AuthenticationError("Futures API credentials not configured")
            if self._needs_time_sync:
                await self.sync_time()
            await self.private_limiter.wait_for_token()
            query = self._signed_query(params)
        else:
            await self.public_limiter.wait_for_token()
            query = urlencode(params)

        url = f"{self.base_url}{path}"
        headers = {"X-MBX-APIKEY": self.api_key} if signed else {}
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.request_timeout_seconds)
        if method == "POST":
            request_kwargs = {"data": query, "headers": {**headers, "Content-Type": "application/x-www-form-urlencoded"}}
        else:
            if query:
                url = f"{url}?{query}"
            request_kwargs = {"headers": headers}

        session = await self._get_session()
        try:
            async with session.request(method, url, timeout=client_timeout, **request_kwargs) as response:
                text = await response.text()
                try:
                    payload = json.loads(text) if text else None
                except json.JSONDecodeError:
                    payload = text
                if response.status >= 500:
                    raise NetworkError(f"{method} {path} failed with HTTP {response.status}: {text[:200]}")
                if response.status != 200:
                    error = classify_error(response.status, payload, f"{method} {path}")
                    if error.code == ERROR_CODE_TIMESTAMP_OUT_OF_WINDOW:
                        self._needs_time_sync = True
                    raise error
                return payload
        except asyncio.TimeoutError as e:
            raise NetworkError(f"{method} {path} timed out") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"{method} {path} connection error: {e}") from e

    # ============ ExchangeClient ============

    async def get_positions(self) -> List[Position]:
        """All position legs, including zero-quantity ones."""
        data = await self._request("GET", POSITION_RISK_ENDPOINT)
        if not isinstance(data, list):
            raise DataError(f"Unexpected positionRisk payload: {type(data).__name__}")
        return [parse_position(raw, self.maintenance_margin_rate) for raw in data if raw.get("symbol")]

    async def get_open_orders(self) -> List[OpenOrder]:
        exchange = self._get_futures_exchange()
        data = await self._ccxt_call("fetch open orders", exchange.fapiPrivateGetOpenOrders())
        if not isinstance(data, list):
            raise DataError(f"Unexpected openOrders payload: {type(data).__name__}")
        orders = []
        for raw in data:
            try:
                orders.append(parse_open_order(raw))
            except ValueError as e:
                logger.warning("Skipping unparseable open order", order_id=raw.get("orderId"), error=str(e))
        return orders

    async def cancel_order(self, symbol: str, order_id: str) -> Dict[str, Any]:
        """
        Cancel one order. Raises OrderNotFoundError when the order is already gone.
        """
        order_id = str(order_id)
        if not order_id.isdigit():
            raise ValidationError(f"Invalid order id: {order_id!r}")
        exchange = self._get_futures_exchange()
        data = await self._ccxt_call(
            f"cancel {symbol} {order_id}",
            exchange.fapiPrivateDeleteOrder({"symbol": symbol.upper(), "orderId": order_id}),
        )
        logger.info("Futures order cancelled", symbol=symbol, order_id=order_id, status=(data or {}).get("status"))
        return data or {}

    async def place_batch(self, orders: List[Dict[str, Any]]) -> List[Union[OrderPlaced, OrderRejected]]:
        """
        Submit up to five orders in one request; one result per order, in order.
        """
        if not orders:
            return []
        if len(orders) > MAX_BATCH_ORDERS:
            raise ValidationError(f"Batch of {len(orders)} exceeds {MAX_BATCH_ORDERS} orders")
        encoded = [{k: str(v) for k, v in order.items()} for order in orders]
        batch = json.dumps(encoded, separators=(",", ":"))
        exchange = self._get_futures_exchange()
        data = await self._ccxt_call(
            "place batch",
            exchange.fapiPrivatePostBatchOrders({"batchOrders": batch}),
            timeout=self.batch_timeout_seconds,
        )
        if not isinstance(data, list):
            raise DataError(f"Unexpected batchOrders payload: {type(data).__name__}")
        results: List[Union[OrderPlaced, OrderRejected]] = []
        for index, order in enumerate(orders):
            raw = data[index] if index < len(data) else None
            results.append(parse_batch_result(raw, order.get("newClientOrderId")))
        return results

    def _get_futures_exchange(self):
        """Authenticated ccxt binanceusdm instance, created on first use."""
        if self.futures_exchange is None:
            if not self.has_valid_credentials():
                raise AuthenticationError("Futures API credentials not configured")
            self.futures_exchange = ccxt_async.binanceusdm({
                "apiKey": self.api_key,
                "secret": self.api_secret,
                "enableRateLimit": True,
                "timeout": int(self.request_timeout_seconds * 1000),
                "options": {"recvWindow": self.recv_window_ms, "adjustForTimeDifference": True},
            })
            if self.use_testnet:
                self.futures_exchange.set_sandbox_mode(True)
        return self.futures_exchange

    async def _ccxt_call(self, context: str, awaitable: Any, timeout: Optional[float] = None) -> Any:
        """Await a ccxt request under a timeout; ccxt errors become bracketguard errors."""
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout or self.request_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"{context} timed out") from e
        except ccxt_async.BaseError as e:
            raise classify_ccxt_error(e, context) from e

    @retry_on_transient_errors(max_retries=2, base_delay=0.5)
    async def get_mark_price(self, symbol: str) -> Decimal:
        """Current mark price (the reference for conditional triggers)."""
        data = await self._request("GET", PREMIUM_INDEX_ENDPOINT, {"symbol": symbol.upper()}, signed=False)
        mark_price = to_decimal((data or {}).get("markPrice"))
        if mark_price <= 0:
            raise DataError(f"Mark price not available for {symbol}")
        logger.debug("Fetched futures mark price", symbol=symbol, mark_price=str(mark_price))
        return mark_price

    # ============ Account ============

    async def get_hedge_mode(self) -> bool:
        """True if the account is in hedge (dual-side position) mode."""
        data = await self._request("GET", POSITION_MODE_ENDPOINT)
        return bool((data or {}).get("dualSidePosition"))

    async def get_account(self) -> Dict[str, Any]:
        """Raw /fapi/v2/account payload (balances, totalMarginBalance, positions)."""
        data = await self._request("GET", ACCOUNT_ENDPOINT)
        if not isinstance(data, dict):
            raise DataError(f"Unexpected account payload: {type(data).__name__}")
        return data

    async def get_instruments(self) -> List[Dict[str, Any]]:
        """
        Instrument metadata via ccxt markets (tick size, step size, limits).
        """
        exchange = ccxt_async.binanceusdm({"enableRateLimit": True, "timeout": int(self.request_timeout_seconds * 1000)})
        if self.use_testnet:
            exchange.set_sandbox_mode(True)
        try:
            markets = await exchange.load_markets()
            return [m for m in markets.values() if m.get("swap") and m.get("linear")]
        except ccxt_async.BaseError as e:
            raise classify_ccxt_error(e, "load instruments") from e
        finally:
            await exchange.close()

    async def close(self):
        """Cleanup resources."""
        if self.futures_exchange is not None:
            await self.futures_exchange.close()
            self.futures_exchange = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
