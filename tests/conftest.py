"""
Pytest configuration and shared fixtures.

FakeExchange is an in-memory ExchangeClient: positions and resting orders
live in plain containers, and every call is recorded so tests can assert
on exactly which exchange calls a pass made.
"""
import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from bracketguard.domain.models import (
    BracketRecord,
    MarginMode,
    OpenOrder,
    OrderPlaced,
    OrderSide,
    Position,
    PositionKey,
)
from bracketguard.exceptions import OrderNotFoundError
from bracketguard.execution.bracket_tracker import BracketTracker
from bracketguard.execution.instrument_specs import InstrumentSpec, InstrumentSpecRegistry


def _make_position(
    symbol: str = "BTCUSDT",
    quantity: str = "0.5",
    *,
    entry_price: str = "60000",
    mark_price: str = "60500",
    leverage: str = "10",
    margin_mode: MarginMode = MarginMode.CROSS,
    position_side: str = "BOTH",
    **kwargs: Any,
) -> Position:
    return Position(
        symbol=symbol,
        quantity=Decimal(quantity),
        entry_price=Decimal(entry_price),
        mark_price=Decimal(mark_price),
        leverage=Decimal(leverage),
        margin_mode=margin_mode,
        position_side=position_side,
        **kwargs,
    )


def _make_order(
    order_id: str,
    symbol: str = "BTCUSDT",
    side: str = "SELL",
    type: str = "STOP_MARKET",
    *,
    position_side: str = "BOTH",
    created_at: Optional[datetime] = None,
) -> OpenOrder:
    return OpenOrder(
        order_id=order_id,
        symbol=symbol,
        side=OrderSide(side),
        type=type,
        close_position=type != "LIMIT",
        stop_price=Decimal("59000"),
        position_side=position_side,
        created_at=created_at,
    )


def _make_record(
    key: PositionKey,
    stop_loss_order_id: Optional[str] = "111",
    take_profit_order_id: Optional[str] = "112",
    *,
    age_seconds: float = 60,
) -> BracketRecord:
    return BracketRecord(
        position_key=key,
        symbol=key.symbol,
        stop_loss_order_id=stop_loss_order_id,
        take_profit_order_id=take_profit_order_id,
        created_at=datetime.now(timezone.utc) - timedelta(seconds=age_seconds),
    )


class FakeExchange:
    """In-memory ExchangeClient double."""

    def __init__(
        self,
        positions: Optional[List[Position]] = None,
        orders: Optional[List[OpenOrder]] = None,
        mark_price: Decimal = Decimal("100"),
    ):
        self.positions: List[Position] = list(positions or [])
        self.orders: Dict[str, OpenOrder] = {o.order_id: o for o in orders or []}
        self.mark_price = mark_price
        self.calls: List[tuple] = []

        # Failure injection
        self.positions_error: Optional[BaseException] = None
        self.orders_error: Optional[BaseException] = None
        self.cancel_errors: Dict[str, BaseException] = {}
        self.positions_gate: Optional[asyncio.Event] = None
        self.batch_results: Optional[List[Any]] = None

        self._ids = itertools.count(1000)

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def get_positions(self) -> List[Position]:
        self.calls.append(("get_positions",))
        if self.positions_gate is not None:
            await self.positions_gate.wait()
        if self.positions_error is not None:
            raise self.positions_error
        return list(self.positions)

    async def get_open_orders(self) -> List[OpenOrder]:
        self.calls.append(("get_open_orders",))
        if self.orders_error is not None:
            raise self.orders_error
        return list(self.orders.values())

    async def cancel_order(self, symbol: str, order_id: str) -> Dict[str, Any]:
        self.calls.append(("cancel_order", symbol, order_id))
        error = self.cancel_errors.get(order_id)
        if error is not None:
            raise error
        if order_id not in self.orders:
            raise OrderNotFoundError("Unknown order sent.", code=-2011, status=400)
        del self.orders[order_id]
        return {"orderId": order_id, "status": "CANCELED"}

    async def place_batch(self, orders: List[Dict[str, Any]]) -> List[Any]:
        self.calls.append(("place_batch", orders))
        if self.batch_results is not None:
            return self.batch_results
        results = []
        for order in orders:
            order_id = str(next(self._ids))
            results.append(
                OrderPlaced(
                    order_id=order_id,
                    client_order_id=order.get("newClientOrderId"),
                    symbol=order["symbol"],
                    side=order["side"],
                    type=order["type"],
                    status="NEW",
                    position_side=order.get("positionSide", "BOTH"),
                )
            )
            if order["type"] != "MARKET":
                self.orders[order_id] = OpenOrder(
                    order_id=order_id,
                    symbol=order["symbol"],
                    side=OrderSide(order["side"]),
                    type=order["type"],
                    close_position=True,
                    stop_price=Decimal(order["stopPrice"]),
                    position_side=order.get("positionSide", "BOTH"),
                    client_order_id=order.get("newClientOrderId"),
                )
        return results

    async def get_mark_price(self, symbol: str) -> Decimal:
        self.calls.append(("get_mark_price", symbol))
        return self.mark_price


@pytest.fixture
def fake_exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def tracker() -> BracketTracker:
    return BracketTracker()


@pytest.fixture
def specs() -> InstrumentSpecRegistry:
    registry = InstrumentSpecRegistry()
    registry.load([
        InstrumentSpec("BTCUSDT", price_tick=Decimal("0.1"), quantity_step=Decimal("0.001"), min_quantity=Decimal("0.001")),
        InstrumentSpec("ETHUSDT", price_tick=Decimal("0.01"), quantity_step=Decimal("0.001"), min_quantity=Decimal("0.001")),
    ])
    return registry


@pytest.fixture
def make_position():
    return _make_position


@pytest.fixture
def make_order():
    return _make_order


@pytest.fixture
def make_record():
    return _make_record
