"""
Domain protocols (interfaces) for dependency inversion.

The reconciler and the bracket placer depend on ExchangeClient rather than
on a concrete REST client, so tests can substitute an in-memory exchange.
"""
from decimal import Decimal
from typing import Any, Dict, List, Protocol, Union, runtime_checkable

from bracketguard.domain.models import OpenOrder, OrderPlaced, OrderRejected, Position


@runtime_checkable
class ExchangeClient(Protocol):
    """
    Authenticated access to positions, open orders, cancellation and
    placement.

    Failures raise NetworkError, AuthenticationError or (cancel_order only)
    OrderNotFoundError from bracketguard.exceptions.
    """

    async def get_positions(self) -> List[Position]: ...

    async def get_open_orders(self) -> List[OpenOrder]: ...

    async def cancel_order(self, symbol: str, order_id: str) -> Dict[str, Any]: ...

    async def place_batch(self, orders: List[Dict[str, Any]]) -> List[Union[OrderPlaced, OrderRejected]]: ...

    async def get_mark_price(self, symbol: str) -> Decimal: ...
