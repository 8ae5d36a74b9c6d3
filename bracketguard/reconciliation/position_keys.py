"""
Position key resolution.

Derives the (symbol, direction) identity shared by a position and the
conditional orders protecting it. In hedge mode the exchange tags each leg
LONG/SHORT; in one-way mode (and for the BOTH sentinel) direction comes from
the sign of the quantity.
"""
from decimal import Decimal
from typing import Iterable, Optional, Set

from bracketguard.domain.models import Direction, OpenOrder, OrderSide, Position, PositionKey

HEDGE_SIDES = {"LONG": Direction.LONG, "SHORT": Direction.SHORT}
BOTH_SIDE = "BOTH"


def resolve(
    symbol: str,
    raw_position_side: Optional[str],
    signed_quantity: Decimal,
    is_hedge_mode: bool,
) -> Optional[PositionKey]:
    """
    Resolve the key for a position leg.

    Returns None for a closed leg whose direction cannot be inferred; callers
    must exclude None from the active-position set.
    """
    symbol = (symbol or "").upper()
    if not symbol:
        return None
    side = (raw_position_side or BOTH_SIDE).upper()
    if is_hedge_mode and side in HEDGE_SIDES:
        return PositionKey(symbol, HEDGE_SIDES[side])
    if signed_quantity > 0:
        return PositionKey(symbol, Direction.LONG)
    if signed_quantity < 0:
        return PositionKey(symbol, Direction.SHORT)
    return None


def resolve_position(position: Position, is_hedge_mode: bool) -> Optional[PositionKey]:
    return resolve(position.symbol, position.position_side, position.quantity, is_hedge_mode)


def resolve_order(order: OpenOrder) -> PositionKey:
    """A SELL closing order protects a LONG; a BUY closing order protects a SHORT."""
    side = OrderSide(order.side)
    direction = Direction.LONG if side is OrderSide.SELL else Direction.SHORT
    return PositionKey(order.symbol.upper(), direction)


def active_position_keys(positions: Iterable[Position], is_hedge_mode: bool) -> Set[PositionKey]:
    """
    Keys of every open position. Zero-quantity legs never appear, even in
    hedge mode where the exchange still reports an explicit side for them.
    """
    active: Set[PositionKey] = set()
    for position in positions:
        if position.is_closed:
            continue
        key = resolve_position(position, is_hedge_mode)
        if key is not None:
            active.add(key)
    return active
