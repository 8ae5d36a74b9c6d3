"""
Unit tests for position key resolution (hedge vs one-way mode).
"""
from decimal import Decimal

import pytest

from bracketguard.domain.models import Direction, PositionKey
from bracketguard.reconciliation.position_keys import (
    active_position_keys,
    resolve,
    resolve_order,
)


@pytest.mark.parametrize(
    "side, quantity, hedge, expected",
    [
        ("LONG", "1", True, Direction.LONG),
        ("SHORT", "-1", True, Direction.SHORT),
        ("BOTH", "-2", True, Direction.SHORT),
        ("BOTH", "3", False, Direction.LONG),
        ("LONG", "-3", False, Direction.SHORT),  # tag ignored in one-way mode
        (None, "0.1", False, Direction.LONG),
    ],
)
def test_resolve_direction(side, quantity, hedge, expected):
    key = resolve("btcusdt", side, Decimal(quantity), hedge)
    assert key == PositionKey("BTCUSDT", expected)


def test_resolve_closed_one_way_leg_is_none():
    assert resolve("BTCUSDT", "BOTH", Decimal("0"), False) is None
    assert resolve("BTCUSDT", "BOTH", Decimal("0"), True) is None


def test_closing_order_implies_opposite_direction(make_order):
    assert resolve_order(make_order("1", side="SELL")) == PositionKey("BTCUSDT", Direction.LONG)
    assert resolve_order(make_order("2", side="BUY")) == PositionKey("BTCUSDT", Direction.SHORT)


def test_zero_quantity_never_active_even_with_hedge_tag(make_position):
    positions = [
        make_position("BTCUSDT", "0", position_side="LONG"),
        make_position("BTCUSDT", "0", position_side="SHORT"),
        make_position("ETHUSDT", "0"),
        make_position("SOLUSDT", "-4", position_side="SHORT"),
    ]

    assert active_position_keys(positions, is_hedge_mode=True) == {PositionKey("SOLUSDT", Direction.SHORT)}
    assert active_position_keys(positions, is_hedge_mode=False) == {PositionKey("SOLUSDT", Direction.SHORT)}


def test_position_key_string_round_trip():
    key = PositionKey("BTCUSDT", Direction.LONG)
    assert str(key) == "BTCUSDT_LONG"
    assert PositionKey.parse("BTCUSDT_LONG") == key
    with pytest.raises(ValueError):
        PositionKey.parse("LONG")
