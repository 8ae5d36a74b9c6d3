"""
Unit tests for position reporting.
"""
from decimal import Decimal

from bracketguard.domain.models import MarginMode
from bracketguard.reporting.positions import apply_account_margins, build_position_report

BALANCE = Decimal("10000")


def test_report_rounds_and_flags_estimates(make_position, specs):
    position = make_position(
        "BTCUSDT",
        "-0.123456789",
        entry_price="60000",
        mark_price="59000.05",
        leverage="10",
        unrealized_pnl=Decimal("123.456789"),
    )

    [report] = build_position_report([position], BALANCE, specs=specs)

    assert report.direction == "SHORT"
    assert report.margin_type == "CROSS"
    assert report.quantity == Decimal("0.12345679")
    assert report.mark_price == Decimal("59000.05")
    assert report.leverage == Decimal("10.0")
    assert report.unrealized_pnl == Decimal("123.4568")
    assert report.liquidation_price == Decimal("65760.00")
    assert report.liquidation_price_is_estimate is True
    assert report.margin_used == Decimal("740.7407")
    assert report.roe == Decimal("16.67")


def test_zero_positions_hidden_unless_requested(make_position):
    positions = [make_position("BTCUSDT", "0"), make_position("ETHUSDT", "1", entry_price="3000")]

    assert [r.symbol for r in build_position_report(positions, BALANCE)] == ["ETHUSDT"]

    reports = build_position_report(positions, BALANCE, show_zero=True)
    closed = [r for r in reports if r.symbol == "BTCUSDT"][0]
    assert closed.direction == "NEUTRAL"
    assert closed.liquidation_price is None
    assert closed.roe == Decimal("0.00")


def test_symbol_filter_and_hedge_direction(make_position):
    positions = [
        make_position("BTCUSDT", "1", position_side="LONG"),
        make_position("ETHUSDT", "1", entry_price="3000"),
    ]

    [report] = build_position_report(positions, BALANCE, symbol="btcusdt", is_hedge_mode=True)

    assert report.symbol == "BTCUSDT"
    assert report.direction == "LONG"


def test_isolated_position_uses_wallet_and_exchange_liquidation(make_position):
    position = make_position(
        margin_mode=MarginMode.ISOLATED,
        isolated_wallet=Decimal("500"),
        liquidation_price=Decimal("55123.4"),
        unrealized_pnl=Decimal("-50"),
    )

    [report] = build_position_report([position], BALANCE)
    data = report.to_dict()

    assert data["margin_used"] == "500.0000"
    assert data["roe"] == "-10.00"
    assert data["liquidation_price"] == "55123.40"
    assert data["liquidation_price_is_estimate"] is False


def test_account_margins_fill_missing_initial_margin(make_position):
    positions = [make_position("BTCUSDT", "0.5"), make_position("ETHUSDT", "1", initial_margin=Decimal("42"))]
    account_positions = [
        {"symbol": "BTCUSDT", "positionSide": "BOTH", "initialMargin": "3025.5"},
        {"symbol": "ETHUSDT", "positionSide": "BOTH", "initialMargin": "99"},
    ]

    apply_account_margins(positions, account_positions)

    assert positions[0].initial_margin == Decimal("3025.5")
    assert positions[1].initial_margin == Decimal("42")
