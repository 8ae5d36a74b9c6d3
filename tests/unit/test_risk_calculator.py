"""
Unit tests for RiskCalculator: margin used, liquidation estimate, ROE, rounding.
"""
from decimal import Decimal

from bracketguard.domain.models import MarginMode
from bracketguard.risk.risk_calculator import (
    compute_risk_metrics,
    liquidation_price_estimate,
    margin_used,
    price_decimals,
    roe,
    round_currency,
    round_percent,
    round_quantity,
    to_decimal,
)

BALANCE = Decimal("10000")


def test_isolated_margin_is_isolated_wallet(make_position):
    position = make_position(margin_mode=MarginMode.ISOLATED, isolated_wallet=Decimal("123.45"))
    assert margin_used(position, BALANCE) == Decimal("123.45")


def test_cross_margin_prefers_exchange_initial_margin(make_position):
    position = make_position(initial_margin=Decimal("600"))
    assert margin_used(position, BALANCE) == Decimal("600")


def test_cross_margin_falls_back_to_notional_over_leverage(make_position):
    position = make_position("BTCUSDT", "-0.5", entry_price="60000", leverage="10")
    assert margin_used(position, BALANCE) == Decimal("3000")


def test_cross_margin_ignores_underwater_account_balance(make_position):
    with_initial = make_position(initial_margin=Decimal("3000"))
    without_initial = make_position("BTCUSDT", "0.5", entry_price="60000", leverage="10")

    assert margin_used(with_initial, Decimal("-10")) == Decimal("3000")
    assert margin_used(without_initial, Decimal("0")) == Decimal("3000")


def test_cross_roe_on_underwater_account(make_position):
    position = make_position(initial_margin=Decimal("3000"), unrealized_pnl=Decimal("-1500"))
    metrics = compute_risk_metrics(position, Decimal("-10"))

    assert metrics.margin_used == Decimal("3000")
    assert metrics.roe == Decimal("-50")


def test_roe_zero_margin_is_zero():
    assert roe(Decimal("100"), Decimal("0")) == Decimal("0")


def test_roe_percent():
    assert roe(Decimal("50"), Decimal("200")) == Decimal("25")
    assert roe(Decimal("-30"), Decimal("120")) == Decimal("-25")


def test_exchange_liquidation_price_is_authoritative(make_position):
    position = make_position(liquidation_price=Decimal("54000.5"))
    metrics = compute_risk_metrics(position, BALANCE)

    assert metrics.liquidation_price == Decimal("54000.5")
    assert metrics.liquidation_price_is_estimate is False


def test_liquidation_estimate_long_and_short(make_position):
    long_position = make_position("BTCUSDT", "1", entry_price="60000", leverage="10")
    short_position = make_position("BTCUSDT", "-1", entry_price="60000", leverage="10")

    assert liquidation_price_estimate(long_position) == Decimal("54240")
    assert liquidation_price_estimate(short_position) == Decimal("65760")
    assert compute_risk_metrics(long_position, BALANCE).liquidation_price_is_estimate is True


def test_liquidation_estimate_clamped_at_zero(make_position):
    position = make_position("BTCUSDT", "1", entry_price="100", leverage="0.5")
    assert liquidation_price_estimate(position) == Decimal("0")


def test_liquidation_estimate_none_for_closed_leg(make_position):
    position = make_position("BTCUSDT", "0")
    metrics = compute_risk_metrics(position, BALANCE)

    assert metrics.liquidation_price is None
    assert metrics.liquidation_price_is_estimate is False


def test_metrics_roe_uses_margin_used(make_position):
    position = make_position(
        "BTCUSDT", "0.5", entry_price="60000", leverage="10", unrealized_pnl=Decimal("300")
    )
    metrics = compute_risk_metrics(position, BALANCE)

    assert metrics.margin_used == Decimal("3000")
    assert metrics.roe == Decimal("10")


def test_rounding_is_half_up():
    assert round_percent(Decimal("12.345")) == Decimal("12.35")
    assert round_currency(Decimal("1.23455")) == Decimal("1.2346")
    assert round_quantity(Decimal("0.123456785")) == Decimal("0.12345679")
    assert round_percent(None) is None


def test_price_scale_follows_entry_and_tick():
    assert price_decimals(Decimal("60000"), 1) == 2
    assert price_decimals(Decimal("0.00012345"), 2) == 8
    assert price_decimals(Decimal("1.5"), 4) == 4


def test_to_decimal_tolerates_bad_input():
    assert to_decimal(None) == Decimal("0")
    assert to_decimal("") == Decimal("0")
    assert to_decimal("abc", Decimal("1")) == Decimal("1")
    assert to_decimal("NaN") == Decimal("0")
    assert to_decimal(0.1) == Decimal("0.1")
