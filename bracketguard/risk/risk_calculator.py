"""
Risk calculator: margin used, liquidation price estimate and ROE.

Pure functions over Decimal. Binary floating point is never used for money,
comparisons or rounding.

The locally computed liquidation price is an approximation: it ignores
tiered maintenance margin and, for cross margin, the rest of the account.
It is only used when the exchange does not report a liquidation price, and
results carry liquidation_price_is_estimate=True.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

from bracketguard.constants import (
    CURRENCY_DECIMALS,
    DEFAULT_MAINTENANCE_MARGIN_RATE,
    MIN_PRICE_DECIMALS,
    PERCENT_DECIMALS,
    QUANTITY_DECIMALS,
)
from bracketguard.domain.models import Position, RiskMetrics

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """
    Parse an exchange field into Decimal.

    None, empty strings and non-numeric values yield default. Floats are
    routed through str() so their shortest repr is used.
    """
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return default
    return parsed if parsed.is_finite() else default


def margin_used(position: Position, total_margin_balance: Decimal) -> Decimal:
    """
    Margin committed to a position.

    Isolated: the isolated wallet. Cross: the exchange's initial margin,
    falling back to |qty| * entry / leverage when that is missing or zero.
    The account balance does not change the figure, even when it is
    zero or negative.
    """
    if position.is_isolated:
        return position.isolated_wallet
    if position.leverage == 0:
        return ZERO
    if position.initial_margin != 0:
        return position.initial_margin
    if position.entry_price == 0:
        return ZERO
    return abs(position.quantity) * position.entry_price / position.leverage


def liquidation_price_estimate(position: Position) -> Optional[Decimal]:
    """
    Liquidation price: the exchange figure when non-zero, else an approximation.

    Long:  entry * (1 - 1/leverage + mmr)
    Short: entry * (1 + 1/leverage - mmr)

    Negative results clamp to zero. Returns None when there is nothing to
    estimate (closed leg, or missing entry price / leverage).
    """
    if position.liquidation_price != 0:
        return position.liquidation_price
    if position.quantity == 0 or position.entry_price == 0 or position.leverage == 0:
        return None
    mmr = position.maintenance_margin_rate or DEFAULT_MAINTENANCE_MARGIN_RATE
    inverse_leverage = ONE / position.leverage
    if position.quantity > 0:
        estimate = position.entry_price * (ONE - inverse_leverage + mmr)
    else:
        estimate = position.entry_price * (ONE + inverse_leverage - mmr)
    return max(estimate, ZERO)


def roe(unrealized_pnl: Decimal, margin: Decimal) -> Decimal:
    """Return on equity in percent; 0 when no margin is committed."""
    if margin == 0:
        return ZERO
    return unrealized_pnl / margin * HUNDRED


def compute_risk_metrics(position: Position, total_margin_balance: Decimal) -> RiskMetrics:
    """Unrounded risk figures for one position snapshot."""
    used = margin_used(position, total_margin_balance)
    liquidation = liquidation_price_estimate(position)
    return RiskMetrics(
        margin_used=used,
        liquidation_price=liquidation,
        liquidation_price_is_estimate=liquidation is not None and position.liquidation_price == 0,
        roe=roe(position.unrealized_pnl, used),
    )


# ============ Rounding ============

def quantize(value: Optional[Decimal], decimals: int) -> Optional[Decimal]:
    """Round half-up to a fixed number of decimal places; None passes through."""
    if value is None:
        return None
    return value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)


def price_decimals(entry_price: Decimal, tick_decimals: int = 0) -> int:
    """Price scale: at least 2, the entry price's own places, and the tick's places."""
    exponent = entry_price.as_tuple().exponent
    entry_places = -exponent if isinstance(exponent, int) and exponent < 0 else 0
    return max(MIN_PRICE_DECIMALS, entry_places, tick_decimals)


def round_price(value: Optional[Decimal], decimals: int) -> Optional[Decimal]:
    return quantize(value, decimals)


def round_quantity(value: Optional[Decimal]) -> Optional[Decimal]:
    return quantize(value, QUANTITY_DECIMALS)


def round_currency(value: Optional[Decimal]) -> Optional[Decimal]:
    return quantize(value, CURRENCY_DECIMALS)


def round_percent(value: Optional[Decimal]) -> Optional[Decimal]:
    return quantize(value, PERCENT_DECIMALS)
