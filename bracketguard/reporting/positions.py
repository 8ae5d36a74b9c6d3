"""
Position reporting: per-position risk figures for display and JSON output.

Built entirely from RiskCalculator; nothing here talks to the exchange.
Liquidation prices computed locally are flagged liquidation_price_is_estimate.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from bracketguard.constants import LEVERAGE_DECIMALS
from bracketguard.domain.models import Position
from bracketguard.execution.instrument_specs import InstrumentSpecRegistry
from bracketguard.monitoring.logger import get_logger
from bracketguard.reconciliation.position_keys import resolve
from bracketguard.risk.risk_calculator import (
    compute_risk_metrics,
    price_decimals,
    quantize,
    round_currency,
    round_percent,
    round_price,
    round_quantity,
    to_decimal,
)

logger = get_logger(__name__)

NEUTRAL = "NEUTRAL"


@dataclass
class PositionReport:
    """One reported position leg, rounded for display."""
    symbol: str
    position_side: str
    direction: str  # LONG / SHORT, or NEUTRAL for a closed one-way leg
    margin_type: str
    leverage: Decimal
    quantity: Decimal  # Absolute
    entry_price: Decimal
    mark_price: Decimal
    liquidation_price: Optional[Decimal]
    liquidation_price_is_estimate: bool
    margin_used: Decimal
    unrealized_pnl: Decimal
    roe: Decimal

    def to_dict(self) -> Dict[str, Any]:
        def text(value: Optional[Decimal]) -> Optional[str]:
            return None if value is None else f"{value:f}"

        return {
            "symbol": self.symbol,
            "position_side": self.position_side,
            "direction": self.direction,
            "margin_type": self.margin_type,
            "leverage": text(self.leverage),
            "quantity": text(self.quantity),
            "entry_price": text(self.entry_price),
            "mark_price": text(self.mark_price),
            "liquidation_price": text(self.liquidation_price),
            "liquidation_price_is_estimate": self.liquidation_price_is_estimate,
            "margin_used": text(self.margin_used),
            "unrealized_pnl": text(self.unrealized_pnl),
            "roe": text(self.roe),
        }


def apply_account_margins(positions: List[Position], account_positions: Iterable[Dict[str, Any]]) -> List[Position]:
    """
    Copy initialMargin from /fapi/v2/account position entries onto positions
    that lack it, matching on (symbol, positionSide). Mutates and returns positions.
    """
    margins: Dict[tuple, Decimal] = {}
    for raw in account_positions or []:
        symbol = str(raw.get("symbol") or "").upper()
        side = str(raw.get("positionSide") or "BOTH").upper()
        margin = to_decimal(raw.get("initialMargin"))
        if symbol and margin != 0:
            margins[(symbol, side)] = margin
    for position in positions:
        if position.initial_margin == 0:
            position.initial_margin = margins.get((position.symbol, position.position_side), position.initial_margin)
    return positions


def position_direction(position: Position, is_hedge_mode: bool) -> str:
    key = resolve(position.symbol, position.position_side, position.quantity, is_hedge_mode)
    return key.direction.value if key is not None else NEUTRAL


def build_position_report(
    positions: Iterable[Position],
    total_margin_balance: Decimal,
    *,
    symbol: Optional[str] = None,
    show_zero: bool = False,
    specs: Optional[InstrumentSpecRegistry] = None,
    is_hedge_mode: bool = False,
) -> List[PositionReport]:
    """
    Build report rows for positions.

    Args:
        positions: Position snapshots from the exchange
        total_margin_balance: Account totalMarginBalance (gates cross margin)
        symbol: Only report this symbol
        show_zero: Include zero-quantity legs
        specs: Tick sizes used to scale price fields; entry price scale alone if None
        is_hedge_mode: Use the exchange LONG/SHORT tag for direction
    """
    symbol_filter = symbol.upper() if symbol else None
    total_margin_balance = to_decimal(total_margin_balance)
    reports: List[PositionReport] = []
    for position in positions:
        if symbol_filter and position.symbol != symbol_filter:
            continue
        if position.is_closed and not show_zero:
            continue

        metrics = compute_risk_metrics(position, total_margin_balance)
        tick_places = specs.get(position.symbol).price_decimals if specs is not None else 0
        places = price_decimals(position.entry_price, tick_places)

        reports.append(
            PositionReport(
                symbol=position.symbol,
                position_side=position.position_side,
                direction=position_direction(position, is_hedge_mode),
                margin_type=position.margin_mode.value,
                leverage=quantize(position.leverage, LEVERAGE_DECIMALS),
                quantity=round_quantity(abs(position.quantity)),
                entry_price=round_price(position.entry_price, places),
                mark_price=round_price(position.mark_price, places),
                liquidation_price=round_price(metrics.liquidation_price, places),
                liquidation_price_is_estimate=metrics.liquidation_price_is_estimate,
                margin_used=round_currency(metrics.margin_used),
                unrealized_pnl=round_currency(position.unrealized_pnl),
                roe=round_percent(metrics.roe),
            )
        )

    logger.debug("Position report built", rows=len(reports), symbol=symbol_filter, show_zero=show_zero)
    return reports
