"""
Domain models for bracketguard.

These are the core business objects used throughout the application.
All money and price fields are Decimal; all timestamps are UTC timezone-aware.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from bracketguard.constants import CONDITIONAL_CLOSE_TYPES, DEFAULT_MAINTENANCE_MARGIN_RATE


class Direction(str, Enum):
    """Position direction."""
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def closing_side(self) -> "OrderSide":
        """Order side that reduces a position in this direction."""
        return OrderSide.SELL if self is Direction.LONG else OrderSide.BUY


class OrderSide(str, Enum):
    """Order side."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY

    @property
    def entry_direction(self) -> Direction:
        """Direction of the position opened by an entry order on this side."""
        return Direction.LONG if self is OrderSide.BUY else Direction.SHORT


class MarginMode(str, Enum):
    """Margin mode."""
    ISOLATED = "ISOLATED"
    CROSS = "CROSS"


class BracketLeg(str, Enum):
    """Leg of a bracket batch; value is the client order id suffix."""
    ENTRY = "M"
    STOP_LOSS = "SL"
    TAKE_PROFIT = "TP"


@dataclass(frozen=True)
class PositionKey:
    """
    (symbol, direction) identity linking a position to its protective orders.
    """
    symbol: str
    direction: Direction

    def __str__(self) -> str:
        return f"{self.symbol}_{self.direction.value}"

    @classmethod
    def parse(cls, value: str) -> "PositionKey":
        """Inverse of str(): 'BTCUSDT_LONG' -> PositionKey('BTCUSDT', LONG)."""
        symbol, _, direction = value.rpartition("_")
        if not symbol:
            raise ValueError(f"Invalid position key: {value!r}")
        return cls(symbol=symbol.upper(), direction=Direction(direction.upper()))


@dataclass
class Position:
    """
    Futures position snapshot as reported by the exchange.

    Borrowed for a single reconciliation pass or report; never retained.
    """
    symbol: str
    quantity: Decimal  # Signed: > 0 long, < 0 short (one-way mode)
    entry_price: Decimal
    mark_price: Decimal
    leverage: Decimal
    margin_mode: MarginMode = MarginMode.CROSS
    isolated_wallet: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    position_side: str = "BOTH"  # Raw exchange tag: LONG / SHORT / BOTH
    initial_margin: Decimal = Decimal("0")
    liquidation_price: Decimal = Decimal("0")
    maintenance_margin_rate: Decimal = DEFAULT_MAINTENANCE_MARGIN_RATE

    @property
    def is_closed(self) -> bool:
        return self.quantity == 0

    @property
    def is_isolated(self) -> bool:
        return self.margin_mode is MarginMode.ISOLATED


@dataclass
class OpenOrder:
    """
    Resting order as reported by the exchange.
    """
    order_id: str
    symbol: str
    side: OrderSide
    type: str  # Exchange order type, e.g. STOP_MARKET
    close_position: bool = False
    stop_price: Decimal = Decimal("0")
    position_side: str = "BOTH"
    client_order_id: Optional[str] = None
    created_at: Optional[datetime] = None  # Exchange creation time, when reported

    @property
    def is_conditional_close(self) -> bool:
        """True if this order is a stop/take-profit meant to close a position."""
        return self.type.upper() in CONDITIONAL_CLOSE_TYPES


@dataclass
class BracketRecord:
    """
    Protective order pair registered for a position key.

    Owned exclusively by BracketTracker.
    """
    position_key: PositionKey
    symbol: str
    stop_loss_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def order_ids(self) -> List[str]:
        return [oid for oid in (self.stop_loss_order_id, self.take_profit_order_id) if oid]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_key": str(self.position_key),
            "symbol": self.symbol,
            "stop_loss_order_id": self.stop_loss_order_id,
            "take_profit_order_id": self.take_profit_order_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class RiskMetrics:
    """
    Derived risk figures for one position snapshot.

    liquidation_price_is_estimate is True whenever the price was approximated
    locally rather than reported by the exchange.
    """
    margin_used: Decimal
    liquidation_price: Optional[Decimal]
    liquidation_price_is_estimate: bool
    roe: Decimal


@dataclass
class OrderPlaced:
    """Successful leg of a batch placement."""
    order_id: str
    client_order_id: Optional[str] = None
    symbol: Optional[str] = None
    side: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    position_side: Optional[str] = None
    stop_price: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "client_order_id": self.client_order_id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "position_side": self.position_side,
            "stop_price": str(self.stop_price) if self.stop_price is not None else None,
        }


@dataclass
class OrderRejected:
    """Failed leg of a batch placement, with the exchange error code."""
    code: Any
    message: str
    client_order_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "client_order_id": self.client_order_id}


@dataclass
class BracketPlacement:
    """
    Outcome of placing one bracket batch.

    Each leg is either OrderPlaced, OrderRejected, or None when the exchange
    returned no result for it.
    """
    symbol: str
    entry_side: OrderSide
    stop_loss_price: Decimal
    take_profit_price: Decimal
    mark_price: Decimal
    entry: Optional[Any] = None
    stop_loss: Optional[Any] = None
    take_profit: Optional[Any] = None
    registered_key: Optional[PositionKey] = None

    @property
    def errors(self) -> Dict[str, OrderRejected]:
        """Rejected legs keyed by leg name."""
        legs = {"entry": self.entry, "stop_loss": self.stop_loss, "take_profit": self.take_profit}
        return {name: leg for name, leg in legs.items() if isinstance(leg, OrderRejected)}

    @property
    def protected(self) -> bool:
        """True if both protective legs were accepted."""
        return isinstance(self.stop_loss, OrderPlaced) and isinstance(self.take_profit, OrderPlaced)

    @property
    def ok(self) -> bool:
        return isinstance(self.entry, OrderPlaced) and self.protected

    def to_dict(self) -> Dict[str, Any]:
        def leg(value: Any) -> Optional[Dict[str, Any]]:
            return value.to_dict() if value is not None else None

        return {
            "symbol": self.symbol,
            "entry_side": self.entry_side.value,
            "mark_price": str(self.mark_price),
            "stop_loss_price": str(self.stop_loss_price),
            "take_profit_price": str(self.take_profit_price),
            "entry": leg(self.entry),
            "stop_loss": leg(self.stop_loss),
            "take_profit": leg(self.take_profit),
            "errors": {name: err.to_dict() for name, err in self.errors.items()},
            "registered_key": str(self.registered_key) if self.registered_key else None,
        }
