"""
Bracket order placement: market entry + stop-loss + take-profit in one batch.

Trigger prices are checked against the mark price (the price the exchange
evaluates conditional triggers on) and moved so neither protective order
can fire the instant it rests:

    long  (close side SELL): stop-loss  < mark < take-profit
    short (close side BUY):  take-profit < mark < stop-loss

A requested trigger on the wrong side of the mark price is replaced by
mark ± one tick; final prices are rounded to tick away from the mark.

A BracketRecord is registered only if both protective legs were accepted.
Legs from a partially failed batch stay unregistered; if they end up
orphaned the reconciler still finds them from live order state.
"""
import secrets
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from bracketguard.domain.models import (
    BracketLeg,
    BracketPlacement,
    BracketRecord,
    Direction,
    OrderPlaced,
    OrderRejected,
    OrderSide,
    PositionKey,
)
from bracketguard.domain.protocols import ExchangeClient
from bracketguard.exceptions import DataError, InvariantError, ValidationError
from bracketguard.execution.bracket_tracker import BracketTracker
from bracketguard.execution.instrument_specs import (
    InstrumentSpecRegistry,
    round_price_away_from,
    round_quantity_down,
)
from bracketguard.monitoring.logger import get_logger
from bracketguard.reconciliation.position_keys import resolve
from bracketguard.risk.risk_calculator import to_decimal

logger = get_logger(__name__)

WORKING_TYPE = "MARK_PRICE"


def generate_order_id_root() -> str:
    """Shared client order id prefix for the legs of one batch."""
    return f"bg-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def safe_trigger_prices(
    direction: Direction,
    mark_price: Decimal,
    stop_loss: Decimal,
    take_profit: Decimal,
    tick: Decimal,
) -> Tuple[Decimal, Decimal]:
    """
    Move stop-loss and take-profit to the non-triggering side of mark price
    and round them to tick, away from mark. Returns (stop_loss, take_profit).
    """
    if direction is Direction.LONG:
        if stop_loss >= mark_price:
            logger.warning("TRIGGER_ADJUSTED", leg="stop_loss", direction="LONG", requested=str(stop_loss), mark_price=str(mark_price))
            stop_loss = mark_price - tick
        if take_profit <= mark_price:
            logger.warning("TRIGGER_ADJUSTED", leg="take_profit", direction="LONG", requested=str(take_profit), mark_price=str(mark_price))
            take_profit = mark_price + tick
    else:
        if stop_loss <= mark_price:
            logger.warning("TRIGGER_ADJUSTED", leg="stop_loss", direction="SHORT", requested=str(stop_loss), mark_price=str(mark_price))
            stop_loss = mark_price + tick
        if take_profit >= mark_price:
            logger.warning("TRIGGER_ADJUSTED", leg="take_profit", direction="SHORT", requested=str(take_profit), mark_price=str(mark_price))
            take_profit = mark_price - tick

    return (
        round_price_away_from(stop_loss, mark_price, tick),
        round_price_away_from(take_profit, mark_price, tick),
    )


def check_trigger_sides(direction: Direction, mark_price: Decimal, stop_loss: Decimal, take_profit: Decimal) -> None:
    """Raise InvariantError unless both triggers sit strictly on their non-triggering side of mark."""
    if direction is Direction.LONG:
        safe = stop_loss < mark_price < take_profit
    else:
        safe = take_profit < mark_price < stop_loss
    if not safe:
        raise InvariantError(
            f"Unsafe {direction.value} triggers at mark {mark_price}: stop_loss={stop_loss} take_profit={take_profit}"
        )


class BracketOrderPlacer:
    """
    Builds and submits bracket batches, then records the protective pair.
    """

    def __init__(
        self,
        client: ExchangeClient,
        tracker: BracketTracker,
        specs: InstrumentSpecRegistry,
        *,
        is_hedge_mode: bool = False,
    ):
        self.client = client
        self.tracker = tracker
        self.specs = specs
        self.is_hedge_mode = is_hedge_mode

    def _validate(self, symbol: str, entry_side: Any, quantity: Any, stop_loss: Any, take_profit: Any):
        missing = [
            name for name, value in (
                ("symbol", symbol),
                ("side", entry_side),
                ("quantity", quantity),
                ("stop_loss", stop_loss),
                ("take_profit", take_profit),
            )
            if value is None or value == ""
        ]
        if missing:
            raise ValidationError(f"Missing required parameters: {', '.join(missing)}")
        try:
            side = OrderSide(str(entry_side.value if isinstance(entry_side, OrderSide) else entry_side).upper())
        except ValueError as e:
            raise ValidationError(f"Invalid side: {entry_side!r}") from e
        qty = to_decimal(quantity, Decimal("-1"))
        sl = to_decimal(stop_loss, Decimal("-1"))
        tp = to_decimal(take_profit, Decimal("-1"))
        if qty <= 0:
            raise ValidationError(f"Invalid quantity: {quantity!r}")
        if sl <= 0 or tp <= 0:
            raise ValidationError(f"Invalid stop_loss or take_profit price: {stop_loss!r}, {take_profit!r}")
        return symbol.upper(), side, qty, sl, tp

    def build_batch(
        self,
        symbol: str,
        entry_side: OrderSide,
        quantity: Decimal,
        stop_loss: Decimal,
        take_profit: Decimal,
        order_id_root: str,
    ) -> List[Dict[str, Any]]:
        """Entry MARKET, then STOP_MARKET and TAKE_PROFIT_MARKET with closePosition."""
        spec = self.specs.get(symbol)
        close_side = entry_side.opposite.value
        price_places = spec.price_decimals
        entry: Dict[str, Any] = {
            "symbol": symbol,
            "side": entry_side.value,
            "type": "MARKET",
            "quantity": f"{quantity:f}",
            "newClientOrderId": f"{order_id_root}-{BracketLeg.ENTRY.value}",
        }
        stop: Dict[str, Any] = {
            "symbol": symbol,
            "side": close_side,
            "type": "STOP_MARKET",
            "stopPrice": f"{stop_loss:.{price_places}f}",
            "closePosition": "true",
            "workingType": WORKING_TYPE,
            "newClientOrderId": f"{order_id_root}-{BracketLeg.STOP_LOSS.value}",
        }
        target: Dict[str, Any] = {
            "symbol": symbol,
            "side": close_side,
            "type": "TAKE_PROFIT_MARKET",
            "stopPrice": f"{take_profit:.{price_places}f}",
            "closePosition": "true",
            "workingType": WORKING_TYPE,
            "newClientOrderId": f"{order_id_root}-{BracketLeg.TAKE_PROFIT.value}",
        }
        orders = [entry, stop, target]
        if self.is_hedge_mode:
            position_side = entry_side.entry_direction.value
            for order in orders:
                order["positionSide"] = position_side
        return orders

    async def place(
        self,
        symbol: str,
        entry_side: Any,
        quantity: Any,
        stop_loss_price: Any,
        take_profit_price: Any,
    ) -> BracketPlacement:
        """
        Place one bracket. Raises ValidationError for bad input and
        OperationalError if the mark price or the batch request itself fails;
        per-leg rejections are reported in the returned BracketPlacement.
        InvariantError means adjusted triggers still sit on their triggering
        side; nothing is submitted.
        """
        symbol, side, qty, sl_requested, tp_requested = self._validate(
            symbol, entry_side, quantity, stop_loss_price, take_profit_price
        )
        direction = side.entry_direction
        spec = self.specs.get(symbol)

        mark_price = await self.client.get_mark_price(symbol)
        if mark_price <= 0:
            raise DataError(f"Invalid mark price for {symbol}: {mark_price}")

        stop_loss, take_profit = safe_trigger_prices(direction, mark_price, sl_requested, tp_requested, spec.price_tick)
        if stop_loss <= 0 or take_profit <= 0:
            raise ValidationError(f"No valid trigger price for {symbol} at mark {mark_price}")
        check_trigger_sides(direction, mark_price, stop_loss, take_profit)
        qty = round_quantity_down(qty, spec.quantity_step)
        if qty <= 0 or qty < spec.min_quantity:
            raise ValidationError(f"Quantity {quantity} is below the minimum for {symbol} (step {spec.quantity_step}, min {spec.min_quantity})")

        order_id_root = generate_order_id_root()
        orders = self.build_batch(symbol, side, qty, stop_loss, take_profit, order_id_root)
        logger.info(
            "BRACKET_SUBMIT",
            symbol=symbol,
            side=side.value,
            quantity=str(qty),
            mark_price=str(mark_price),
            stop_loss=str(stop_loss),
            take_profit=str(take_profit),
            order_id_root=order_id_root,
        )

        results = await self.client.place_batch(orders)
        legs = self._assign_legs(results, order_id_root)
        placement = BracketPlacement(
            symbol=symbol,
            entry_side=side,
            stop_loss_price=stop_loss,
            take_profit_price=take_profit,
            mark_price=mark_price,
            entry=legs.get(BracketLeg.ENTRY),
            stop_loss=legs.get(BracketLeg.STOP_LOSS),
            take_profit=legs.get(BracketLeg.TAKE_PROFIT),
        )

        if placement.protected:
            key = self._position_key(symbol, direction, placement.entry)
            record = BracketRecord(
                position_key=key,
                symbol=symbol,
                stop_loss_order_id=placement.stop_loss.order_id,
                take_profit_order_id=placement.take_profit.order_id,
            )
            self.tracker.register(key, record)
            placement.registered_key = key
        else:
            logger.warning(
                "BRACKET_NOT_TRACKED",
                symbol=symbol,
                reason="protective legs not all accepted",
                errors={name: err.to_dict() for name, err in placement.errors.items()},
            )

        if placement.errors:
            logger.warning("BRACKET_PARTIAL_FAILURE", symbol=symbol, failed_legs=sorted(placement.errors))
        else:
            logger.info("BRACKET_PLACED", symbol=symbol, registered_key=str(placement.registered_key))
        return placement

    def _assign_legs(self, results: List[Any], order_id_root: str) -> Dict[BracketLeg, Any]:
        """
        Match batch results to legs by client order id suffix, falling back
        to batch position for results that carry no client order id.
        """
        order = [BracketLeg.ENTRY, BracketLeg.STOP_LOSS, BracketLeg.TAKE_PROFIT]
        legs: Dict[BracketLeg, Any] = {}
        for index, result in enumerate(results):
            leg: Optional[BracketLeg] = None
            client_id = getattr(result, "client_order_id", None) or ""
            if client_id.startswith(order_id_root):
                suffix = client_id.rsplit("-", 1)[-1]
                leg = next((candidate for candidate in order if candidate.value == suffix), None)
            if leg is None and index < len(order):
                leg = order[index]
            if leg is not None and isinstance(result, (OrderPlaced, OrderRejected)):
                legs[leg] = result
        return legs

    def _position_key(self, symbol: str, direction: Direction, entry: Any) -> PositionKey:
        """
        Key the bracket by the entry's reported position side in hedge mode,
        else by the requested direction.
        """
        position_side = getattr(entry, "position_side", None) if isinstance(entry, OrderPlaced) else None
        if self.is_hedge_mode and position_side:
            signed = Decimal("1") if direction is Direction.LONG else Decimal("-1")
            key = resolve(symbol, position_side, signed, True)
            if key is not None:
                return key
        return PositionKey(symbol, direction)
