"""
Instrument spec registry: single source of truth for per-symbol precision.

Loads tick size and quantity step once from the exchange's instrument
metadata (ccxt markets or raw exchangeInfo symbols) and serves them to the
bracket placer and position reporting. Symbols missing from the table fall
back to configured defaults, logged once per symbol.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_DOWN, ROUND_FLOOR
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from bracketguard.constants import DEFAULT_PRICE_TICK, DEFAULT_QUANTITY_STEP
from bracketguard.exceptions import InstrumentNotFoundError
from bracketguard.monitoring.logger import get_logger

logger = get_logger(__name__)

CACHE_TTL_SECONDS = 12 * 3600  # 12 hours


@dataclass
class InstrumentSpec:
    """Precision metadata for one futures contract."""

    symbol: str  # Exchange id, e.g. BTCUSDT
    price_tick: Decimal = DEFAULT_PRICE_TICK
    quantity_step: Decimal = DEFAULT_QUANTITY_STEP
    min_quantity: Decimal = Decimal("0")
    source: str = "default"  # "filters" | "precision" | "default"
    last_updated_ts: float = 0

    @property
    def price_decimals(self) -> int:
        return decimals_of(self.price_tick)

    @property
    def quantity_decimals(self) -> int:
        return decimals_of(self.quantity_step)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price_tick": str(self.price_tick),
            "quantity_step": str(self.quantity_step),
            "min_quantity": str(self.min_quantity),
            "source": self.source,
            "last_updated_ts": self.last_updated_ts,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "InstrumentSpec":
        return cls(
            symbol=str(d.get("symbol", "")).upper(),
            price_tick=Decimal(str(d.get("price_tick", DEFAULT_PRICE_TICK))),
            quantity_step=Decimal(str(d.get("quantity_step", DEFAULT_QUANTITY_STEP))),
            min_quantity=Decimal(str(d.get("min_quantity", 0))),
            source=str(d.get("source", "default")),
            last_updated_ts=float(d.get("last_updated_ts", 0)),
        )


def decimals_of(step: Decimal) -> int:
    """Number of decimal places in a step: 0.01 -> 2, 1 -> 0, 10 -> 0."""
    exponent = step.normalize().as_tuple().exponent
    return max(0, -exponent) if isinstance(exponent, int) else 0


def round_to_step(value: Decimal, step: Decimal, rounding: str) -> Decimal:
    """Round value to a multiple of step using the given decimal rounding mode."""
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    units = (value / step).quantize(Decimal("1"), rounding=rounding)
    return (units * step).quantize(Decimal(1).scaleb(-decimals_of(step)))


def round_price_away_from(price: Decimal, reference: Decimal, tick: Decimal) -> Decimal:
    """
    Round a trigger price to tick, away from the reference (mark) price.

    Prices below the reference are floored, prices above are ceiled, so
    rounding can only move a trigger further from where it would fire.
    """
    if price < reference:
        return round_to_step(price, tick, ROUND_FLOOR)
    return round_to_step(price, tick, ROUND_CEILING)


def round_quantity_down(quantity: Decimal, step: Decimal) -> Decimal:
    """Round quantity toward zero to the contract's quantity step."""
    return round_to_step(quantity, step, ROUND_DOWN)


def _step_from_precision(precision: Any) -> Optional[Decimal]:
    """
    Convert a ccxt precision value to a step.
    - Value < 1 -> already a step (TICK_SIZE precision mode)
    - Whole number -> decimal places: step = 10**(-n)
    """
    if precision is None:
        return None
    try:
        prec = Decimal(str(precision))
    except (ValueError, ArithmeticError):
        return None
    if prec <= 0:
        return None
    if prec < 1:
        return prec
    if prec == prec.to_integral_value():
        return Decimal("10") ** (-int(prec))
    return None


def _filter_value(filters: Iterable[Dict[str, Any]], filter_type: str, field_name: str) -> Optional[Decimal]:
    for f in filters or []:
        if f.get("filterType") == filter_type and f.get(field_name) is not None:
            try:
                value = Decimal(str(f[field_name]))
            except (ValueError, ArithmeticError):
                return None
            return value if value > 0 else None
    return None


def parse_instrument(raw: Dict[str, Any]) -> Optional[InstrumentSpec]:
    """
    Parse one ccxt market (or raw Binance exchangeInfo symbol) into an InstrumentSpec.

    Exchange filters (PRICE_FILTER.tickSize, LOT_SIZE.stepSize) win over
    ccxt precision values.
    """
    info = raw.get("info") if isinstance(raw.get("info"), dict) else raw
    symbol = raw.get("id") or info.get("symbol") or raw.get("symbol")
    if not symbol:
        return None
    symbol = str(symbol).replace("/", "").split(":")[0].upper()

    filters = info.get("filters") or []
    price_tick = _filter_value(filters, "PRICE_FILTER", "tickSize")
    quantity_step = _filter_value(filters, "LOT_SIZE", "stepSize")
    min_quantity = _filter_value(filters, "LOT_SIZE", "minQty")
    source = "filters"

    if price_tick is None or quantity_step is None:
        precision = raw.get("precision") if isinstance(raw.get("precision"), dict) else {}
        price_tick = price_tick or _step_from_precision(precision.get("price"))
        quantity_step = quantity_step or _step_from_precision(precision.get("amount"))
        source = "precision"
    if min_quantity is None:
        limits = raw.get("limits") if isinstance(raw.get("limits"), dict) else {}
        amount_limits = limits.get("amount") if isinstance(limits.get("amount"), dict) else {}
        if amount_limits.get("min") is not None:
            min_quantity = Decimal(str(amount_limits["min"]))

    if price_tick is None or quantity_step is None:
        logger.warning(
            "SPEC_PRECISION_MISSING",
            symbol=symbol,
            price_tick=str(price_tick),
            quantity_step=str(quantity_step),
        )
        return None

    return InstrumentSpec(
        symbol=symbol,
        price_tick=price_tick,
        quantity_step=quantity_step,
        min_quantity=min_quantity or Decimal("0"),
        source=source,
        last_updated_ts=time.time(),
    )


class InstrumentSpecRegistry:
    """
    Symbol -> InstrumentSpec table, refreshed from an injected loader.
    """

    def __init__(
        self,
        get_instruments_fn: Optional[Callable[[], Awaitable[Iterable[Dict[str, Any]]]]] = None,
        *,
        default_price_tick: Decimal = DEFAULT_PRICE_TICK,
        default_quantity_step: Decimal = DEFAULT_QUANTITY_STEP,
        cache_ttl_seconds: int = CACHE_TTL_SECONDS,
        strict: bool = False,
    ):
        self._get_instruments_fn = get_instruments_fn
        self._default_price_tick = default_price_tick
        self._default_quantity_step = default_quantity_step
        self._cache_ttl = cache_ttl_seconds
        self._strict = strict
        self._by_symbol: Dict[str, InstrumentSpec] = {}
        self._loaded_at: float = 0
        self._logged_fallback: Dict[str, bool] = {}

    def _is_stale(self) -> bool:
        if not self._by_symbol or self._loaded_at == 0:
            return True
        return (time.time() - self._loaded_at) > self._cache_ttl

    def load(self, specs: Iterable[InstrumentSpec]) -> None:
        """Replace the table with the given specs."""
        self._by_symbol = {s.symbol.upper(): s for s in specs}
        self._loaded_at = time.time()

    async def refresh(self, force: bool = False) -> int:
        """Reload from the exchange if stale (or forced). Returns the number of specs."""
        if not force and not self._is_stale():
            return len(self._by_symbol)
        if self._get_instruments_fn is None:
            return len(self._by_symbol)
        raw_instruments = await self._get_instruments_fn()
        specs: List[InstrumentSpec] = []
        for raw in raw_instruments:
            spec = parse_instrument(raw)
            if spec is not None:
                specs.append(spec)
        self.load(specs)
        logger.info("INSTRUMENT_SPECS_LOADED", count=len(specs))
        return len(specs)

    def get(self, symbol: str) -> InstrumentSpec:
        """
        Spec for symbol. Unknown symbols get the configured defaults (or raise
        InstrumentNotFoundError in strict mode).
        """
        key = (symbol or "").upper()
        spec = self._by_symbol.get(key)
        if spec is not None:
            return spec
        if self._strict:
            raise InstrumentNotFoundError(f"No instrument spec for {symbol}")
        if not self._logged_fallback.get(key):
            self._logged_fallback[key] = True
            logger.warning(
                "SPEC_FALLBACK_DEFAULTS",
                symbol=key,
                price_tick=str(self._default_price_tick),
                quantity_step=str(self._default_quantity_step),
            )
        return InstrumentSpec(
            symbol=key,
            price_tick=self._default_price_tick,
            quantity_step=self._default_quantity_step,
        )

    def __contains__(self, symbol: object) -> bool:
        return isinstance(symbol, str) and symbol.upper() in self._by_symbol

    def __len__(self) -> int:
        return len(self._by_symbol)
