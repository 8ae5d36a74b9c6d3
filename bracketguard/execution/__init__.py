"""
Execution module.

Contains bracket placement, the bracket tracker and instrument precision.

ARCHITECTURE:
    BracketOrderPlacer (entry + stop-loss + take-profit in one batch)
        │
        ├── InstrumentSpecRegistry (tick size / quantity step per symbol)
        │
        └── BracketTracker (single source of truth for registered brackets)
                │
                └── pruned by reconciliation.Reconciler
"""

from bracketguard.execution.bracket_tracker import BracketTracker
from bracketguard.execution.instrument_specs import (
    InstrumentSpec,
    InstrumentSpecRegistry,
    round_price_away_from,
    round_quantity_down,
)
from bracketguard.execution.bracket_placer import (
    BracketOrderPlacer,
    generate_order_id_root,
    safe_trigger_prices,
)

__all__ = [
    "BracketTracker",
    "InstrumentSpec",
    "InstrumentSpecRegistry",
    "round_price_away_from",
    "round_quantity_down",
    "BracketOrderPlacer",
    "generate_order_id_root",
    "safe_trigger_prices",
]
