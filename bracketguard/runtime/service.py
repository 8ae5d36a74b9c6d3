"""
Service wiring: builds the exchange client, instrument specs, tracker,
placer and reconciler from Config and owns their lifecycle.
"""
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from bracketguard.config.config import Config
from bracketguard.data.binance_client import BinanceFuturesClient
from bracketguard.domain.models import BracketPlacement
from bracketguard.exceptions import OperationalError
from bracketguard.execution.bracket_placer import BracketOrderPlacer
from bracketguard.execution.bracket_tracker import BracketTracker
from bracketguard.execution.instrument_specs import InstrumentSpecRegistry
from bracketguard.monitoring.logger import get_logger
from bracketguard.reconciliation.reconciler import Reconciler, ReconcileSummary
from bracketguard.reporting.positions import PositionReport, apply_account_margins, build_position_report
from bracketguard.risk.risk_calculator import to_decimal

logger = get_logger(__name__)


class BracketGuardService:
    """
    One process worth of bracketguard: placement on demand plus the
    background reconciler.
    """

    def __init__(self, config: Config, client: Optional[Any] = None):
        """
        Args:
            config: Loaded configuration
            client: Exchange client; a BinanceFuturesClient is built from config if None
        """
        self.config = config
        if client is None:
            api_key, api_secret = config.credentials()
            client = BinanceFuturesClient(
                api_key,
                api_secret,
                use_testnet=config.exchange.use_testnet,
                base_url=config.exchange.effective_base_url,
                recv_window_ms=config.exchange.recv_window_ms,
                request_timeout_seconds=config.exchange.request_timeout_seconds,
                batch_timeout_seconds=config.exchange.batch_timeout_seconds,
                maintenance_margin_rate=config.execution.maintenance_margin_rate,
            )
        self.client = client

        get_instruments = getattr(client, "get_instruments", None)
        self.specs = InstrumentSpecRegistry(
            get_instruments,
            default_price_tick=config.execution.default_price_tick,
            default_quantity_step=config.execution.default_quantity_step,
            cache_ttl_seconds=config.execution.instrument_cache_ttl_seconds,
            strict=config.execution.strict_instrument_specs,
        )
        self.tracker = BracketTracker()
        self.is_hedge_mode = bool(config.exchange.hedge_mode)
        self.placer = BracketOrderPlacer(self.client, self.tracker, self.specs, is_hedge_mode=self.is_hedge_mode)

        recon = config.reconciliation
        self.reconciler = Reconciler(
            self.client,
            self.tracker,
            is_hedge_mode=self.is_hedge_mode,
            interval_seconds=recon.interval_seconds,
            fetch_timeout_seconds=recon.fetch_timeout_seconds,
            cancel_timeout_seconds=recon.cancel_timeout_seconds,
            order_grace_seconds=recon.order_grace_seconds,
            run_on_startup=recon.run_on_startup,
        )

        self.started_at: Optional[datetime] = None
        self._start_monotonic: Optional[float] = None
        self._prepared = False

    async def prepare(self) -> None:
        """
        Resolve hedge mode and load instrument metadata. Idempotent.

        Instrument load failures are logged and fall back to default precision;
        hedge mode failures propagate, since keying positions wrong would
        cancel live protection.
        """
        if self._prepared:
            return
        if self.config.exchange.hedge_mode is None and hasattr(self.client, "get_hedge_mode"):
            self.set_hedge_mode(await self.client.get_hedge_mode())
        try:
            await self.specs.refresh(force=True)
        except OperationalError as e:
            logger.warning("INSTRUMENT_SPECS_UNAVAILABLE", error=str(e), error_type=type(e).__name__)
        self._prepared = True
        logger.info("SERVICE_PREPARED", hedge_mode=self.is_hedge_mode, instruments=len(self.specs))

    def set_hedge_mode(self, is_hedge_mode: bool) -> None:
        self.is_hedge_mode = bool(is_hedge_mode)
        self.placer.is_hedge_mode = self.is_hedge_mode
        self.reconciler.is_hedge_mode = self.is_hedge_mode

    async def start(self) -> None:
        """Prepare, then start the reconciler timer if enabled."""
        await self.prepare()
        self.started_at = datetime.now(timezone.utc)
        self._start_monotonic = time.monotonic()
        if self.config.reconciliation.reconcile_enabled:
            self.reconciler.start()
        else:
            logger.warning("RECONCILER_DISABLED")
        logger.info("SERVICE_STARTED", environment=self.config.environment, testnet=self.config.exchange.use_testnet)

    async def stop(self) -> None:
        """Stop the reconciler and close the exchange client."""
        await self.reconciler.stop()
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()
        logger.info("SERVICE_STOPPED", tracked_brackets=len(self.tracker))

    # ============ Operations ============

    async def place_bracket(
        self,
        symbol: str,
        side: str,
        quantity: Any,
        stop_loss_price: Any,
        take_profit_price: Any,
    ) -> BracketPlacement:
        await self.prepare()
        return await self.placer.place(symbol, side, quantity, stop_loss_price, take_profit_price)

    async def reconcile_once(self) -> ReconcileSummary:
        await self.prepare()
        return await self.reconciler.run_once()

    async def position_report(self, symbol: Optional[str] = None, show_zero: bool = False) -> List[PositionReport]:
        """Positions with risk figures, using the account's total margin balance."""
        await self.prepare()
        account = await self.client.get_account()
        positions = await self.client.get_positions()
        apply_account_margins(positions, account.get("positions") or [])
        return build_position_report(
            positions,
            to_decimal(account.get("totalMarginBalance"), Decimal("0")),
            symbol=symbol,
            show_zero=show_zero,
            specs=self.specs,
            is_hedge_mode=self.is_hedge_mode,
        )

    def status(self) -> Dict[str, Any]:
        """Snapshot for the /status endpoint."""
        last = self.reconciler.last_summary
        uptime = time.monotonic() - self._start_monotonic if self._start_monotonic is not None else 0.0
        return {
            "environment": self.config.environment,
            "testnet": self.config.exchange.use_testnet,
            "hedge_mode": self.is_hedge_mode,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_seconds": int(uptime),
            "reconciler": {
                "enabled": self.config.reconciliation.reconcile_enabled,
                "interval_seconds": self.reconciler.interval_seconds,
                "running": self.reconciler.running,
                "pass_count": self.reconciler.pass_count,
                "skipped_count": self.reconciler.skipped_count,
                "last_summary": last.to_dict() if last else None,
            },
            "tracked_brackets": [record.to_dict() for _, record in self.tracker.snapshot_all()],
        }
