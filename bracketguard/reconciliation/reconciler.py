"""
Reconciliation engine for protective orders.

Each pass compares live exchange state against what should be protected:
- Active set: keys of every position with non-zero quantity.
- Orphan: a conditional close order (stop / take-profit) whose implied
  position key is not in the active set. Orphans are cancelled whether or
  not this process placed them.
- Tracker records whose key is not active are pruned after cancellation.

Orphan status is re-derived from live order state on every pass, so a
failed cancel is retried on the next tick and a restart loses nothing.

Passes are single-flight: a tick that finds a pass in flight is skipped and
makes no exchange calls.
"""
import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

import structlog

from bracketguard.constants import DEFAULT_API_TIMEOUT, ORDER_GRACE_SECONDS, RECONCILE_INTERVAL_SECONDS
from bracketguard.domain.models import OpenOrder, PositionKey
from bracketguard.domain.protocols import ExchangeClient
from bracketguard.exceptions import (
    AuthenticationError,
    DataError,
    NetworkError,
    OperationalError,
    OrderNotFoundError,
)
from bracketguard.execution.bracket_tracker import BracketTracker
from bracketguard.monitoring.logger import get_logger
from bracketguard.reconciliation.position_keys import active_position_keys, resolve_order

logger = get_logger(__name__)

CANCELLED = "cancelled"
ALREADY_GONE = "already_gone"
FAILED = "failed"


@dataclass
class ReconcileSummary:
    """Outcome of one reconciliation pass."""
    pass_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    aborted: bool = False
    error: Optional[str] = None
    positions: int = 0
    active_positions: int = 0
    open_orders: int = 0
    conditional_orders: int = 0
    orphans_found: int = 0
    deferred: int = 0
    cancelled: List[str] = field(default_factory=list)
    already_gone: List[str] = field(default_factory=list)
    cancel_failed: List[str] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pass_id": self.pass_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "skipped": self.skipped,
            "aborted": self.aborted,
            "error": self.error,
            "positions": self.positions,
            "active_positions": self.active_positions,
            "open_orders": self.open_orders,
            "conditional_orders": self.conditional_orders,
            "orphans_found": self.orphans_found,
            "deferred": self.deferred,
            "cancelled": list(self.cancelled),
            "already_gone": list(self.already_gone),
            "cancel_failed": list(self.cancel_failed),
            "pruned": list(self.pruned),
        }


class Reconciler:
    """
    Single-flight, timer-driven orphan cleanup.

    No public call surface beyond start()/stop() and run_once(). Exchange errors abort
    the pass and are logged; anything else propagates out of run_once.
    """

    def __init__(
        self,
        client: ExchangeClient,
        tracker: BracketTracker,
        *,
        is_hedge_mode: bool = False,
        interval_seconds: float = RECONCILE_INTERVAL_SECONDS,
        fetch_timeout_seconds: float = DEFAULT_API_TIMEOUT,
        cancel_timeout_seconds: float = DEFAULT_API_TIMEOUT,
        order_grace_seconds: float = ORDER_GRACE_SECONDS,
        run_on_startup: bool = True,
    ):
        self.client = client
        self.tracker = tracker
        self.is_hedge_mode = is_hedge_mode
        self.interval_seconds = interval_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.cancel_timeout_seconds = cancel_timeout_seconds
        self.order_grace = timedelta(seconds=order_grace_seconds)
        self.run_on_startup = run_on_startup

        self._guard = threading.Lock()
        self._running = False

        self._timer_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._inflight: Set[asyncio.Task] = set()

        self.last_summary: Optional[ReconcileSummary] = None
        self.pass_count = 0
        self.skipped_count = 0

    # ============ Single-flight guard ============

    @property
    def running(self) -> bool:
        return self._running

    def _try_begin(self) -> bool:
        """Atomically flip running from False to True. False if a pass is in flight."""
        with self._guard:
            if self._running:
                return False
            self._running = True
            return True

    def _end(self) -> None:
        with self._guard:
            self._running = False

    # ============ Pass ============

    async def run_once(self) -> ReconcileSummary:
        """
        Run one pass unless another is in flight.

        Returns the pass summary; a skipped tick returns a summary with
        skipped=True and performs zero exchange calls.
        """
        summary = ReconcileSummary(pass_id=uuid.uuid4().hex[:12], started_at=datetime.now(timezone.utc))
        if not self._try_begin():
            self.skipped_count += 1
            summary.skipped = True
            summary.finished_at = summary.started_at
            logger.info("RECONCILE_SKIPPED", reason="pass in flight")
            return summary

        try:
            with structlog.contextvars.bound_contextvars(pass_id=summary.pass_id):
                await self._reconcile(summary)
        finally:
            summary.finished_at = datetime.now(timezone.utc)
            self.pass_count += 1
            self.last_summary = summary
            self._end()
        return summary

    async def _reconcile(self, summary: ReconcileSummary) -> None:
        logger.info("RECONCILE_START", hedge_mode=self.is_hedge_mode, tracked=len(self.tracker))

        try:
            positions, orders = await self._fetch_snapshot()
        except AuthenticationError as e:
            self._abort(summary, e, level="error")
            return
        except (OperationalError, DataError) as e:
            self._abort(summary, e, level="warning")
            return

        active = active_position_keys(positions, self.is_hedge_mode)
        summary.positions = len(positions)
        summary.active_positions = len(active)
        summary.open_orders = len(orders)

        orphans, deferred = self._find_orphans(orders, active, summary.started_at)
        summary.conditional_orders = sum(1 for order in orders if order.is_conditional_close)
        summary.orphans_found = len(orphans)
        summary.deferred = len(deferred)
        if deferred:
            logger.info("ORPHAN_CANCEL_DEFERRED", order_ids=[order.order_id for order in deferred])

        if orphans:
            outcomes = await asyncio.gather(*(self._cancel_orphan(order) for order in orphans))
            for order, outcome in zip(orphans, outcomes):
                if outcome == CANCELLED:
                    summary.cancelled.append(order.order_id)
                elif outcome == ALREADY_GONE:
                    summary.already_gone.append(order.order_id)
                else:
                    summary.cancel_failed.append(order.order_id)

        removed = self.tracker.prune(active, created_before=summary.started_at)
        for record in removed:
            summary.pruned.append(str(record.position_key))
            logger.info("BRACKET_PRUNED", position_key=str(record.position_key), order_ids=record.order_ids)

        logger.info(
            "RECONCILE_SUMMARY",
            positions=summary.positions,
            active_positions=summary.active_positions,
            open_orders=summary.open_orders,
            orphans=summary.orphans_found,
            deferred=summary.deferred,
            cancelled=len(summary.cancelled),
            already_gone=len(summary.already_gone),
            cancel_failed=len(summary.cancel_failed),
            pruned=len(summary.pruned),
            tracked=len(self.tracker),
        )

    async def _fetch_snapshot(self):
        """
        Fetch positions and open orders concurrently, each under its own timeout.

        Both fetches are always awaited to completion; the first failure is
        raised afterwards so no request is left running unobserved.
        """
        results = await asyncio.gather(
            asyncio.wait_for(self.client.get_positions(), timeout=self.fetch_timeout_seconds),
            asyncio.wait_for(self.client.get_open_orders(), timeout=self.fetch_timeout_seconds),
            return_exceptions=True,
        )
        for name, result in zip(("positions", "open_orders"), results):
            if isinstance(result, asyncio.TimeoutError):
                raise NetworkError(f"Timed out fetching {name} after {self.fetch_timeout_seconds}s")
            if isinstance(result, BaseException):
                raise result
        positions, orders = results
        return list(positions), list(orders)

    def _abort(self, summary: ReconcileSummary, error: Exception, level: str) -> None:
        summary.aborted = True
        summary.error = f"{type(error).__name__}: {error}"
        getattr(logger, level)(
            "RECONCILE_ABORTED",
            error=str(error),
            error_type=type(error).__name__,
            tracker_untouched=True,
        )

    def _find_orphans(
        self,
        orders: List[OpenOrder],
        active: Set[PositionKey],
        pass_started_at: datetime,
    ):
        """
        Split conditional close orders on inactive keys into (orphans, deferred).

        Deferred orders were created while this pass's snapshot was in
        flight: those registered in the tracker after the pass began, and
        those the exchange reports as created inside the grace window. They
        are re-examined next pass.
        """
        fresh_ids: Set[str] = set()
        for _, record in self.tracker.snapshot_all():
            if record.created_at >= pass_started_at:
                fresh_ids.update(record.order_ids)
        grace_cutoff = pass_started_at - self.order_grace

        orphans: List[OpenOrder] = []
        deferred: List[OpenOrder] = []
        for order in orders:
            if not order.is_conditional_close:
                continue
            if resolve_order(order) in active:
                continue
            if order.order_id in fresh_ids or (order.created_at is not None and order.created_at >= grace_cutoff):
                deferred.append(order)
                continue
            orphans.append(order)
        return orphans, deferred

    async def _cancel_orphan(self, order: OpenOrder) -> str:
        """Cancel one orphan. Never raises; returns the outcome."""
        key = str(resolve_order(order))
        try:
            await asyncio.wait_for(
                self.client.cancel_order(order.symbol, order.order_id),
                timeout=self.cancel_timeout_seconds,
            )
        except OrderNotFoundError:
            logger.info("ORPHAN_ALREADY_GONE", symbol=order.symbol, order_id=order.order_id, position_key=key)
            return ALREADY_GONE
        except asyncio.TimeoutError:
            logger.warning(
                "ORPHAN_CANCEL_FAILED",
                symbol=order.symbol,
                order_id=order.order_id,
                position_key=key,
                error=f"timed out after {self.cancel_timeout_seconds}s",
            )
            return FAILED
        except (OperationalError, DataError) as e:
            logger.warning(
                "ORPHAN_CANCEL_FAILED",
                symbol=order.symbol,
                order_id=order.order_id,
                position_key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return FAILED
        logger.info(
            "ORPHAN_CANCELLED",
            symbol=order.symbol,
            order_id=order.order_id,
            order_type=order.type,
            position_key=key,
        )
        return CANCELLED

    # ============ Lifecycle ============

    def start(self) -> None:
        """Start the periodic timer on the running event loop. Idempotent."""
        if self._timer_task is not None and not self._timer_task.done():
            return
        self._stop_event = asyncio.Event()
        self._timer_task = asyncio.create_task(self._timer_loop(), name="reconciler-timer")
        logger.info("RECONCILER_STARTED", interval_seconds=self.interval_seconds, hedge_mode=self.is_hedge_mode)

    async def stop(self) -> None:
        """Stop the timer and wait for any in-flight pass to finish."""
        if self._timer_task is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        await self._timer_task
        self._timer_task = None
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        logger.info("RECONCILER_STOPPED", passes=self.pass_count, skipped=self.skipped_count)

    async def _timer_loop(self) -> None:
        """
        Fire a pass every interval without waiting for the previous one.

        Overlap is resolved by the single-flight guard in run_once, so a slow
        pass causes skipped ticks, never a backlog.
        """
        assert self._stop_event is not None
        if not self.run_on_startup:
            if await self._wait_or_stop():
                return
        while not self._stop_event.is_set():
            self._spawn_tick()
            if await self._wait_or_stop():
                return

    async def _wait_or_stop(self) -> bool:
        """Sleep one interval. True if stop was requested meanwhile."""
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def _spawn_tick(self) -> None:
        task = asyncio.create_task(self.run_once())
        self._inflight.add(task)
        task.add_done_callback(self._on_tick_done)

    def _on_tick_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "RECONCILE_PASS_CRASHED",
                error=str(error),
                error_type=type(error).__name__,
                exc_info=(type(error), error, error.__traceback__),
            )
