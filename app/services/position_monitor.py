"""
app/services/position_monitor.py
Enforces stop-loss, take-profit and expiry on ACTIVE positions.

Two independent checks per tick:
  1. Risk triggers: latest index price vs entry price; take-profit wins
     over stop-loss; a margin-call warning fires at 80% of the stop distance.
  2. Expiry: positions past expires_at settle at the latest price.

Positions are drained concurrently (bounded by MONITOR_MAX_CONCURRENCY) and
every position has its own error boundary: one bad row never stops the scan.

Called by the scheduler every POSITION_MONITOR_INTERVAL_SECONDS (default 10).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone

from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from app.services.notifier import EventNotifier, LoggingNotifier, emit_safely
from app.services.price_lookup import PriceLookup
from app.services.settlement import SettlementEngine, compute_profit_percent
from core.config import get_settings
from core.constants import MARGIN_CALL_RATIO
from core.exceptions import (
    AlreadySettled,
    ConcurrencyConflict,
    NotFound,
    SchemaDrift,
    UpstreamUnavailable,
)
from database.connection import async_session
from database.models import ExitReason, Market, Position, PositionStatus

logger = logging.getLogger(__name__)

_SCHEMA_DRIFT_MARKERS = ("no such column", "no such table", "does not exist")

PositionHandler = Callable[[Position, Market], Awaitable[bool]]


# ------------------------------------------------------------------
# Trigger rules
# ------------------------------------------------------------------

def evaluate_risk_triggers(
    profit_percent: float,
    stop_loss: float | None,
    take_profit: float | None,
) -> ExitReason | None:
    """TAKE_PROFIT, STOP_LOSS or None. Take-profit is checked first."""
    if take_profit and profit_percent >= take_profit:
        return ExitReason.TAKE_PROFIT
    if stop_loss and profit_percent <= -stop_loss:
        return ExitReason.STOP_LOSS
    return None


def is_margin_call(profit_percent: float, stop_loss: float | None) -> bool:
    """Loss has reached 80% of the stop-loss distance but not the stop itself."""
    if not stop_loss:
        return False
    return -stop_loss < profit_percent <= -(stop_loss * MARGIN_CALL_RATIO)


def _is_schema_drift(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _SCHEMA_DRIFT_MARKERS)


# ------------------------------------------------------------------
# Monitor
# ------------------------------------------------------------------

class PositionMonitor:
    """One scan over ACTIVE positions per call to run_once()."""

    def __init__(
        self,
        engine: SettlementEngine,
        price_lookup: PriceLookup,
        session_factory: Callable[[], AsyncSession] = async_session,
        notifier: EventNotifier | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        self._engine = engine
        self._prices = price_lookup
        self._session_factory = session_factory
        self._notifier = notifier if notifier is not None else LoggingNotifier()
        self._max_concurrency = max_concurrency or get_settings().MONITOR_MAX_CONCURRENCY

    async def _active_positions(self, expired_only: bool = False) -> Sequence:
        query = (
            select(Position, Market)
            .join(Market, Position.market_id == Market.id)
            .where(Position.status == PositionStatus.ACTIVE)
        )
        if expired_only:
            query = query.where(col(Position.expires_at) <= datetime.now(timezone.utc))
        else:
            query = query.where(col(Position.entry_price).isnot(None))

        try:
            async with self._session_factory() as session:
                return (await session.execute(query)).all()
        except (OperationalError, ProgrammingError) as exc:
            if _is_schema_drift(exc):
                raise SchemaDrift(str(exc)) from exc
            raise

    async def _drain(self, rows: Sequence, handler: PositionHandler) -> int:
        """Run `handler` over all rows with bounded parallelism; count settlements."""
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def guarded(position: Position, market: Market) -> bool:
            async with semaphore:
                try:
                    return await handler(position, market)
                except AlreadySettled:
                    logger.debug("Position %d already settled, skipping", position.id)
                except ConcurrencyConflict as exc:
                    logger.info("Position %d left open for next tick: %s", position.id, exc)
                except UpstreamUnavailable as exc:
                    logger.warning("Price unavailable for position %d: %s", position.id, exc)
                except NotFound as exc:
                    logger.error("Cannot settle position %d: %s", position.id, exc)
                except Exception as exc:
                    logger.error("Error checking position %d: %s", position.id, exc)
                return False

        outcomes = await asyncio.gather(*(guarded(p, m) for p, m in rows))
        return sum(1 for settled in outcomes if settled)

    # ------------------------------------------------------------------
    # Per-position handlers
    # ------------------------------------------------------------------

    async def _check_triggers(self, position: Position, market: Market) -> bool:
        snapshot = await self._prices.latest(market.category)
        if snapshot is None or not position.entry_price:
            return False

        profit = compute_profit_percent(position.entry_price, snapshot.value, position.side)

        if is_margin_call(profit, position.stop_loss):
            await emit_safely(
                self._notifier.margin_call,
                position.user_id, position.id, market.category, profit,
            )

        reason = evaluate_risk_triggers(profit, position.stop_loss, position.take_profit)
        if reason is None:
            return False

        await self._engine.settle(position.id, snapshot.value, reason, profit)
        return True

    async def _check_expiry(self, position: Position, market: Market) -> bool:
        snapshot = await self._prices.latest(market.category)
        if snapshot is None or not position.entry_price:
            logger.warning("Expired position %d has no price to settle at", position.id)
            return False

        profit = compute_profit_percent(position.entry_price, snapshot.value, position.side)
        await self._engine.settle(position.id, snapshot.value, ExitReason.EXPIRED, profit)
        return True

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def check_stop_loss_take_profit(self) -> int:
        """Settle positions whose stop-loss or take-profit fired. Returns the count."""
        rows = await self._active_positions()
        if not rows:
            return 0
        return await self._drain(rows, self._check_triggers)

    async def check_expired_positions(self) -> int:
        """Settle positions past their expiry. Returns the count."""
        rows = await self._active_positions(expired_only=True)
        if not rows:
            return 0
        return await self._drain(rows, self._check_expiry)

    async def run_once(self) -> dict[str, int]:
        """One full tick. A SchemaDrift skips the tick instead of failing it."""
        try:
            triggered = await self.check_stop_loss_take_profit()
            expired = await self.check_expired_positions()
        except SchemaDrift as exc:
            logger.debug("Position scan skipped, storage schema drift: %s", exc)
            return {"triggered": 0, "expired": 0}

        if triggered or expired:
            logger.info(
                "Position monitor: %d risk triggers settled, %d expired positions settled",
                triggered, expired,
            )
        return {"triggered": triggered, "expired": expired}


_monitor: PositionMonitor | None = None


def build_position_monitor() -> PositionMonitor:
    """Wire the monitor with the configured notifier, commentator and price lookup."""
    from agents.commentary.commentator import build_commentator
    from app.services.notifier import get_notifier

    notifier = get_notifier()
    engine = SettlementEngine(
        session_factory=async_session,
        notifier=notifier,
        commentator=build_commentator(),
    )
    return PositionMonitor(
        engine=engine,
        price_lookup=PriceLookup(async_session),
        session_factory=async_session,
        notifier=notifier,
    )


async def run_position_monitor() -> None:
    """Entry point called by the scheduler every POSITION_MONITOR_INTERVAL_SECONDS."""
    global _monitor
    if _monitor is None:
        _monitor = build_position_monitor()
    await _monitor.run_once()
