"""
app/services/settlement.py
Settles a single position: payout policy, combo update, balance write.

Payout by exit reason (amount = stake, percents in percent units):

  TAKE_PROFIT  amount * (1 + take_profit_payout)          WIN   (default 0.3)
  STOP_LOSS    amount * (1 - stop_loss_payout)            LOSE  (default 0.2)
  EXPIRED      profit > 0     amount * (1 + min(p, 100)/100)  WIN
               profit < -50   0                               LOSE
               profit < 0     amount * (1 + p/100)            LOSE
               profit == 0    amount                          BREAKEVEN
  MANUAL       profit > 0     amount * (1 + p/100)            WIN
               otherwise      max(0, amount * (1 + p/100))    LOSE / BREAKEVEN

MANUAL closes have no deep-loss wipe, unlike EXPIRED. Payouts are floored
to whole points, and WIN payouts are then multiplied by the user's
pre-settlement multiplier (floored again).

The status flip, combo/balance compare-and-swap and team adjustment commit
together or not at all. Commentary and events follow the commit and can
never undo it.
"""

import logging
import math
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from agents.commentary.commentator import SettlementCommentator
from app.services.combo import next_combo_state
from app.services.config_store import ComboConfigStore, get_combo_config_store
from app.services.ledger import adjust_team_total, apply_delta, get_user
from app.services.notifier import EventNotifier, LoggingNotifier, emit_safely
from app.services.price_lookup import PriceLookup
from core.config import get_settings
from core.constants import (
    DEFAULT_STOP_LOSS_PAYOUT,
    DEFAULT_TAKE_PROFIT_PAYOUT,
    EXPIRY_MAX_GAIN_PCT,
    EXPIRY_WIPEOUT_PCT,
)
from core.exceptions import AlreadySettled, PositionNotFound, UpstreamUnavailable
from database.connection import async_session
from database.models import (
    BetResult,
    ExitReason,
    Market,
    Position,
    PositionSide,
    PositionStatus,
)

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Result types
# ------------------------------------------------------------------

@dataclass(frozen=True)
class PayoutDecision:
    payout: int
    result: BetResult


@dataclass
class SettlementResult:
    """Outcome of one committed settlement."""
    position_id: int
    user_id: int
    result: BetResult
    payout: int
    exit_price: float
    exit_reason: ExitReason
    profit_percent: float
    new_balance: float
    commentary: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["result"] = self.result.value
        data["exit_reason"] = self.exit_reason.value
        return data


# ------------------------------------------------------------------
# Pure payout math
# ------------------------------------------------------------------

def floor_points(value: float) -> int:
    """Whole, non-negative points. Rounds away float dust before flooring."""
    return max(0, math.floor(round(value, 6)))


def compute_profit_percent(entry_price: float, current_price: float, side: PositionSide) -> float:
    """Direction-adjusted price change in percent."""
    if entry_price <= 0:
        raise ValueError(f"entry_price must be positive, got {entry_price}")
    price_change = (current_price - entry_price) / entry_price * 100
    return price_change if side == PositionSide.LONG else -price_change


def compute_payout(
    exit_reason: ExitReason | str,
    amount: float,
    profit_percent: float,
    take_profit_payout: float | None = None,
    stop_loss_payout: float | None = None,
) -> PayoutDecision:
    """Base payout and result for an exit, before any combo multiplier."""
    reason = ExitReason(exit_reason)

    if reason == ExitReason.TAKE_PROFIT:
        fraction = take_profit_payout if take_profit_payout is not None else DEFAULT_TAKE_PROFIT_PAYOUT
        return PayoutDecision(floor_points(amount * (1 + fraction)), BetResult.WIN)

    if reason == ExitReason.STOP_LOSS:
        fraction = stop_loss_payout if stop_loss_payout is not None else DEFAULT_STOP_LOSS_PAYOUT
        return PayoutDecision(floor_points(amount * (1 - fraction)), BetResult.LOSE)

    if reason == ExitReason.EXPIRED:
        if profit_percent > 0:
            capped = min(profit_percent, EXPIRY_MAX_GAIN_PCT)
            return PayoutDecision(floor_points(amount * (1 + capped / 100)), BetResult.WIN)
        if profit_percent < EXPIRY_WIPEOUT_PCT:
            return PayoutDecision(0, BetResult.LOSE)
        if profit_percent < 0:
            return PayoutDecision(floor_points(amount * (1 + profit_percent / 100)), BetResult.LOSE)
        return PayoutDecision(floor_points(amount), BetResult.BREAKEVEN)

    # MANUAL
    if profit_percent > 0:
        return PayoutDecision(floor_points(amount * (1 + profit_percent / 100)), BetResult.WIN)
    result = BetResult.LOSE if profit_percent < 0 else BetResult.BREAKEVEN
    return PayoutDecision(floor_points(amount * (1 + profit_percent / 100)), result)


def apply_win_multiplier(decision: PayoutDecision, multiplier: float) -> int:
    """Combo reward: WIN payouts scale by the multiplier, everything else is untouched."""
    if decision.result != BetResult.WIN:
        return decision.payout
    return floor_points(decision.payout * multiplier)


# ------------------------------------------------------------------
# Engine
# ------------------------------------------------------------------

class SettlementEngine:
    """Runs settlements, each in its own session and transaction."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = async_session,
        notifier: EventNotifier | None = None,
        commentator: SettlementCommentator | None = None,
        config_store: ComboConfigStore | None = None,
        locale: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier if notifier is not None else LoggingNotifier()
        self._commentator = commentator
        self._config_store = config_store if config_store is not None else get_combo_config_store()
        self._locale = locale or get_settings().COMMENTARY_LOCALE

    async def settle(
        self,
        position_id: int,
        exit_price: float,
        exit_reason: ExitReason | str,
        profit_percent: float,
    ) -> SettlementResult:
        """
        Settle an ACTIVE position.

        Raises
        ------
        PositionNotFound
            No such position.
        AlreadySettled
            The position is no longer ACTIVE (including losing a race).
        UserNotFound
            The position's owner is missing.
        ConcurrencyConflict
            The owner's balance changed underneath us. Nothing was written;
            the position stays ACTIVE for the next scan.
        """
        reason = ExitReason(exit_reason)

        async with self._session_factory() as session:
            async with session.begin():
                combo_config = await self._config_store.current_combo_config(session)

                position = await session.get(
                    Position, position_id, populate_existing=True, with_for_update=True
                )
                if position is None:
                    raise PositionNotFound(position_id)
                if position.status != PositionStatus.ACTIVE:
                    raise AlreadySettled(position_id)

                user = await get_user(session, position.user_id)
                prior_combo, prior_multiplier = user.combo, user.multiplier

                decision = compute_payout(
                    reason,
                    position.amount,
                    profit_percent,
                    take_profit_payout=position.take_profit_payout,
                    stop_loss_payout=position.stop_loss_payout,
                )
                # Multiplier is the one held before this settlement
                payout = apply_win_multiplier(decision, prior_multiplier)
                combo_state = next_combo_state(
                    decision.result, prior_combo, user.max_combo, prior_multiplier, combo_config
                )

                flipped = await session.execute(
                    update(Position)
                    .where(
                        col(Position.id) == position_id,
                        col(Position.status) == PositionStatus.ACTIVE,
                    )
                    .values(
                        status=PositionStatus.SETTLED,
                        result=decision.result,
                        exit_price=exit_price,
                        exit_reason=reason,
                        payout=payout,
                        settled_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                if flipped.rowcount == 0:
                    raise AlreadySettled(position_id)

                updated_user = await apply_delta(
                    session, user.id, user.version, payout, combo_state
                )
                if updated_user.team_id is not None:
                    await adjust_team_total(session, updated_user.team_id, payout)

        logger.info(
            "[%s] Position %d: %+.2f%% -> %s payout=%d (x%.2f, combo %d->%d)",
            reason.value, position_id, profit_percent, decision.result.value,
            payout, prior_multiplier, prior_combo, combo_state.combo,
        )

        settlement = SettlementResult(
            position_id=position_id,
            user_id=updated_user.id,
            result=decision.result,
            payout=payout,
            exit_price=exit_price,
            exit_reason=reason,
            profit_percent=profit_percent,
            new_balance=updated_user.pts,
        )
        settlement.commentary = await self._commentary(settlement)
        await self._publish(settlement)
        return settlement

    async def close_position(
        self,
        user_id: int,
        position_id: int,
        price_lookup: PriceLookup | None = None,
    ) -> SettlementResult:
        """User-initiated close at the latest index price."""
        async with self._session_factory() as session:
            row = (await session.execute(
                select(Position, Market)
                .join(Market, Position.market_id == Market.id)
                .where(Position.id == position_id)
            )).first()

        if row is None or row[0].user_id != user_id:
            raise PositionNotFound(position_id)
        position, market = row
        if position.status != PositionStatus.ACTIVE:
            raise AlreadySettled(position_id)

        lookup = price_lookup or PriceLookup(self._session_factory)
        snapshot = await lookup.latest(market.category)
        if snapshot is None or not position.entry_price:
            raise UpstreamUnavailable(f"Cannot determine exit price for position {position_id}")

        profit = compute_profit_percent(position.entry_price, snapshot.value, position.side)
        return await self.settle(position_id, snapshot.value, ExitReason.MANUAL, profit)

    # ------------------------------------------------------------------
    # Best-effort side effects
    # ------------------------------------------------------------------

    async def _commentary(self, settlement: SettlementResult) -> str:
        if self._commentator is None:
            return ""
        try:
            return await self._commentator.describe(
                settlement.result.value,
                settlement.profit_percent,
                settlement.exit_reason.value,
                self._locale,
            )
        except Exception as exc:
            logger.error("Failed to generate settlement commentary: %s", exc)
            return ""

    async def _publish(self, settlement: SettlementResult) -> None:
        await emit_safely(
            self._notifier.balance_updated, settlement.user_id, settlement.new_balance
        )
        await emit_safely(
            self._notifier.bet_settled,
            user_id=settlement.user_id,
            position_id=settlement.position_id,
            result=settlement.result.value,
            payout=settlement.payout,
            exit_price=settlement.exit_price,
            exit_reason=settlement.exit_reason.value,
            profit_percent=settlement.profit_percent,
            commentary=settlement.commentary,
        )
