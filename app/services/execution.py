"""
app/services/execution.py
Opens positions: debits the stake, locks the entry price, sets the expiry.

The debit goes through the same version-checked ledger write as settlement,
so an open racing a settlement for the same user fails cleanly instead of
losing an update.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from app.services.ledger import adjust_team_total, debit
from app.services.notifier import EventNotifier, emit_safely
from app.services.price_lookup import latest_index
from core.constants import DEFAULT_HOLD_DURATION, HOLD_DURATION_MINUTES
from core.exceptions import MarketNotFound, UpstreamUnavailable
from database.models import Market, Position, PositionSide, PositionStatus

logger = logging.getLogger(__name__)


def hold_duration_minutes(label: str | None) -> int:
    """Minutes for a hold-duration label; unknown labels hold for one hour."""
    return HOLD_DURATION_MINUTES.get(label or DEFAULT_HOLD_DURATION, 60)


def _validate_thresholds(
    amount: int,
    stop_loss: float | None,
    take_profit: float | None,
    stop_loss_payout: float | None,
    take_profit_payout: float | None,
) -> None:
    if amount <= 0:
        raise ValueError(f"Stake must be positive, got {amount}")
    if stop_loss is not None and stop_loss <= 0:
        raise ValueError(f"stop_loss must be positive, got {stop_loss}")
    if take_profit is not None and take_profit <= 0:
        raise ValueError(f"take_profit must be positive, got {take_profit}")
    if stop_loss_payout is not None and not 0 < stop_loss_payout < 1:
        raise ValueError(f"stop_loss_payout must be in (0, 1), got {stop_loss_payout}")
    if take_profit_payout is not None and not 0 < take_profit_payout < 1:
        raise ValueError(f"take_profit_payout must be in (0, 1), got {take_profit_payout}")


async def open_position(
    session: AsyncSession,
    user_id: int,
    market_id: int,
    side: PositionSide,
    amount: int,
    stop_loss: float | None = None,
    take_profit: float | None = None,
    hold_duration: str | None = None,
    stop_loss_payout: float | None = None,
    take_profit_payout: float | None = None,
    notifier: EventNotifier | None = None,
) -> Position:
    """
    Open a position at the market's latest index price.

    Parameters
    ----------
    stop_loss, take_profit : float | None
        Trigger thresholds in percent of entry price.
    hold_duration : str | None
        One of 10M, 30M, 1H, 12H, 24H. Defaults to 1H.
    stop_loss_payout, take_profit_payout : float | None
        Fraction of the stake lost or won when the trigger fires. Unset
        positions settle with the default fractions.

    Raises
    ------
    MarketNotFound, UserNotFound, InsufficientBalance, ConcurrencyConflict,
    UpstreamUnavailable (no price yet for the market's category).
    """
    _validate_thresholds(amount, stop_loss, take_profit, stop_loss_payout, take_profit_payout)

    market = await session.get(Market, market_id)
    if market is None:
        raise MarketNotFound(market_id)

    snapshot = await latest_index(session, market.category)
    if snapshot is None:
        raise UpstreamUnavailable(f"No price data available for {market.category}")

    label = hold_duration or DEFAULT_HOLD_DURATION
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=hold_duration_minutes(label))

    try:
        user = await debit(session, user_id, amount)
        if user.team_id is not None:
            await adjust_team_total(session, user.team_id, -amount)

        position = Position(
            user_id=user_id,
            market_id=market_id,
            side=side,
            amount=amount,
            entry_price=snapshot.value,
            stop_loss=stop_loss,
            take_profit=take_profit,
            hold_duration=label,
            stop_loss_payout=stop_loss_payout,
            take_profit_payout=take_profit_payout,
            expires_at=expires_at,
            status=PositionStatus.ACTIVE,
        )
        session.add(position)

        await session.execute(
            update(Market)
            .where(col(Market.id) == market_id)
            .values(pool_size=col(Market.pool_size) + amount)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    await session.refresh(position)
    new_balance = user.pts

    logger.info(
        "[NEW POSITION] User %d: %s %d PTS @ %.2f | SL: %s%% | TP: %s%% | Expires: %s",
        user_id, side.value, amount, snapshot.value,
        stop_loss if stop_loss is not None else "N/A",
        take_profit if take_profit is not None else "N/A",
        label,
    )

    if notifier is not None:
        await emit_safely(notifier.balance_updated, user_id, new_balance)

    return position
