"""
app/services/ledger.py
Optimistically-locked user balance writes and additive team adjustments.

Every user write is a compare-and-swap on User.version:

    UPDATE user SET pts = pts + :delta, ..., version = version + 1
    WHERE id = :id AND version = :expected

Zero rows matched means somebody else wrote first; the caller gets a
ConcurrencyConflict and is expected to roll back its whole transaction.
None of these functions commit; the caller owns the transaction.
"""

import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from app.services.combo import ComboState
from core.exceptions import ConcurrencyConflict, InsufficientBalance, UserNotFound
from database.models import Team, User

logger = logging.getLogger(__name__)


async def get_user(session: AsyncSession, user_id: int) -> User:
    """Fresh read of a user row (bypasses any identity-map copy)."""
    user = (await session.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )).scalars().first()
    if user is None:
        raise UserNotFound(user_id)
    return user


async def apply_delta(
    session: AsyncSession,
    user_id: int,
    expected_version: int,
    pts_delta: float,
    combo_state: ComboState | None = None,
) -> User:
    """
    Add `pts_delta` to a user's balance, optionally replacing the combo state.

    Raises
    ------
    UserNotFound
        The user does not exist.
    ConcurrencyConflict
        The stored version no longer equals `expected_version`.
    """
    values: dict = {
        "pts": col(User.pts) + pts_delta,
        "version": col(User.version) + 1,
    }
    if combo_state is not None:
        values["combo"] = combo_state.combo
        values["max_combo"] = combo_state.max_combo
        values["multiplier"] = combo_state.multiplier

    result = await session.execute(
        update(User)
        .where(col(User.id) == user_id, col(User.version) == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        exists = (await session.execute(
            select(User.id).where(User.id == user_id)
        )).scalar()
        if exists is None:
            raise UserNotFound(user_id)
        logger.info("Version conflict on user %d (expected v%d)", user_id, expected_version)
        raise ConcurrencyConflict(user_id, expected_version)

    return await get_user(session, user_id)


async def debit(session: AsyncSession, user_id: int, amount: float) -> User:
    """Take `amount` from a user's balance under the version check."""
    user = await get_user(session, user_id)
    if user.pts < amount:
        raise InsufficientBalance(user_id, user.pts, amount)
    return await apply_delta(session, user_id, user.version, -amount)


async def adjust_team_total(session: AsyncSession, team_id: int, delta: float) -> None:
    """Additive team aggregate update; drift is corrected by team_sync."""
    await session.execute(
        update(Team)
        .where(col(Team.id) == team_id)
        .values(total_pts=col(Team.total_pts) + delta)
        .execution_options(synchronize_session=False)
    )
