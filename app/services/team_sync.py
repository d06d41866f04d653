"""
app/services/team_sync.py
Reconciles each team's denormalized total_pts with its members' balances.

Settlements adjust team totals additively, so a total can drift from the true
member sum between a balance write and its team update. This job recomputes
the sum and corrects any team off by more than TEAM_SYNC_TOLERANCE.

Called by the scheduler every TEAM_SYNC_INTERVAL_MINUTES (default 5).
"""

import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, func, select

from core.constants import TEAM_SYNC_TOLERANCE
from database.connection import async_session
from database.models import Team, User

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    teams_checked: int = 0
    corrected: int = 0

    def to_dict(self) -> dict:
        return {"teams_checked": self.teams_checked, "corrected": self.corrected}


async def member_totals(session: AsyncSession) -> dict[int, float]:
    """Sum of member pts keyed by team id."""
    rows = (await session.execute(
        select(User.team_id, func.sum(User.pts))
        .where(col(User.team_id).isnot(None))
        .group_by(User.team_id)
    )).all()
    return {team_id: float(total or 0.0) for team_id, total in rows}


async def reconcile_team_totals(
    session: AsyncSession,
    tolerance: float = TEAM_SYNC_TOLERANCE,
) -> ReconcileReport:
    """
    Recompute every team total and correct drift beyond `tolerance`.

    Corrections are conditioned on the stored total being unchanged since it
    was read; a team touched by a concurrent settlement is left for the next
    pass. Idempotent.
    """
    report = ReconcileReport()

    teams = (await session.execute(select(Team))).scalars().all()
    if not teams:
        return report

    actual_totals = await member_totals(session)

    for team in teams:
        report.teams_checked += 1
        stored = team.total_pts
        actual = actual_totals.get(team.id, 0.0)

        if abs(actual - stored) <= tolerance:
            continue

        result = await session.execute(
            update(Team)
            .where(col(Team.id) == team.id, col(Team.total_pts) == stored)
            .values(total_pts=actual)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            report.corrected += 1
            logger.warning(
                "[TEAM_SYNC] Corrected %s: %.2f -> %.2f (diff: %.2f)",
                team.name, stored, actual, actual - stored,
            )

    await session.commit()

    if report.corrected:
        logger.info(
            "[TEAM_SYNC] Synced %d teams, corrected %d discrepancies",
            report.teams_checked, report.corrected,
        )
    return report


async def run_team_reconciliation() -> None:
    """Entry point called by the scheduler."""
    async with async_session() as session:
        await reconcile_team_totals(session)
