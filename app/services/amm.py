"""
app/services/amm.py
Pari-mutuel pools and heuristic dynamic odds for match-outcome markets.

Every bet adds its stake to the pool of the outcome it backs. Odds are
repriced after qualifying events (goals):

  1. Start from base odds (home 2.0, draw 3.2, away 2.0).
  2. Leading side x0.95, trailing side x1.10.
  3. Any outcome holding more than 40% of the total pool x0.98.

This is a lightweight repricing rule, not an order book, and it shares
nothing with position settlement beyond the debit-and-pool-increment pattern.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from app.services.ledger import adjust_team_total, debit
from app.services.notifier import EventNotifier, emit_safely
from core.constants import (
    BASE_AWAY_ODDS,
    BASE_DRAW_ODDS,
    BASE_HOME_ODDS,
    HEAVY_POOL_ODDS_FACTOR,
    HEAVY_POOL_SHARE,
    LEADER_ODDS_FACTOR,
    TRAILER_ODDS_FACTOR,
)
from core.exceptions import MarketClosed, MatchNotFound
from database.models import FootballMatch, MatchBet, MatchOutcome, MatchStatus

logger = logging.getLogger(__name__)

_POOL_FIELDS: dict[MatchOutcome, str] = {
    MatchOutcome.HOME: "home_bet_pool",
    MatchOutcome.DRAW: "draw_bet_pool",
    MatchOutcome.AWAY: "away_bet_pool",
}

_ODDS_FIELDS: dict[MatchOutcome, str] = {
    MatchOutcome.HOME: "home_odds",
    MatchOutcome.DRAW: "draw_odds",
    MatchOutcome.AWAY: "away_odds",
}


@dataclass(frozen=True)
class MatchPools:
    home: float = 0.0
    draw: float = 0.0
    away: float = 0.0

    @property
    def total(self) -> float:
        return self.home + self.draw + self.away

    def share(self, outcome: MatchOutcome) -> float:
        """Fraction of the total pool backing `outcome` (0 for an empty pool)."""
        if self.total <= 0:
            return 0.0
        return getattr(self, outcome.value) / self.total

    @classmethod
    def of(cls, match: FootballMatch) -> "MatchPools":
        return cls(home=match.home_bet_pool, draw=match.draw_bet_pool, away=match.away_bet_pool)


@dataclass(frozen=True)
class MatchOdds:
    home: float
    draw: float
    away: float

    def for_outcome(self, outcome: MatchOutcome) -> float:
        return getattr(self, outcome.value)


def reprice_odds(home_score: int, away_score: int, pools: MatchPools) -> MatchOdds:
    """Odds after a scoring change, given the current pools."""
    home, draw, away = BASE_HOME_ODDS, BASE_DRAW_ODDS, BASE_AWAY_ODDS

    score_diff = home_score - away_score
    if score_diff > 0:
        home *= LEADER_ODDS_FACTOR
        away *= TRAILER_ODDS_FACTOR
    elif score_diff < 0:
        away *= LEADER_ODDS_FACTOR
        home *= TRAILER_ODDS_FACTOR

    if pools.total > 0:
        if pools.share(MatchOutcome.HOME) > HEAVY_POOL_SHARE:
            home *= HEAVY_POOL_ODDS_FACTOR
        if pools.share(MatchOutcome.DRAW) > HEAVY_POOL_SHARE:
            draw *= HEAVY_POOL_ODDS_FACTOR
        if pools.share(MatchOutcome.AWAY) > HEAVY_POOL_SHARE:
            away *= HEAVY_POOL_ODDS_FACTOR

    return MatchOdds(home=round(home, 2), draw=round(draw, 2), away=round(away, 2))


async def _get_match(session: AsyncSession, match_id: int) -> FootballMatch:
    match = await session.get(FootballMatch, match_id, populate_existing=True)
    if match is None:
        raise MatchNotFound(match_id)
    return match


async def place_match_bet(
    session: AsyncSession,
    user_id: int,
    match_id: int,
    prediction: MatchOutcome,
    amount: int,
    notifier: EventNotifier | None = None,
) -> MatchBet:
    """Debit the stake, lock the current odds and grow the outcome's pool."""
    if amount <= 0:
        raise ValueError(f"Stake must be positive, got {amount}")

    match = await _get_match(session, match_id)
    if match.status in (MatchStatus.FINISHED, MatchStatus.CANCELLED):
        raise MarketClosed(f"Match {match_id} is already {match.status.value}")

    odds = getattr(match, _ODDS_FIELDS[prediction])
    pool_field = _POOL_FIELDS[prediction]

    try:
        user = await debit(session, user_id, amount)
        if user.team_id is not None:
            await adjust_team_total(session, user.team_id, -amount)

        bet = MatchBet(
            user_id=user_id,
            match_id=match_id,
            prediction=prediction,
            amount=amount,
            odds=odds,
        )
        session.add(bet)

        await session.execute(
            update(FootballMatch)
            .where(col(FootballMatch.id) == match_id)
            .values({pool_field: getattr(FootballMatch, pool_field) + amount})
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    await session.refresh(bet)
    logger.info(
        "[MATCH_BET] User %d bet %d on %s for match %d @ %.2f",
        user_id, amount, prediction.value, match_id, odds,
    )

    if notifier is not None:
        await emit_safely(notifier.balance_updated, user_id, user.pts)
    return bet


async def update_match_odds(session: AsyncSession, match_id: int) -> MatchOdds:
    """Reprice a match from its current score and pools and persist the odds."""
    match = await _get_match(session, match_id)
    odds = reprice_odds(match.home_score, match.away_score, MatchPools.of(match))

    match.home_odds = odds.home
    match.draw_odds = odds.draw
    match.away_odds = odds.away
    match.last_updated = datetime.now(timezone.utc)
    session.add(match)
    await session.commit()

    logger.debug(
        "Match %d odds -> home %.2f / draw %.2f / away %.2f",
        match_id, odds.home, odds.draw, odds.away,
    )
    return odds


async def record_goal(
    session: AsyncSession,
    match_id: int,
    scoring_side: MatchOutcome,
) -> MatchOdds:
    """Apply a goal for HOME or AWAY and reprice the match."""
    if scoring_side == MatchOutcome.DRAW:
        raise ValueError("A goal must be scored by HOME or AWAY")

    match = await _get_match(session, match_id)
    if scoring_side == MatchOutcome.HOME:
        match.home_score += 1
    else:
        match.away_score += 1
    if match.status == MatchStatus.SCHEDULED:
        match.status = MatchStatus.LIVE
    session.add(match)
    await session.flush()

    return await update_match_odds(session, match_id)
