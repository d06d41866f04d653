"""
database/models.py
SQLModel table definitions for the position settlement engine.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field


def _utcnow() -> datetime:
    """Timezone-aware UTC now (replaces the deprecated utcnow call)."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"


class PositionStatus(str, Enum):
    ACTIVE = "active"
    SETTLED = "settled"


class BetResult(str, Enum):
    WIN = "win"
    LOSE = "lose"
    BREAKEVEN = "breakeven"
    DRAW = "draw"
    REFUND = "refund"


class ExitReason(str, Enum):
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    EXPIRED = "EXPIRED"
    MANUAL = "MANUAL"


class MatchOutcome(str, Enum):
    HOME = "home"
    DRAW = "draw"
    AWAY = "away"


class MatchStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    FINISHED = "finished"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Team / User: balances and combo state
# ---------------------------------------------------------------------------

class Team(SQLModel, table=True):
    """A team whose total_pts is a denormalized sum of its members' pts."""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    total_pts: float = 0.0

    created_at: datetime = Field(default_factory=_utcnow)


class User(SQLModel, table=True):
    """Point balance, combo state and the optimistic-lock version counter."""

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True)

    pts: float = 0.0
    combo: int = 0
    max_combo: int = 0
    multiplier: float = 1.0

    # Incremented by exactly 1 on every successful balance write
    version: int = 0

    team_id: Optional[int] = Field(default=None, foreign_key="team.id", index=True)

    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Market / MarketIndex: price-indexed markets and their price series
# ---------------------------------------------------------------------------

class Market(SQLModel, table=True):
    """A price-indexed market; category keys into MarketIndex."""

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    category: str = Field(index=True)
    pool_size: float = 0.0

    created_at: datetime = Field(default_factory=_utcnow)


class MarketIndex(SQLModel, table=True):
    """One point of a category's price series. Latest row is the live price."""

    id: Optional[int] = Field(default=None, primary_key=True)
    category: str = Field(index=True)
    value: float
    timestamp: datetime = Field(default_factory=_utcnow, index=True)


# ---------------------------------------------------------------------------
# Position: a user's timed stake on a price direction
# ---------------------------------------------------------------------------

class Position(SQLModel, table=True):
    """An open or settled position. Immutable once status is SETTLED."""

    id: Optional[int] = Field(default=None, primary_key=True)

    user_id: int = Field(foreign_key="user.id", index=True)
    market_id: int = Field(foreign_key="market.id", index=True)

    # Entry details
    side: PositionSide
    amount: int
    entry_price: Optional[float] = None

    # Risk triggers, in percent of entry price
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None

    # Payout fractions locked at open; None means the policy default
    stop_loss_payout: Optional[float] = None
    take_profit_payout: Optional[float] = None

    hold_duration: str = "1H"
    expires_at: Optional[datetime] = Field(default=None, index=True)

    # Status
    status: PositionStatus = Field(default=PositionStatus.ACTIVE, index=True)

    # Settlement details (filled exactly once)
    result: Optional[BetResult] = None
    exit_price: Optional[float] = None
    exit_reason: Optional[ExitReason] = None
    payout: Optional[int] = None
    settled_at: Optional[datetime] = None

    opened_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# SystemConfig: keyed runtime tuning records
# ---------------------------------------------------------------------------

class SystemConfig(SQLModel, table=True):
    """A keyed JSON value, e.g. the combo_config override."""

    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# FootballMatch / MatchBet: pari-mutuel match-outcome pools
# ---------------------------------------------------------------------------

class FootballMatch(SQLModel, table=True):
    """A match-outcome market with per-outcome pools and dynamic odds."""

    id: Optional[int] = Field(default=None, primary_key=True)
    home_team: str
    away_team: str

    home_score: int = 0
    away_score: int = 0
    status: MatchStatus = MatchStatus.SCHEDULED

    home_odds: float = 2.0
    draw_odds: float = 3.2
    away_odds: float = 2.0

    home_bet_pool: float = 0.0
    draw_bet_pool: float = 0.0
    away_bet_pool: float = 0.0

    kickoff_at: Optional[datetime] = None
    last_updated: datetime = Field(default_factory=_utcnow)


class MatchBet(SQLModel, table=True):
    """A stake on a match outcome at the odds locked when it was placed."""

    id: Optional[int] = Field(default=None, primary_key=True)

    user_id: int = Field(foreign_key="user.id", index=True)
    match_id: int = Field(foreign_key="footballmatch.id", index=True)

    prediction: MatchOutcome
    amount: int
    odds: float
    status: str = "pending"

    created_at: datetime = Field(default_factory=_utcnow)
