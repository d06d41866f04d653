"""
app/routes/positions.py
Position endpoints: open, close manually, view active/settled, stats.
"""

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from app.services.execution import open_position
from app.services.price_lookup import latest_index
from app.services.settlement import SettlementEngine, compute_profit_percent
from core.exceptions import (
    AlreadySettled,
    ConcurrencyConflict,
    NotFound,
    SettlementError,
    UpstreamUnavailable,
)
from database.connection import get_session
from database.models import BetResult, Market, Position, PositionSide, PositionStatus

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/positions", tags=["positions"])


# ------------------------------------------------------------------
# Request / response models
# ------------------------------------------------------------------

class OpenPositionRequest(BaseModel):
    user_id: int
    market_id: int
    side: PositionSide
    amount: int = Field(gt=0)
    stop_loss: float | None = Field(default=None, gt=0)
    take_profit: float | None = Field(default=None, gt=0)
    hold_duration: str | None = None
    stop_loss_payout: float | None = Field(default=None, gt=0, lt=1)
    take_profit_payout: float | None = Field(default=None, gt=0, lt=1)


class ClosePositionRequest(BaseModel):
    user_id: int


class PositionRow(BaseModel):
    """A single position."""
    id: int
    user_id: int
    market_id: int
    category: str | None = None
    side: str
    amount: int
    entry_price: float | None
    stop_loss: float | None
    take_profit: float | None
    hold_duration: str
    expires_at: str | None
    status: str
    result: str | None
    exit_price: float | None
    exit_reason: str | None
    payout: int | None
    opened_at: str
    settled_at: str | None
    current_price: float | None = None
    pnl_percent: float | None = None
    unrealized_pnl: float | None = None


class PositionsResponse(BaseModel):
    count: int
    positions: list[PositionRow]


class SettlementStats(BaseModel):
    """Response for GET /positions/stats."""
    total_bets: int
    wins: int
    losses: int
    win_rate: float
    total_wagered: int
    total_payout: int
    net_profit: int
    roi: float


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

@lru_cache
def get_settlement_engine() -> SettlementEngine:
    """Engine wired with the configured notifier and commentator."""
    from agents.commentary.commentator import build_commentator
    from app.services.notifier import get_notifier

    return SettlementEngine(notifier=get_notifier(), commentator=build_commentator())


def _position_to_row(p: Position, category: str | None = None) -> PositionRow:
    return PositionRow(
        id=p.id,
        user_id=p.user_id,
        market_id=p.market_id,
        category=category,
        side=p.side.value,
        amount=p.amount,
        entry_price=p.entry_price,
        stop_loss=p.stop_loss,
        take_profit=p.take_profit,
        hold_duration=p.hold_duration,
        expires_at=p.expires_at.isoformat() if p.expires_at else None,
        status=p.status.value,
        result=p.result.value if p.result else None,
        exit_price=p.exit_price,
        exit_reason=p.exit_reason.value if p.exit_reason else None,
        payout=p.payout,
        opened_at=p.opened_at.isoformat() if p.opened_at else "",
        settled_at=p.settled_at.isoformat() if p.settled_at else None,
    )


def _http_error(exc: SettlementError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (AlreadySettled, ConcurrencyConflict)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, UpstreamUnavailable):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def build_stats(settled: list[Position]) -> SettlementStats:
    """Win/loss counts, wagered vs paid out, ROI over settled positions."""
    total = len(settled)
    wins = sum(1 for p in settled if p.result == BetResult.WIN)
    losses = sum(1 for p in settled if p.result == BetResult.LOSE)
    wagered = sum(p.amount for p in settled)
    paid = sum(p.payout or 0 for p in settled)
    net = paid - wagered

    return SettlementStats(
        total_bets=total,
        wins=wins,
        losses=losses,
        win_rate=round(wins / total * 100, 1) if total else 0.0,
        total_wagered=wagered,
        total_payout=paid,
        net_profit=net,
        roi=round(net / wagered * 100, 1) if wagered else 0.0,
    )


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.post("", response_model=PositionRow)
async def open_position_endpoint(
    body: OpenPositionRequest,
    session: AsyncSession = Depends(get_session),
) -> PositionRow:
    """Open a position at the latest index price."""
    try:
        position = await open_position(
            session,
            user_id=body.user_id,
            market_id=body.market_id,
            side=body.side,
            amount=body.amount,
            stop_loss=body.stop_loss,
            take_profit=body.take_profit,
            hold_duration=body.hold_duration,
            stop_loss_payout=body.stop_loss_payout,
            take_profit_payout=body.take_profit_payout,
        )
    except SettlementError as exc:
        raise _http_error(exc) from exc
    return _position_to_row(position)


@router.get("/active", response_model=PositionsResponse)
async def active_positions(
    user_id: int = Query(..., description="Owner of the positions"),
    session: AsyncSession = Depends(get_session),
) -> PositionsResponse:
    """A user's ACTIVE positions with mark-to-market P&L."""
    rows = (await session.execute(
        select(Position, Market)
        .join(Market, Position.market_id == Market.id)
        .where(Position.user_id == user_id, Position.status == PositionStatus.ACTIVE)
        .order_by(col(Position.opened_at).desc())
    )).all()

    positions = []
    for position, market in rows:
        row = _position_to_row(position, market.category)
        snapshot = await latest_index(session, market.category)
        if snapshot is not None and position.entry_price:
            pnl = compute_profit_percent(position.entry_price, snapshot.value, position.side)
            row.current_price = snapshot.value
            row.pnl_percent = round(pnl, 2)
            row.unrealized_pnl = round(position.amount * pnl / 100, 2)
        positions.append(row)

    return PositionsResponse(count=len(positions), positions=positions)


@router.get("/history", response_model=PositionsResponse)
async def position_history(
    user_id: int = Query(..., description="Owner of the positions"),
    limit: int = Query(20, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
) -> PositionsResponse:
    """A user's settled positions, most recent first."""
    rows = (await session.execute(
        select(Position)
        .where(Position.user_id == user_id, Position.status == PositionStatus.SETTLED)
        .order_by(col(Position.settled_at).desc())
        .limit(limit)
    )).scalars().all()

    positions = [_position_to_row(p) for p in rows]
    return PositionsResponse(count=len(positions), positions=positions)


@router.get("/stats", response_model=SettlementStats)
async def settlement_stats(
    user_id: int = Query(..., description="Owner of the positions"),
    session: AsyncSession = Depends(get_session),
) -> SettlementStats:
    """Settlement statistics for a user."""
    settled = (await session.execute(
        select(Position).where(
            Position.user_id == user_id,
            Position.status == PositionStatus.SETTLED,
        )
    )).scalars().all()
    return build_stats(list(settled))


@router.post("/{position_id}/close")
async def close_position_endpoint(
    position_id: int,
    body: ClosePositionRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> dict:
    """Manually close a position at the latest price."""
    try:
        result = await engine.close_position(body.user_id, position_id)
    except SettlementError as exc:
        raise _http_error(exc) from exc
    return result.to_dict()
