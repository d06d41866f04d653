"""
tests/conftest.py
Shared fixtures for the test suite.

Every test gets its own file-backed SQLite database so that settlements,
which open their own sessions, see the same data as the test body.
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import database.models as _models  # noqa: F401 registers table metadata
from app.services.config_store import ComboConfigStore
from app.services.notifier import EventNotifier
from app.services.price_lookup import PriceSnapshot
from app.services.settlement import SettlementEngine
from database.models import (
    FootballMatch,
    Market,
    MarketIndex,
    Position,
    PositionSide,
    PositionStatus,
    Team,
    User,
)


class RecordingNotifier(EventNotifier):
    """Keeps every event it receives, in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def named(self, name: str) -> list[dict]:
        return [payload for event, payload in self.events if event == name]

    async def balance_updated(self, user_id, new_balance):
        self.events.append(("balance_updated", {"user_id": user_id, "new_balance": new_balance}))

    async def bet_settled(self, user_id, position_id, result, payout, exit_price,
                          exit_reason, profit_percent, commentary=""):
        self.events.append(("bet_settled", {
            "user_id": user_id,
            "position_id": position_id,
            "result": result,
            "payout": payout,
            "exit_price": exit_price,
            "exit_reason": exit_reason,
            "profit_percent": profit_percent,
            "commentary": commentary,
        }))

    async def margin_call(self, user_id, position_id, category, profit_percent):
        self.events.append(("margin_call", {
            "user_id": user_id,
            "position_id": position_id,
            "category": category,
            "profit_percent": profit_percent,
        }))


class StubPrices:
    """Price lookup double: category -> value, None, or an exception to raise."""

    def __init__(self, prices: dict | None = None) -> None:
        self.prices = dict(prices or {})

    async def latest(self, category: str) -> PriceSnapshot | None:
        value = self.prices.get(category)
        if isinstance(value, Exception):
            raise value
        if value is None:
            return None
        return PriceSnapshot(value=value, timestamp=datetime.now(timezone.utc))


class Seed:
    """Inserts fixture rows, each in its own committed session."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def _add(self, row):
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
        return row

    async def team(self, name: str = "Red", total_pts: float = 0.0) -> Team:
        return await self._add(Team(name=name, total_pts=total_pts))

    async def user(self, username: str = "alice", pts: float = 1000.0, **fields) -> User:
        return await self._add(User(username=username, pts=pts, **fields))

    async def market(self, category: str = "BTC", title: str = "BTC index") -> Market:
        return await self._add(Market(title=title, category=category))

    async def index(self, category: str, value: float) -> MarketIndex:
        return await self._add(MarketIndex(category=category, value=value))

    async def match(self, **fields) -> FootballMatch:
        fields.setdefault("home_team", "Home FC")
        fields.setdefault("away_team", "Away United")
        return await self._add(FootballMatch(**fields))

    async def position(
        self,
        user: User,
        market: Market,
        amount: int = 100,
        entry_price: float = 100.0,
        side: PositionSide = PositionSide.LONG,
        expires_in_minutes: int = 60,
        **fields,
    ) -> Position:
        return await self._add(Position(
            user_id=user.id,
            market_id=market.id,
            side=side,
            amount=amount,
            entry_price=entry_price,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=expires_in_minutes),
            status=PositionStatus.ACTIVE,
            **fields,
        ))


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory bound to a fresh SQLite file with all tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def async_db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A single session on the per-test database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed(session_factory) -> Seed:
    return Seed(session_factory)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def combo_store() -> ComboConfigStore:
    """Uncached store so every settlement reads the current record."""
    return ComboConfigStore(ttl_seconds=0)


@pytest.fixture
def settlement_engine(session_factory, notifier, combo_store) -> SettlementEngine:
    return SettlementEngine(
        session_factory=session_factory,
        notifier=notifier,
        commentator=None,
        config_store=combo_store,
        locale="en",
    )


@pytest.fixture
def prices() -> StubPrices:
    """Empty price table; tests fill `prices.prices[category]`."""
    return StubPrices()
