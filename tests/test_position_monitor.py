"""
tests/test_position_monitor.py
Tests for stop-loss / take-profit / expiry enforcement.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.services.position_monitor import (
    PositionMonitor,
    evaluate_risk_triggers,
    is_margin_call,
)
from core.exceptions import UpstreamUnavailable
from database.models import BetResult, ExitReason, Position, PositionSide, PositionStatus, User


async def _reload(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)


@pytest.fixture
def monitor(settlement_engine, prices, session_factory, notifier) -> PositionMonitor:
    return PositionMonitor(
        engine=settlement_engine,
        price_lookup=prices,
        session_factory=session_factory,
        notifier=notifier,
        max_concurrency=1,
    )


class TestEvaluateRiskTriggers:
    def test_take_profit_reached(self):
        assert evaluate_risk_triggers(10.0, stop_loss=5.0, take_profit=10.0) == ExitReason.TAKE_PROFIT

    def test_stop_loss_reached(self):
        assert evaluate_risk_triggers(-5.0, stop_loss=5.0, take_profit=10.0) == ExitReason.STOP_LOSS

    def test_between_thresholds(self):
        assert evaluate_risk_triggers(3.0, stop_loss=5.0, take_profit=10.0) is None

    def test_take_profit_checked_first(self):
        """With both satisfiable, take-profit wins."""
        assert evaluate_risk_triggers(-20.0, stop_loss=-30.0, take_profit=-25.0) == ExitReason.TAKE_PROFIT

    def test_unset_thresholds_never_fire(self):
        assert evaluate_risk_triggers(500.0, stop_loss=None, take_profit=None) is None
        assert evaluate_risk_triggers(-99.0, stop_loss=None, take_profit=None) is None

    def test_zero_threshold_treated_as_unset(self):
        assert evaluate_risk_triggers(0.0, stop_loss=0.0, take_profit=0.0) is None


class TestMarginCall:
    @pytest.mark.parametrize("profit, expected", [
        (-7.9, False),   # not yet at 80% of the stop
        (-8.0, True),    # exactly 80%
        (-9.5, True),
        (-10.0, False),  # the stop itself settles instead
        (-12.0, False),
        (4.0, False),
    ])
    def test_window(self, profit, expected):
        assert is_margin_call(profit, stop_loss=10.0) is expected

    def test_no_stop_loss(self):
        assert is_margin_call(-50.0, stop_loss=None) is False


@pytest.mark.asyncio
class TestRiskTriggerScan:
    async def test_take_profit_settles(self, seed, monitor, prices, session_factory):
        user = await seed.user(pts=0.0)
        market = await seed.market(category="BTC")
        pos = await seed.position(user, market, amount=100, entry_price=100.0, take_profit=10.0)
        prices.prices["BTC"] = 112.0

        settled = await monitor.check_stop_loss_take_profit()

        assert settled == 1
        stored = await _reload(session_factory, Position, pos.id)
        assert stored.status == PositionStatus.SETTLED
        assert stored.exit_reason == ExitReason.TAKE_PROFIT
        assert stored.exit_price == pytest.approx(112.0)
        assert stored.payout == 130

    async def test_short_stop_loss_settles(self, seed, monitor, prices, session_factory):
        user = await seed.user(pts=0.0)
        market = await seed.market(category="BTC")
        pos = await seed.position(
            user, market, amount=100, entry_price=100.0, side=PositionSide.SHORT, stop_loss=5.0
        )
        prices.prices["BTC"] = 106.0

        settled = await monitor.check_stop_loss_take_profit()

        assert settled == 1
        stored = await _reload(session_factory, Position, pos.id)
        assert stored.exit_reason == ExitReason.STOP_LOSS
        assert stored.result == BetResult.LOSE
        assert stored.payout == 80

    async def test_margin_call_warns_without_settling(
        self, seed, monitor, prices, notifier, session_factory
    ):
        user = await seed.user()
        market = await seed.market(category="BTC")
        pos = await seed.position(user, market, entry_price=100.0, stop_loss=10.0)
        prices.prices["BTC"] = 91.0

        settled = await monitor.check_stop_loss_take_profit()

        assert settled == 0
        warnings = notifier.named("margin_call")
        assert len(warnings) == 1
        assert warnings[0]["position_id"] == pos.id
        assert warnings[0]["category"] == "BTC"
        assert warnings[0]["profit_percent"] == pytest.approx(-9.0)
        stored = await _reload(session_factory, Position, pos.id)
        assert stored.status == PositionStatus.ACTIVE

    async def test_missing_price_skips(self, seed, monitor, session_factory):
        user = await seed.user()
        market = await seed.market(category="DOGE")
        pos = await seed.position(user, market, take_profit=1.0)

        assert await monitor.check_stop_loss_take_profit() == 0
        stored = await _reload(session_factory, Position, pos.id)
        assert stored.status == PositionStatus.ACTIVE

    async def test_one_bad_position_does_not_stop_the_scan(
        self, seed, monitor, prices, session_factory
    ):
        alice = await seed.user(username="alice", pts=0.0)
        bob = await seed.user(username="bob", pts=0.0)
        broken = await seed.market(category="BROKEN")
        btc = await seed.market(category="BTC")
        stuck = await seed.position(alice, broken, take_profit=1.0)
        fine = await seed.position(bob, btc, take_profit=1.0)
        prices.prices["BROKEN"] = UpstreamUnavailable("price feed timed out")
        prices.prices["BTC"] = 150.0

        settled = await monitor.check_stop_loss_take_profit()

        assert settled == 1
        assert (await _reload(session_factory, Position, stuck.id)).status == PositionStatus.ACTIVE
        assert (await _reload(session_factory, Position, fine.id)).status == PositionStatus.SETTLED

    async def test_unexpected_error_is_contained(self, seed, monitor, prices, session_factory):
        alice = await seed.user(username="alice", pts=0.0)
        bob = await seed.user(username="bob", pts=0.0)
        weird = await seed.market(category="WEIRD")
        btc = await seed.market(category="BTC")
        await seed.position(alice, weird, take_profit=1.0)
        fine = await seed.position(bob, btc, take_profit=1.0)
        prices.prices["WEIRD"] = RuntimeError("boom")
        prices.prices["BTC"] = 150.0

        assert await monitor.check_stop_loss_take_profit() == 1
        assert (await _reload(session_factory, Position, fine.id)).status == PositionStatus.SETTLED

    async def test_bounded_concurrency_settles_everything(
        self, seed, settlement_engine, prices, session_factory, notifier
    ):
        monitor = PositionMonitor(
            engine=settlement_engine,
            price_lookup=prices,
            session_factory=session_factory,
            notifier=notifier,
            max_concurrency=3,
        )
        market = await seed.market(category="BTC")
        ids = []
        for i in range(5):
            user = await seed.user(username=f"user{i}", pts=0.0)
            ids.append((await seed.position(user, market, take_profit=5.0)).id)
        prices.prices["BTC"] = 120.0

        assert await monitor.check_stop_loss_take_profit() == 5
        for position_id in ids:
            stored = await _reload(session_factory, Position, position_id)
            assert stored.status == PositionStatus.SETTLED


@pytest.mark.asyncio
class TestExpiryScan:
    async def test_expired_position_settles(self, seed, monitor, prices, session_factory):
        user = await seed.user(pts=0.0)
        market = await seed.market(category="BTC")
        pos = await seed.position(user, market, amount=100, entry_price=100.0, expires_in_minutes=-1)
        prices.prices["BTC"] = 120.0

        counts = await monitor.run_once()

        assert counts == {"triggered": 0, "expired": 1}
        stored = await _reload(session_factory, Position, pos.id)
        assert stored.exit_reason == ExitReason.EXPIRED
        assert stored.result == BetResult.WIN
        assert stored.payout == 120
        stored_user = await _reload(session_factory, User, user.id)
        assert stored_user.pts == pytest.approx(120.0)

    async def test_unexpired_position_left_open(self, seed, monitor, prices, session_factory):
        user = await seed.user()
        market = await seed.market(category="BTC")
        pos = await seed.position(user, market, expires_in_minutes=30)
        prices.prices["BTC"] = 120.0

        assert await monitor.check_expired_positions() == 0
        assert (await _reload(session_factory, Position, pos.id)).status == PositionStatus.ACTIVE

    async def test_expired_without_price_waits(self, seed, monitor, session_factory):
        user = await seed.user()
        market = await seed.market(category="BTC")
        pos = await seed.position(user, market, expires_in_minutes=-5)

        assert await monitor.check_expired_positions() == 0
        assert (await _reload(session_factory, Position, pos.id)).status == PositionStatus.ACTIVE

    async def test_trigger_takes_precedence_over_expiry(
        self, seed, monitor, prices, session_factory
    ):
        """An expired position whose take-profit also fired settles once, as TAKE_PROFIT."""
        user = await seed.user(pts=0.0)
        market = await seed.market(category="BTC")
        pos = await seed.position(user, market, take_profit=10.0, expires_in_minutes=-1)
        prices.prices["BTC"] = 115.0

        counts = await monitor.run_once()

        assert counts == {"triggered": 1, "expired": 0}
        stored = await _reload(session_factory, Position, pos.id)
        assert stored.exit_reason == ExitReason.TAKE_PROFIT


@pytest.mark.asyncio
class TestSchemaDrift:
    async def test_missing_tables_skip_the_tick(self, tmp_path, settlement_engine, prices, notifier):
        bare_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bare.db'}")
        bare_sessions = async_sessionmaker(bare_engine, class_=AsyncSession, expire_on_commit=False)
        monitor = PositionMonitor(
            engine=settlement_engine,
            price_lookup=prices,
            session_factory=bare_sessions,
            notifier=notifier,
        )

        try:
            assert await monitor.run_once() == {"triggered": 0, "expired": 0}
        finally:
            await bare_engine.dispose()
