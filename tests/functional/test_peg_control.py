"""
test_peg_control.py - Keeper-driven peg control against a liquidity pool

Tests:
- A stablecoin trading above the peg raises the borrowing rate
- Below the peg the rate falls to its floor
- The rate the controller sets is what positions pay
- Hourly keeper runs mark a position when the collateral slides
"""

from datetime import timedelta
from decimal import Decimal

from stabilis import (
    Keeper, ConstantProductPool, TimeSeriesPriceFeed, PIDParameters, PositionStatus,
)

from tests.helpers import T0, issue, make_engine


def _hourly(hours, price="1", changes=None):
    """Hourly XRD observations, optionally overridden from a given hour on."""
    points = []
    current = Decimal(price)
    for hour in range(hours + 1):
        if changes and hour in changes:
            current = Decimal(changes[hour])
        points.append((T0 + timedelta(hours=hour), current))
    return TimeSeriesPriceFeed({"XRD": points})


def _engine_with_pool(stable_reserve, quote_reserve):
    pid = PIDParameters(
        target_peg=Decimal("1"), kp=Decimal("0.5"), ki=Decimal("0"), kd=Decimal("0"),
        base_rate=Decimal("0.02"), min_rate=Decimal("0"), max_rate=Decimal("0.5"),
    )
    engine = make_engine(pid_params=pid)
    engine.prices.register_feed("XRD", _hourly(48))
    pool = ConstantProductPool("STAB", "USDC", stable_reserve, quote_reserve, fee=Decimal("0"))
    engine.prices.register_feed("STAB", pool)
    return engine, pool


class TestPegControl:
    """Controller reacting to the pool price."""

    def test_premium_raises_rate(self):
        engine, pool = _engine_with_pool(1000, 1000)
        keeper = Keeper(engine)

        keeper.step(T0 + timedelta(hours=1))
        assert engine.current_rate() == Decimal("0.02")

        # Buyers push STAB to 1.21.
        pool.swap("USDC", Decimal("100"), T0 + timedelta(hours=1))
        assert abs(pool.market_price() - Decimal("1.21")) < Decimal("1e-30")
        keeper.step(T0 + timedelta(hours=2))
        # 0.02 + 0.5 * 0.21
        assert abs(engine.current_rate() - Decimal("0.125")) < Decimal("1e-30")

    def test_discount_floors_rate(self):
        engine, pool = _engine_with_pool(1000, 900)
        Keeper(engine).step(T0 + timedelta(hours=1))
        # 0.02 + 0.5 * (-0.1) < 0
        assert engine.current_rate() == Decimal("0")

    def test_positions_pay_the_controlled_rate(self):
        engine, pool = _engine_with_pool(1000, 1100)
        keeper = Keeper(engine)
        position_id = engine.open("alice", "XRD", Decimal("1000"), Decimal("100"))

        # Rate 0.02 + 0.5 * 0.1 = 0.07 from the first tick on; the first hour ran at the base rate.
        keeper.run([T0 + timedelta(hours=h) for h in range(1, 25)])
        assert engine.current_rate() == Decimal("0.07")

        state = engine.ledger.get_unit_state("COLLATERAL:XRD")
        # Compounded hourly.
        hour = Decimal(3600) / Decimal(365 * 24 * 3600)
        expected_index = (1 + Decimal("0.02") * hour) * (1 + Decimal("0.07") * hour) ** 23
        assert abs(state["cumulative_interest_index"] - expected_index) < Decimal("1e-20")
        assert engine.outstanding_debt(position_id) > Decimal("100")


class TestKeeperScenario:
    """A day of hourly keeper runs while the collateral slides."""

    def test_slide_marks_then_liquidator_acts(self):
        engine = make_engine()
        engine.prices.register_feed("XRD", _hourly(24, changes={6: "0.9", 12: "0.8"}))
        position_id = engine.open("alice", "XRD", Decimal("150"), Decimal("100"))
        keeper = Keeper(engine, keeper_id="keeper_bot")

        keeper.run([T0 + timedelta(hours=h) for h in range(1, 12)])
        assert engine.position(position_id).status == PositionStatus.OPEN

        executed = keeper.step(T0 + timedelta(hours=12))
        assert [tx.origin.event_type for tx in executed] == ["ACCRUE", "MARK"]
        assert engine.position(position_id).marked_by == "keeper_bot"

        issue(engine.ledger, "bob", "STAB", 100)
        record = engine.liquidate("bob", position_id, Decimal("100"))
        assert record.collateral_seized == Decimal("137.5")
        assert engine.position(position_id).status == PositionStatus.LIQUIDATED

        # Later steps find nothing left to mark.
        executed = keeper.step(T0 + timedelta(hours=13))
        assert [tx.origin.event_type for tx in executed] == ["ACCRUE"]
