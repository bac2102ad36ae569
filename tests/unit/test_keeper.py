"""
test_keeper.py - Unit tests for the Keeper

Tests:
- step(): time advance, interest accrual, marking of unsafe positions
- PID ticks from a registered market feed
- Stale prices stop the step; unused collateral types are not priced
- run() over several timestamps
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from stabilis import (
    Keeper, ConstantProductPool, TimeSeriesPriceFeed, PositionStatus, StalePriceError, collateral_token,
)

from tests.helpers import T0, xrd_collateral_type


def _oracle_update(engine, price, timestamp):
    engine.prices.feeds["XRD"].update_price("XRD", Decimal(price), timestamp)


def _events(transactions):
    return [tx.origin.event_type for tx in transactions]


class TestKeeperStep:
    """Tests for Keeper.step."""

    def test_step_advances_time_and_accrues(self, engine):
        keeper = Keeper(engine)
        ts = T0 + timedelta(minutes=10)
        executed = keeper.step(ts)
        assert engine.now == ts
        assert _events(executed) == ["ACCRUE"]
        assert engine.ledger.get_unit_state("COLLATERAL:XRD")["last_update_timestamp"] == ts

    def test_step_marks_unsafe_positions(self, open_position):
        engine, position_id = open_position
        keeper = Keeper(engine, keeper_id="keeper_bot")
        ts = T0 + timedelta(minutes=1)
        _oracle_update(engine, "0.8", ts)

        executed = keeper.step(ts)
        assert "MARK" in _events(executed)
        pos = engine.position(position_id)
        assert pos.status == PositionStatus.MARKED
        assert pos.marked_by == "keeper_bot"

    def test_step_leaves_healthy_positions(self, open_position):
        engine, position_id = open_position
        ts = T0 + timedelta(minutes=1)
        _oracle_update(engine, "0.81", ts)
        Keeper(engine).step(ts)
        assert engine.position(position_id).status == PositionStatus.OPEN

    def test_step_ticks_pid_from_pool(self, engine):
        engine.set_pid_params("admin", kp=Decimal("0.5"), base_rate=Decimal("0.02"))
        engine.prices.register_feed("STAB", ConstantProductPool("STAB", "USDC", 1000, 1050))
        ts = T0 + timedelta(minutes=1)
        executed = Keeper(engine).step(ts)
        assert _events(executed) == ["ACCRUE", "PID_TICK", "ACCRUE"]
        assert engine.current_rate() == Decimal("0.045")
        state = engine.ledger.get_unit_state("COLLATERAL:XRD")
        assert state["current_annual_rate"] == Decimal("0.045")
        # The minute before the tick accrued at the old rate.
        assert state["cumulative_interest_index"] == Decimal("1")

    def test_stale_price_stops_step(self, open_position):
        engine, _ = open_position
        with pytest.raises(StalePriceError):
            Keeper(engine).step(T0 + timedelta(hours=2))

    def test_unused_collateral_type_without_price(self, open_position):
        engine, position_id = open_position
        engine.ledger.register_unit(collateral_token("ETH", "Ether"))
        engine.add_collateral_type("admin", xrd_collateral_type(id="ETH", price_feed_id="ETH"))
        ts = T0 + timedelta(minutes=1)
        _oracle_update(engine, "0.8", ts)

        executed = Keeper(engine).step(ts)
        assert _events(executed) == ["ACCRUE", "ACCRUE", "MARK"]
        assert engine.position(position_id).status == PositionStatus.MARKED

    def test_keeper_wallet_registered(self, engine):
        Keeper(engine, keeper_id="keeper_7")
        assert engine.ledger.is_registered("keeper_7")


class TestKeeperRun:
    """Tests for Keeper.run."""

    def test_run_collects_transactions(self, open_position):
        engine, position_id = open_position
        keeper = Keeper(engine)
        t1 = T0 + timedelta(minutes=1)
        t2 = T0 + timedelta(minutes=2)
        engine.prices.register_feed("XRD", TimeSeriesPriceFeed({
            "XRD": [(T0, Decimal("1")), (t1, Decimal("1")), (t2, Decimal("0.7"))],
        }))

        executed = keeper.run([t1, t2])
        assert _events(executed) == ["ACCRUE", "ACCRUE", "MARK"]
        assert engine.position(position_id).status == PositionStatus.MARKED
