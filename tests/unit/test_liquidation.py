"""
test_liquidation.py - Unit tests for the liquidation engine

Tests:
- calculate_liquidation: fully collateralized, protocol fee, bad debt
- mark / unmark eligibility and the grace window
- liquidate: moves, records, every rejection path
- marker priority (unmarked_delay_seconds)
- retrieve_leftover
- find_unsafe_positions and the liquidation log
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from stabilis import (
    LiquidationRecord, calculate_liquidation, compute_mark, compute_unmark, compute_liquidate,
    compute_retrieve_leftover, find_unsafe_positions,
    ValidationError, StateError, NotLiquidatable, NothingToClaim, ProtocolPaused, InsolvencyError,
    InsufficientRepayment, InsufficientFunds, Unauthorized, PositionAlreadyLiquidated,
    SYSTEM_WALLET, VAULT_WALLET, TREASURY_WALLET, OriginType,
)
from stabilis.units import is_unsafe, liquidation_log

from tests.helpers import T0


def _set_state(view, unit, **fields):
    view._states[unit] = {**view.get_unit_state(unit), **fields}


def _mark(view):
    _set_state(view, "CDP_1", status="Marked", marked_at=T0, marked_by="keeper",
               grace_expiry=T0 + timedelta(seconds=300))


def _moves(pending):
    return [(m.source, m.dest, m.unit_symbol, m.quantity) for m in pending.moves]


def _new_state(pending, unit):
    return next(sc.new_state for sc in pending.state_changes if sc.unit == unit)


# ============================================================================
# SPLIT CALCULATION
# ============================================================================

class TestCalculateLiquidation:
    """Tests for calculate_liquidation."""

    def test_fully_collateralized(self):
        split = calculate_liquidation(Decimal("150"), Decimal("100"), Decimal("0.8"), Decimal("0.10"))
        assert split.required_repayment == Decimal("100")
        assert split.collateral_seized == Decimal("137.5")
        assert split.penalty_collected == Decimal("12.5")
        assert split.leftover_collateral == Decimal("12.5")
        assert split.protocol_fee == Decimal("0")
        assert split.bad_debt == Decimal("0")

    def test_protocol_fee_taken_from_remainder(self):
        split = calculate_liquidation(Decimal("150"), Decimal("100"), Decimal("0.8"), Decimal("0.10"), Decimal("0.05"))
        assert split.protocol_fee == Decimal("6.25")
        assert split.leftover_collateral == Decimal("6.25")

    def test_protocol_fee_capped_at_remainder(self):
        split = calculate_liquidation(Decimal("140"), Decimal("100"), Decimal("0.8"), Decimal("0.10"), Decimal("0.10"))
        assert split.protocol_fee == Decimal("2.5")
        assert split.leftover_collateral == Decimal("0")

    def test_undercollateralized_records_bad_debt(self):
        split = calculate_liquidation(Decimal("150"), Decimal("100"), Decimal("0.5"), Decimal("0.10"))
        assert split.collateral_seized == Decimal("150")
        assert split.required_repayment == Decimal("68.181818181818181819")
        assert split.bad_debt == Decimal("100") - Decimal("68.181818181818181819")
        assert split.leftover_collateral == Decimal("0")

    def test_seizure_never_exceeds_collateral(self):
        split = calculate_liquidation(Decimal("1"), Decimal("3"), Decimal("3"), Decimal("0.10"))
        assert split.collateral_seized + split.protocol_fee + split.leftover_collateral == Decimal("1")

    def test_non_positive_price_raises(self):
        with pytest.raises(ValidationError):
            calculate_liquidation(Decimal("150"), Decimal("100"), Decimal("0"), Decimal("0.10"))

    def test_is_unsafe_boundary(self):
        assert is_unsafe(Decimal("1.2"), Decimal("1.2"))
        assert not is_unsafe(Decimal("1.2000001"), Decimal("1.2"))


# ============================================================================
# MARK / UNMARK
# ============================================================================

class TestMark:
    """Tests for compute_mark and compute_unmark."""

    def test_mark_at_liquidation_ratio(self, position_view):
        pending = compute_mark(position_view, "keeper", "CDP_1", Decimal("0.8"))
        pos = _new_state(pending, "CDP_1")
        assert pos["status"] == "Marked"
        assert pos["marked_by"] == "keeper"
        assert pos["marked_at"] == T0
        assert pos["grace_expiry"] == T0 + timedelta(seconds=300)
        assert pending.moves == ()
        assert pending.origin.origin_type == OriginType.KEEPER

    def test_mark_healthy_position(self, position_view):
        with pytest.raises(NotLiquidatable):
            compute_mark(position_view, "keeper", "CDP_1", Decimal("0.81"))

    def test_mark_twice(self, position_view):
        _mark(position_view)
        with pytest.raises(StateError):
            compute_mark(position_view, "keeper", "CDP_1", Decimal("0.5"))

    def test_unmark_recovered_position(self, position_view):
        _mark(position_view)
        pending = compute_unmark(position_view, "alice", "CDP_1", Decimal("1"))
        pos = _new_state(pending, "CDP_1")
        assert pos["status"] == "Open"
        assert pos["marked_at"] is None
        assert pos["grace_expiry"] is None

    def test_unmark_still_unsafe(self, position_view):
        _mark(position_view)
        with pytest.raises(StateError, match="still"):
            compute_unmark(position_view, "alice", "CDP_1", Decimal("0.8"))

    def test_unmark_open_position(self, position_view):
        with pytest.raises(StateError):
            compute_unmark(position_view, "alice", "CDP_1", Decimal("1"))


# ============================================================================
# LIQUIDATE
# ============================================================================

class TestLiquidate:
    """Tests for compute_liquidate."""

    def test_liquidate_unsafe_position(self, position_view):
        _mark(position_view)
        pending = compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("0.8"))
        assert _moves(pending) == [
            ("bob", SYSTEM_WALLET, "STAB", Decimal("100")),
            (VAULT_WALLET, "bob", "XRD", Decimal("137.5")),
        ]
        pos = _new_state(pending, "CDP_1")
        assert pos["status"] == "Liquidated"
        assert pos["principal_debt"] == Decimal("0")
        assert pos["collateral_amount"] == Decimal("0")
        assert pos["leftover_collateral"] == Decimal("12.5")
        assert _new_state(pending, "COLLATERAL:XRD")["total_debt"] == Decimal("0")

        (record,) = _new_state(pending, "STABILIS")["liquidation_log"]
        record = LiquidationRecord.from_dict(record)
        assert record.liquidator == "bob"
        assert record.collateral_seized == Decimal("137.5")
        assert record.debt_repaid == Decimal("100")
        assert record.key == ("CDP_1", T0)

    def test_liquidate_with_protocol_fee(self, position_view):
        _mark(position_view)
        _set_state(position_view, "COLLATERAL:XRD", protocol_fee_pct=Decimal("0.05"))
        pending = compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("0.8"))
        assert (VAULT_WALLET, TREASURY_WALLET, "XRD", Decimal("6.25")) in _moves(pending)

    def test_overpayment_not_taken(self, position_view):
        _mark(position_view)
        pending = compute_liquidate(position_view, "bob", "CDP_1", Decimal("500"), Decimal("0.8"))
        assert pending.moves[0].quantity == Decimal("100")

    def test_recovered_within_grace_window(self, position_view):
        _mark(position_view)
        with pytest.raises(NotLiquidatable, match="grace window"):
            compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("1"))

    def test_recovered_after_grace_window(self, position_view):
        _mark(position_view)
        position_view._time = T0 + timedelta(seconds=300)
        pending = compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("1"))
        assert _new_state(pending, "CDP_1")["leftover_collateral"] == Decimal("40")

    def test_bad_debt_recorded(self, position_view):
        _mark(position_view)
        pending = compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("0.5"))
        bad_debt = Decimal("100") - Decimal("68.181818181818181819")
        assert _new_state(pending, "CDP_1")["bad_debt"] == bad_debt
        assert _new_state(pending, "STABILIS")["total_bad_debt"] == bad_debt
        assert pending.moves[0].quantity == Decimal("68.181818181818181819")

    def test_bad_debt_refused(self, position_view):
        _mark(position_view)
        with pytest.raises(InsolvencyError, match="bad debt"):
            compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("0.5"), allow_bad_debt=False)

    def test_short_repayment(self, position_view):
        _mark(position_view)
        with pytest.raises(InsufficientRepayment):
            compute_liquidate(position_view, "bob", "CDP_1", Decimal("99"), Decimal("0.8"))

    def test_liquidator_without_funds(self, position_view):
        _mark(position_view)
        with pytest.raises(InsufficientFunds):
            compute_liquidate(position_view, "carol", "CDP_1", Decimal("100"), Decimal("0.8"))

    def test_open_position_not_liquidatable(self, position_view):
        with pytest.raises(StateError, match="Open"):
            compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("0.5"))

    def test_already_liquidated(self, position_view):
        _set_state(position_view, "CDP_1", status="Liquidated",
                   collateral_amount=Decimal("0"), principal_debt=Decimal("0"))
        with pytest.raises(PositionAlreadyLiquidated):
            compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("0.5"))

    def test_marker_priority_excludes_others(self, position_view):
        _mark(position_view)
        _set_state(position_view, "STABILIS", unmarked_delay_seconds=600)
        with pytest.raises(NotLiquidatable, match="reserved for its marker keeper"):
            compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("0.8"))

    def test_marker_liquidates_during_priority(self, position_view):
        _mark(position_view)
        _set_state(position_view, "CDP_1", marked_by="bob")
        _set_state(position_view, "STABILIS", unmarked_delay_seconds=600)
        pending = compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("0.8"))
        assert _new_state(pending, "CDP_1")["status"] == "Liquidated"

    def test_priority_ends_after_grace_plus_delay(self, position_view):
        _mark(position_view)
        _set_state(position_view, "STABILIS", unmarked_delay_seconds=600)
        position_view._time = T0 + timedelta(seconds=899)
        with pytest.raises(NotLiquidatable, match="reserved"):
            compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("0.8"))
        position_view._time = T0 + timedelta(seconds=900)
        pending = compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("0.8"))
        assert _moves(pending)[0] == ("bob", SYSTEM_WALLET, "STAB", Decimal("100"))

    def test_liquidations_stopped(self, position_view):
        _mark(position_view)
        _set_state(position_view, "STABILIS", stop_liquidations=True)
        with pytest.raises(ProtocolPaused):
            compute_liquidate(position_view, "bob", "CDP_1", Decimal("100"), Decimal("0.8"))


# ============================================================================
# RETRIEVE LEFTOVER
# ============================================================================

class TestRetrieveLeftover:
    """Tests for compute_retrieve_leftover."""

    def _liquidated(self, view, leftover="12.5"):
        _set_state(view, "CDP_1", status="Liquidated", collateral_amount=Decimal("0"),
                   principal_debt=Decimal("0"), leftover_collateral=Decimal(leftover))

    def test_retrieve(self, position_view):
        self._liquidated(position_view)
        pending = compute_retrieve_leftover(position_view, "alice", "CDP_1")
        assert _moves(pending) == [(VAULT_WALLET, "alice", "XRD", Decimal("12.5"))]
        assert _new_state(pending, "CDP_1")["leftover_collateral"] == Decimal("0")

    def test_retrieve_by_non_owner(self, position_view):
        self._liquidated(position_view)
        with pytest.raises(Unauthorized):
            compute_retrieve_leftover(position_view, "bob", "CDP_1")

    def test_retrieve_from_open_position(self, position_view):
        with pytest.raises(StateError):
            compute_retrieve_leftover(position_view, "alice", "CDP_1")

    def test_nothing_to_claim(self, position_view):
        self._liquidated(position_view, leftover="0")
        with pytest.raises(NothingToClaim):
            compute_retrieve_leftover(position_view, "alice", "CDP_1")


# ============================================================================
# QUERIES
# ============================================================================

class TestLiquidationQueries:
    """Tests for find_unsafe_positions and liquidation_log."""

    def test_find_unsafe_positions(self, position_view):
        assert find_unsafe_positions(position_view, {"XRD": Decimal("0.8")}) == [("CDP_1", Decimal("1.2"))]
        assert find_unsafe_positions(position_view, {"XRD": Decimal("0.9")}) == []

    def test_positions_without_price_skipped(self, position_view):
        assert find_unsafe_positions(position_view, {}) == []

    def test_marked_positions_not_reported(self, position_view):
        _mark(position_view)
        assert find_unsafe_positions(position_view, {"XRD": Decimal("0.5")}) == []

    def test_lowest_ratio_first(self, position_view):
        position_view._states["CDP_2"] = {
            **position_view.get_unit_state("CDP_1"), "id": "CDP_2", "collateral_amount": Decimal("130"),
        }
        unsafe = find_unsafe_positions(position_view, {"XRD": Decimal("0.8")})
        assert [pid for pid, _ in unsafe] == ["CDP_2", "CDP_1"]

    def test_liquidation_log_filter(self, position_view):
        records = [
            LiquidationRecord("CDP_1", "bob", Decimal("1"), Decimal("1"), Decimal("0"), Decimal("0"), T0),
            LiquidationRecord("CDP_2", "bob", Decimal("2"), Decimal("2"), Decimal("0"), Decimal("0"), T0),
        ]
        _set_state(position_view, "STABILIS", liquidation_log=[r.to_dict() for r in records])
        assert liquidation_log(position_view) == records
        assert liquidation_log(position_view, "CDP_2") == [records[1]]
