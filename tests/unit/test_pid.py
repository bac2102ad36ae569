"""
test_pid.py - Unit tests for the PID interest controller

Tests:
- PIDParameters validation
- Error calculation: deadband and clamp
- calculate_tick: proportional, integral (with anti-windup bound), derivative
- Output clamping and stale tick handling
- compute_tick / compute_set_pid_params against a view
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from stabilis import (
    PIDParameters, PIDState, calculate_error, calculate_tick, load_pid, compute_tick,
    ValidationError, Unauthorized, UNIT_TYPE_PID,
)
from stabilis.units import initial_pid_state, current_rate, create_pid_unit, compute_set_pid_params

from tests.helpers import T0


def _params(**overrides) -> PIDParameters:
    fields = dict(
        target_peg=Decimal("1"), kp=Decimal("0"), ki=Decimal("0"), kd=Decimal("0"),
        base_rate=Decimal("0"), integral_bound=Decimal("100"),
    )
    fields.update(overrides)
    return PIDParameters(**fields)


# ============================================================================
# PARAMETERS
# ============================================================================

class TestPIDParameters:
    """Tests for PIDParameters validation."""

    def test_coerces_numbers(self):
        params = _params(kp=0.5, base_rate="0.02")
        assert params.kp == Decimal("0.5")
        assert params.base_rate == Decimal("0.02")

    def test_non_positive_peg_raises(self):
        with pytest.raises(ValidationError, match="target_peg"):
            _params(target_peg=Decimal("0"))

    def test_negative_min_rate_raises(self):
        with pytest.raises(ValidationError, match="min_rate"):
            _params(min_rate=Decimal("-0.01"))

    def test_min_above_max_raises(self):
        with pytest.raises(ValidationError, match="min_rate"):
            _params(min_rate=Decimal("0.5"), max_rate=Decimal("0.1"))

    def test_negative_integral_bound_raises(self):
        with pytest.raises(ValidationError, match="integral_bound"):
            _params(integral_bound=Decimal("-1"))

    def test_negative_deadband_raises(self):
        with pytest.raises(ValidationError, match="allowed_deviation"):
            _params(allowed_deviation=Decimal("-0.001"))

    def test_non_positive_error_clamp_raises(self):
        with pytest.raises(ValidationError, match="max_price_error"):
            _params(max_price_error=Decimal("0"))

    def test_initial_state_clamps_base_rate(self):
        params = _params(base_rate=Decimal("2"), max_rate=Decimal("0.5"))
        state = initial_pid_state(params)
        assert state.output_rate == Decimal("0.5")
        assert state.last_tick_timestamp is None
        assert state.integral_accumulator == Decimal("0")


# ============================================================================
# ERROR
# ============================================================================

class TestCalculateError:
    """Tests for calculate_error."""

    def test_relative_error(self):
        assert calculate_error(_params(target_peg=Decimal("2")), Decimal("2.1")) == Decimal("0.05")

    def test_below_peg_is_negative(self):
        assert calculate_error(_params(), Decimal("0.97")) == Decimal("-0.03")

    def test_deadband(self):
        params = _params(allowed_deviation=Decimal("0.005"))
        assert calculate_error(params, Decimal("1.005")) == Decimal("0")
        assert calculate_error(params, Decimal("0.995")) == Decimal("0")
        assert calculate_error(params, Decimal("1.006")) == Decimal("0.006")

    def test_error_clamp(self):
        params = _params(max_price_error=Decimal("0.1"))
        assert calculate_error(params, Decimal("1.5")) == Decimal("0.1")
        assert calculate_error(params, Decimal("0.2")) == Decimal("-0.1")


# ============================================================================
# TICK
# ============================================================================

class TestCalculateTick:
    """Tests for calculate_tick."""

    def test_proportional_example(self):
        params = _params(kp=Decimal("0.5"), base_rate=Decimal("0.02"))
        state = calculate_tick(params, initial_pid_state(params), Decimal("1.05"), T0)
        assert state.output_rate == Decimal("0.045")
        assert state.last_error == Decimal("0.05")
        assert state.last_tick_timestamp == T0

    def test_first_tick_has_no_integral(self):
        params = _params(ki=Decimal("1"))
        state = calculate_tick(params, initial_pid_state(params), Decimal("1.05"), T0)
        assert state.integral_accumulator == Decimal("0")

    def test_integral_accumulates_error_seconds(self):
        params = _params(ki=Decimal("0.001"))
        state = calculate_tick(params, initial_pid_state(params), Decimal("1.05"), T0)
        state = calculate_tick(params, state, Decimal("1.05"), T0 + timedelta(seconds=100))
        assert state.integral_accumulator == Decimal("5")
        assert state.output_rate == Decimal("0.005")

    def test_integral_bounded(self):
        params = _params(ki=Decimal("0.001"), integral_bound=Decimal("2"))
        state = calculate_tick(params, initial_pid_state(params), Decimal("1.05"), T0)
        state = calculate_tick(params, state, Decimal("1.05"), T0 + timedelta(seconds=100))
        assert state.integral_accumulator == Decimal("2")
        state = calculate_tick(params, state, Decimal("0.95"), T0 + timedelta(seconds=200))
        assert state.integral_accumulator == Decimal("-2")

    def test_derivative(self):
        params = _params(kd=Decimal("10"))
        state = calculate_tick(params, initial_pid_state(params), Decimal("1"), T0)
        state = calculate_tick(params, state, Decimal("1.1"), T0 + timedelta(seconds=10))
        assert state.output_rate == Decimal("0.1")

    def test_output_clamped(self):
        params = _params(kp=Decimal("10"), max_rate=Decimal("0.2"))
        high = calculate_tick(params, initial_pid_state(params), Decimal("1.5"), T0)
        assert high.output_rate == Decimal("0.2")
        low = calculate_tick(params, initial_pid_state(params), Decimal("0.5"), T0)
        assert low.output_rate == Decimal("0")

    def test_duplicate_and_stale_ticks_ignored(self):
        params = _params(kp=Decimal("1"))
        state = calculate_tick(params, initial_pid_state(params), Decimal("1.05"), T0 + timedelta(hours=1))
        assert calculate_tick(params, state, Decimal("1.5"), T0 + timedelta(hours=1)) is state
        assert calculate_tick(params, state, Decimal("1.5"), T0) is state

    def test_non_positive_price_raises(self):
        params = _params()
        with pytest.raises(ValidationError, match="market_price"):
            calculate_tick(params, initial_pid_state(params), Decimal("0"), T0)

    def test_current_rate_reclamps(self):
        state = PIDState(Decimal("0"), Decimal("0"), T0, Decimal("0.3"))
        assert current_rate(_params(max_rate=Decimal("0.1")), state) == Decimal("0.1")


# ============================================================================
# LEDGER-FACING FUNCTIONS
# ============================================================================

class TestPIDOnLedger:
    """Tests for the PID unit and its compute functions."""

    def test_create_pid_unit(self):
        unit = create_pid_unit("STAB", _params(base_rate=Decimal("0.01")))
        assert unit.symbol == "PID:STAB"
        assert unit.unit_type == UNIT_TYPE_PID
        assert unit.state["output_rate"] == Decimal("0.01")

    def test_compute_tick(self, position_view):
        pending = compute_tick(position_view, "STAB", Decimal("1.02"), source_id="keeper")
        (change,) = pending.state_changes
        assert change.unit == "PID:STAB"
        assert change.new_state["last_tick_timestamp"] == position_view.current_time
        assert change.new_state["last_error"] == Decimal("0.02")

    def test_compute_tick_duplicate_is_empty(self, position_view):
        first = compute_tick(position_view, "STAB", Decimal("1.02"))
        position_view._states["PID:STAB"] = first.state_changes[0].new_state
        assert compute_tick(position_view, "STAB", Decimal("0.9")).is_empty()

    def test_set_pid_params_reclamps_integral(self, position_view):
        pid = position_view.get_unit_state("PID:STAB")
        position_view._states["PID:STAB"] = {
            **pid, "integral_bound": Decimal("10"), "integral_accumulator": Decimal("8"),
        }
        pending = compute_set_pid_params(position_view, "admin", "STAB", integral_bound=Decimal("5"), ki=Decimal("0.01"))
        new_state = pending.state_changes[0].new_state
        assert new_state["integral_accumulator"] == Decimal("5")
        assert new_state["ki"] == Decimal("0.01")

    def test_set_pid_params_requires_admin(self, position_view):
        with pytest.raises(Unauthorized):
            compute_set_pid_params(position_view, "alice", "STAB", kp=Decimal("1"))

    def test_set_unknown_pid_param(self, position_view):
        with pytest.raises(ValidationError, match="Unknown PID parameters"):
            compute_set_pid_params(position_view, "admin", "STAB", gain=Decimal("1"))

    def test_load_pid(self, position_view):
        params, state = load_pid(position_view, "STAB")
        assert params.target_peg == Decimal("1")
        assert state.last_tick_timestamp is None
