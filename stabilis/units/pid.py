"""
pid.py - PID Interest Controller

Keeps the stablecoin near its peg by steering the borrowing rate. Each tick
compares the market price with the peg and produces a new annual rate:

    error      = (market_price - target_peg) / target_peg
    integral   = clamp(integral + error * elapsed, -integral_bound, +integral_bound)
    derivative = (error - last_error) / elapsed       (0 on the first tick)
    output     = clamp(base_rate + Kp*error + Ki*integral + Kd*derivative, min_rate, max_rate)

elapsed is measured in seconds. Errors within +/-allowed_deviation count as
zero; when max_price_error is set the error is clamped to +/-max_price_error
before it reaches the controller.

Ticks at or before the last tick are ignored, so a replayed or reordered
price update cannot move the controller.

Example:
    params = PIDParameters(target_peg=Decimal("1"), kp=Decimal("0.5"), ki=Decimal("0"),
                           kd=Decimal("0"), base_rate=Decimal("0.02"))
    state = calculate_tick(params, initial_pid_state(params), Decimal("1.05"), now)
    state.output_rate   # Decimal("0.045")
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, Optional, Tuple

from ..core import (
    LedgerView, PendingTransaction, Unit, UnitStateChange, TransactionOrigin, OriginType,
    PID_UNIT_PREFIX, UNIT_TYPE_PID,
    ValidationError,
    build_transaction, empty_pending_transaction, state_unit, to_decimal,
)
from .protocol import load_protocol, require_admin


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class PIDParameters:
    """Gains, clamps and peg of the controller. Retuned only by the administrator."""
    target_peg: Decimal
    kp: Decimal
    ki: Decimal
    kd: Decimal
    base_rate: Decimal
    min_rate: Decimal = Decimal("0")
    max_rate: Decimal = Decimal("1")
    integral_bound: Decimal = Decimal("0")
    allowed_deviation: Decimal = Decimal("0")
    max_price_error: Optional[Decimal] = None

    def __post_init__(self):
        for name in ('target_peg', 'kp', 'ki', 'kd', 'base_rate', 'min_rate',
                     'max_rate', 'integral_bound', 'allowed_deviation'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))
        if self.max_price_error is not None and not isinstance(self.max_price_error, Decimal):
            object.__setattr__(self, 'max_price_error', to_decimal(self.max_price_error))

        if self.target_peg <= 0:
            raise ValidationError(f"target_peg must be positive, got {self.target_peg}")
        # A negative rate would shrink the interest index.
        if self.min_rate < 0:
            raise ValidationError(f"min_rate must be >= 0, got {self.min_rate}")
        if self.min_rate > self.max_rate:
            raise ValidationError(f"min_rate {self.min_rate} > max_rate {self.max_rate}")
        if self.integral_bound < 0:
            raise ValidationError(f"integral_bound must be >= 0, got {self.integral_bound}")
        if self.allowed_deviation < 0:
            raise ValidationError(f"allowed_deviation must be >= 0, got {self.allowed_deviation}")
        if self.max_price_error is not None and self.max_price_error <= 0:
            raise ValidationError(f"max_price_error must be positive, got {self.max_price_error}")


@dataclass(frozen=True, slots=True)
class PIDState:
    """Controller memory between ticks."""
    integral_accumulator: Decimal
    last_error: Decimal
    last_tick_timestamp: Optional[datetime]
    output_rate: Decimal


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    return max(low, min(high, value))


def initial_pid_state(params: PIDParameters) -> PIDState:
    """Fresh controller: no history, output at the clamped base rate."""
    return PIDState(
        integral_accumulator=Decimal("0"),
        last_error=Decimal("0"),
        last_tick_timestamp=None,
        output_rate=clamp(params.base_rate, params.min_rate, params.max_rate),
    )


def calculate_error(params: PIDParameters, market_price: Decimal) -> Decimal:
    """Relative deviation from the peg after clamping and the deadband."""
    error = (market_price - params.target_peg) / params.target_peg
    if params.max_price_error is not None:
        error = clamp(error, -params.max_price_error, params.max_price_error)
    if abs(error) <= params.allowed_deviation:
        return Decimal("0")
    return error


def calculate_tick(
    params: PIDParameters,
    state: PIDState,
    market_price: Decimal,
    now: datetime,
) -> PIDState:
    """
    Advance the controller by one observation.

    Returns the input state unchanged when now is at or before the last tick.

    Raises:
        ValidationError: If market_price is not positive
    """
    market_price = to_decimal(market_price)
    if market_price <= 0:
        raise ValidationError(f"market_price must be positive, got {market_price}")

    if state.last_tick_timestamp is not None and now <= state.last_tick_timestamp:
        return state

    error = calculate_error(params, market_price)

    if state.last_tick_timestamp is None:
        elapsed = Decimal("0")
    else:
        elapsed = Decimal(str((now - state.last_tick_timestamp).total_seconds()))

    integral = clamp(
        state.integral_accumulator + error * elapsed,
        -params.integral_bound,
        params.integral_bound,
    )
    if elapsed > 0:
        derivative = (error - state.last_error) / elapsed
    else:
        derivative = Decimal("0")

    raw_output = (
        params.base_rate
        + params.kp * error
        + params.ki * integral
        + params.kd * derivative
    )
    return PIDState(
        integral_accumulator=integral,
        last_error=error,
        last_tick_timestamp=now,
        output_rate=clamp(raw_output, params.min_rate, params.max_rate),
    )


def current_rate(params: PIDParameters, state: PIDState) -> Decimal:
    """Latest output, re-clamped in case the clamps were retuned since the tick."""
    return clamp(state.output_rate, params.min_rate, params.max_rate)


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def pid_unit_symbol(stablecoin_symbol: str) -> str:
    return f"{PID_UNIT_PREFIX}{stablecoin_symbol}"


def load_pid(view: LedgerView, stablecoin_symbol: str) -> Tuple[PIDParameters, PIDState]:
    raw = view.get_unit_state(pid_unit_symbol(stablecoin_symbol))
    params = PIDParameters(
        target_peg=to_decimal(raw['target_peg']),
        kp=to_decimal(raw['kp']),
        ki=to_decimal(raw['ki']),
        kd=to_decimal(raw['kd']),
        base_rate=to_decimal(raw['base_rate']),
        min_rate=to_decimal(raw['min_rate']),
        max_rate=to_decimal(raw['max_rate']),
        integral_bound=to_decimal(raw['integral_bound']),
        allowed_deviation=to_decimal(raw.get('allowed_deviation', Decimal("0"))),
        max_price_error=(
            to_decimal(raw['max_price_error']) if raw.get('max_price_error') is not None else None
        ),
    )
    state = PIDState(
        integral_accumulator=to_decimal(raw['integral_accumulator']),
        last_error=to_decimal(raw['last_error']),
        last_tick_timestamp=raw.get('last_tick_timestamp'),
        output_rate=to_decimal(raw['output_rate']),
    )
    return params, state


def to_state_dict(params: PIDParameters, state: PIDState) -> Dict[str, Any]:
    return {
        'target_peg': params.target_peg,
        'kp': params.kp,
        'ki': params.ki,
        'kd': params.kd,
        'base_rate': params.base_rate,
        'min_rate': params.min_rate,
        'max_rate': params.max_rate,
        'integral_bound': params.integral_bound,
        'allowed_deviation': params.allowed_deviation,
        'max_price_error': params.max_price_error,
        'integral_accumulator': state.integral_accumulator,
        'last_error': state.last_error,
        'last_tick_timestamp': state.last_tick_timestamp,
        'output_rate': state.output_rate,
    }


def controller_rate(view: LedgerView) -> Decimal:
    """Current clamped output of the deployment's controller."""
    _, protocol = load_protocol(view)
    params, state = load_pid(view, protocol.stablecoin)
    return current_rate(params, state)


def create_pid_unit(stablecoin_symbol: str, params: PIDParameters) -> Unit:
    return state_unit(
        symbol=pid_unit_symbol(stablecoin_symbol),
        name=f"{stablecoin_symbol} interest controller",
        unit_type=UNIT_TYPE_PID,
        state=to_state_dict(params, initial_pid_state(params)),
    )


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def compute_tick(
    view: LedgerView,
    stablecoin_symbol: str,
    market_price: Decimal,
    source_id: str = "keeper",
) -> PendingTransaction:
    """
    Tick the controller at the view's current time.

    Returns an empty transaction for duplicate or out-of-order ticks.
    """
    symbol = pid_unit_symbol(stablecoin_symbol)
    params, state = load_pid(view, stablecoin_symbol)
    new_state = calculate_tick(params, state, market_price, view.current_time)
    if new_state == state:
        return empty_pending_transaction(view)

    old_raw = view.get_unit_state(symbol)
    origin = TransactionOrigin(OriginType.KEEPER, source_id, symbol, "PID_TICK")
    return build_transaction(
        view, [],
        [UnitStateChange(symbol, old_raw, to_state_dict(params, new_state))],
        origin,
    )


def compute_set_pid_params(
    view: LedgerView,
    caller: str,
    stablecoin_symbol: str,
    **changes,
) -> PendingTransaction:
    """
    Retune the controller. Admin only.

    The accumulated integral is re-clamped to a changed integral_bound.
    """
    _, protocol = load_protocol(view)
    require_admin(protocol, caller)
    unknown = set(changes) - set(PIDParameters.__dataclass_fields__)
    if unknown:
        raise ValidationError(f"Unknown PID parameters: {sorted(unknown)}")

    symbol = pid_unit_symbol(stablecoin_symbol)
    params, state = load_pid(view, stablecoin_symbol)
    new_params = replace(params, **changes)
    new_state = replace(
        state,
        integral_accumulator=clamp(
            state.integral_accumulator, -new_params.integral_bound, new_params.integral_bound
        ),
    )

    old_raw = view.get_unit_state(symbol)
    origin = TransactionOrigin(OriginType.ADMIN, caller, symbol, "SET_PID_PARAMS")
    return build_transaction(
        view, [],
        [UnitStateChange(symbol, old_raw, to_state_dict(new_params, new_state))],
        origin,
    )
