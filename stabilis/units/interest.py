"""
interest.py - Interest Accrual Engine

Interest is tracked with one cumulative index per collateral type instead of
per-position timers:

    index_new = index_old * (1 + rate * elapsed_seconds / SECONDS_PER_YEAR)

A position remembers the index at its last touch and realizes interest lazily
the next time it is touched:

    principal_new = principal * index_now / index_snapshot

Each advance compounds the elapsed period at the rate stored on the type, then
stores the controller's current output as the rate from now on, so a new
controller output is never applied to time that has already passed.
Rates are never negative, so the index never decreases; advancing twice to
the same time changes nothing.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from ..core import (
    LedgerView, PendingTransaction, UnitStateChange, TransactionOrigin, OriginType,
    SECONDS_PER_YEAR, ValidationError,
    build_transaction, empty_pending_transaction, to_decimal,
)
from .collateral import CollateralType, InterestState, load_collateral, to_state_dict, collateral_unit_symbol
from .pid import controller_rate


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_index(index: Decimal, annual_rate: Decimal, elapsed_seconds: Decimal) -> Decimal:
    """
    Compound the index over elapsed_seconds at annual_rate.

    Raises:
        ValidationError: If elapsed_seconds or annual_rate is negative
    """
    if elapsed_seconds < 0:
        raise ValidationError(f"elapsed_seconds must be >= 0, got {elapsed_seconds}")
    if annual_rate < 0:
        raise ValidationError(f"annual_rate must be >= 0, got {annual_rate}")
    if elapsed_seconds == 0:
        return index
    return index * (1 + annual_rate * elapsed_seconds / SECONDS_PER_YEAR)


def calculate_advance(state: InterestState, annual_rate: Decimal, now: datetime) -> InterestState:
    """
    Bring an interest state up to `now`, then switch to annual_rate.

    The elapsed period compounds at the rate that was in force during it
    (the stored current_annual_rate); annual_rate applies from `now` on.

    Raises:
        ValidationError: If now is before the last update
    """
    annual_rate = to_decimal(annual_rate)
    if now < state.last_update_timestamp:
        raise ValidationError(
            f"Cannot accrue backwards: {now} < {state.last_update_timestamp}"
        )
    elapsed = Decimal(str((now - state.last_update_timestamp).total_seconds()))
    return replace(
        state,
        cumulative_interest_index=calculate_index(
            state.cumulative_interest_index, state.current_annual_rate, elapsed
        ),
        last_update_timestamp=now,
        current_annual_rate=annual_rate,
    )


def calculate_realized_debt(
    principal: Decimal,
    current_index: Decimal,
    snapshot_index: Decimal,
) -> Decimal:
    """
    Principal after realizing the interest accrued since snapshot_index.

    principal + principal * (current_index / snapshot_index - 1)
    """
    if snapshot_index <= 0:
        raise ValidationError(f"snapshot_index must be positive, got {snapshot_index}")
    if principal == 0 or current_index == snapshot_index:
        return principal
    return principal + principal * (current_index / snapshot_index - 1)


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_advanced_collateral(
    view: LedgerView,
    collateral_id: str,
    rate: Optional[Decimal] = None,
) -> Tuple[CollateralType, InterestState]:
    """
    Load a collateral type with its interest advanced to the view's time and
    its rate switched to the controller output.

    Position and liquidation operations build on the advanced state so the
    index they realize against is the one they write back.

    Args:
        rate: annual rate to store for the period from now on; defaults to
            the controller's output
    """
    ct, interest = load_collateral(view, collateral_id)
    if rate is None:
        rate = controller_rate(view)
    return ct, calculate_advance(interest, rate, view.current_time)


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def compute_advance(
    view: LedgerView,
    collateral_id: str,
    rate: Optional[Decimal] = None,
    source_id: str = "keeper",
) -> PendingTransaction:
    """
    Advance a collateral type's interest index to the view's current time.

    Returns an empty transaction when nothing changes.

    Example:
        pending = compute_advance(ledger, "XRD")
        ledger.execute(pending)
    """
    symbol = collateral_unit_symbol(collateral_id)
    ct, interest = load_collateral(view, collateral_id)
    if rate is None:
        rate = controller_rate(view)
    advanced = calculate_advance(interest, rate, view.current_time)
    if advanced == interest:
        return empty_pending_transaction(view)

    origin = TransactionOrigin(OriginType.KEEPER, source_id, symbol, "ACCRUE")
    return build_transaction(
        view, [],
        [UnitStateChange(symbol, view.get_unit_state(symbol), to_state_dict(ct, advanced))],
        origin,
    )
