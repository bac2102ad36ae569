"""
position.py - Position Ledger (collateralized debt positions)

A position (CDP) locks collateral in the protocol vault and carries stablecoin
debt minted against it. Each position is a CDP_<n> unit.

ARCHITECTURE:
    - Position: frozen snapshot of a CDP_<n> unit
    - load_position / to_state_dict: the only bridge to ledger state
    - calculate_*: pure arithmetic on explicit inputs
    - compute_*: (view, caller, ...) -> PendingTransaction

Every operation first realizes pending interest against the collateral type's
advanced index, so one transaction writes the position, its collateral type
and (when the owner index changes) the protocol unit together.

Lifecycle:
    open() -> Open
    Open -> Closed            close(), or partial_close() repaying everything
    Open -> Marked            see liquidation.py
    Marked -> Liquidated      see liquidation.py

Key Formulas:
    collateral_ratio = collateral_amount * price / principal_debt
    released_on_partial_close = collateral_amount * repaid / debt   (rounded down)
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple

from ..core import (
    LedgerView, Move, PendingTransaction, UnitStateChange, TransactionOrigin, OriginType,
    PositionStatus, VAULT_WALLET, SYSTEM_WALLET, PROTOCOL_UNIT, UNIT_TYPE_CDP, CDP_PREFIX,
    QUANTITY_EPSILON,
    ValidationError, StateError, InsolvencyError, InsufficientRepayment, InsufficientFunds,
    Unauthorized, ProtocolPaused, UnitNotRegistered,
    build_transaction, state_unit, to_decimal, quantize_down, quantize_up,
)
from .collateral import (
    CollateralType, InterestState, collateral_unit_symbol, check_mint_limits, require_accepted,
    total_system_debt, load_collateral, to_state_dict as collateral_state_dict,
)
from .interest import load_advanced_collateral, calculate_realized_debt
from .protocol import (
    ProtocolParameters, ProtocolState, load_protocol, allocate_position,
    to_state_dict as protocol_state_dict,
)


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Position:
    """
    Immutable snapshot of one CDP.

    principal_debt is the debt realized up to interest_index_snapshot; interest
    accrued since then is realized on the next touch.
    """
    id: str
    owner: str
    collateral_type: str
    collateral_amount: Decimal
    principal_debt: Decimal
    interest_index_snapshot: Decimal
    status: PositionStatus
    created_at: datetime
    updated_at: datetime
    bad_debt: Decimal = Decimal("0")
    marked_at: Optional[datetime] = None
    marked_by: Optional[str] = None
    grace_expiry: Optional[datetime] = None
    leftover_collateral: Decimal = Decimal("0")

    def __post_init__(self):
        if self.collateral_amount < 0:
            raise ValidationError(f"{self.id}: collateral_amount cannot be negative")
        if self.principal_debt < 0:
            raise ValidationError(f"{self.id}: principal_debt cannot be negative")
        if self.collateral_amount == 0 and self.principal_debt > 0:
            raise InsolvencyError(f"{self.id}: debt {self.principal_debt} without collateral")


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_position(view: LedgerView, position_id: str) -> Position:
    """
    Raises:
        ValidationError: If position_id is not a registered position
    """
    if not position_id.startswith(CDP_PREFIX):
        raise ValidationError(f"{position_id} is not a position id")
    try:
        raw = view.get_unit_state(position_id)
    except UnitNotRegistered as e:
        raise ValidationError(f"Unknown position {position_id}") from e
    if not raw:
        raise ValidationError(f"Unknown position {position_id}")

    return Position(
        id=raw['id'],
        owner=raw['owner'],
        collateral_type=raw['collateral_type'],
        collateral_amount=to_decimal(raw['collateral_amount']),
        principal_debt=to_decimal(raw['principal_debt']),
        interest_index_snapshot=to_decimal(raw['interest_index_snapshot']),
        status=PositionStatus(raw['status']),
        created_at=raw['created_at'],
        updated_at=raw.get('updated_at', raw['created_at']),
        bad_debt=to_decimal(raw.get('bad_debt', Decimal("0"))),
        marked_at=raw.get('marked_at'),
        marked_by=raw.get('marked_by'),
        grace_expiry=raw.get('grace_expiry'),
        leftover_collateral=to_decimal(raw.get('leftover_collateral', Decimal("0"))),
    )


def to_state_dict(pos: Position) -> Dict[str, Any]:
    """Inverse of load_position(). Status is stored as its string value."""
    return {
        'id': pos.id,
        'owner': pos.owner,
        'collateral_type': pos.collateral_type,
        'collateral_amount': pos.collateral_amount,
        'principal_debt': pos.principal_debt,
        'interest_index_snapshot': pos.interest_index_snapshot,
        'status': pos.status.value,
        'created_at': pos.created_at,
        'updated_at': pos.updated_at,
        'bad_debt': pos.bad_debt,
        'marked_at': pos.marked_at,
        'marked_by': pos.marked_by,
        'grace_expiry': pos.grace_expiry,
        'leftover_collateral': pos.leftover_collateral,
    }


def load_touched_position(
    view: LedgerView,
    position_id: str,
) -> Tuple[Position, CollateralType, InterestState]:
    """
    Load a position with its pending interest realized.

    The collateral type's index is advanced to the view's time and the
    realized interest is added to the type's total debt. Terminal positions
    carry no debt and are returned as stored.
    """
    pos = load_position(view, position_id)
    ct, interest = load_advanced_collateral(view, pos.collateral_type)
    if pos.status.is_terminal:
        return pos, ct, interest

    index = interest.cumulative_interest_index
    realized = calculate_realized_debt(pos.principal_debt, index, pos.interest_index_snapshot)
    interest = replace(interest, total_debt=interest.total_debt + (realized - pos.principal_debt))
    pos = replace(pos, principal_debt=realized, interest_index_snapshot=index)
    return pos, ct, interest


def position_state_changes(
    view: LedgerView,
    pos: Position,
    ct: CollateralType,
    interest: InterestState,
    protocol: Optional[Tuple[ProtocolParameters, ProtocolState]] = None,
) -> List[UnitStateChange]:
    """State changes writing back a touched position, its collateral type and optionally the protocol."""
    ct_symbol = collateral_unit_symbol(ct.id)
    changes = [
        UnitStateChange(pos.id, view.get_unit_state(pos.id), to_state_dict(pos)),
        UnitStateChange(ct_symbol, view.get_unit_state(ct_symbol), collateral_state_dict(ct, interest)),
    ]
    if protocol is not None:
        changes.append(UnitStateChange(
            PROTOCOL_UNIT, view.get_unit_state(PROTOCOL_UNIT), protocol_state_dict(*protocol)
        ))
    return changes


def _origin(caller: str, position_id: str, event: str) -> TransactionOrigin:
    return TransactionOrigin(OriginType.USER_ACTION, caller, position_id, event)


def _require_owner(pos: Position, caller: str) -> None:
    if caller != pos.owner:
        raise Unauthorized(f"{caller} does not own {pos.id}")


def _require_positive(name: str, amount: Decimal) -> Decimal:
    amount = quantize_down(to_decimal(amount))
    if amount <= 0:
        raise ValidationError(f"{name} must be positive, got {amount}")
    return amount


def _require_balance(view: LedgerView, wallet: str, unit_symbol: str, amount: Decimal) -> None:
    balance = view.get_balance(wallet, unit_symbol)
    if balance < amount:
        raise InsufficientFunds(f"{wallet} holds {balance} {unit_symbol}, needs {amount}")


def _require_price(price: Decimal) -> Decimal:
    price = to_decimal(price)
    if price <= 0:
        raise ValidationError(f"Collateral price must be positive, got {price}")
    return price


def _move(quantity: Decimal, unit_symbol: str, source: str, dest: str, contract_id: str) -> List[Move]:
    # Dust below the ledger's epsilon is not moved.
    if quantity <= QUANTITY_EPSILON:
        return []
    return [Move(quantity, unit_symbol, source, dest, contract_id)]


def _check_new_debt(
    view: LedgerView,
    ct: CollateralType,
    interest: InterestState,
    new_debt: Decimal,
) -> InterestState:
    """Check the ceiling and share limits for new_debt; returns interest with the debt added."""
    _, stored = load_collateral(view, ct.id)
    type_debt_after = interest.total_debt + new_debt
    system_debt_after = total_system_debt(view) - stored.total_debt + type_debt_after
    check_mint_limits(ct, type_debt_after, system_debt_after)
    return replace(interest, total_debt=type_debt_after)


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_collateral_ratio(collateral_amount: Decimal, price: Decimal, debt: Decimal) -> Decimal:
    """collateral * price / debt; Infinity when there is no debt."""
    if debt <= 0:
        return Decimal("Infinity")
    return collateral_amount * price / debt


def calculate_partial_release(collateral_amount: Decimal, debt: Decimal, repay_amount: Decimal) -> Decimal:
    """
    Collateral released for repaying repay_amount of debt.

    Proportional to the repaid fraction and rounded down, so the ratio after
    the release is never below the ratio before it.
    """
    if debt <= 0:
        return Decimal("0")
    return min(collateral_amount, quantize_down(collateral_amount * repay_amount / debt))


# ============================================================================
# OPEN
# ============================================================================

def compute_open(
    view: LedgerView,
    caller: str,
    collateral_type: str,
    collateral_amount: Decimal,
    requested_debt: Decimal,
    price: Decimal,
) -> PendingTransaction:
    """
    Open a position: lock collateral and mint stablecoin to the caller.

    The new CDP unit is created by the returned transaction; its id is
    pending.units_to_create[0].symbol.

    Raises:
        ProtocolPaused: If openings are stopped
        ValidationError: Non-positive amounts or debt below minimum_mint
        UnacceptedCollateral: Unknown or unaccepted collateral type
        InsolvencyError: Ratio below min_collateral_ratio
        DebtCeilingExceeded: Type debt above its ceiling or share
        InsufficientFunds: Caller lacks the collateral

    Example:
        pending = compute_open(ledger, "alice", "XRD", Decimal("150"), Decimal("100"), Decimal("1"))
        ledger.execute(pending)
    """
    params, protocol = load_protocol(view)
    if params.stop_openings:
        raise ProtocolPaused("Opening positions is stopped")

    collateral_amount = _require_positive("collateral_amount", collateral_amount)
    requested_debt = _require_positive("requested_debt", requested_debt)
    if requested_debt < params.minimum_mint:
        raise ValidationError(f"requested_debt {requested_debt} is below minimum_mint {params.minimum_mint}")
    price = _require_price(price)

    ct, interest = load_advanced_collateral(view, collateral_type)
    require_accepted(ct)

    ratio = calculate_collateral_ratio(collateral_amount, price, requested_debt)
    if ratio < ct.min_collateral_ratio:
        raise InsolvencyError(
            f"Collateral ratio {ratio} is below minimum {ct.min_collateral_ratio}"
        )
    interest = _check_new_debt(view, ct, interest, requested_debt)
    _require_balance(view, caller, ct.id, collateral_amount)

    position_id, protocol = allocate_position(protocol, caller)
    now = view.current_time
    pos = Position(
        id=position_id,
        owner=caller,
        collateral_type=ct.id,
        collateral_amount=collateral_amount,
        principal_debt=requested_debt,
        interest_index_snapshot=interest.cumulative_interest_index,
        status=PositionStatus.OPEN,
        created_at=now,
        updated_at=now,
    )
    unit = state_unit(position_id, f"Position {position_id}", UNIT_TYPE_CDP, to_state_dict(pos))

    moves = [
        Move(collateral_amount, ct.id, caller, VAULT_WALLET, f"{position_id}_collateral"),
        Move(requested_debt, protocol.stablecoin, SYSTEM_WALLET, caller, f"{position_id}_mint"),
    ]
    ct_symbol = collateral_unit_symbol(ct.id)
    state_changes = [
        UnitStateChange(ct_symbol, view.get_unit_state(ct_symbol), collateral_state_dict(ct, interest)),
        UnitStateChange(PROTOCOL_UNIT, view.get_unit_state(PROTOCOL_UNIT), protocol_state_dict(params, protocol)),
    ]
    return build_transaction(view, moves, state_changes, _origin(caller, position_id, "OPEN"), (unit,))


# ============================================================================
# CLOSE
# ============================================================================

def _settle_in_full(
    view: LedgerView,
    caller: str,
    pos: Position,
    ct: CollateralType,
    interest: InterestState,
    repay_amount: Decimal,
    stablecoin: str,
    event: str,
) -> PendingTransaction:
    """Burn the whole outstanding debt and release all collateral to the owner."""
    debt_due = quantize_up(pos.principal_debt)
    if repay_amount < debt_due:
        raise InsufficientRepayment(f"{pos.id}: repayment {repay_amount} < outstanding debt {debt_due}")
    _require_balance(view, caller, stablecoin, debt_due)

    moves = (
        _move(debt_due, stablecoin, caller, SYSTEM_WALLET, f"{pos.id}_burn")
        + _move(pos.collateral_amount, ct.id, VAULT_WALLET, pos.owner, f"{pos.id}_release")
    )
    interest = replace(interest, total_debt=max(Decimal("0"), interest.total_debt - pos.principal_debt))
    closed = replace(
        pos,
        collateral_amount=Decimal("0"),
        principal_debt=Decimal("0"),
        status=PositionStatus.CLOSED,
        updated_at=view.current_time,
    )
    return build_transaction(
        view, moves,
        position_state_changes(view, closed, ct, interest),
        _origin(caller, pos.id, event),
    )


def compute_close(
    view: LedgerView,
    caller: str,
    position_id: str,
    repay_amount: Decimal,
) -> PendingTransaction:
    """
    Repay the whole debt and take back all collateral.

    Only the outstanding debt (interest included) is burned; any excess in
    repay_amount stays with the caller.

    Raises:
        ProtocolPaused: If closings are stopped
        Unauthorized: If caller is not the owner
        StateError: If the position is not Open
        InsufficientRepayment: If repay_amount is below the outstanding debt
    """
    params, protocol = load_protocol(view)
    if params.stop_closings:
        raise ProtocolPaused("Closing positions is stopped")
    repay_amount = to_decimal(repay_amount)

    pos, ct, interest = load_touched_position(view, position_id)
    _require_owner(pos, caller)
    if pos.status != PositionStatus.OPEN:
        raise StateError(f"{position_id} is {pos.status.value}, not Open")
    return _settle_in_full(view, caller, pos, ct, interest, repay_amount, protocol.stablecoin, "CLOSE")


# ============================================================================
# TOP UP / REMOVE COLLATERAL
# ============================================================================

def compute_top_up(
    view: LedgerView,
    caller: str,
    position_id: str,
    extra_collateral: Decimal,
) -> PendingTransaction:
    """
    Add collateral to a position.

    Allowed while Open, and while Marked when allow_top_up_while_marked is set.
    """
    params, _ = load_protocol(view)
    extra_collateral = _require_positive("extra_collateral", extra_collateral)

    pos, ct, interest = load_touched_position(view, position_id)
    _require_owner(pos, caller)
    allowed = pos.status == PositionStatus.OPEN or (
        pos.status == PositionStatus.MARKED and params.allow_top_up_while_marked
    )
    if not allowed:
        raise StateError(f"Cannot top up {position_id} while {pos.status.value}")
    _require_balance(view, caller, ct.id, extra_collateral)

    moves = [Move(extra_collateral, ct.id, caller, VAULT_WALLET, f"{position_id}_top_up")]
    pos = replace(
        pos,
        collateral_amount=pos.collateral_amount + extra_collateral,
        updated_at=view.current_time,
    )
    return build_transaction(
        view, moves,
        position_state_changes(view, pos, ct, interest),
        _origin(caller, position_id, "TOP_UP"),
    )


def compute_remove_collateral(
    view: LedgerView,
    caller: str,
    position_id: str,
    amount: Decimal,
    price: Decimal,
) -> PendingTransaction:
    """
    Withdraw collateral while keeping the ratio at or above min_collateral_ratio.

    Raises:
        StateError: If the position is not Open
        ValidationError: If amount exceeds the locked collateral
        InsolvencyError: If the remaining ratio would fall below the minimum
    """
    amount = _require_positive("amount", amount)
    price = _require_price(price)

    pos, ct, interest = load_touched_position(view, position_id)
    _require_owner(pos, caller)
    if pos.status != PositionStatus.OPEN:
        raise StateError(f"{position_id} is {pos.status.value}, not Open")
    if amount > pos.collateral_amount:
        raise ValidationError(f"{position_id}: cannot remove {amount}, only {pos.collateral_amount} locked")

    remaining = pos.collateral_amount - amount
    ratio = calculate_collateral_ratio(remaining, price, pos.principal_debt)
    if ratio < ct.min_collateral_ratio:
        raise InsolvencyError(
            f"{position_id}: ratio after removal {ratio} is below minimum {ct.min_collateral_ratio}"
        )

    moves = [Move(amount, ct.id, VAULT_WALLET, pos.owner, f"{position_id}_remove")]
    pos = replace(pos, collateral_amount=remaining, updated_at=view.current_time)
    return build_transaction(
        view, moves,
        position_state_changes(view, pos, ct, interest),
        _origin(caller, position_id, "REMOVE_COLLATERAL"),
    )


# ============================================================================
# BORROW MORE
# ============================================================================

def compute_borrow_more(
    view: LedgerView,
    caller: str,
    position_id: str,
    extra_debt: Decimal,
    price: Decimal,
) -> PendingTransaction:
    """
    Mint more stablecoin against an Open position.

    Re-validates the ratio and the debt limits like open(). Marked positions
    cannot borrow.
    """
    params, protocol = load_protocol(view)
    if params.stop_openings:
        raise ProtocolPaused("New borrowing is stopped")
    extra_debt = _require_positive("extra_debt", extra_debt)
    price = _require_price(price)

    pos, ct, interest = load_touched_position(view, position_id)
    _require_owner(pos, caller)
    if pos.status != PositionStatus.OPEN:
        raise StateError(f"Cannot borrow against {position_id} while {pos.status.value}")
    require_accepted(ct)

    new_debt = pos.principal_debt + extra_debt
    ratio = calculate_collateral_ratio(pos.collateral_amount, price, new_debt)
    if ratio < ct.min_collateral_ratio:
        raise InsolvencyError(
            f"{position_id}: ratio {ratio} would fall below minimum {ct.min_collateral_ratio}"
        )
    interest = _check_new_debt(view, ct, interest, extra_debt)

    moves = [Move(extra_debt, protocol.stablecoin, SYSTEM_WALLET, pos.owner, f"{position_id}_mint")]
    pos = replace(pos, principal_debt=new_debt, updated_at=view.current_time)
    return build_transaction(
        view, moves,
        position_state_changes(view, pos, ct, interest),
        _origin(caller, position_id, "BORROW_MORE"),
    )


# ============================================================================
# PARTIAL CLOSE
# ============================================================================

def compute_partial_close(
    view: LedgerView,
    caller: str,
    position_id: str,
    repay_amount: Decimal,
) -> PendingTransaction:
    """
    Repay part of the debt and release a proportional share of collateral.

    A repayment covering the whole debt closes the position. Otherwise the
    remaining debt must stay at or above minimum_mint. Allowed while Open
    or Marked.
    """
    params, protocol = load_protocol(view)
    if params.stop_closings:
        raise ProtocolPaused("Closing positions is stopped")
    repay_amount = _require_positive("repay_amount", repay_amount)

    pos, ct, interest = load_touched_position(view, position_id)
    _require_owner(pos, caller)
    if pos.status not in (PositionStatus.OPEN, PositionStatus.MARKED):
        raise StateError(f"Cannot partially close {position_id} while {pos.status.value}")

    if repay_amount >= quantize_up(pos.principal_debt):
        return _settle_in_full(
            view, caller, pos, ct, interest, repay_amount, protocol.stablecoin, "PARTIAL_CLOSE"
        )

    remaining = pos.principal_debt - repay_amount
    if remaining < params.minimum_mint:
        raise ValidationError(
            f"{position_id}: remaining debt {remaining} would be below minimum_mint {params.minimum_mint}"
        )
    _require_balance(view, caller, protocol.stablecoin, repay_amount)

    released = calculate_partial_release(pos.collateral_amount, pos.principal_debt, repay_amount)
    moves = (
        [Move(repay_amount, protocol.stablecoin, caller, SYSTEM_WALLET, f"{position_id}_burn")]
        + _move(released, ct.id, VAULT_WALLET, pos.owner, f"{position_id}_release")
    )
    if released <= QUANTITY_EPSILON:
        released = Decimal("0")

    interest = replace(interest, total_debt=max(Decimal("0"), interest.total_debt - repay_amount))
    pos = replace(
        pos,
        collateral_amount=pos.collateral_amount - released,
        principal_debt=remaining,
        updated_at=view.current_time,
    )
    return build_transaction(
        view, moves,
        position_state_changes(view, pos, ct, interest),
        _origin(caller, position_id, "PARTIAL_CLOSE"),
    )


# ============================================================================
# QUERIES
# ============================================================================

def outstanding_debt(view: LedgerView, position_id: str) -> Decimal:
    """Debt including interest accrued up to the view's time; nothing is written."""
    pos, _, _ = load_touched_position(view, position_id)
    return pos.principal_debt


def collateral_ratio(view: LedgerView, position_id: str, price: Decimal) -> Decimal:
    """Current ratio at price, with pending interest included in the debt."""
    pos, _, _ = load_touched_position(view, position_id)
    return calculate_collateral_ratio(pos.collateral_amount, to_decimal(price), pos.principal_debt)


def positions_of(view: LedgerView, owner: str) -> List[Position]:
    """All positions opened by owner, in any status, oldest first."""
    _, protocol = load_protocol(view)
    return [load_position(view, pid) for pid in protocol.positions_by_owner.get(owner, ())]


def list_positions(view: LedgerView) -> List[str]:
    """Ids of every position unit, in creation order."""
    ids = [s for s in view.list_units() if s.startswith(CDP_PREFIX)]
    return sorted(ids, key=lambda s: int(s[len(CDP_PREFIX):]))
