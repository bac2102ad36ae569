"""
force.py - Forced liquidation and forced minting at the peg

Two arbitrage entry points that trade stablecoin against collateral at the
target price, one position at a time:

1. force_liquidate(): anyone repays debt of the Open position with the LOWEST
   ratio of a collateral type and receives collateral worth
   force_liquidate_percentage of the repaid value. Pulls the stablecoin back
   toward the peg when it trades below it.

2. force_mint(): anyone supplies collateral to the Open position with the
   HIGHEST ratio of a collateral type and receives newly minted stablecoin,
   one coin per force_mint_percentage of supplied value. The position is left
   at or above force_mint_cr_multiplier times its liquidation ratio; excess
   collateral is not taken.

Key Formulas:
    collateral_paid = repaid * force_liquidate_percentage / price
    minted          = supplied * price / force_mint_percentage
    max_supplied    = (C * price - M * D) / (price * (M / force_mint_percentage - 1))

where C and D are the position's collateral and debt and M the target
minimum ratio. Owners keep the stablecoin they minted; a fully force
liquidated position is Closed with its remaining collateral claimable
through retrieve_leftover().
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import List, Optional, Tuple

from ..core import (
    LedgerView, Move, PendingTransaction, TransactionOrigin, OriginType, PositionStatus,
    VAULT_WALLET, SYSTEM_WALLET, QUANTITY_EPSILON,
    ValidationError, StateError, NotLiquidatable, ProtocolPaused, InsufficientFunds,
    build_transaction, to_decimal, quantize_down, quantize_up,
)
from .collateral import require_accepted, load_collateral
from .position import (
    load_position, load_touched_position, position_state_changes, list_positions,
    calculate_collateral_ratio, _check_new_debt,
)
from .protocol import load_protocol
from .liquidation import is_unsafe


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class ForceLiquidationSplit:
    repaid: Decimal
    collateral_paid: Decimal
    remaining_debt: Decimal
    remaining_collateral: Decimal


@dataclass(frozen=True, slots=True)
class ForceMintSplit:
    collateral_supplied: Decimal
    minted: Decimal


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_force_liquidation(
    collateral_amount: Decimal,
    debt: Decimal,
    price: Decimal,
    repay_amount: Decimal,
    percentage: Decimal,
) -> ForceLiquidationSplit:
    """
    Split a forced repayment of repay_amount against one position.

    Repayment above the debt is not taken. A position worth no more than its
    debt can only be repaid in full.

    Raises:
        ValidationError: Partial repayment of a position at or below ratio 1

    Example:
        split = calculate_force_liquidation(Decimal("300"), Decimal("100"), Decimal("1"),
                                            Decimal("40"), Decimal("0.95"))
        split.collateral_paid   # 38
        split.remaining_debt    # 60
    """
    if price <= 0:
        raise ValidationError(f"price must be positive, got {price}")
    full_debt = quantize_up(debt)
    if repay_amount >= full_debt:
        repaid = full_debt
        remaining_debt = Decimal("0")
    else:
        if calculate_collateral_ratio(collateral_amount, price, debt) <= 1:
            raise ValidationError("Ratio at or below 1: the entire debt must be repaid")
        repaid = repay_amount
        remaining_debt = debt - repay_amount

    paid = min(collateral_amount, quantize_down(repaid * percentage / price))
    return ForceLiquidationSplit(
        repaid=repaid,
        collateral_paid=paid,
        remaining_debt=remaining_debt,
        remaining_collateral=collateral_amount - paid,
    )


def calculate_force_mint_capacity(
    collateral_amount: Decimal,
    debt: Decimal,
    price: Decimal,
    min_ratio: Decimal,
    percentage: Decimal,
) -> Decimal:
    """
    Most collateral a position can absorb through force_mint while staying at
    or above min_ratio. Zero when it is already at or below it.
    """
    if price <= 0:
        raise ValidationError(f"price must be positive, got {price}")
    if min_ratio <= percentage:
        raise ValidationError(f"min_ratio {min_ratio} must exceed percentage {percentage}")
    surplus = collateral_amount * price - min_ratio * debt
    if surplus <= 0:
        return Decimal("0")
    return quantize_down(surplus / (price * (min_ratio / percentage - 1)))


def calculate_force_mint(
    collateral_amount: Decimal,
    debt: Decimal,
    price: Decimal,
    offered: Decimal,
    min_ratio: Decimal,
    percentage: Decimal,
) -> ForceMintSplit:
    """Collateral taken out of offered and the stablecoin minted for it."""
    capacity = calculate_force_mint_capacity(collateral_amount, debt, price, min_ratio, percentage)
    supplied = min(offered, capacity)
    return ForceMintSplit(
        collateral_supplied=supplied,
        minted=quantize_down(supplied * price / percentage),
    )


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def _open_positions(
    view: LedgerView,
    collateral_id: str,
    price: Decimal,
) -> List[Tuple[Decimal, str]]:
    """(ratio, position_id) of Open positions with debt, lowest ratio first."""
    ranked = []
    for position_id in list_positions(view):
        pos = load_position(view, position_id)
        if pos.status != PositionStatus.OPEN or pos.collateral_type != collateral_id:
            continue
        pos, _, _ = load_touched_position(view, position_id)
        if pos.principal_debt <= 0:
            continue
        ratio = calculate_collateral_ratio(pos.collateral_amount, price, pos.principal_debt)
        ranked.append((ratio, position_id))
    return sorted(ranked, key=lambda item: item[0])


def lowest_ratio_position(view: LedgerView, collateral_id: str, price: Decimal) -> Optional[str]:
    ranked = _open_positions(view, collateral_id, price)
    return ranked[0][1] if ranked else None


def highest_ratio_position(view: LedgerView, collateral_id: str, price: Decimal) -> Optional[str]:
    ranked = _open_positions(view, collateral_id, price)
    return max(ranked, key=lambda item: item[0])[1] if ranked else None


# ============================================================================
# FORCE LIQUIDATE
# ============================================================================

def compute_force_liquidate(
    view: LedgerView,
    caller: str,
    collateral_id: str,
    repay_amount: Decimal,
    price: Decimal,
    assert_non_markable: bool = True,
) -> PendingTransaction:
    """
    Repay debt of the lowest-ratio Open position of collateral_id at the peg.

    The caller burns the repayment and receives force_liquidate_percentage of
    its value in collateral. Repaying the whole debt closes the position.

    Raises:
        ProtocolPaused: If force liquidation is stopped
        StateError: No Open position of this type carries debt
        NotLiquidatable: The position is markable and assert_non_markable is set
        ValidationError: Partial repayment of a position at or below ratio 1,
            or remaining debt below minimum_mint
        InsufficientFunds: caller cannot pay the repayment

    Example:
        pending = compute_force_liquidate(ledger, "bob", "XRD", Decimal("50"), Decimal("1"))
        ledger.execute(pending)
    """
    params, protocol = load_protocol(view)
    if params.stop_force_liquidate:
        raise ProtocolPaused("Force liquidation is stopped")
    repay_amount = quantize_down(to_decimal(repay_amount))
    if repay_amount <= 0:
        raise ValidationError(f"repay_amount must be positive, got {repay_amount}")
    price = to_decimal(price)

    position_id = lowest_ratio_position(view, collateral_id, price)
    if position_id is None:
        raise StateError(f"No Open {collateral_id} position with debt to force liquidate")
    pos, ct, interest = load_touched_position(view, position_id)

    ratio = calculate_collateral_ratio(pos.collateral_amount, price, pos.principal_debt)
    if assert_non_markable and is_unsafe(ratio, ct.liquidation_collateral_ratio):
        raise NotLiquidatable(
            f"{position_id}: ratio {ratio} is markable; liquidate it through mark() and liquidate()"
        )

    split = calculate_force_liquidation(
        pos.collateral_amount, pos.principal_debt, price, repay_amount, params.force_liquidate_percentage
    )
    if 0 < split.remaining_debt < params.minimum_mint:
        raise ValidationError(
            f"{position_id}: remaining debt {split.remaining_debt} would be below minimum_mint {params.minimum_mint}"
        )
    stable = protocol.stablecoin
    if view.get_balance(caller, stable) < split.repaid:
        raise InsufficientFunds(f"{caller} cannot pay {split.repaid} {stable}")

    moves = [Move(split.repaid, stable, caller, SYSTEM_WALLET, f"{position_id}_force_burn")]
    if split.collateral_paid > QUANTITY_EPSILON:
        moves.append(Move(split.collateral_paid, ct.id, VAULT_WALLET, caller, f"{position_id}_force_payout"))

    repaid_debt = pos.principal_debt - split.remaining_debt
    interest = replace(interest, total_debt=max(Decimal("0"), interest.total_debt - repaid_debt))
    if split.remaining_debt == 0:
        pos = replace(
            pos,
            status=PositionStatus.CLOSED,
            collateral_amount=Decimal("0"),
            principal_debt=Decimal("0"),
            leftover_collateral=pos.leftover_collateral + split.remaining_collateral,
            updated_at=view.current_time,
        )
    else:
        pos = replace(
            pos,
            collateral_amount=split.remaining_collateral,
            principal_debt=split.remaining_debt,
            updated_at=view.current_time,
        )
    return build_transaction(
        view, moves,
        position_state_changes(view, pos, ct, interest),
        TransactionOrigin(OriginType.USER_ACTION, caller, position_id, "FORCE_LIQUIDATE"),
    )


# ============================================================================
# FORCE MINT
# ============================================================================

def compute_force_mint(
    view: LedgerView,
    caller: str,
    collateral_id: str,
    collateral_amount: Decimal,
    price: Decimal,
) -> PendingTransaction:
    """
    Supply collateral to the highest-ratio Open position of collateral_id and
    mint stablecoin for it at the peg.

    Only as much collateral as keeps the position at or above
    force_mint_cr_multiplier times its liquidation ratio is taken.

    Raises:
        ProtocolPaused: If force minting is stopped
        UnacceptedCollateral: If the type no longer accepts collateral
        StateError: No Open position of this type can absorb a force mint
        DebtCeilingExceeded: The mint would break the type's limits
        InsufficientFunds: caller does not hold collateral_amount
    """
    params, protocol = load_protocol(view)
    if params.stop_force_mint:
        raise ProtocolPaused("Force minting is stopped")
    collateral_amount = quantize_down(to_decimal(collateral_amount))
    if collateral_amount <= 0:
        raise ValidationError(f"collateral_amount must be positive, got {collateral_amount}")
    price = to_decimal(price)
    ct, _ = load_collateral(view, collateral_id)
    require_accepted(ct)

    position_id = highest_ratio_position(view, collateral_id, price)
    if position_id is None:
        raise StateError(f"No Open {collateral_id} position with debt to force mint against")
    pos, ct, interest = load_touched_position(view, position_id)

    min_ratio = params.force_mint_cr_multiplier * ct.liquidation_collateral_ratio
    split = calculate_force_mint(
        pos.collateral_amount, pos.principal_debt, price,
        collateral_amount, min_ratio, params.force_mint_percentage,
    )
    if split.minted <= QUANTITY_EPSILON:
        raise StateError(f"{position_id} is below ratio {min_ratio}; nothing can be force minted")
    if view.get_balance(caller, ct.id) < split.collateral_supplied:
        raise InsufficientFunds(f"{caller} cannot supply {split.collateral_supplied} {ct.id}")

    interest = _check_new_debt(view, ct, interest, split.minted)
    moves = [
        Move(split.collateral_supplied, ct.id, caller, VAULT_WALLET, f"{position_id}_force_supply"),
        Move(split.minted, protocol.stablecoin, SYSTEM_WALLET, caller, f"{position_id}_force_mint"),
    ]
    pos = replace(
        pos,
        collateral_amount=pos.collateral_amount + split.collateral_supplied,
        principal_debt=pos.principal_debt + split.minted,
        updated_at=view.current_time,
    )
    return build_transaction(
        view, moves,
        position_state_changes(view, pos, ct, interest),
        TransactionOrigin(OriginType.USER_ACTION, caller, position_id, "FORCE_MINT"),
    )
