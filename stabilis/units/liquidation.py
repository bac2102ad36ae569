"""
liquidation.py - Liquidation Engine

Positions whose collateral ratio falls to the liquidation ratio are wound
down in two steps:

1. mark(): anyone may flag an Open position at or below its
   liquidation_collateral_ratio. The position becomes Marked and a grace
   window starts. Marked positions never revert on their own; unmark()
   re-validates a recovered position and returns it to Open.

2. liquidate(): a liquidator burns the debt and receives collateral worth the
   debt plus the liquidation penalty. Allowed on a Marked position once the
   grace window has elapsed, or at any time while it is still unsafe. With
   unmarked_delay_seconds set, only the marker may liquidate until that long
   after the grace window.

Key Formulas:
    seized       = debt * (1 + penalty) / price
    protocol_fee = debt * protocol_fee_pct / price   (capped at what is left)
    leftover     = collateral - seized - protocol_fee (owner-claimable)

    When seized would exceed the collateral, the liquidator takes all of it
    and repays only collateral * price / (1 + penalty); the rest of the debt
    is recorded as bad debt on the position and in the protocol total.

Marking and liquidating are status transitions guarded by the ledger's
stale-state check, so at most one liquidate() per position can succeed.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple

from ..core import (
    LedgerView, Move, PendingTransaction, UnitStateChange, TransactionOrigin, OriginType,
    PositionStatus, PriceMap, VAULT_WALLET, SYSTEM_WALLET, TREASURY_WALLET,
    QUANTITY_EPSILON,
    ValidationError, StateError, NotLiquidatable, NothingToClaim, ProtocolPaused,
    InsolvencyError, InsufficientRepayment, InsufficientFunds, Unauthorized,
    PositionAlreadyLiquidated,
    build_transaction, to_decimal, quantize_down, quantize_up,
)
from .position import (
    Position, load_position, load_touched_position, position_state_changes, list_positions,
    calculate_collateral_ratio, to_state_dict as position_state_dict,
)
from .protocol import ProtocolParameters, load_protocol, append_liquidation


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class LiquidationSplit:
    """How a liquidated position's collateral and debt are divided."""
    required_repayment: Decimal
    collateral_seized: Decimal
    penalty_collected: Decimal
    protocol_fee: Decimal
    leftover_collateral: Decimal
    bad_debt: Decimal


@dataclass(frozen=True, slots=True)
class LiquidationRecord:
    """Append-only audit entry for one successful liquidation, keyed by (position_id, timestamp)."""
    position_id: str
    liquidator: str
    collateral_seized: Decimal
    debt_repaid: Decimal
    penalty_collected: Decimal
    leftover_collateral: Decimal
    timestamp: datetime
    protocol_fee: Decimal = Decimal("0")
    bad_debt: Decimal = Decimal("0")
    price: Decimal = Decimal("0")

    @property
    def key(self) -> Tuple[str, datetime]:
        return self.position_id, self.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            'position_id': self.position_id,
            'liquidator': self.liquidator,
            'collateral_seized': self.collateral_seized,
            'debt_repaid': self.debt_repaid,
            'penalty_collected': self.penalty_collected,
            'leftover_collateral': self.leftover_collateral,
            'timestamp': self.timestamp,
            'protocol_fee': self.protocol_fee,
            'bad_debt': self.bad_debt,
            'price': self.price,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> LiquidationRecord:
        return cls(
            position_id=raw['position_id'],
            liquidator=raw['liquidator'],
            collateral_seized=to_decimal(raw['collateral_seized']),
            debt_repaid=to_decimal(raw['debt_repaid']),
            penalty_collected=to_decimal(raw['penalty_collected']),
            leftover_collateral=to_decimal(raw['leftover_collateral']),
            timestamp=raw['timestamp'],
            protocol_fee=to_decimal(raw.get('protocol_fee', Decimal("0"))),
            bad_debt=to_decimal(raw.get('bad_debt', Decimal("0"))),
            price=to_decimal(raw.get('price', Decimal("0"))),
        )


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def is_unsafe(ratio: Decimal, liquidation_collateral_ratio: Decimal) -> bool:
    """A position at or below the liquidation ratio may be marked."""
    return ratio <= liquidation_collateral_ratio


def marker_priority_expiry(pos: Position, params: ProtocolParameters) -> Optional[datetime]:
    """
    When a Marked position opens to liquidators other than its marker.

    None when unmarked_delay_seconds is 0 (no priority).
    """
    if params.unmarked_delay_seconds <= 0 or pos.marked_at is None:
        return None
    grace_expiry = pos.grace_expiry or pos.marked_at
    return grace_expiry + timedelta(seconds=params.unmarked_delay_seconds)


def calculate_liquidation(
    collateral_amount: Decimal,
    debt: Decimal,
    price: Decimal,
    penalty_pct: Decimal,
    protocol_fee_pct: Decimal = Decimal("0"),
) -> LiquidationSplit:
    """
    Split a position between liquidator, treasury and owner.

    Amounts paid out are rounded down and the repayment is rounded up to
    token precision, so the vault never pays out more than it holds.

    Example:
        split = calculate_liquidation(Decimal("150"), Decimal("100"), Decimal("0.8"), Decimal("0.10"))
        split.collateral_seized     # 137.5
        split.leftover_collateral   # 12.5
    """
    if price <= 0:
        raise ValidationError(f"price must be positive, got {price}")
    one_plus_penalty = 1 + penalty_pct
    full_seizure = debt * one_plus_penalty / price

    if full_seizure <= collateral_amount:
        seized = quantize_down(full_seizure)
        remainder = collateral_amount - seized
        fee = min(remainder, quantize_down(debt * protocol_fee_pct / price))
        return LiquidationSplit(
            required_repayment=quantize_up(debt),
            collateral_seized=seized,
            penalty_collected=quantize_down(debt * penalty_pct / price),
            protocol_fee=fee,
            leftover_collateral=remainder - fee,
            bad_debt=Decimal("0"),
        )

    required = min(quantize_up(debt), quantize_up(collateral_amount * price / one_plus_penalty))
    return LiquidationSplit(
        required_repayment=required,
        collateral_seized=collateral_amount,
        penalty_collected=quantize_down(collateral_amount * penalty_pct / one_plus_penalty),
        protocol_fee=Decimal("0"),
        leftover_collateral=Decimal("0"),
        bad_debt=max(Decimal("0"), debt - required),
    )


# ============================================================================
# MARK / UNMARK
# ============================================================================

def _origin(caller: str, position_id: str, event: str) -> TransactionOrigin:
    return TransactionOrigin(OriginType.KEEPER, caller, position_id, event)


def compute_mark(
    view: LedgerView,
    caller: str,
    position_id: str,
    price: Decimal,
) -> PendingTransaction:
    """
    Flag an unsafe Open position for liquidation and start its grace window.

    Raises:
        StateError: If the position is not Open
        NotLiquidatable: If the ratio is above the liquidation ratio
    """
    params, _ = load_protocol(view)
    price = to_decimal(price)
    if price <= 0:
        raise ValidationError(f"price must be positive, got {price}")

    pos, ct, interest = load_touched_position(view, position_id)
    if pos.status != PositionStatus.OPEN:
        raise StateError(f"Cannot mark {position_id} while {pos.status.value}")

    ratio = calculate_collateral_ratio(pos.collateral_amount, price, pos.principal_debt)
    if not is_unsafe(ratio, ct.liquidation_collateral_ratio):
        raise NotLiquidatable(
            f"{position_id}: ratio {ratio} is above liquidation ratio {ct.liquidation_collateral_ratio}"
        )

    now = view.current_time
    pos = replace(
        pos,
        status=PositionStatus.MARKED,
        marked_at=now,
        marked_by=caller,
        grace_expiry=now + timedelta(seconds=params.grace_period_seconds),
        updated_at=now,
    )
    return build_transaction(
        view, [], position_state_changes(view, pos, ct, interest), _origin(caller, position_id, "MARK")
    )


def compute_unmark(
    view: LedgerView,
    caller: str,
    position_id: str,
    price: Decimal,
) -> PendingTransaction:
    """
    Return a recovered Marked position to Open.

    Raises:
        StateError: If the position is not Marked or is still unsafe
    """
    price = to_decimal(price)
    if price <= 0:
        raise ValidationError(f"price must be positive, got {price}")

    pos, ct, interest = load_touched_position(view, position_id)
    if pos.status != PositionStatus.MARKED:
        raise StateError(f"Cannot unmark {position_id} while {pos.status.value}")

    ratio = calculate_collateral_ratio(pos.collateral_amount, price, pos.principal_debt)
    if is_unsafe(ratio, ct.liquidation_collateral_ratio):
        raise StateError(
            f"{position_id}: ratio {ratio} is still at or below {ct.liquidation_collateral_ratio}"
        )

    pos = replace(
        pos,
        status=PositionStatus.OPEN,
        marked_at=None,
        marked_by=None,
        grace_expiry=None,
        updated_at=view.current_time,
    )
    return build_transaction(
        view, [], position_state_changes(view, pos, ct, interest), _origin(caller, position_id, "UNMARK")
    )


# ============================================================================
# LIQUIDATE
# ============================================================================

def compute_liquidate(
    view: LedgerView,
    caller: str,
    position_id: str,
    repay_amount: Decimal,
    price: Decimal,
    allow_bad_debt: bool = True,
) -> PendingTransaction:
    """
    Liquidate a Marked position.

    The liquidator burns the required repayment and receives the seized
    collateral; repay_amount beyond the requirement is not taken. The
    protocol fee goes to the treasury. The owner's leftover stays in the
    vault, recorded on the position.

    Raises:
        ProtocolPaused: If liquidations are stopped
        PositionAlreadyLiquidated: If the position was already liquidated
        StateError: If the position is not Marked
        NotLiquidatable: Grace window running and the position has recovered,
            or the marker's priority window is running and caller is not the marker
        InsufficientRepayment: repay_amount below the required repayment
        InsolvencyError: Bad debt would arise and allow_bad_debt is False

    Example:
        pending = compute_liquidate(ledger, "bob", "CDP_1", Decimal("100"), Decimal("0.8"))
        ledger.execute(pending)
    """
    params, protocol = load_protocol(view)
    if params.stop_liquidations:
        raise ProtocolPaused("Liquidations are stopped")
    repay_amount = to_decimal(repay_amount)
    price = to_decimal(price)
    if price <= 0:
        raise ValidationError(f"price must be positive, got {price}")

    pos, ct, interest = load_touched_position(view, position_id)
    if pos.status == PositionStatus.LIQUIDATED:
        raise PositionAlreadyLiquidated(f"{position_id} was already liquidated")
    if pos.status != PositionStatus.MARKED:
        raise StateError(f"Cannot liquidate {position_id} while {pos.status.value}")

    now = view.current_time
    ratio = calculate_collateral_ratio(pos.collateral_amount, price, pos.principal_debt)
    grace_elapsed = pos.grace_expiry is None or now >= pos.grace_expiry
    if not (grace_elapsed or is_unsafe(ratio, ct.liquidation_collateral_ratio)):
        raise NotLiquidatable(
            f"{position_id}: recovered to ratio {ratio} within its grace window (until {pos.grace_expiry})"
        )
    opens_to_all = marker_priority_expiry(pos, params)
    if caller != pos.marked_by and opens_to_all is not None and now < opens_to_all:
        raise NotLiquidatable(
            f"{position_id}: reserved for its marker {pos.marked_by} until {opens_to_all}"
        )

    split = calculate_liquidation(
        pos.collateral_amount, pos.principal_debt, price,
        ct.liquidation_penalty_pct, ct.protocol_fee_pct,
    )
    if split.bad_debt > 0 and not allow_bad_debt:
        raise InsolvencyError(
            f"{position_id}: liquidation would leave {split.bad_debt} bad debt"
        )
    if repay_amount < split.required_repayment:
        raise InsufficientRepayment(
            f"{position_id}: repayment {repay_amount} < required {split.required_repayment}"
        )
    stable = protocol.stablecoin
    if view.get_balance(caller, stable) < split.required_repayment:
        raise InsufficientFunds(f"{caller} cannot pay {split.required_repayment} {stable}")

    moves: List[Move] = []
    if split.required_repayment > QUANTITY_EPSILON:
        moves.append(Move(split.required_repayment, stable, caller, SYSTEM_WALLET, f"{position_id}_liquidation_burn"))
    if split.collateral_seized > QUANTITY_EPSILON:
        moves.append(Move(split.collateral_seized, ct.id, VAULT_WALLET, caller, f"{position_id}_seizure"))
    if split.protocol_fee > QUANTITY_EPSILON:
        moves.append(Move(split.protocol_fee, ct.id, VAULT_WALLET, TREASURY_WALLET, f"{position_id}_protocol_fee"))

    record = LiquidationRecord(
        position_id=position_id,
        liquidator=caller,
        collateral_seized=split.collateral_seized,
        debt_repaid=split.required_repayment,
        penalty_collected=split.penalty_collected,
        leftover_collateral=split.leftover_collateral,
        timestamp=now,
        protocol_fee=split.protocol_fee,
        bad_debt=split.bad_debt,
        price=price,
    )
    protocol = append_liquidation(protocol, record.to_dict(), split.bad_debt)
    interest = replace(interest, total_debt=max(Decimal("0"), interest.total_debt - pos.principal_debt))
    pos = replace(
        pos,
        status=PositionStatus.LIQUIDATED,
        collateral_amount=Decimal("0"),
        principal_debt=Decimal("0"),
        bad_debt=pos.bad_debt + split.bad_debt,
        leftover_collateral=pos.leftover_collateral + split.leftover_collateral,
        updated_at=now,
    )
    return build_transaction(
        view, moves,
        position_state_changes(view, pos, ct, interest, (params, protocol)),
        _origin(caller, position_id, "LIQUIDATE"),
    )


# ============================================================================
# RETRIEVE LEFTOVER
# ============================================================================

def compute_retrieve_leftover(view: LedgerView, caller: str, position_id: str) -> PendingTransaction:
    """
    Pay the owner's leftover collateral out of the vault.

    Raises:
        Unauthorized: If caller is not the owner
        StateError: If the position is still Open or Marked
        NothingToClaim: If no leftover remains
    """
    pos = load_position(view, position_id)
    if caller != pos.owner:
        raise Unauthorized(f"{caller} does not own {position_id}")
    if not pos.status.is_terminal:
        raise StateError(f"{position_id} is {pos.status.value}; leftovers exist only after liquidation or closure")
    if pos.leftover_collateral <= QUANTITY_EPSILON:
        raise NothingToClaim(f"{position_id} has no leftover collateral")

    moves = [Move(pos.leftover_collateral, pos.collateral_type, VAULT_WALLET, pos.owner, f"{position_id}_leftover")]
    new_pos = replace(pos, leftover_collateral=Decimal("0"), updated_at=view.current_time)
    old_state = view.get_unit_state(position_id)
    return build_transaction(
        view, moves,
        [UnitStateChange(position_id, old_state, position_state_dict(new_pos))],
        TransactionOrigin(OriginType.USER_ACTION, caller, position_id, "RETRIEVE_LEFTOVER"),
    )


# ============================================================================
# QUERIES
# ============================================================================

def find_unsafe_positions(view: LedgerView, prices: PriceMap) -> List[Tuple[str, Decimal]]:
    """
    Open positions at or below their liquidation ratio, lowest ratio first.

    Args:
        prices: collateral type id -> price; types without a price are skipped
    """
    unsafe = []
    for position_id in list_positions(view):
        pos = load_position(view, position_id)
        if pos.status != PositionStatus.OPEN or pos.collateral_type not in prices:
            continue
        pos, ct, _ = load_touched_position(view, position_id)
        ratio = calculate_collateral_ratio(pos.collateral_amount, prices[pos.collateral_type], pos.principal_debt)
        if is_unsafe(ratio, ct.liquidation_collateral_ratio):
            unsafe.append((position_id, ratio))
    return sorted(unsafe, key=lambda item: (item[1], item[0]))


def liquidation_log(view: LedgerView, position_id: Optional[str] = None) -> List[LiquidationRecord]:
    """Liquidation records in execution order, optionally for one position."""
    _, protocol = load_protocol(view)
    records = [LiquidationRecord.from_dict(raw) for raw in protocol.liquidation_log]
    if position_id is not None:
        records = [r for r in records if r.position_id == position_id]
    return records
