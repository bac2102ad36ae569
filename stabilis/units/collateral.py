"""
collateral.py - Collateral Registry

Each accepted collateral asset is a COLLATERAL:<id> unit whose state holds
two parts:

1. CollateralType (frozen): risk configuration set by the administrator
   - min_collateral_ratio (MCR): required at open / borrow-more time
   - liquidation_collateral_ratio (LCR): at or below it a position may be marked
   - liquidation_penalty_pct: liquidator bonus, charged on the debt
   - protocol_fee_pct: treasury share of a liquidation, charged on the debt
   - debt_ceiling / max_debt_share: limits on stablecoin minted against the type

2. InterestState (changes over time): the global interest index of the type,
   its last update, the current annual rate and the total realized debt.

The collateral id doubles as the symbol of the collateral token held in the vault.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple

from ..core import (
    LedgerView, PendingTransaction, Unit, UnitStateChange, TransactionOrigin, OriginType,
    COLLATERAL_UNIT_PREFIX, UNIT_TYPE_COLLATERAL_TYPE,
    ValidationError, UnacceptedCollateral, DebtCeilingExceeded, UnitNotRegistered,
    build_transaction, state_unit, to_decimal,
)
from .protocol import load_protocol, require_admin


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class CollateralType:
    """
    Immutable risk configuration of a collateral asset.

    Replaced as a whole by the admin-gated parameter update; never edited in place.
    """
    id: str
    accepted: bool
    min_collateral_ratio: Decimal         # e.g. 1.5 for 150%
    liquidation_collateral_ratio: Decimal  # e.g. 1.2 for 120%
    liquidation_penalty_pct: Decimal      # e.g. 0.10 for 10%
    price_feed_id: str
    debt_ceiling: Decimal
    protocol_fee_pct: Decimal = Decimal("0")
    max_debt_share: Optional[Decimal] = None

    def __post_init__(self):
        for name in ('min_collateral_ratio', 'liquidation_collateral_ratio',
                     'liquidation_penalty_pct', 'debt_ceiling', 'protocol_fee_pct'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))
        if self.max_debt_share is not None and not isinstance(self.max_debt_share, Decimal):
            object.__setattr__(self, 'max_debt_share', to_decimal(self.max_debt_share))
        self.validate()

    def validate(self) -> None:
        """
        Raises:
            ValidationError: On an inconsistent configuration
        """
        if not self.id:
            raise ValidationError("Collateral id cannot be empty")
        if not self.price_feed_id:
            raise ValidationError(f"Collateral {self.id} needs a price feed id")
        if self.liquidation_collateral_ratio < 1:
            raise ValidationError(
                f"liquidation_collateral_ratio must be >= 1, got {self.liquidation_collateral_ratio}"
            )
        if self.min_collateral_ratio < self.liquidation_collateral_ratio:
            raise ValidationError(
                f"min_collateral_ratio {self.min_collateral_ratio} is below "
                f"liquidation_collateral_ratio {self.liquidation_collateral_ratio}"
            )
        if self.liquidation_penalty_pct < 0:
            raise ValidationError(f"liquidation_penalty_pct must be >= 0, got {self.liquidation_penalty_pct}")
        if self.protocol_fee_pct < 0:
            raise ValidationError(f"protocol_fee_pct must be >= 0, got {self.protocol_fee_pct}")
        if self.debt_ceiling < 0:
            raise ValidationError(f"debt_ceiling must be >= 0, got {self.debt_ceiling}")
        if self.max_debt_share is not None and not (0 < self.max_debt_share <= 1):
            raise ValidationError(f"max_debt_share must be in (0, 1], got {self.max_debt_share}")

    @property
    def unit_symbol(self) -> str:
        return collateral_unit_symbol(self.id)


@dataclass(frozen=True, slots=True)
class InterestState:
    """Global interest state of one collateral type."""
    cumulative_interest_index: Decimal
    last_update_timestamp: datetime
    current_annual_rate: Decimal
    total_debt: Decimal = Decimal("0")


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def collateral_unit_symbol(collateral_id: str) -> str:
    return f"{COLLATERAL_UNIT_PREFIX}{collateral_id}"


def load_collateral(view: LedgerView, collateral_id: str) -> Tuple[CollateralType, InterestState]:
    """
    Read a collateral type and its interest state.

    Raises:
        UnacceptedCollateral: If no such collateral type is registered
    """
    try:
        raw = view.get_unit_state(collateral_unit_symbol(collateral_id))
    except UnitNotRegistered as e:
        raise UnacceptedCollateral(f"Unknown collateral type {collateral_id}") from e
    if not raw:
        raise UnacceptedCollateral(f"Unknown collateral type {collateral_id}")

    ct = CollateralType(
        id=raw['id'],
        accepted=raw['accepted'],
        min_collateral_ratio=to_decimal(raw['min_collateral_ratio']),
        liquidation_collateral_ratio=to_decimal(raw['liquidation_collateral_ratio']),
        liquidation_penalty_pct=to_decimal(raw['liquidation_penalty_pct']),
        price_feed_id=raw['price_feed_id'],
        debt_ceiling=to_decimal(raw['debt_ceiling']),
        protocol_fee_pct=to_decimal(raw.get('protocol_fee_pct', Decimal("0"))),
        max_debt_share=(
            to_decimal(raw['max_debt_share']) if raw.get('max_debt_share') is not None else None
        ),
    )
    interest = InterestState(
        cumulative_interest_index=to_decimal(raw['cumulative_interest_index']),
        last_update_timestamp=raw['last_update_timestamp'],
        current_annual_rate=to_decimal(raw['current_annual_rate']),
        total_debt=to_decimal(raw.get('total_debt', Decimal("0"))),
    )
    return ct, interest


def to_state_dict(ct: CollateralType, interest: InterestState) -> Dict[str, Any]:
    """Inverse of load_collateral()."""
    return {
        'id': ct.id,
        'accepted': ct.accepted,
        'min_collateral_ratio': ct.min_collateral_ratio,
        'liquidation_collateral_ratio': ct.liquidation_collateral_ratio,
        'liquidation_penalty_pct': ct.liquidation_penalty_pct,
        'price_feed_id': ct.price_feed_id,
        'debt_ceiling': ct.debt_ceiling,
        'protocol_fee_pct': ct.protocol_fee_pct,
        'max_debt_share': ct.max_debt_share,
        'cumulative_interest_index': interest.cumulative_interest_index,
        'last_update_timestamp': interest.last_update_timestamp,
        'current_annual_rate': interest.current_annual_rate,
        'total_debt': interest.total_debt,
    }


def list_collateral_types(view: LedgerView) -> List[str]:
    """Ids of all registered collateral types, sorted."""
    return [
        symbol[len(COLLATERAL_UNIT_PREFIX):]
        for symbol in view.list_units()
        if symbol.startswith(COLLATERAL_UNIT_PREFIX)
    ]


def total_system_debt(view: LedgerView) -> Decimal:
    """Realized debt summed over every collateral type."""
    total = Decimal("0")
    for collateral_id in list_collateral_types(view):
        _, interest = load_collateral(view, collateral_id)
        total += interest.total_debt
    return total


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def check_mint_limits(
    ct: CollateralType,
    type_debt_after: Decimal,
    system_debt_after: Decimal,
) -> None:
    """
    Check the limits on stablecoin minted against a collateral type.

    Args:
        ct: Collateral configuration
        type_debt_after: Total debt of this type including the new mint
        system_debt_after: Total debt of all types including the new mint

    Raises:
        DebtCeilingExceeded: Above debt_ceiling, or above max_debt_share of all debt
    """
    if type_debt_after > ct.debt_ceiling:
        raise DebtCeilingExceeded(
            f"{ct.id}: debt {type_debt_after} would exceed ceiling {ct.debt_ceiling}"
        )
    if ct.max_debt_share is not None and system_debt_after > 0:
        share = type_debt_after / system_debt_after
        if share > ct.max_debt_share:
            raise DebtCeilingExceeded(
                f"{ct.id}: share {share} of total debt would exceed {ct.max_debt_share}"
            )


def require_accepted(ct: CollateralType) -> None:
    """
    Raises:
        UnacceptedCollateral: If the type no longer takes new debt
    """
    if not ct.accepted:
        raise UnacceptedCollateral(f"Collateral {ct.id} is not accepted")


# ============================================================================
# UNIT CREATION / ADMIN OPERATIONS
# ============================================================================

def create_collateral_type_unit(
    ct: CollateralType,
    created_at: datetime,
    initial_rate: Decimal = Decimal("0"),
) -> Unit:
    """A COLLATERAL:<id> unit with a fresh interest index of 1."""
    interest = InterestState(
        cumulative_interest_index=Decimal("1"),
        last_update_timestamp=created_at,
        current_annual_rate=to_decimal(initial_rate),
        total_debt=Decimal("0"),
    )
    return state_unit(
        symbol=ct.unit_symbol,
        name=f"Collateral type {ct.id}",
        unit_type=UNIT_TYPE_COLLATERAL_TYPE,
        state=to_state_dict(ct, interest),
    )


def compute_add_collateral_type(
    view: LedgerView,
    caller: str,
    ct: CollateralType,
    initial_rate: Decimal = Decimal("0"),
) -> PendingTransaction:
    """
    Register a new collateral type. Admin only.

    Raises:
        Unauthorized: If caller is not the administrator
        ValidationError: If the type already exists
    """
    _, protocol = load_protocol(view)
    require_admin(protocol, caller)
    if ct.id in list_collateral_types(view):
        raise ValidationError(f"Collateral type {ct.id} already exists")

    unit = create_collateral_type_unit(ct, view.current_time, initial_rate)
    origin = TransactionOrigin(OriginType.ADMIN, caller, ct.unit_symbol, "ADD_COLLATERAL_TYPE")
    return build_transaction(view, [], origin=origin, units_to_create=(unit,))


def compute_set_collateral_params(
    view: LedgerView,
    caller: str,
    collateral_id: str,
    **changes,
) -> PendingTransaction:
    """
    Replace a collateral type's configuration. Admin only.

    The interest state is kept; the new configuration is validated as a whole.

    Example:
        pending = compute_set_collateral_params(view, "admin", "XRD", debt_ceiling=Decimal("5e6"))
    """
    _, protocol = load_protocol(view)
    require_admin(protocol, caller)
    ct, interest = load_collateral(view, collateral_id)

    if 'id' in changes:
        raise ValidationError("Collateral id cannot be changed")
    unknown = set(changes) - set(CollateralType.__dataclass_fields__)
    if unknown:
        raise ValidationError(f"Unknown collateral parameters: {sorted(unknown)}")
    new_ct = replace(ct, **changes)

    symbol = collateral_unit_symbol(collateral_id)
    old_state = view.get_unit_state(symbol)
    origin = TransactionOrigin(OriginType.ADMIN, caller, symbol, "SET_COLLATERAL_PARAMS")
    return build_transaction(
        view, [],
        [UnitStateChange(symbol, old_state, to_state_dict(new_ct, interest))],
        origin,
    )
