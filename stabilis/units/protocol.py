"""
protocol.py - Protocol-wide parameters and indexes

The STABILIS unit carries everything that is global to one deployment:
    - ProtocolParameters: admin-tunable settings (pause switches, minimum mint,
      marker priority, force liquidation and force mint pricing,
      grace period, price freshness)
    - ProtocolState: administrator, stablecoin symbol, position counter, owner
      index, liquidation log, bad-debt total, authorized minters, flash counters

Positions and collateral types read their limits from here; the liquidation
engine appends to the log kept here.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple, Mapping

from ..core import (
    LedgerView, PendingTransaction, Unit, UnitStateChange, TransactionOrigin, OriginType,
    PROTOCOL_UNIT, UNIT_TYPE_PROTOCOL, CDP_PREFIX,
    ValidationError, Unauthorized,
    build_transaction, state_unit, to_decimal,
)


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class ProtocolParameters:
    """
    Admin-tunable protocol settings.

    minimum_mint: smallest debt a position may be opened with or left holding
    grace_period_seconds: time after marking before a recovered position may still be liquidated
    allow_top_up_while_marked: lets owners rescue a marked position during the grace window
    max_price_age_seconds: oldest oracle observation accepted
    unmarked_delay_seconds: extra wait after the grace window before anyone but the
        marker may liquidate; 0 gives the marker no priority
    force_liquidate_percentage: share of the repaid value paid out in collateral by force_liquidate
    force_mint_percentage: collateral value supplied per stablecoin minted by force_mint
    force_mint_cr_multiplier: force_mint leaves a position at or above this multiple
        of its liquidation ratio
    """
    minimum_mint: Decimal = Decimal("1")
    grace_period_seconds: int = 300
    stop_openings: bool = False
    stop_closings: bool = False
    stop_liquidations: bool = False
    allow_top_up_while_marked: bool = True
    max_price_age_seconds: int = 3600
    unmarked_delay_seconds: int = 0
    stop_force_liquidate: bool = False
    stop_force_mint: bool = False
    force_liquidate_percentage: Decimal = Decimal("0.95")
    force_mint_percentage: Decimal = Decimal("1.05")
    force_mint_cr_multiplier: Decimal = Decimal("3")

    def __post_init__(self):
        if not isinstance(self.minimum_mint, Decimal):
            object.__setattr__(self, 'minimum_mint', to_decimal(self.minimum_mint))
        if self.minimum_mint < 0:
            raise ValidationError(f"minimum_mint must be >= 0, got {self.minimum_mint}")
        if self.grace_period_seconds < 0:
            raise ValidationError(f"grace_period_seconds must be >= 0, got {self.grace_period_seconds}")
        if self.max_price_age_seconds < 0:
            raise ValidationError(f"max_price_age_seconds must be >= 0, got {self.max_price_age_seconds}")
        if self.unmarked_delay_seconds < 0:
            raise ValidationError(f"unmarked_delay_seconds must be >= 0, got {self.unmarked_delay_seconds}")
        for name in ('force_liquidate_percentage', 'force_mint_percentage', 'force_mint_cr_multiplier'):
            value = to_decimal(getattr(self, name))
            object.__setattr__(self, name, value)
            if value <= 0:
                raise ValidationError(f"{name} must be positive, got {value}")
        if self.force_mint_percentage >= self.force_mint_cr_multiplier:
            raise ValidationError(
                f"force_mint_percentage {self.force_mint_percentage} must be below "
                f"force_mint_cr_multiplier {self.force_mint_cr_multiplier}"
            )


@dataclass(frozen=True, slots=True)
class ProtocolState:
    """Indexes and counters of a deployment. Changed only through transactions."""
    admin: str
    stablecoin: str
    next_position_id: int = 1
    positions_by_owner: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    liquidation_log: Tuple[Dict[str, Any], ...] = ()
    total_bad_debt: Decimal = Decimal("0")
    minters: Tuple[str, ...] = ()
    flash_minted: Decimal = Decimal("0")
    flash_burned: Decimal = Decimal("0")


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_protocol(view: LedgerView) -> Tuple[ProtocolParameters, ProtocolState]:
    """Read the STABILIS unit as typed dataclasses."""
    raw = view.get_unit_state(PROTOCOL_UNIT)

    params = ProtocolParameters(
        minimum_mint=to_decimal(raw.get('minimum_mint', Decimal("1"))),
        grace_period_seconds=raw.get('grace_period_seconds', 300),
        stop_openings=raw.get('stop_openings', False),
        stop_closings=raw.get('stop_closings', False),
        stop_liquidations=raw.get('stop_liquidations', False),
        allow_top_up_while_marked=raw.get('allow_top_up_while_marked', True),
        max_price_age_seconds=raw.get('max_price_age_seconds', 3600),
        unmarked_delay_seconds=raw.get('unmarked_delay_seconds', 0),
        stop_force_liquidate=raw.get('stop_force_liquidate', False),
        stop_force_mint=raw.get('stop_force_mint', False),
        force_liquidate_percentage=to_decimal(raw.get('force_liquidate_percentage', Decimal("0.95"))),
        force_mint_percentage=to_decimal(raw.get('force_mint_percentage', Decimal("1.05"))),
        force_mint_cr_multiplier=to_decimal(raw.get('force_mint_cr_multiplier', Decimal("3"))),
    )

    state = ProtocolState(
        admin=raw.get('admin', ''),
        stablecoin=raw.get('stablecoin', 'STAB'),
        next_position_id=raw.get('next_position_id', 1),
        positions_by_owner={
            owner: tuple(ids) for owner, ids in raw.get('positions_by_owner', {}).items()
        },
        liquidation_log=tuple(raw.get('liquidation_log', [])),
        total_bad_debt=to_decimal(raw.get('total_bad_debt', Decimal("0"))),
        minters=tuple(raw.get('minters', [])),
        flash_minted=to_decimal(raw.get('flash_minted', Decimal("0"))),
        flash_burned=to_decimal(raw.get('flash_burned', Decimal("0"))),
    )
    return params, state


def to_state_dict(params: ProtocolParameters, state: ProtocolState) -> Dict[str, Any]:
    """Inverse of load_protocol()."""
    return {
        'admin': state.admin,
        'stablecoin': state.stablecoin,
        'minimum_mint': params.minimum_mint,
        'grace_period_seconds': params.grace_period_seconds,
        'stop_openings': params.stop_openings,
        'stop_closings': params.stop_closings,
        'stop_liquidations': params.stop_liquidations,
        'allow_top_up_while_marked': params.allow_top_up_while_marked,
        'max_price_age_seconds': params.max_price_age_seconds,
        'unmarked_delay_seconds': params.unmarked_delay_seconds,
        'stop_force_liquidate': params.stop_force_liquidate,
        'stop_force_mint': params.stop_force_mint,
        'force_liquidate_percentage': params.force_liquidate_percentage,
        'force_mint_percentage': params.force_mint_percentage,
        'force_mint_cr_multiplier': params.force_mint_cr_multiplier,
        'next_position_id': state.next_position_id,
        'positions_by_owner': {
            owner: list(ids) for owner, ids in state.positions_by_owner.items()
        },
        'liquidation_log': [dict(record) for record in state.liquidation_log],
        'total_bad_debt': state.total_bad_debt,
        'minters': list(state.minters),
        'flash_minted': state.flash_minted,
        'flash_burned': state.flash_burned,
    }


def position_symbol(position_number: int) -> str:
    return f"{CDP_PREFIX}{position_number}"


def require_admin(state: ProtocolState, caller: str) -> None:
    """
    Raises:
        Unauthorized: If caller is not the protocol administrator
    """
    if caller != state.admin:
        raise Unauthorized(f"{caller} is not the protocol administrator")


def require_minter(state: ProtocolState, caller: str) -> None:
    """
    Raises:
        Unauthorized: If caller is not an authorized minter
    """
    if caller not in state.minters:
        raise Unauthorized(f"{caller} is not an authorized minter")


# ============================================================================
# PURE STATE TRANSITIONS
# ============================================================================

def allocate_position(state: ProtocolState, owner: str) -> Tuple[str, ProtocolState]:
    """Reserve the next position id for owner and index it."""
    symbol = position_symbol(state.next_position_id)
    index = dict(state.positions_by_owner)
    index[owner] = tuple(index.get(owner, ())) + (symbol,)
    return symbol, replace(
        state,
        next_position_id=state.next_position_id + 1,
        positions_by_owner=index,
    )


def append_liquidation(state: ProtocolState, record: Dict[str, Any], bad_debt: Decimal) -> ProtocolState:
    """Append a liquidation record and add its bad debt to the running total."""
    return replace(
        state,
        liquidation_log=state.liquidation_log + (record,),
        total_bad_debt=state.total_bad_debt + bad_debt,
    )


# ============================================================================
# UNIT CREATION
# ============================================================================

def create_protocol_unit(
    admin: str,
    stablecoin_symbol: str = "STAB",
    params: Optional[ProtocolParameters] = None,
) -> Unit:
    """Create the STABILIS unit for a new deployment."""
    if not admin:
        raise ValidationError("admin cannot be empty")
    params = params or ProtocolParameters()
    state = ProtocolState(admin=admin, stablecoin=stablecoin_symbol)
    return state_unit(
        symbol=PROTOCOL_UNIT,
        name="Stabilis protocol",
        unit_type=UNIT_TYPE_PROTOCOL,
        state=to_state_dict(params, state),
    )


# ============================================================================
# ADMIN OPERATIONS
# ============================================================================

def compute_set_protocol_parameters(
    view: LedgerView,
    caller: str,
    **changes,
) -> PendingTransaction:
    """
    Change protocol parameters. Admin only.

    Example:
        pending = compute_set_protocol_parameters(view, "admin", stop_openings=True)
    """
    params, state = load_protocol(view)
    require_admin(state, caller)
    unknown = set(changes) - set(ProtocolParameters.__dataclass_fields__)
    if unknown:
        raise ValidationError(f"Unknown protocol parameters: {sorted(unknown)}")
    new_params = replace(params, **changes)

    old_state = view.get_unit_state(PROTOCOL_UNIT)
    new_state = to_state_dict(new_params, state)
    origin = TransactionOrigin(OriginType.ADMIN, caller, PROTOCOL_UNIT, "SET_PROTOCOL_PARAMETERS")
    return build_transaction(view, [], [UnitStateChange(PROTOCOL_UNIT, old_state, new_state)], origin)


def compute_authorize_minter(view: LedgerView, caller: str, minter_id: str) -> PendingTransaction:
    """Grant mint/burn rights to minter_id. Admin only."""
    params, state = load_protocol(view)
    require_admin(state, caller)
    if not minter_id:
        raise ValidationError("minter_id cannot be empty")
    if minter_id in state.minters:
        raise ValidationError(f"{minter_id} is already an authorized minter")

    new_protocol = replace(state, minters=state.minters + (minter_id,))
    old_state = view.get_unit_state(PROTOCOL_UNIT)
    origin = TransactionOrigin(OriginType.ADMIN, caller, PROTOCOL_UNIT, "AUTHORIZE_MINTER")
    return build_transaction(
        view, [],
        [UnitStateChange(PROTOCOL_UNIT, old_state, to_state_dict(params, new_protocol))],
        origin,
    )


def list_positions_of(view: LedgerView, owner: str) -> List[str]:
    """Position ids opened by owner, oldest first."""
    _, state = load_protocol(view)
    return list(state.positions_by_owner.get(owner, ()))
