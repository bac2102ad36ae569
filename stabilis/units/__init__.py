"""
Units module - Protocol records kept as ledger units.

- STABILIS: protocol parameters and indexes
- COLLATERAL:<id>: collateral type configuration and interest state
- PID:<stablecoin>: interest controller
- CDP_<n>: collateralized debt positions

All compute functions and record types are re-exported here for convenience.
"""

# Protocol
from .protocol import (
    ProtocolParameters,
    ProtocolState,
    load_protocol,
    create_protocol_unit,
    compute_set_protocol_parameters,
    compute_authorize_minter,
    list_positions_of,
    require_admin,
    require_minter,
)

# Collateral registry
from .collateral import (
    CollateralType,
    InterestState,
    collateral_unit_symbol,
    load_collateral,
    list_collateral_types,
    total_system_debt,
    check_mint_limits,
    create_collateral_type_unit,
    compute_add_collateral_type,
    compute_set_collateral_params,
)

# Interest accrual
from .interest import (
    calculate_index,
    calculate_advance,
    calculate_realized_debt,
    load_advanced_collateral,
    compute_advance,
)

# PID controller
from .pid import (
    PIDParameters,
    PIDState,
    initial_pid_state,
    calculate_error,
    calculate_tick,
    current_rate,
    pid_unit_symbol,
    load_pid,
    controller_rate,
    create_pid_unit,
    compute_tick,
    compute_set_pid_params,
)

# Positions
from .position import (
    Position,
    load_position,
    load_touched_position,
    calculate_collateral_ratio,
    calculate_partial_release,
    compute_open,
    compute_close,
    compute_top_up,
    compute_borrow_more,
    compute_partial_close,
    compute_remove_collateral,
    outstanding_debt,
    collateral_ratio,
    positions_of,
    list_positions,
)

# Liquidation
from .liquidation import (
    LiquidationRecord,
    LiquidationSplit,
    is_unsafe,
    calculate_liquidation,
    compute_mark,
    compute_unmark,
    compute_liquidate,
    compute_retrieve_leftover,
    find_unsafe_positions,
    liquidation_log,
)

# Forced liquidation and minting at the peg
from .force import (
    ForceLiquidationSplit,
    ForceMintSplit,
    calculate_force_liquidation,
    calculate_force_mint_capacity,
    calculate_force_mint,
    lowest_ratio_position,
    highest_ratio_position,
    compute_force_liquidate,
    compute_force_mint,
)
