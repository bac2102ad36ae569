"""
stabilis - Collateralized stablecoin engine

Positions lock collateral and mint a pegged stablecoin against it. Interest
accrues per collateral type through a cumulative index whose rate is set by
a PID controller tracking the stablecoin's market price. Undercollateralized
positions are marked and then liquidated by anyone who repays the debt.

All balances and protocol state live on a Ledger; every operation is one
atomic transaction.

Usage:
    from stabilis import (
        Ledger, Stabilis, CollateralType, StaticPriceFeed, PriceFeedAdapter,
        collateral_token, build_transaction, Move, SYSTEM_WALLET,
    )

    ledger = Ledger("stabilis", datetime(2025, 1, 1))
    ledger.register_unit(collateral_token("XRD", "Radix"))
    ledger.register_wallet("alice")

    # Fund alice via SYSTEM_WALLET (proper issuance)
    ledger.execute(build_transaction(ledger, [
        Move(Decimal("1000"), "XRD", SYSTEM_WALLET, "alice", "initial_balance")
    ]))

    oracle = StaticPriceFeed({"XRD": (Decimal("1"), datetime(2025, 1, 1))})
    engine = Stabilis(ledger, "admin", PriceFeedAdapter({"XRD": oracle}))
    engine.add_collateral_type("admin", CollateralType(
        id="XRD", accepted=True,
        min_collateral_ratio=Decimal("1.5"),
        liquidation_collateral_ratio=Decimal("1.2"),
        liquidation_penalty_pct=Decimal("0.10"),
        price_feed_id="XRD", debt_ceiling=Decimal("1000000"),
    ))

    position_id = engine.open("alice", "XRD", Decimal("150"), Decimal("100"))
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    PositionStatus,
    build_transaction,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    LedgerError,
    BalanceConstraintViolation,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    StabilisError,
    ValidationError,
    UnacceptedCollateral,
    DebtCeilingExceeded,
    InsufficientRepayment,
    InsufficientFunds,
    Unauthorized,
    StateError,
    NotLiquidatable,
    NothingToClaim,
    ProtocolPaused,
    InsolvencyError,
    UnrepaidFlashLoan,
    StalePriceError,
    ConcurrencyError,
    PositionAlreadyLiquidated,
    StaleStateError,
    stablecoin,
    collateral_token,
    state_unit,
    to_decimal,
    quantize_down,
    quantize_up,
    SYSTEM_WALLET,
    VAULT_WALLET,
    TREASURY_WALLET,
    PROTOCOL_UNIT,
    SECONDS_PER_YEAR,
    UNIT_TYPE_STABLECOIN,
    UNIT_TYPE_COLLATERAL_TOKEN,
    UNIT_TYPE_COLLATERAL_TYPE,
    UNIT_TYPE_CDP,
    UNIT_TYPE_PID,
    UNIT_TYPE_PROTOCOL,
)

# Ledger
from .ledger import Ledger

# Prices
from .price_feed import (
    PriceFeed,
    StaticPriceFeed,
    TimeSeriesPriceFeed,
    ConstantProductPool,
    PriceFeedAdapter,
)

# Protocol records
from .units import (
    ProtocolParameters,
    ProtocolState,
    load_protocol,
    CollateralType,
    InterestState,
    load_collateral,
    list_collateral_types,
    total_system_debt,
    calculate_index,
    calculate_advance,
    calculate_realized_debt,
    compute_advance,
    PIDParameters,
    PIDState,
    calculate_error,
    calculate_tick,
    load_pid,
    compute_tick,
    Position,
    load_position,
    calculate_collateral_ratio,
    calculate_partial_release,
    compute_open,
    compute_close,
    compute_top_up,
    compute_borrow_more,
    compute_partial_close,
    compute_remove_collateral,
    LiquidationRecord,
    LiquidationSplit,
    calculate_liquidation,
    compute_mark,
    compute_unmark,
    compute_liquidate,
    compute_retrieve_leftover,
    find_unsafe_positions,
    ForceLiquidationSplit,
    ForceMintSplit,
    calculate_force_liquidation,
    calculate_force_mint_capacity,
    calculate_force_mint,
    compute_force_liquidate,
    compute_force_mint,
)

# Engine and drivers
from .engine import Stabilis
from .flash_loans import FlashLoanFacility
from .keeper import Keeper

# Research
from .simulation import PegSimulation, simulate_peg, deviation_trigger_probability
