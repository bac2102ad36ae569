"""
core.py - Core types and pure helpers for the Stabilis engine.

This module provides the building blocks every other module shares:
1. Decimal context and protocol-wide constants
2. Protocols: LedgerView for read-only access to ledger state
3. Enums: ExecuteResult, OriginType, PositionStatus
4. Exceptions: the LedgerError / StabilisError taxonomy
5. Immutable transaction types: Move, UnitStateChange, PendingTransaction, Transaction, Unit
6. Unit factories for the stablecoin and collateral tokens

Nothing in this module mutates ledger state. Contracts describe what should happen
as a PendingTransaction and the Ledger decides whether it happens.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, ROUND_UP, getcontext
from enum import Enum
import copy
import hashlib
from typing import (
    Dict, List, Set, Optional, Callable, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Collateral ratios, interest indexes and controller output are all Decimal.
# The global context is configured once at import time.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
_STABILIS_DECIMAL_CONTEXT = getcontext()
_STABILIS_DECIMAL_CONTEXT.prec = 50
_STABILIS_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Issuance wallet: stablecoin is minted from it and burned back into it.
# Exempt from balance validation.
SYSTEM_WALLET = "system"

# Protocol custody wallets.
VAULT_WALLET = "stabilis_vault"
TREASURY_WALLET = "stabilis_treasury"

# Unit type constants (strings, like the rest of the ledger).
UNIT_TYPE_STABLECOIN = "STABLECOIN"
UNIT_TYPE_COLLATERAL_TOKEN = "COLLATERAL_TOKEN"
UNIT_TYPE_COLLATERAL_TYPE = "COLLATERAL_TYPE"
UNIT_TYPE_CDP = "CDP"
UNIT_TYPE_PID = "PID_CONTROLLER"
UNIT_TYPE_PROTOCOL = "PROTOCOL"

# Well-known unit symbols / prefixes.
PROTOCOL_UNIT = "STABILIS"
COLLATERAL_UNIT_PREFIX = "COLLATERAL:"
PID_UNIT_PREFIX = "PID:"
CDP_PREFIX = "CDP_"

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")

SECONDS_PER_YEAR = Decimal(365 * 24 * 3600)

# Token divisibility: 18 decimal places.
TOKEN_DECIMAL_PLACES = 18

DECIMAL_ROUNDING = {
    UNIT_TYPE_STABLECOIN: ROUND_HALF_EVEN,
    UNIT_TYPE_COLLATERAL_TOKEN: ROUND_DOWN,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# wallet ID -> quantity held for a specific unit.
Positions = Dict[str, Decimal]

# unit symbol -> quantity held in a single wallet.
BalanceMap = Dict[str, Decimal]

# Internal state of a unit.
UnitState = Dict[str, Any]

# asset id -> price
PriceMap = Dict[str, Decimal]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Every compute_* function takes a LedgerView, which declares that it only
    reads. The Ledger implements this protocol; tests use FakeView.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Return the balance of a unit in a wallet (Decimal("0") if none)."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's internal state."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero holdings of a unit, keyed by wallet."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def list_units(self) -> List[str]:
        """Return all registered unit symbols, sorted."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: validated and applied.
    ALREADY_APPLIED: the same intent was processed before (idempotent).
    REJECTED: failed validation; the reason is kept in Ledger.last_rejection.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated, for the audit trail."""
    USER_ACTION = "user_action"
    ADMIN = "admin"
    KEEPER = "keeper"
    SYSTEM = "system"
    FLASH_LOAN = "flash_loan"


class PositionStatus(str, Enum):
    """
    Lifecycle status of a collateralized debt position.

    OPEN -> MARKED -> LIQUIDATED
    OPEN -> CLOSED
    MARKED -> OPEN (explicit unmark)
    """
    OPEN = "Open"
    MARKED = "Marked"
    LIQUIDATED = "Liquidated"
    CLOSED = "Closed"

    @property
    def is_terminal(self) -> bool:
        return self in (PositionStatus.LIQUIDATED, PositionStatus.CLOSED)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    retryable = False


class BalanceConstraintViolation(LedgerError):
    """Raised when a move would push a wallet balance outside the unit's bounds."""
    pass


class TransferRuleViolation(LedgerError):
    """Raised when a move violates the unit's transfer rule."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when operating on a unit that has not been registered."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that has not been registered."""
    pass


class StabilisError(LedgerError):
    """
    Base for every failure of a Stabilis operation.

    All failures abort the triggering operation atomically. The retryable
    flag tells callers whether the same call can succeed after refreshing
    state (prices, positions) or needs different inputs.
    """
    pass


class ValidationError(StabilisError):
    """Bad parameters: amounts, identities, collateral configuration."""
    pass


class UnacceptedCollateral(ValidationError):
    """The collateral type is unknown or not accepted for new debt."""
    pass


class DebtCeilingExceeded(ValidationError):
    """Minting would push a collateral type's debt above its ceiling."""
    pass


class InsufficientRepayment(ValidationError):
    """The offered repayment does not cover the required amount."""
    pass


class InsufficientFunds(ValidationError):
    """A wallet does not hold enough of a unit to cover a debit."""
    pass


class Unauthorized(ValidationError):
    """The caller is not allowed to perform the operation."""
    pass


class StateError(StabilisError):
    """The operation is not valid for the current position or protocol state."""
    pass


class NotLiquidatable(StateError):
    """The position is healthy and cannot be marked or liquidated."""
    pass


class NothingToClaim(StateError):
    """No owner-claimable leftover collateral remains."""
    pass


class ProtocolPaused(StateError):
    """The operation is switched off by a protocol parameter."""
    pass


class InsolvencyError(StabilisError):
    """Collateralization below the minimum, or an unaccepted loss."""
    pass


class UnrepaidFlashLoan(InsolvencyError):
    """Stablecoin minted inside a bounding transaction was not burned."""
    pass


class StalePriceError(StabilisError):
    """No price, a future price, or a price older than the allowed age."""
    retryable = True


class ConcurrencyError(StabilisError):
    """Lost a race or re-entered the engine mid-mutation."""
    retryable = True


class PositionAlreadyLiquidated(ConcurrencyError):
    """Another liquidate() already claimed this position."""
    pass


class StaleStateError(ConcurrencyError):
    """The transaction was built from state that has since changed."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Who asked for a transaction and why.

    Attributes:
        origin_type: USER_ACTION, ADMIN, KEEPER, SYSTEM or FLASH_LOAN
        source_id: caller identity
        unit_symbol: unit the operation targets (position id, collateral unit)
        event_type: operation name (e.g. "OPEN", "LIQUIDATE")
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Before/after snapshot of one unit's state.

    old_state doubles as the optimistic-concurrency guard: the ledger rejects
    the change if the unit no longer holds old_state when it is applied.
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Return {field: (old, new)} for the fields that differ."""
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        changes = {}
        for key in set(old.keys()) | set(new.keys()):
            if old.get(key) != new.get(key):
                changes[key] = (old.get(key), new.get(key))
        return changes


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of a unit between two wallets.

    Minting is a move out of SYSTEM_WALLET, burning a move into it.
    All fields are validated in __post_init__.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.quantity < QUANTITY_EPSILON:
            raise ValueError("Move quantity is effectively zero")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}->{self.dest})"


def _normalize_decimal(d: Decimal) -> str:
    """Canonical string for a Decimal: Decimal("1.0") and Decimal("1.00") both give "1"."""
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Deterministic serialization of nested state for hashing.

    Independent of dict ordering and Decimal representation.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        return f"[{','.join(_canonicalize(item) for item in value)}]"
    if isinstance(value, (set, frozenset)):
        return f"<{','.join(_canonicalize(item) for item in sorted(value, key=str))}>"
    return f"R:{repr(value)}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    state_changes: Tuple[UnitStateChange, ...],
    origin: TransactionOrigin,
    units_to_create: Tuple['Unit', ...] = (),
) -> str:
    """
    Content hash of a transaction's intent, used for idempotency.

    Same moves, state changes, origin and created units always give the same id.
    """
    sorted_moves = sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id)
    )

    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.unit_symbol:
        content_parts.append(f"unit:{origin.unit_symbol}")
    if origin.event_type:
        content_parts.append(f"event:{origin.event_type}")

    for unit in sorted(units_to_create, key=lambda u: u.symbol):
        content_parts.append(f"unit_create:{unit.symbol}|{unit.unit_type}")

    for m in sorted_moves:
        content_parts.append(
            f"move:{_normalize_decimal(m.quantity)}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}"
        )

    for sc in sorted(state_changes, key=lambda s: s.unit):
        content_parts.append(
            f"state_change:{sc.unit}|{_canonicalize(sc.old_state)}|{_canonicalize(sc.new_state)}"
        )

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction before execution: the INTENT.

    Built by compute_* functions, submitted to Ledger.execute().
    intent_id is computed from the content when not given.
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    units_to_create: Tuple['Unit', ...] = ()
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            object.__setattr__(self, 'intent_id', _compute_intent_id(
                self.moves, self.state_changes, self.origin, self.units_to_create
            ))

    def is_empty(self) -> bool:
        """True if there are no moves, no state changes and no units to create."""
        return not self.moves and not self.state_changes and not self.units_to_create

    def touches(self, unit_symbol: str) -> bool:
        """True if the transaction changes the state of unit_symbol."""
        return any(sc.unit == unit_symbol for sc in self.state_changes)

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    units_to_create: Optional[Tuple['Unit', ...]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction stamped with the view's current time.

    State snapshots are deep-copied so later mutation of the caller's dicts
    cannot leak into the transaction.

    Example:
        old_state = view.get_unit_state("CDP_1")
        new_state = {**old_state, 'status': PositionStatus.MARKED.value}
        changes = [UnitStateChange("CDP_1", old_state, new_state)]
        pending = build_transaction(view, [], changes)
    """
    if origin is None:
        origin = TransactionOrigin(OriginType.SYSTEM, "stabilis")

    copied_changes: Tuple[UnitStateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            UnitStateChange(
                unit=sc.unit,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        units_to_create=units_to_create or (),
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """A PendingTransaction that does nothing (used for no-op ticks)."""
    return PendingTransaction(
        moves=(),
        state_changes=(),
        origin=TransactionOrigin(OriginType.SYSTEM, "noop"),
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger changes: the FACT.

    Created by the ledger from a PendingTransaction and appended to the
    audit log.
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    units_to_create: Tuple['Unit', ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.units_to_create:
            raise ValueError("Transaction must have moves, state_changes, or units_to_create")
        if self.contract_ids is None:
            object.__setattr__(self, 'contract_ids', frozenset(m.contract_id for m in self.moves))

    def __repr__(self) -> str:
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   intent_id      : ' + self.intent_id)}│",
            f"│{pad('   execution_time : ' + str(self.execution_time))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + str(self.origin))}│",
        ]
        if self.units_to_create:
            lines.append(f"├{bar}┤")
            for unit in self.units_to_create:
                lines.append(f"│{pad('   + ' + unit.symbol + ' (' + unit.unit_type + ')')}│")
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
        for i, move in enumerate(self.moves):
            lines.append(f"│{pad(f'   [{i}] {move.quantity} {move.unit_symbol}: {move.source} → {move.dest}')}│")
        if self.state_changes:
            lines.append(f"├{bar}┤")
            for sc in self.state_changes:
                lines.append(f"│{pad('   [' + sc.unit + ']')}│")
                for field_name, (old_val, new_val) in sorted(sc.changed_fields().items()):
                    if isinstance(old_val, (list, dict)) or isinstance(new_val, (list, dict)):
                        continue
                    lines.append(f"│{pad(f'      {field_name}: {old_val!r} → {new_val!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


# Transfer rules validate a move and raise TransferRuleViolation.
TransferRule = Callable[[LedgerView, Move], None]


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a state dict to a sorted tuple of (key, value) pairs."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Inverse of _freeze_state."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    A registered unit: either a token held in wallets or a state carrier.

    Tokens (stablecoin, collateral) are moved between wallets. Protocol
    records (collateral types, positions, the controller) are units whose
    value lives entirely in their frozen state.
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    transfer_rule: Optional[TransferRule] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """A fresh dict of the unit's state on every access."""
        return _thaw_state(self._frozen_state)

    def round(self, value: Decimal) -> Decimal:
        """Quantize value to the unit's precision (unchanged if decimal_places is None)."""
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        return value.quantize(quantizer, rounding=DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN))


def to_decimal(value: Any) -> Decimal:
    """Coerce int/str/float/Decimal to Decimal through str (no binary float artifacts)."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_down(value: Decimal, places: int = TOKEN_DECIMAL_PLACES) -> Decimal:
    """Round toward zero to token precision (amounts paid out by the protocol)."""
    return value.quantize(Decimal(10) ** -places, rounding=ROUND_DOWN)


def quantize_up(value: Decimal, places: int = TOKEN_DECIMAL_PLACES) -> Decimal:
    """Round away from zero to token precision (amounts owed to the protocol)."""
    return value.quantize(Decimal(10) ** -places, rounding=ROUND_UP)


# ============================================================================
# TRANSFER RULES
# ============================================================================

def state_unit_transfer_rule(view: LedgerView, move: Move) -> None:
    """Record-keeping units hold no balances and can never be moved."""
    raise TransferRuleViolation(f"{move.unit_symbol} is a state unit and cannot be transferred")


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def stablecoin(symbol: str = "STAB", name: str = "Stabilis USD") -> Unit:
    """
    Create the pegged stablecoin unit.

    Only SYSTEM_WALLET may go negative (it is exempt from validation), so the
    circulating supply is exactly what has been minted and not burned.
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_STABLECOIN,
        decimal_places=TOKEN_DECIMAL_PLACES,
        _frozen_state=_freeze_state({'issuer': SYSTEM_WALLET}),
    )


def collateral_token(symbol: str, name: str, decimal_places: int = TOKEN_DECIMAL_PLACES) -> Unit:
    """Create a collateral token unit (e.g. "XRD"). Balances cannot go negative."""
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_COLLATERAL_TOKEN,
        decimal_places=decimal_places,
    )


def state_unit(symbol: str, name: str, unit_type: str, state: UnitState) -> Unit:
    """Create a record-keeping unit whose value lives in its state."""
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=unit_type,
        min_balance=Decimal("0"),
        max_balance=Decimal("0"),
        transfer_rule=state_unit_transfer_rule,
        _frozen_state=_freeze_state(state),
    )
