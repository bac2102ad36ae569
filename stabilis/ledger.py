"""
ledger.py - Stateful double-entry ledger behind the Stabilis engine

The Ledger is the single writer. Every balance and every piece of protocol
state (collateral types, positions, controller state) changes only through
execute(), which applies a PendingTransaction completely or not at all.

Key responsibilities:
    - Implements LedgerView for the pure compute_* functions
    - Executes transactions atomically and idempotently
    - Rejects transactions built from stale unit state (compare-and-transition)
    - Tracks logical time; clone(), clone_at(), replay() and restore() for audit and rollback
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Set, Optional, Tuple, Any
import copy

from .core import (
    Transaction, Unit, PendingTransaction,
    ExecuteResult,
    Positions, UnitState, BalanceMap,
    QUANTITY_EPSILON, SYSTEM_WALLET,
    LedgerError, TransferRuleViolation, UnitNotRegistered, WalletNotRegistered,
    _freeze_state,
)


# Prefixes of Ledger.last_rejection, so callers can tell rejection kinds apart.
REJECT_STALE_STATE = "stale state"
REJECT_BALANCE = "balance"
REJECT_UNREGISTERED = "not registered"


class Ledger:
    """
    Double-entry ledger with validation, optimistic concurrency and an audit trail.

    Thread Safety:
        Not thread-safe. Concurrent callers are serialized by running every
        mutation through execute(); a transaction computed from an older view
        is rejected rather than applied over newer state.

    Example:
        ledger = Ledger("main", datetime(2025, 1, 1))
        ledger.register_unit(collateral_token("XRD", "Radix"))
        ledger.register_wallet("alice")
        pending = build_transaction(ledger, [
            Move(Decimal("100"), "XRD", SYSTEM_WALLET, "alice", "airdrop")
        ])
        ledger.execute(pending)
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting logical time (default: 1970-01-01)
            verbose: Print every executed or rejected transaction
            test_mode: Allow set_balance() for test setup
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self.last_rejection: Optional[str] = None
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        # unit -> {wallet -> quantity}
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Balance of a unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Deep copy of a unit's state; safe to mutate."""
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        state = self.units[unit_symbol].state
        return copy.deepcopy(state) if state else {}

    def get_positions(self, unit_symbol: str) -> Positions:
        """Non-zero holdings of a unit keyed by wallet."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """All registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """All registered unit symbols, sorted."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def has_unit(self, symbol: str) -> bool:
        return symbol in self.units

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """All balances for a wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return dict(self.balances[wallet_id])

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Sum of a unit's balances across all wallets, SYSTEM_WALLET included.

        Always zero for units issued out of SYSTEM_WALLET; use
        circulating_supply() for the amount outstanding.
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def circulating_supply(self, unit_symbol: str) -> Decimal:
        """Amount of a unit held outside SYSTEM_WALLET."""
        return self.total_supply(unit_symbol) - self.get_balance(SYSTEM_WALLET, unit_symbol)

    def verify_double_entry(self, tolerance: Decimal = Decimal("1e-9")) -> Dict[str, Any]:
        """
        Check that every unit's balances sum to zero across all wallets.

        Every token enters circulation out of SYSTEM_WALLET, so a non-zero sum
        means value was created or destroyed outside a Move.

        Returns:
            {'valid': bool, 'supplies': {unit: total}, 'discrepancies': [...]}
        """
        supplies = {}
        discrepancies = []
        for unit_symbol in sorted(self.units):
            supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = supply
            if abs(supply) > tolerance:
                discrepancies.append({'unit': unit_symbol, 'actual': supply})
        return {
            'valid': not discrepancies,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Move the logical clock forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet.

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def ensure_wallet(self, wallet_id: str) -> str:
        """Register wallet_id unless it already is."""
        if wallet_id not in self.registered_wallets:
            self.register_wallet(wallet_id)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit.

        Raises:
            ValueError: If the symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            print(f"Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Overwrite a balance directly. Test mode only.

        Bypasses double-entry accounting; not replayed by replay().

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use build_transaction() and execute() to modify balances."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        self.balances[wallet_id][unit_symbol] = quantity
        self._update_position_index(wallet_id, unit_symbol, quantity)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """exec:{ledger_name}:{sequence:012d}:{timestamp_micros}"""
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        Validation covers unit and wallet registration, transfer rules,
        balance bounds, timestamps and state freshness: each state change's
        old_state must equal the unit's current state. On any failure nothing
        is applied, the result is REJECTED and the reason is stored in
        last_rejection.

        Returns:
            ExecuteResult.APPLIED, ALREADY_APPLIED or REJECTED
        """
        self.last_rejection = None

        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                print(f"ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED

        # Units are registered for validation and unregistered again on failure.
        newly_registered: List[str] = []
        for unit in pending.units_to_create:
            if unit.symbol in self.units:
                return self._reject(newly_registered, f"unit already exists: {unit.symbol}")
            self.units[unit.symbol] = unit
            newly_registered.append(unit.symbol)

        valid, reason = self._validate_pending(pending)
        if not valid:
            return self._reject(newly_registered, reason)

        sequence = self._next_sequence
        self._next_sequence += 1

        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        self._execute_moves(tx.moves)

        for sc in tx.state_changes:
            old_unit = self.units[sc.unit]
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.unit] = replace(old_unit, _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            print(repr(tx))
        return ExecuteResult.APPLIED

    def _reject(self, newly_registered: List[str], reason: str) -> ExecuteResult:
        for sym in newly_registered:
            del self.units[sym]
        self.last_rejection = reason
        if self.verbose:
            print(f"REJECTED: {reason}")
        return ExecuteResult.REJECTED

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate a pending transaction against all constraints.

        Checks:
        1. Timestamp (not from the future)
        2. Unit and wallet registration, transfer rules
        3. State freshness of every state change (a lost race reads as stale)
        4. Balance bounds (SYSTEM_WALLET exempt)

        Returns:
            (True, "") or (False, reason)
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return False, f"{REJECT_UNREGISTERED}: unit {move.unit_symbol}"
            if not self.is_registered(move.source):
                return False, f"{REJECT_UNREGISTERED}: wallet {move.source}"
            if not self.is_registered(move.dest):
                return False, f"{REJECT_UNREGISTERED}: wallet {move.dest}"

            unit = self.units[move.unit_symbol]
            if unit.transfer_rule:
                try:
                    unit.transfer_rule(self, move)
                except TransferRuleViolation as e:
                    return False, str(e)

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return False, f"{REJECT_UNREGISTERED}: unit {sc.unit}"
            if sc.old_state is None:
                continue
            current_state = self.units[sc.unit].state
            old_state = sc.old_state if isinstance(sc.old_state, dict) else {}
            for key in set(old_state.keys()) | set(current_state.keys()):
                if old_state.get(key) != current_state.get(key):
                    return False, f"{REJECT_STALE_STATE}: {sc.unit}.{key}"

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.unit_symbol]
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = unit.round(net.get(key_src, Decimal("0")) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, Decimal("0")) + move.quantity)

        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units[unit_sym]
            proposed = unit.round(self.balances[wallet][unit_sym] + delta)
            if proposed < unit.min_balance:
                return False, f"{REJECT_BALANCE}: {wallet} {unit_sym} {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"{REJECT_BALANCE}: {wallet} {unit_sym} {proposed} > max {unit.max_balance}"

        return True, ""

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Keep the unit -> wallet index in step with a balance; dust is dropped."""
        if abs(quantity) > self.POSITION_EPSILON:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        """Apply moves to balances with unit rounding and update the index."""
        for move in moves:
            unit = self.units[move.unit_symbol]
            new_src_balance = unit.round(
                self.balances[move.source][move.unit_symbol] - move.quantity
            )
            self.balances[move.source][move.unit_symbol] = new_src_balance
            self._update_position_index(move.source, move.unit_symbol, new_src_balance)
            new_dst_balance = unit.round(
                self.balances[move.dest][move.unit_symbol] + move.quantity
            )
            self.balances[move.dest][move.unit_symbol] = new_dst_balance
            self._update_position_index(move.dest, move.unit_symbol, new_dst_balance)

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Fully independent deep copy: units and state, wallets, balances,
        transaction log, clock and configuration.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._current_time = self._current_time
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode
        cloned.last_rejection = self.last_rejection

        cloned.units = {
            symbol: replace(unit, _frozen_state=_freeze_state(copy.deepcopy(unit.state)))
            for symbol, unit in self.units.items()
        }

        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.seen_intent_ids = self.seen_intent_ids.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence

        cloned.balances = {}
        for wallet, bals in self.balances.items():
            cloned.balances[wallet] = defaultdict(lambda: Decimal("0"), bals)

        cloned._positions_by_unit = defaultdict(dict)
        for unit_symbol, positions in self._positions_by_unit.items():
            cloned._positions_by_unit[unit_symbol] = dict(positions)

        return cloned

    def restore(self, snapshot: Ledger) -> None:
        """
        Roll this ledger back to a snapshot taken with clone().

        The clock is not rolled back; time only moves forward. The snapshot's
        log must be a prefix of this ledger's log.

        Raises:
            LedgerError: If the snapshot was not taken from this ledger's history
        """
        if snapshot.name != self.name:
            raise LedgerError(f"Cannot restore {self.name} from snapshot of {snapshot.name}")
        ours = [(tx.exec_id, tx.intent_id) for tx in self.transaction_log[:len(snapshot.transaction_log)]]
        theirs = [(tx.exec_id, tx.intent_id) for tx in snapshot.transaction_log]
        if ours != theirs:
            raise LedgerError(f"Cannot restore {self.name} from a snapshot of a diverged history")
        source = snapshot.clone()
        self.units = source.units
        self.registered_wallets = source.registered_wallets
        self.seen_intent_ids = source.seen_intent_ids
        self.transaction_log = source.transaction_log
        self._next_sequence = source._next_sequence
        self.balances = source.balances
        self._positions_by_unit = source._positions_by_unit

    def clone_at(self, target_time: datetime) -> Ledger:
        """
        Deep copy of this ledger as it was at target_time.

        Clones the current state, then unwinds every transaction executed
        after target_time: moves are reversed, state changes restore
        old_state, created units are removed.

        Raises:
            ValueError: If target_time is in the future
        """
        if target_time > self._current_time:
            raise ValueError(f"Target time {target_time} is in the future")

        cloned = self.clone()
        cloned._current_time = target_time
        cloned.transaction_log = [
            tx for tx in self.transaction_log
            if tx.execution_time <= target_time
        ]
        cloned.seen_intent_ids = {tx.intent_id for tx in cloned.transaction_log}
        cloned._next_sequence = len(cloned.transaction_log)

        for tx in reversed(self.transaction_log):
            if tx.execution_time <= target_time:
                break

            for move in tx.moves:
                unit = cloned.units.get(move.unit_symbol)
                if unit is None:
                    raise LedgerError(f"Cannot unwind: unit {move.unit_symbol} not found in cloned ledger")
                new_src = unit.round(cloned.balances[move.source][move.unit_symbol] + move.quantity)
                new_dst = unit.round(cloned.balances[move.dest][move.unit_symbol] - move.quantity)
                cloned.balances[move.source][move.unit_symbol] = new_src
                cloned.balances[move.dest][move.unit_symbol] = new_dst
                cloned._update_position_index(move.source, move.unit_symbol, new_src)
                cloned._update_position_index(move.dest, move.unit_symbol, new_dst)

            for sc in tx.state_changes:
                if sc.unit in cloned.units:
                    restored = copy.deepcopy(sc.old_state if isinstance(sc.old_state, dict) else {})
                    cloned.units[sc.unit] = replace(
                        cloned.units[sc.unit], _frozen_state=_freeze_state(restored)
                    )

            for unit in tx.units_to_create:
                cloned.units.pop(unit.symbol, None)
                for wallet in cloned.registered_wallets:
                    cloned.balances[wallet].pop(unit.symbol, None)
                cloned._positions_by_unit.pop(unit.symbol, None)

        return cloned

    def replay(self, from_tx: int = 0) -> Ledger:
        """
        Rebuild a ledger by re-executing the transaction log.

        Units registered outside the log are copied with empty state; units
        created by logged transactions are recreated by them. Balances set
        with set_balance() are not replayed.

        Raises:
            LedgerError: If a logged transaction is rejected during replay
        """
        new_ledger = Ledger(
            name=f"{self.name}_replayed",
            initial_time=datetime(1970, 1, 1),
            verbose=self.verbose,
            test_mode=self._test_mode
        )

        created_in_log = {
            unit.symbol
            for tx in self.transaction_log[from_tx:]
            for unit in tx.units_to_create
        }

        for symbol, unit in self.units.items():
            if symbol in created_in_log:
                continue
            new_ledger.units[symbol] = replace(unit, _frozen_state=_freeze_state({}))

        for wallet in self.registered_wallets:
            if wallet != SYSTEM_WALLET:
                new_ledger.register_wallet(wallet)

        for tx in self.transaction_log[from_tx:]:
            if tx.execution_time > new_ledger._current_time:
                new_ledger.advance_time(tx.execution_time)

            pending = PendingTransaction(
                moves=tx.moves,
                state_changes=tx.state_changes,
                origin=tx.origin,
                timestamp=tx.timestamp,
                units_to_create=tx.units_to_create,
            )
            result = new_ledger.execute(pending)
            if result == ExecuteResult.REJECTED:
                raise LedgerError(f"Replay failed at tx {tx.exec_id}: {new_ledger.last_rejection}")

        return new_ledger
