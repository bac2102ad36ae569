"""
engine.py - Stabilis facade

The access layer in front of the ledger. Every mutating entry point takes the
authenticated caller identity, snapshots the prices it needs, builds a
PendingTransaction with a compute_* function and commits it. A rejected
commit is raised as a StabilisError so callers never have to inspect
ExecuteResult values.

Also provides:
    - admin entry points (collateral types, protocol and controller parameters, minters)
    - restricted mint/burn for flash-loan style modules
    - bounding_transaction(): all-or-nothing block whose minted stablecoin must be burned
    - a non-reentrant guard: no mutating call may start while another is in flight
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Iterator, List, Optional, Tuple

from .core import (
    Move, PendingTransaction, Transaction, TransactionOrigin, OriginType, UnitStateChange,
    ExecuteResult, PriceMap, PositionStatus,
    SYSTEM_WALLET, VAULT_WALLET, TREASURY_WALLET, PROTOCOL_UNIT, CDP_PREFIX, QUANTITY_EPSILON,
    StabilisError, ValidationError, InsufficientFunds, StateError, StalePriceError,
    ConcurrencyError, StaleStateError, PositionAlreadyLiquidated, UnrepaidFlashLoan,
    build_transaction, stablecoin, to_decimal, quantize_down,
)
from .ledger import Ledger, REJECT_STALE_STATE, REJECT_BALANCE
from .price_feed import PriceFeedAdapter
from .units.protocol import (
    ProtocolParameters, load_protocol, create_protocol_unit, require_minter,
    compute_set_protocol_parameters, compute_authorize_minter,
    to_state_dict as protocol_state_dict,
)
from .units.collateral import (
    CollateralType, load_collateral, list_collateral_types, total_system_debt,
    compute_add_collateral_type, compute_set_collateral_params,
)
from .units.interest import compute_advance
from .units.pid import (
    PIDParameters, load_pid, create_pid_unit, current_rate, pid_unit_symbol,
    compute_tick, compute_set_pid_params,
)
from .units.position import (
    Position, load_position, list_positions,
    compute_open, compute_close, compute_top_up, compute_borrow_more,
    compute_partial_close, compute_remove_collateral,
    outstanding_debt, collateral_ratio, positions_of,
)
from .units.liquidation import (
    LiquidationRecord,
    compute_mark, compute_unmark, compute_liquidate, compute_retrieve_leftover,
    find_unsafe_positions, liquidation_log,
)
from .units.force import compute_force_liquidate, compute_force_mint


DEFAULT_PID_PARAMETERS = PIDParameters(
    target_peg=Decimal("1"),
    kp=Decimal("0"),
    ki=Decimal("0"),
    kd=Decimal("0"),
    base_rate=Decimal("0"),
)


class Stabilis:
    """
    Stablecoin engine over a Ledger.

    Example:
        ledger = Ledger("stabilis", datetime(2025, 1, 1), verbose=False)
        oracle = StaticPriceFeed({"XRD": (Decimal("1"), datetime(2025, 1, 1))})
        engine = Stabilis(ledger, "admin", PriceFeedAdapter({"XRD": oracle}))
        engine.add_collateral_type("admin", CollateralType(
            id="XRD", accepted=True, min_collateral_ratio=Decimal("1.5"),
            liquidation_collateral_ratio=Decimal("1.2"),
            liquidation_penalty_pct=Decimal("0.10"), price_feed_id="XRD",
            debt_ceiling=Decimal("1000000"),
        ))
        position_id = engine.open("alice", "XRD", Decimal("150"), Decimal("100"))
    """

    def __init__(
        self,
        ledger: Ledger,
        admin: str,
        prices: PriceFeedAdapter,
        stablecoin_symbol: str = "STAB",
        params: Optional[ProtocolParameters] = None,
        pid_params: Optional[PIDParameters] = None,
        verbose: Optional[bool] = None,
    ):
        """
        Bind the engine to a ledger, bootstrapping the protocol units if needed.

        Args:
            ledger: The ledger holding all balances and protocol state
            admin: Identity allowed to call the admin entry points
            prices: Price adapter for collateral prices and the stablecoin market price
            stablecoin_symbol: Symbol of the pegged coin
            params: Initial protocol parameters (first bootstrap only)
            pid_params: Initial controller parameters (first bootstrap only)
            verbose: Print one line per operation (defaults to ledger.verbose)
        """
        self.ledger = ledger
        self.prices = prices
        self.stablecoin = stablecoin_symbol
        self.verbose = ledger.verbose if verbose is None else verbose
        self._in_flight = False
        self._bounding = False
        self._bootstrap(admin, params, pid_params or DEFAULT_PID_PARAMETERS)

    def _bootstrap(self, admin: str, params: Optional[ProtocolParameters], pid_params: PIDParameters) -> None:
        for wallet in (VAULT_WALLET, TREASURY_WALLET, admin):
            self.ledger.ensure_wallet(wallet)
        if not self.ledger.has_unit(self.stablecoin):
            self.ledger.register_unit(stablecoin(self.stablecoin))

        units = []
        if not self.ledger.has_unit(PROTOCOL_UNIT):
            units.append(create_protocol_unit(admin, self.stablecoin, params))
        if not self.ledger.has_unit(pid_unit_symbol(self.stablecoin)):
            units.append(create_pid_unit(self.stablecoin, pid_params))
        if units:
            origin = TransactionOrigin(OriginType.SYSTEM, admin, PROTOCOL_UNIT, "BOOTSTRAP")
            self._commit(build_transaction(self.ledger, [], origin=origin, units_to_create=tuple(units)))

    # ========================================================================
    # PLUMBING
    # ========================================================================

    @contextmanager
    def _operation(self) -> Iterator[None]:
        """Non-reentrant guard around one mutating call."""
        if self._in_flight:
            raise ConcurrencyError("Re-entrant call into the engine while an operation is in flight")
        self._in_flight = True
        try:
            yield
        finally:
            self._in_flight = False

    def _commit(self, pending: PendingTransaction) -> Optional[Transaction]:
        """
        Execute a pending transaction or raise.

        Returns the logged Transaction, or None for an empty or already applied one.

        Raises:
            PositionAlreadyLiquidated: Built against a position liquidated since
            StaleStateError: Built from state that changed since
            InsufficientFunds: A balance would leave its bounds
            StabilisError: Any other rejection
        """
        if pending.is_empty():
            return None
        result = self.ledger.execute(pending)
        if result == ExecuteResult.REJECTED:
            reason = self.ledger.last_rejection or "rejected"
            if reason.startswith(REJECT_STALE_STATE):
                self._raise_lost_race(pending, reason)
            if reason.startswith(REJECT_BALANCE):
                raise InsufficientFunds(reason)
            raise StabilisError(reason)
        if result == ExecuteResult.ALREADY_APPLIED:
            return None
        return self.ledger.transaction_log[-1]

    def _raise_lost_race(self, pending: PendingTransaction, reason: str) -> None:
        for sc in pending.state_changes:
            if not sc.unit.startswith(CDP_PREFIX) or not self.ledger.has_unit(sc.unit):
                continue
            if load_position(self.ledger, sc.unit).status == PositionStatus.LIQUIDATED:
                raise PositionAlreadyLiquidated(f"{sc.unit} was liquidated by a concurrent caller ({reason})")
        raise StaleStateError(reason)

    def submit(self, pending: PendingTransaction) -> Optional[Transaction]:
        """
        Commit a transaction computed elsewhere, e.g. by a compute_* function
        against an earlier view of the ledger.

        Example:
            pending = compute_liquidate(engine.ledger, "bob", "CDP_1", Decimal("100"), price)
            engine.submit(pending)
        """
        with self._operation():
            return self._commit(pending)

    def _log(self, event: str, message: str) -> None:
        if self.verbose:
            print(f"[{event}] {message}")

    @property
    def now(self) -> datetime:
        return self.ledger.current_time

    def advance_time(self, new_time: datetime) -> None:
        self.ledger.advance_time(new_time)

    def collateral_price(self, collateral_id: str) -> Decimal:
        """
        Fresh price of a collateral type, read through its price feed id.

        Raises:
            StalePriceError: If the price is missing or too old
        """
        params, _ = load_protocol(self.ledger)
        ct, _ = load_collateral(self.ledger, collateral_id)
        return self.prices.price(ct.price_feed_id, self.now, params.max_price_age_seconds)

    def _position_price(self, position_id: str) -> Decimal:
        return self.collateral_price(load_position(self.ledger, position_id).collateral_type)

    # ========================================================================
    # POSITION LEDGER
    # ========================================================================

    def open(self, caller: str, collateral_type: str, collateral_amount, requested_debt) -> str:
        """Open a position and return its id."""
        with self._operation():
            price = self.collateral_price(collateral_type)
            pending = compute_open(
                self.ledger, caller, collateral_type,
                to_decimal(collateral_amount), to_decimal(requested_debt), price,
            )
            self._commit(pending)
            position_id = pending.units_to_create[0].symbol
            self._log("OPEN", f"{position_id} {caller} {collateral_amount} {collateral_type} -> {requested_debt} {self.stablecoin} @ {price}")
            return position_id

    def close(self, caller: str, position_id: str, repay_amount) -> None:
        with self._operation():
            self._commit(compute_close(self.ledger, caller, position_id, to_decimal(repay_amount)))
            self._log("CLOSE", f"{position_id} {caller}")

    def top_up(self, caller: str, position_id: str, extra_collateral) -> None:
        with self._operation():
            self._commit(compute_top_up(self.ledger, caller, position_id, to_decimal(extra_collateral)))
            self._log("TOP_UP", f"{position_id} +{extra_collateral}")

    def borrow_more(self, caller: str, position_id: str, extra_debt) -> None:
        with self._operation():
            price = self._position_price(position_id)
            self._commit(compute_borrow_more(self.ledger, caller, position_id, to_decimal(extra_debt), price))
            self._log("BORROW_MORE", f"{position_id} +{extra_debt} {self.stablecoin} @ {price}")

    def partial_close(self, caller: str, position_id: str, repay_amount) -> None:
        with self._operation():
            self._commit(compute_partial_close(self.ledger, caller, position_id, to_decimal(repay_amount)))
            self._log("PARTIAL_CLOSE", f"{position_id} -{repay_amount} {self.stablecoin}")

    def remove_collateral(self, caller: str, position_id: str, amount) -> None:
        with self._operation():
            price = self._position_price(position_id)
            self._commit(compute_remove_collateral(self.ledger, caller, position_id, to_decimal(amount), price))
            self._log("REMOVE_COLLATERAL", f"{position_id} -{amount} @ {price}")

    def position(self, position_id: str) -> Position:
        return load_position(self.ledger, position_id)

    def positions_of(self, owner: str) -> List[Position]:
        return positions_of(self.ledger, owner)

    def outstanding_debt(self, position_id: str) -> Decimal:
        return outstanding_debt(self.ledger, position_id)

    def collateral_ratio(self, position_id: str) -> Decimal:
        return collateral_ratio(self.ledger, position_id, self._position_price(position_id))

    # ========================================================================
    # LIQUIDATION ENGINE
    # ========================================================================

    def mark(self, caller: str, position_id: str) -> None:
        with self._operation():
            price = self._position_price(position_id)
            self._commit(compute_mark(self.ledger, caller, position_id, price))
            self._log("MARK", f"{position_id} by {caller} @ {price}")

    def unmark(self, caller: str, position_id: str) -> None:
        with self._operation():
            price = self._position_price(position_id)
            self._commit(compute_unmark(self.ledger, caller, position_id, price))
            self._log("UNMARK", f"{position_id} by {caller} @ {price}")

    def liquidate(
        self,
        caller: str,
        position_id: str,
        repay_amount,
        allow_bad_debt: bool = True,
    ) -> LiquidationRecord:
        """Liquidate a Marked position and return the appended record."""
        with self._operation():
            price = self._position_price(position_id)
            pending = compute_liquidate(
                self.ledger, caller, position_id, to_decimal(repay_amount), price, allow_bad_debt
            )
            self._commit(pending)
            record = liquidation_log(self.ledger, position_id)[-1]
            self._log(
                "LIQUIDATE",
                f"{position_id} by {caller}: seized {record.collateral_seized}, "
                f"repaid {record.debt_repaid}, leftover {record.leftover_collateral}, bad debt {record.bad_debt}",
            )
            return record

    def retrieve_leftover(self, caller: str, position_id: str) -> Decimal:
        """Pay out leftover collateral; returns the amount paid."""
        with self._operation():
            amount = load_position(self.ledger, position_id).leftover_collateral
            self._commit(compute_retrieve_leftover(self.ledger, caller, position_id))
            self._log("RETRIEVE_LEFTOVER", f"{position_id} {caller} {amount}")
            return amount

    def force_liquidate(
        self,
        caller: str,
        collateral_type: str,
        repay_amount,
        assert_non_markable: bool = True,
    ) -> str:
        """Repay debt of the lowest-ratio Open position of collateral_type at the peg; returns its id."""
        with self._operation():
            price = self.collateral_price(collateral_type)
            pending = compute_force_liquidate(
                self.ledger, caller, collateral_type, to_decimal(repay_amount), price, assert_non_markable
            )
            self._commit(pending)
            position_id = pending.origin.unit_symbol
            self._log("FORCE_LIQUIDATE", f"{position_id} by {caller} @ {price}")
            return position_id

    def force_mint(self, caller: str, collateral_type: str, collateral_amount) -> str:
        """Supply collateral to the highest-ratio Open position and mint against it; returns its id."""
        with self._operation():
            price = self.collateral_price(collateral_type)
            pending = compute_force_mint(self.ledger, caller, collateral_type, to_decimal(collateral_amount), price)
            self._commit(pending)
            position_id = pending.origin.unit_symbol
            self._log("FORCE_MINT", f"{position_id} by {caller} @ {price}")
            return position_id

    def find_unsafe_positions(self) -> List[Tuple[str, Decimal]]:
        """(position_id, ratio) of unsafe Open positions, lowest ratio first.

        Only collateral types backing an Open position are priced.
        """
        in_use = set()
        for position_id in list_positions(self.ledger):
            pos = load_position(self.ledger, position_id)
            if pos.status == PositionStatus.OPEN:
                in_use.add(pos.collateral_type)
        prices: PriceMap = {
            collateral_id: self.collateral_price(collateral_id)
            for collateral_id in list_collateral_types(self.ledger)
            if collateral_id in in_use
        }
        return find_unsafe_positions(self.ledger, prices)

    def liquidation_log(self, position_id: Optional[str] = None) -> List[LiquidationRecord]:
        return liquidation_log(self.ledger, position_id)

    @property
    def total_bad_debt(self) -> Decimal:
        _, protocol = load_protocol(self.ledger)
        return protocol.total_bad_debt

    # ========================================================================
    # INTEREST AND PEG CONTROL
    # ========================================================================

    def _accrue_all(self, caller: str) -> None:
        """Advance every collateral type, storing the controller's current output."""
        for collateral_id in list_collateral_types(self.ledger):
            self._commit(compute_advance(self.ledger, collateral_id, source_id=caller))

    def advance(self, collateral_type: str, caller: str = "keeper") -> Optional[Transaction]:
        """Advance one collateral type's interest index to the current time."""
        with self._operation():
            return self._commit(compute_advance(self.ledger, collateral_type, source_id=caller))

    def tick_pid(self, market_price=None, caller: str = "keeper") -> Decimal:
        """
        Feed the controller one market price and return its output rate.

        Without an explicit market_price the stablecoin's price is read from
        the adapter (normally a liquidity pool). Interest up to now accrues at
        the old rate; the new output applies from now on.
        """
        with self._operation():
            if market_price is None:
                market_price = self.prices.market_price(self.stablecoin, self.now)
                if market_price is None:
                    raise StalePriceError(f"No market price feed for {self.stablecoin}")
            self._accrue_all(caller)
            self._commit(compute_tick(self.ledger, self.stablecoin, to_decimal(market_price), caller))
            self._accrue_all(caller)
            rate = self.current_rate()
            self._log("PID", f"{self.stablecoin} @ {market_price} -> rate {rate}")
            return rate

    def current_rate(self) -> Decimal:
        params, state = load_pid(self.ledger, self.stablecoin)
        return current_rate(params, state)

    # ========================================================================
    # ADMIN
    # ========================================================================

    def add_collateral_type(self, caller: str, ct: CollateralType) -> None:
        with self._operation():
            if not self.ledger.has_unit(ct.id):
                raise ValidationError(f"Collateral token {ct.id} is not registered on the ledger")
            self._commit(compute_add_collateral_type(self.ledger, caller, ct, self.current_rate()))
            self._log("ADD_COLLATERAL_TYPE", f"{ct.id} mcr={ct.min_collateral_ratio} lcr={ct.liquidation_collateral_ratio}")

    def set_collateral_params(self, caller: str, collateral_id: str, **changes) -> None:
        with self._operation():
            self._commit(compute_set_collateral_params(self.ledger, caller, collateral_id, **changes))
            self._log("SET_COLLATERAL_PARAMS", f"{collateral_id} {changes}")

    def set_protocol_parameters(self, caller: str, **changes) -> None:
        with self._operation():
            self._commit(compute_set_protocol_parameters(self.ledger, caller, **changes))
            self._log("SET_PROTOCOL_PARAMETERS", f"{changes}")

    def set_pid_params(self, caller: str, **changes) -> None:
        with self._operation():
            pending = compute_set_pid_params(self.ledger, caller, self.stablecoin, **changes)
            self._accrue_all(caller)
            self._commit(pending)
            self._accrue_all(caller)
            self._log("SET_PID_PARAMS", f"{changes}")

    def authorize_minter(self, caller: str, minter_id: str) -> None:
        with self._operation():
            self._commit(compute_authorize_minter(self.ledger, caller, minter_id))
            self.ledger.ensure_wallet(minter_id)
            self._log("AUTHORIZE_MINTER", minter_id)

    # ========================================================================
    # RESTRICTED MINT / BURN
    # ========================================================================

    def _flash_counters(self, caller: str, minted: Decimal, burned: Decimal) -> UnitStateChange:
        params, protocol = load_protocol(self.ledger)
        require_minter(protocol, caller)
        new_protocol = replace(
            protocol,
            flash_minted=protocol.flash_minted + minted,
            flash_burned=protocol.flash_burned + burned,
        )
        return UnitStateChange(
            PROTOCOL_UNIT,
            self.ledger.get_unit_state(PROTOCOL_UNIT),
            protocol_state_dict(params, new_protocol),
        )

    def _check_amount(self, amount) -> Decimal:
        amount = quantize_down(to_decimal(amount))
        if amount <= 0:
            raise ValidationError(f"amount must be positive, got {amount}")
        return amount

    def mint(self, caller: str, amount, to: Optional[str] = None) -> None:
        """
        Mint stablecoin for an authorized minter. Only inside bounding_transaction().

        Raises:
            Unauthorized: If caller is not an authorized minter
            StateError: Outside a bounding transaction
        """
        with self._operation():
            if not self._bounding:
                raise StateError("mint() is only allowed inside a bounding transaction")
            amount = self._check_amount(amount)
            change = self._flash_counters(caller, amount, Decimal("0"))
            dest = to or caller
            origin = TransactionOrigin(OriginType.FLASH_LOAN, caller, self.stablecoin, "MINT")
            self._commit(build_transaction(
                self.ledger,
                [Move(amount, self.stablecoin, SYSTEM_WALLET, dest, f"flash_mint_{caller}")],
                [change],
                origin,
            ))
            self._log("MINT", f"{amount} {self.stablecoin} -> {dest}")

    def burn(self, caller: str, amount, source: Optional[str] = None) -> None:
        """Burn stablecoin for an authorized minter. Only inside bounding_transaction()."""
        with self._operation():
            if not self._bounding:
                raise StateError("burn() is only allowed inside a bounding transaction")
            amount = self._check_amount(amount)
            change = self._flash_counters(caller, Decimal("0"), amount)
            src = source or caller
            if self.ledger.get_balance(src, self.stablecoin) < amount:
                raise InsufficientFunds(f"{src} cannot burn {amount} {self.stablecoin}")
            origin = TransactionOrigin(OriginType.FLASH_LOAN, caller, self.stablecoin, "BURN")
            self._commit(build_transaction(
                self.ledger,
                [Move(amount, self.stablecoin, src, SYSTEM_WALLET, f"flash_burn_{caller}")],
                [change],
                origin,
            ))
            self._log("BURN", f"{amount} {self.stablecoin} <- {src}")

    def collect_fee(self, caller: str, payer: str, amount) -> None:
        """Move a stablecoin fee from payer to the treasury. Authorized minters only."""
        with self._operation():
            amount = self._check_amount(amount)
            _, protocol = load_protocol(self.ledger)
            require_minter(protocol, caller)
            if self.ledger.get_balance(payer, self.stablecoin) < amount:
                raise InsufficientFunds(f"{payer} cannot pay fee {amount} {self.stablecoin}")
            origin = TransactionOrigin(OriginType.FLASH_LOAN, caller, self.stablecoin, "FEE")
            self._commit(build_transaction(
                self.ledger,
                [Move(amount, self.stablecoin, payer, TREASURY_WALLET, f"flash_fee_{caller}")],
                origin=origin,
            ))
            self._log("FEE", f"{amount} {self.stablecoin} {payer} -> {TREASURY_WALLET}")

    @contextmanager
    def bounding_transaction(self) -> Iterator[Stabilis]:
        """
        All-or-nothing block for flash minting.

        The ledger is snapshotted on entry. On exit the stablecoin minted
        through mint() inside the block must equal the amount burned through
        burn(), and the circulating supply may only have grown by debt taken
        on inside the block; otherwise, or on any exception, the ledger is
        restored to the snapshot.

        Raises:
            UnrepaidFlashLoan: If minted and burned amounts differ or supply is unbacked on exit
            ConcurrencyError: If bounding transactions are nested
        """
        if self._bounding:
            raise ConcurrencyError("Bounding transactions cannot be nested")
        snapshot = self.ledger.clone()
        _, before = load_protocol(self.ledger)
        supply_before = self.ledger.circulating_supply(self.stablecoin)
        unbacked_before = self._unbacked_supply()
        self._bounding = True
        try:
            yield self
            _, after = load_protocol(self.ledger)
            minted = after.flash_minted - before.flash_minted
            burned = after.flash_burned - before.flash_burned
            if minted != burned:
                raise UnrepaidFlashLoan(
                    f"Minted {minted} {self.stablecoin} but burned {burned} within the bounding transaction"
                )
            unbacked = self._unbacked_supply() - unbacked_before
            if unbacked > QUANTITY_EPSILON:
                raise UnrepaidFlashLoan(
                    f"{unbacked} {self.stablecoin} entered circulation without debt within the bounding transaction"
                )
        except BaseException:
            self.ledger.restore(snapshot)
            raise
        finally:
            self._bounding = False
        self._log(
            "BOUNDING",
            f"{self.stablecoin} supply {supply_before} -> {self.ledger.circulating_supply(self.stablecoin)}",
        )

    def _unbacked_supply(self) -> Decimal:
        """Circulating stablecoin not matched by position debt or written-off bad debt."""
        _, protocol = load_protocol(self.ledger)
        return self.circulating_supply() - total_system_debt(self.ledger) - protocol.total_bad_debt

    def circulating_supply(self) -> Decimal:
        return self.ledger.circulating_supply(self.stablecoin)
